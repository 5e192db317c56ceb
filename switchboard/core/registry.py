"""Process-wide registry of callable specialists and orchestrators."""
from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Type, Union

from pydantic import BaseModel

from .errors import RegistrationError
from .models import GuardResult

logger = logging.getLogger(__name__)

_AGENT_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

ToolHandler = Callable[[Any], Awaitable[Any]]
Guard = Callable[[str, str], Union[GuardResult, Awaitable[GuardResult]]]


@dataclass(frozen=True, slots=True)
class Tool:
    """A capability the model may call.

    Tools without a handler are declarations: the model's call is recorded
    for the caller to act on, nothing is executed.
    """

    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Optional[ToolHandler] = None

    @property
    def declaration_only(self) -> bool:
        return self.handler is None

    def json_schema(self) -> Dict[str, Any]:
        return self.args_model.model_json_schema()

    def parse(self, arguments: Mapping[str, Any]) -> BaseModel:
        return self.args_model.model_validate(dict(arguments))


@dataclass(slots=True)
class AgentRegistration:
    """Static descriptor of a callable agent."""

    name: str
    description: str
    instructions: str
    tools: Dict[str, Tool] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()
    is_orchestrator: bool = False
    agents: Optional[Tuple[str, ...]] = None
    disable_memory_tool: bool = False
    guard: Optional[Guard] = None
    default_format: str = "json"
    runner: Optional[Any] = None

    @property
    def tool_names(self) -> List[str]:
        return list(self.tools)

    @property
    def can_execute_tasks(self) -> bool:
        return bool(self.tools)

    async def check_guard(self, query: str) -> GuardResult:
        if self.guard is None:
            return GuardResult(allowed=True)
        result = self.guard(query, self.name)
        if inspect.isawaitable(result):
            result = await result
        return result


class AgentRegistry:
    """Name → registration mapping, validated at registration time.

    Prompt overrides are plain dict writes; concurrent readers see either the
    old or the new prompt (last writer wins).
    """

    def __init__(self) -> None:
        self._agents: Dict[str, AgentRegistration] = {}
        self._prompt_overrides: Dict[str, str] = {}

    def register(self, registration: AgentRegistration) -> AgentRegistration:
        if not registration.name or not _AGENT_NAME.match(registration.name):
            raise RegistrationError(f"Invalid agent name: {registration.name!r}")
        for key, tool in registration.tools.items():
            if key != tool.name:
                raise RegistrationError(
                    f"Agent '{registration.name}' maps tool key '{key}' to tool '{tool.name}'"
                )
        if registration.default_format not in ("json", "sse"):
            raise RegistrationError(f"Unsupported default format: {registration.default_format}")
        if registration.name in self._agents:
            logger.info("Replacing registration for agent '%s'", registration.name)
        self._agents[registration.name] = registration
        return registration

    def register_all(self, registrations: Iterable[AgentRegistration]) -> None:
        for registration in registrations:
            self.register(registration)

    def get(self, name: str) -> Optional[AgentRegistration]:
        return self._agents.get(name)

    def list(self) -> List[AgentRegistration]:
        return list(self._agents.values())

    def find_tool(self, name: str) -> Optional[Tool]:
        """First registered agent tool called ``name``."""
        for registration in self._agents.values():
            tool = registration.tools.get(name)
            if tool is not None:
                return tool
        return None

    def orchestrator_names(self) -> Set[str]:
        return {name for name, agent in self._agents.items() if agent.is_orchestrator}

    def routable(self, allowed: Optional[Iterable[str]] = None) -> List[AgentRegistration]:
        """Agents an orchestrator may delegate to."""
        allowed_set = set(allowed) if allowed is not None else None
        return [
            agent
            for agent in self._agents.values()
            if not agent.is_orchestrator
            and agent.can_execute_tasks
            and (allowed_set is None or agent.name in allowed_set)
        ]

    def resolved_prompt(self, name: str) -> Optional[str]:
        agent = self._agents.get(name)
        if agent is None:
            return None
        return self._prompt_overrides.get(name, agent.instructions)

    def set_prompt_override(self, name: str, prompt: str) -> None:
        self._prompt_overrides[name] = prompt

    def reset_prompt(self, name: str) -> None:
        self._prompt_overrides.pop(name, None)

    def has_prompt_override(self, name: str) -> bool:
        return name in self._prompt_overrides

    def load_prompt_overrides(self, overrides: Mapping[str, str]) -> None:
        for name, prompt in overrides.items():
            self._prompt_overrides[name] = prompt
