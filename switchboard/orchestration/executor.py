"""Delegated task execution with policy checks and isolated failures."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from switchboard.agents.runner import run_agent
from switchboard.agents.tools import (
    CLARIFY_PROMPT_SUFFIX,
    CLARIFY_TOOL,
    CLARIFY_TOOL_NAME,
    MEMORY_PROMPT_SUFFIX,
    MEMORY_TOOL_NAME,
    create_memory_tool,
)
from switchboard.core.context import (
    DelegationContext,
    current_context,
    delegation_scope,
    emit,
    emit_status,
)
from switchboard.core.errors import RequestCancelled
from switchboard.core.events import BusEvents, StatusCode
from switchboard.core.models import AgentResponse, GuardResult, Task, TaskResult
from switchboard.core.registry import AgentRegistration, Tool

if TYPE_CHECKING:
    from switchboard.runtime import AppContext

logger = logging.getLogger(__name__)

SUMMARY_LENGTH_LIMIT = 200


def error_result(agent: str, query: str, message: str) -> TaskResult:
    return TaskResult(agent=agent, query=query, response=AgentResponse(text=message), error=True)


class TaskExecutor:
    """Runs one specialist for one query on behalf of the current caller.

    :meth:`execute_task` never raises for policy or execution failures; those
    come back as error results so sibling tasks are unaffected. Cancellation
    is the exception: :class:`RequestCancelled` always propagates.
    """

    def __init__(self, ctx: "AppContext") -> None:
        self._ctx = ctx

    def check_policy(self, agent: str, parent: DelegationContext) -> Optional[str]:
        """First violated delegation rule for ``parent`` → ``agent``, if any."""
        registration = self._ctx.registry.get(agent)
        if registration is None:
            return f"Unknown agent: {agent}"
        if registration.is_orchestrator:
            return f'Agent "{agent}" is an orchestrator and cannot be delegated to'
        if not registration.can_execute_tasks:
            return f'Agent "{agent}" does not support task execution'

        chain = parent.chain
        limit = self._ctx.max_delegation_depth
        if parent.depth >= limit:
            path = " → ".join(chain + (agent,))
            return f"Delegation depth limit ({limit}) exceeded. Chain: {path}"
        if chain and chain[-1] == agent:
            return f'Self-delegation blocked: "{agent}" cannot delegate to itself'
        if agent in chain:
            path = " → ".join(chain + (agent,))
            return f"Circular delegation blocked: {path}"
        return None

    async def _load_skills(self, agent: str, skills: Sequence[str]) -> Tuple[List[str], List[str], List[str]]:
        sections: List[str] = []
        query_skills: List[str] = []
        response_skills: List[str] = []
        for name in skills:
            skill = await self._ctx.storage.skills.get_skill(name)
            if skill is None:
                logger.info("Skill '%s' requested for %s does not exist", name, agent)
                continue
            if skill.phase.affects_query:
                sections.append(f"### {skill.name}\n{skill.content}")
                query_skills.append(skill.name)
            if skill.phase.affects_response:
                response_skills.append(skill.name)
        return sections, query_skills, response_skills

    def _effective_tools(self, registration: AgentRegistration) -> Dict[str, Tool]:
        tools = dict(registration.tools)
        tools[CLARIFY_TOOL_NAME] = CLARIFY_TOOL
        if not registration.disable_memory_tool:
            tools[MEMORY_TOOL_NAME] = create_memory_tool(self._ctx.storage.memory, registration.name)
        return tools

    async def _check_guard(self, registration: AgentRegistration, query: str) -> GuardResult:
        emit_status(StatusCode.GUARD_CHECK, "Running pre-execution guard", agent=registration.name)
        try:
            return await registration.check_guard(query)
        except RequestCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Guard for %s raised: %s", registration.name, exc)
            return GuardResult(allowed=False, reason=f"guard error: {exc}")

    async def execute_task(
        self,
        agent: str,
        query: str,
        skills: Sequence[str] = (),
    ) -> TaskResult:
        parent = current_context() or DelegationContext()
        if parent.cancellation is not None:
            parent.cancellation.raise_if_cancelled()

        violation = self.check_policy(agent, parent)
        if violation is not None:
            logger.info("Delegation rejected: %s", violation)
            return error_result(agent, query, violation)

        registration = self._ctx.registry.get(agent)
        if registration is None:
            return error_result(agent, query, f"Unknown agent: {agent}")
        source = parent.caller or agent

        system = self._ctx.registry.resolved_prompt(agent) or ""
        sections, query_skills, response_skills = await self._load_skills(agent, skills)
        if sections:
            system += (
                "\n\n# Active Skills\nApply the following behavioral instructions to your response:\n\n"
                + "\n\n".join(sections)
            )
            emit(BusEvents.SKILL_INJECT, agent=agent, skills=query_skills, phase="query")
        emit(BusEvents.DELEGATE_START, **{"from": source, "to": agent, "query": query})

        if registration.guard is not None:
            verdict = await self._check_guard(registration, query)
            if not verdict.allowed:
                logger.info("Guard blocked delegation to %s: %s", agent, verdict.reason)
                emit(
                    BusEvents.DELEGATE_END,
                    **{
                        "from": source,
                        "to": agent,
                        "summary": f"Blocked: {verdict.reason or 'guard rejected'}",
                        "error": True,
                    },
                )
                return error_result(agent, query, f"Guard blocked: {verdict.reason or 'query not allowed'}")

        system += CLARIFY_PROMPT_SUFFIX
        if not registration.disable_memory_tool:
            system += MEMORY_PROMPT_SUFFIX

        try:
            emit(BusEvents.AGENT_START, agent=agent)
            emit_status(StatusCode.PROCESSING, "Agent starting work", agent=agent)
            with delegation_scope(parent.derive(agent)):
                response = await run_agent(
                    self._ctx,
                    system,
                    self._effective_tools(registration),
                    query,
                    agent_name=agent,
                )
        except RequestCancelled:
            emit(BusEvents.AGENT_END, agent=agent, cancelled=True)
            raise
        except Exception as exc:  # noqa: BLE001
            message = str(exc)
            logger.warning("Task for %s failed: %s", agent, message)
            emit(BusEvents.AGENT_END, agent=agent, error=message[:SUMMARY_LENGTH_LIMIT])
            emit(
                BusEvents.DELEGATE_END,
                **{
                    "from": source,
                    "to": agent,
                    "summary": f"Error: {message[:SUMMARY_LENGTH_LIMIT]}",
                    "error": True,
                },
            )
            return error_result(agent, query, f"Agent execution failed: {message}")

        emit(BusEvents.AGENT_END, agent=agent)
        emit(
            BusEvents.DELEGATE_END,
            **{"from": source, "to": agent, "summary": response.text[:SUMMARY_LENGTH_LIMIT]},
        )
        return TaskResult(
            agent=agent,
            query=query,
            response=response,
            response_skills=tuple(response_skills),
        )

    async def execute_tasks(self, tasks: Iterable[Task]) -> List[TaskResult]:
        """Run tasks concurrently; each failure stays in its own result."""
        tasks = list(tasks)
        outcomes = await asyncio.gather(
            *(self.execute_task(task.agent, task.query, task.skills) for task in tasks),
            return_exceptions=True,
        )
        results: List[TaskResult] = []
        for task, outcome in zip(tasks, outcomes):
            if isinstance(outcome, (RequestCancelled, asyncio.CancelledError)):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("Task for %s raised unexpectedly: %s", task.agent, outcome)
                results.append(error_result(task.agent, task.query, f"Agent execution failed: {outcome}"))
            else:
                results.append(outcome)
        return results


class DelegateArgs(BaseModel):
    agent: str = Field(..., description="Name of the specialist to hand the work to")
    query: str = Field(..., description="Self-contained instruction for that specialist")


def create_delegate_tool(executor: TaskExecutor, allowed: Optional[Iterable[str]] = None) -> Tool:
    """Tool letting a specialist hand a sub-query to another specialist."""
    allowed_set = frozenset(allowed) if allowed is not None else None

    async def handle(args: DelegateArgs) -> dict:
        if allowed_set is not None and args.agent not in allowed_set:
            return {"agent": args.agent, "error": True, "response": f"Delegation to {args.agent} is not allowed"}
        result = await executor.execute_task(args.agent, args.query)
        return {"agent": result.agent, "error": result.error, "response": result.response.text}

    return Tool(
        name="delegate",
        description="Delegate a sub-task to another specialist agent and receive its answer.",
        args_model=DelegateArgs,
        handler=handle,
    )
