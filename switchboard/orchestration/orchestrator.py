"""Top-level decision engine: answer directly, route, or fan out and synthesize."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, create_model

from switchboard.agents.runner import build_memory_context, invoke_model, with_memory_context
from switchboard.core.context import emit, emit_status, get_cancellation
from switchboard.core.errors import SwitchboardError
from switchboard.core.events import BusEvents, StatusCode, WireEvents
from switchboard.core.models import (
    AgentRequest,
    ModelResult,
    Task,
    TaskResult,
    UsageInfo,
    WireEvent,
    merge_usage,
    new_conversation_id,
)
from switchboard.core.registry import AgentRegistration, Tool
from switchboard.orchestration.compaction import append_message, start_or_resume_conversation
from switchboard.orchestration.executor import SUMMARY_LENGTH_LIMIT, TaskExecutor
from switchboard.services.llm import ModelRequest
from switchboard.services.resilience import with_resilience
from switchboard.streaming.sse import StreamWriter, run_json, stream_events

if TYPE_CHECKING:
    from switchboard.runtime import AppContext

logger = logging.getLogger(__name__)

ROUTE_TOOL_NAME = "routeToAgent"
CREATE_TASK_TOOL_NAME = "createTask"
RESPONSE_SKILLS_KEY = "_responseSkills"
SYNTHESIS_MESSAGE = "Synthesizing results..."

DEFAULT_ORCHESTRATOR_PROMPT = """You are an orchestrator agent that routes user queries to the appropriate specialist agent.

When you receive a query:
1. Analyze what the user is asking about
2. Consider if any available skills would improve the response quality
3. For simple, single-domain queries: use routeToAgent to delegate immediately
4. For complex, multi-domain queries: use createTask for each sub-task (they will run in parallel)
5. Synthesize the results into a coherent response

Guidelines for choosing between routeToAgent and createTask:
- Use routeToAgent when the query maps to a single agent or when tasks must be sequential
- Use createTask when the query spans multiple independent domains that can run in parallel
- You can mix both in a single response if needed

Guidelines for skill selection:
- Only attach skills when they clearly match the user's intent or phrasing
- Don't attach skills when they would not meaningfully change the response
- You may attach multiple skills if they complement each other
- Each skill has a phase (query/response/both); this is handled automatically, just select the right skills

Always use the routing tools - never answer domain questions directly."""


class OutcomeKind(str, Enum):
    DIRECT = "direct"
    ROUTED = "routed"
    SYNTHESIZED = "synthesized"
    AWAITING_APPROVAL = "awaiting-approval"
    AWAITING_CLARIFICATION = "awaiting-clarification"


@dataclass(slots=True)
class OrchestrationOutcome:
    """Terminal state of one orchestrated request.

    Cancellation and failures are not outcomes: they propagate as exceptions
    and are rendered by the transport.
    """

    kind: OutcomeKind
    text: str = ""
    tools_used: List[str] = field(default_factory=list)
    agents_used: List[str] = field(default_factory=list)
    proposed_tasks: List[Task] = field(default_factory=list)
    results: List[TaskResult] = field(default_factory=list)
    items: List[Dict[str, Any]] = field(default_factory=list)
    usage: UsageInfo = field(default_factory=UsageInfo)

    def to_dict(self, include_response: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if include_response:
            data["response"] = self.text
        data["toolsUsed"] = list(self.tools_used)
        if self.agents_used:
            data["agentsUsed"] = list(self.agents_used)
        if self.kind is OutcomeKind.AWAITING_APPROVAL:
            data["awaitingApproval"] = True
            data["tasks"] = [task.to_dict() for task in self.proposed_tasks]
        elif self.results:
            data["tasks"] = [task_summary(result) for result in self.results]
        if self.kind is OutcomeKind.AWAITING_CLARIFICATION:
            data["awaitingResponse"] = True
            data["items"] = list(self.items)
        data["usage"] = self.usage.to_dict()
        return data


@dataclass(frozen=True, slots=True)
class SynthesisSource:
    label: str
    response: str


def task_summary(result: TaskResult) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "agent": result.agent,
        "query": result.query,
        "summary": result.response.text[:SUMMARY_LENGTH_LIMIT],
    }
    if result.error:
        summary["error"] = True
    return summary


def build_synthesis_prompt(sources: Sequence[SynthesisSource], user_message: str) -> str:
    body = "\n\n".join(f"{source.label}:\n{source.response}" for source in sources)
    return (
        f"Here are the results from the specialist agent(s):\n\n{body}\n\n"
        f"Please synthesize these results into a coherent, comprehensive response "
        f'for the user\'s original query: "{user_message}"'
    )


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def collect_tasks(result: ModelResult) -> List[Task]:
    """Task declarations made during planning, in call order."""
    tasks: List[Task] = []
    for call in result.tool_calls:
        if call.name != CREATE_TASK_TOOL_NAME:
            continue
        agent = call.arguments.get("agent")
        query = call.arguments.get("query")
        if not isinstance(agent, str) or not isinstance(query, str) or not agent or not query:
            logger.warning("Ignoring incomplete task declaration: %s", call.arguments)
            continue
        skills = call.arguments.get("skills") or ()
        tasks.append(Task(agent=agent, query=query, skills=tuple(str(s) for s in skills)))
    return tasks


class Orchestrator:
    """Plans, executes and synthesizes one request at a time per call.

    Precedence when a planning turn uses both actions: clarification raised
    by a routed call (non-autonomous only), then declared tasks (with any
    route results added as extra sources), then route results, then the
    model's direct text.
    """

    def __init__(
        self,
        ctx: "AppContext",
        name: str,
        agents: Optional[Sequence[str]] = None,
        autonomous: bool = True,
    ) -> None:
        self._ctx = ctx
        self.name = name
        self.agents = tuple(agents) if agents is not None else None
        self.autonomous = autonomous
        self._executor = TaskExecutor(ctx)

    # ---- prompt and tools ----

    def routable_agents(self) -> List[AgentRegistration]:
        return self._ctx.registry.routable(self.agents)

    async def build_system_prompt(self, memory_ids: Sequence[str] = ()) -> str:
        base = self._ctx.registry.resolved_prompt(self.name) or DEFAULT_ORCHESTRATOR_PROMPT
        agent_list = "\n".join(f"- {a.name}: {a.description}" for a in self.routable_agents())
        skills = await self._ctx.storage.skills.skill_summaries()
        prompt = (
            f"{base}\n\nAvailable agents:\n{agent_list}"
            f'\n\nAvailable skills (pass skill names in the "skills" parameter when routing):\n{skills}'
        )
        return with_memory_context(prompt, await build_memory_context(self._ctx, memory_ids))

    def _args_model(self, model_name: str, agent_description: str) -> type[BaseModel]:
        names = tuple(agent.name for agent in self.routable_agents())
        if not names:
            raise SwitchboardError("No routable agents available")
        return create_model(
            model_name,
            agent=(Literal[names], Field(..., description=agent_description)),
            query=(str, Field(..., description="The query to send to the agent")),
            skills=(Optional[List[str]], Field(default=None, description="Skill names to activate")),
        )

    def planning_tools(self, routes: List[TaskResult], plan_mode: bool = False) -> Dict[str, Tool]:
        tools: Dict[str, Tool] = {}
        if not plan_mode:

            async def route(args: Any) -> Dict[str, Any]:
                result = await self._executor.execute_task(args.agent, args.query, tuple(args.skills or ()))
                routes.append(result)
                output = result.response.to_dict()
                output[RESPONSE_SKILLS_KEY] = list(result.response_skills)
                return output

            tools[ROUTE_TOOL_NAME] = Tool(
                name=ROUTE_TOOL_NAME,
                description="Route a query to a specialist agent for immediate execution.",
                args_model=self._args_model("RouteToAgentArgs", "The specialist agent to route to"),
                handler=route,
            )
        tools[CREATE_TASK_TOOL_NAME] = Tool(
            name=CREATE_TASK_TOOL_NAME,
            description="Create a sub-task to be delegated to a specialist agent. Tasks run in parallel.",
            args_model=self._args_model("CreateTaskArgs", "The specialist agent"),
        )
        return tools

    # ---- stages ----

    async def _load_history(self, request: AgentRequest) -> Optional[List[Dict[str, str]]]:
        if not request.conversation_id:
            return None
        return await start_or_resume_conversation(self._ctx, request.conversation_id, request.message)

    async def _plan(
        self,
        request: AgentRequest,
        system: str,
        history: Optional[List[Dict[str, str]]],
    ) -> Tuple[ModelResult, List[TaskResult]]:
        routes: List[TaskResult] = []
        token = get_cancellation()
        base = ModelRequest(
            system=system,
            prompt=None if history else request.message,
            messages=history,
            tools=self.planning_tools(routes, request.plan_mode),
            max_steps=self._ctx.default_max_steps,
            model=request.model,
            cancellation=token,
        )

        async def attempt(override_model: Optional[str]) -> ModelResult:
            # a retried turn re-runs its routes from scratch
            routes.clear()
            return await self._ctx.model.invoke(replace(base, model=override_model or base.model))

        result = await with_resilience(
            attempt,
            self._ctx.resilience,
            agent=self.name,
            model_id=request.model,
            cancellation=token,
        )
        return result, routes

    async def _synthesis_system(self, skill_names: Sequence[str]) -> str:
        sections = []
        for name in _unique(skill_names):
            skill = await self._ctx.storage.skills.get_skill(name)
            if skill is not None:
                sections.append(f"### {skill.name}\n{skill.content}")
        if not sections:
            return ""
        return "# Active Skills\nApply the following behavioral instructions to your response:\n\n" + "\n\n".join(
            sections
        )

    async def synthesize(
        self,
        sources: Sequence[SynthesisSource],
        user_message: str,
        skill_names: Sequence[str] = (),
        model: Optional[str] = None,
        writer: Optional[StreamWriter] = None,
    ) -> Tuple[str, UsageInfo]:
        system = await self._synthesis_system(skill_names)
        if system:
            emit(BusEvents.SKILL_INJECT, agent=self.name, skills=_unique(skill_names), phase="response")
        emit_status(StatusCode.SYNTHESIZING, "Combining results", agent=self.name)
        request = ModelRequest(
            system=system,
            prompt=build_synthesis_prompt(sources, user_message),
            model=model,
            cancellation=get_cancellation(),
        )
        if writer is None:
            result = await invoke_model(self._ctx, request, self.name)
            return result.text, result.usage

        await writer.write(WireEvents.AGENT_THINK, {"text": SYNTHESIS_MESSAGE})
        parts: List[str] = []
        usage = UsageInfo()
        async for chunk in self._ctx.model.stream(request):
            if chunk.type == "text-delta" and chunk.text:
                parts.append(chunk.text)
                await writer.write(WireEvents.TEXT_DELTA, {"text": chunk.text})
            elif chunk.type == "finish" and chunk.usage is not None:
                usage = chunk.usage
        return "".join(parts), usage

    async def _synthesize_results(
        self,
        request: AgentRequest,
        results: List[TaskResult],
        routes: List[TaskResult],
        plan_usage: UsageInfo,
        writer: Optional[StreamWriter],
    ) -> OrchestrationOutcome:
        sources = [SynthesisSource(f"Task {i} ({r.agent})", r.response.text) for i, r in enumerate(results, 1)]
        sources += [SynthesisSource(f"Result {i}", r.response.text) for i, r in enumerate(routes, 1)]
        executed = results + routes
        skills = _unique(name for r in executed for name in r.response_skills)
        text, synthesis_usage = await self.synthesize(sources, request.message, skills, request.model, writer)
        usage = merge_usage(
            plan_usage,
            *(r.response.usage for r in executed if r.response.usage is not None),
            synthesis_usage,
        )
        tools_used = _unique(tool for r in executed for tool in r.response.tools_used)
        if routes:
            tools_used = _unique([ROUTE_TOOL_NAME, *tools_used])
        return OrchestrationOutcome(
            kind=OutcomeKind.SYNTHESIZED if results else OutcomeKind.ROUTED,
            text=text,
            tools_used=tools_used,
            agents_used=_unique(r.agent for r in executed),
            results=results,
            usage=usage,
        )

    async def _resolve(
        self,
        request: AgentRequest,
        plan: ModelResult,
        routes: List[TaskResult],
        autonomous: bool,
        writer: Optional[StreamWriter],
    ) -> OrchestrationOutcome:
        if not autonomous:
            asking = [r for r in routes if r.response.items]
            if asking:
                items = [{**item, "agent": r.agent} for r in asking for item in r.response.items]
                if writer is not None:
                    await writer.write(WireEvents.ASK_USER, {"items": items})
                return OrchestrationOutcome(
                    kind=OutcomeKind.AWAITING_CLARIFICATION,
                    tools_used=[ROUTE_TOOL_NAME],
                    agents_used=_unique(r.agent for r in asking),
                    items=items,
                    usage=merge_usage(plan.usage, *(r.response.usage for r in asking if r.response.usage)),
                )

        tasks = collect_tasks(plan)
        if tasks:
            emit_status(StatusCode.PLANNING, "Building task plan", agent=self.name)
            if writer is not None:
                await writer.write(WireEvents.AGENT_PLAN, {"tasks": [task.to_dict() for task in tasks]})
            if not autonomous:
                return OrchestrationOutcome(
                    kind=OutcomeKind.AWAITING_APPROVAL,
                    tools_used=[CREATE_TASK_TOOL_NAME],
                    proposed_tasks=tasks,
                    usage=plan.usage,
                )
            emit_status(StatusCode.EXECUTING_TASKS, "Executing parallel tasks", agent=self.name)
            results = await self._executor.execute_tasks(tasks)
            return await self._synthesize_results(request, results, routes, plan.usage, writer)

        if routes:
            return await self._synthesize_results(request, [], routes, plan.usage, writer)

        if writer is not None and plan.text:
            await writer.write(WireEvents.TEXT_DELTA, {"text": plan.text})
        return OrchestrationOutcome(
            kind=OutcomeKind.DIRECT,
            text=plan.text,
            tools_used=_unique(call.name for call in plan.tool_calls),
            usage=plan.usage,
        )

    # ---- entry points ----

    async def run(self, request: AgentRequest, writer: Optional[StreamWriter] = None) -> OrchestrationOutcome:
        autonomous = self.autonomous if request.autonomous is None else request.autonomous
        if request.plan_mode:
            autonomous = False

        emit(BusEvents.AGENT_START, agent=self.name)
        history = await self._load_history(request)

        if request.approved_plan:
            emit_status(StatusCode.EXECUTING_TASKS, "Executing approved plan tasks", agent=self.name)
            results = await self._executor.execute_tasks(request.approved_plan)
            outcome = await self._synthesize_results(request, results, [], UsageInfo(), writer)
        else:
            system = await self.build_system_prompt(request.memory_ids)
            emit_status(StatusCode.THINKING, "Analyzing query and routing", agent=self.name)
            plan, routes = await self._plan(request, system, history)
            outcome = await self._resolve(request, plan, routes, autonomous, writer)

        if request.conversation_id and outcome.text:
            await append_message(self._ctx, request.conversation_id, "assistant", outcome.text)
        emit(BusEvents.AGENT_END, agent=self.name)
        logger.info("Orchestrator %s finished with outcome %s", self.name, outcome.kind.value)
        return outcome

    async def handle_json(self, request: AgentRequest) -> Dict[str, Any]:
        conversation_id = request.conversation_id or new_conversation_id()

        async def handler() -> Dict[str, Any]:
            return (await self.run(request)).to_dict()

        return await run_json(self._ctx, conversation_id, handler, originator=self.name)

    def handle_stream(self, request: AgentRequest) -> AsyncIterator[WireEvent]:
        conversation_id = request.conversation_id or new_conversation_id()

        async def handler(writer: StreamWriter) -> Dict[str, Any]:
            return (await self.run(request, writer)).to_dict(include_response=False)

        return stream_events(self._ctx, conversation_id, handler, originator=self.name)


def create_orchestrator_agent(
    ctx: "AppContext",
    name: str,
    system_prompt: Optional[str] = None,
    agents: Optional[Sequence[str]] = None,
    autonomous: bool = True,
    description: str = "Unified orchestrator agent that routes queries directly or creates parallel task plans",
) -> AgentRegistration:
    """Register an orchestrator on ``ctx`` and return its registration."""
    orchestrator = Orchestrator(ctx, name, agents=agents, autonomous=autonomous)
    registration = AgentRegistration(
        name=name,
        description=description,
        instructions=system_prompt or DEFAULT_ORCHESTRATOR_PROMPT,
        is_orchestrator=True,
        agents=orchestrator.agents,
        default_format="sse",
        runner=orchestrator,
    )
    return ctx.registry.register(registration)
