"""Tests for orchestrator planning, routing, fan-out and synthesis."""
from __future__ import annotations

import asyncio

import pytest

from scripted import (
    Turn,
    addressed_to,
    call,
    make_context,
    planning,
    recorded,
    root_context,
    specialist,
    synthesizing,
    usage,
)
from switchboard.core.context import delegation_scope
from switchboard.core.errors import UpstreamError
from switchboard.core.models import AgentRequest, ConversationMessage, Task
from switchboard.orchestration.compaction import ConversationCompactor
from switchboard.orchestration.executor import TaskExecutor, create_delegate_tool
from switchboard.orchestration.orchestrator import OutcomeKind, create_orchestrator_agent


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def build(responder, *agents, autonomous: bool = True):
    ctx = make_context(responder, *agents)
    registration = create_orchestrator_agent(ctx, "supervisor", autonomous=autonomous)
    return ctx, registration.runner


async def run(orchestrator, request: AgentRequest):
    with delegation_scope(root_context()):
        return await orchestrator.run(request)


@pytest.mark.anyio
async def test_direct_answer() -> None:
    ctx, orchestrator = build(lambda request, step: "Hello there", specialist("weather"))

    outcome = await run(orchestrator, AgentRequest(message="hi"))

    assert outcome.kind is OutcomeKind.DIRECT
    assert outcome.to_dict()["response"] == "Hello there"
    assert outcome.to_dict()["toolsUsed"] == []
    assert len(ctx.model.requests) == 1


@pytest.mark.anyio
async def test_system_prompt_lists_agents_skills_and_memory() -> None:
    ctx, orchestrator = build(
        lambda request, step: "ok",
        specialist("weather"),
        specialist("chatty", tools={}),
    )
    await ctx.storage.skills.create_skill("be-brief", "---\ndescription: Short answers\nphase: query\n---\nBe brief.")
    await ctx.storage.memory.save_entry("prefs", "tone", "formal")

    prompt = await orchestrator.build_system_prompt(["prefs"])

    assert "Available agents:\n- weather: weather specialist" in prompt
    assert "chatty" not in prompt
    assert "- be-brief [query]: Short answers" in prompt
    assert prompt.endswith("## Memory Context\n[prefs] tone: formal")


@pytest.mark.anyio
async def test_routed_query_is_synthesized() -> None:
    def respond(request, step):
        if planning(request):
            if step == 0:
                return Turn(calls=[call("routeToAgent", agent="weather", query="Paris forecast")])
            return ""
        if addressed_to(request, "weather"):
            return "Sunny"
        if synthesizing(request):
            return "It will be sunny in Paris."
        raise AssertionError(request.system)

    ctx, orchestrator = build(respond, specialist("weather"))
    outcome = await run(orchestrator, AgentRequest(message="Weather in Paris?"))

    assert outcome.kind is OutcomeKind.ROUTED
    assert outcome.text == "It will be sunny in Paris."
    assert outcome.tools_used == ["routeToAgent"]
    assert outcome.agents_used == ["weather"]
    synthesis = [r for r in ctx.model.requests if synthesizing(r)][0]
    assert "Result 1:\nSunny" in synthesis.prompt
    assert '"Weather in Paris?"' in synthesis.prompt


@pytest.mark.anyio
async def test_parallel_tasks_with_unknown_agent() -> None:
    def respond(request, step):
        if planning(request):
            return Turn(
                calls=[
                    call("createTask", "c1", agent="weather", query="Paris forecast"),
                    call("createTask", "c2", agent="geo", query="Where is Paris?"),
                    call("createTask", "c3", agent="ghost", query="Boo"),
                ]
            )
        if addressed_to(request, "weather"):
            return "Sunny"
        if addressed_to(request, "geo"):
            return "France"
        return "Paris, France is sunny. One helper was unavailable."

    ctx, orchestrator = build(respond, specialist("weather"), specialist("geo"))
    outcome = await run(orchestrator, AgentRequest(message="Tell me about Paris"))

    assert outcome.kind is OutcomeKind.SYNTHESIZED
    assert [r.agent for r in outcome.results] == ["weather", "geo", "ghost"]
    assert [r.error for r in outcome.results] == [False, False, True]
    body = outcome.to_dict()
    assert body["tasks"][2] == {"agent": "ghost", "query": "Boo", "summary": "Unknown agent: ghost", "error": True}
    assert "error" not in body["tasks"][0]
    synthesis = [r for r in ctx.model.requests if synthesizing(r)][0]
    assert "Task 1 (weather):\nSunny" in synthesis.prompt
    assert "Task 2 (geo):\nFrance" in synthesis.prompt
    assert "Task 3 (ghost):\nUnknown agent: ghost" in synthesis.prompt


@pytest.mark.anyio
async def test_routes_and_tasks_in_one_turn_are_synthesized_together() -> None:
    def respond(request, step):
        if planning(request):
            if step == 0:
                return Turn(
                    calls=[
                        call("routeToAgent", "r1", agent="geo", query="Where is Paris?"),
                        call("createTask", "t1", agent="weather", query="Paris forecast"),
                    ]
                )
            return ""
        if addressed_to(request, "weather"):
            return "Sunny"
        if addressed_to(request, "geo"):
            return "France"
        return "combined"

    ctx, orchestrator = build(respond, specialist("weather"), specialist("geo"))
    outcome = await run(orchestrator, AgentRequest(message="Paris?"))

    assert outcome.kind is OutcomeKind.SYNTHESIZED
    assert outcome.agents_used == ["weather", "geo"]
    synthesis = [r for r in ctx.model.requests if synthesizing(r)][0]
    assert "Task 1 (weather):\nSunny" in synthesis.prompt
    assert "Result 1:\nFrance" in synthesis.prompt


@pytest.mark.anyio
async def test_clarification_from_routed_agent_pauses_non_autonomous_run() -> None:
    def respond(request, step):
        if planning(request):
            if step == 0:
                return Turn(calls=[call("routeToAgent", agent="weather", query="Forecast")])
            return ""
        if addressed_to(request, "weather"):
            return Turn(calls=[call("clarify", items=[{"type": "question", "text": "Which city?"}])])
        raise AssertionError("synthesis must not run")

    ctx, orchestrator = build(respond, specialist("weather"), autonomous=False)
    outcome = await run(orchestrator, AgentRequest(message="Forecast please"))

    assert outcome.kind is OutcomeKind.AWAITING_CLARIFICATION
    body = outcome.to_dict()
    assert body["awaitingResponse"] is True
    assert body["items"] == [{"type": "question", "text": "Which city?", "agent": "weather"}]


@pytest.mark.anyio
async def test_clarification_is_ignored_when_autonomous() -> None:
    def respond(request, step):
        if planning(request):
            if step == 0:
                return Turn(calls=[call("routeToAgent", agent="weather", query="Forecast")])
            return ""
        if addressed_to(request, "weather"):
            return Turn(text="Probably sunny", calls=[call("clarify", questions=["Which city?"])])
        return "Probably sunny somewhere."

    ctx, orchestrator = build(respond, specialist("weather"))
    outcome = await run(orchestrator, AgentRequest(message="Forecast please"))

    assert outcome.kind is OutcomeKind.ROUTED
    assert outcome.text == "Probably sunny somewhere."


@pytest.mark.anyio
async def test_non_autonomous_tasks_await_approval() -> None:
    def respond(request, step):
        if planning(request):
            return Turn(calls=[call("createTask", agent="weather", query="Paris forecast", skills=["be-brief"])])
        raise AssertionError("nothing runs before approval")

    ctx, orchestrator = build(respond, specialist("weather"), autonomous=False)
    outcome = await run(orchestrator, AgentRequest(message="Paris?"))

    assert outcome.kind is OutcomeKind.AWAITING_APPROVAL
    body = outcome.to_dict()
    assert body["awaitingApproval"] is True
    assert body["tasks"] == [{"agent": "weather", "query": "Paris forecast", "skills": ["be-brief"]}]
    assert body["toolsUsed"] == ["createTask"]


@pytest.mark.anyio
async def test_plan_mode_only_offers_task_creation() -> None:
    def respond(request, step):
        return Turn(calls=[call("createTask", agent="weather", query="Paris forecast")])

    ctx, orchestrator = build(respond, specialist("weather"))
    outcome = await run(orchestrator, AgentRequest(message="Paris?", plan_mode=True))

    assert outcome.kind is OutcomeKind.AWAITING_APPROVAL
    assert set(ctx.model.requests[0].tools) == {"createTask"}


@pytest.mark.anyio
async def test_approved_plan_skips_planning() -> None:
    def respond(request, step):
        assert not planning(request)
        if addressed_to(request, "weather"):
            return "Sunny"
        return "Approved answer"

    ctx, orchestrator = build(respond, specialist("weather"), autonomous=False)
    request = AgentRequest(message="Paris?", approved_plan=[Task("weather", "Paris forecast")])
    outcome = await run(orchestrator, request)

    assert outcome.kind is OutcomeKind.SYNTHESIZED
    assert outcome.text == "Approved answer"
    assert outcome.agents_used == ["weather"]


@pytest.mark.anyio
async def test_usage_is_merged_across_stages() -> None:
    def respond(request, step):
        if planning(request):
            return Turn(calls=[call("createTask", agent="weather", query="q")], usage=usage(10, 0.01, 5))
        if addressed_to(request, "weather"):
            return Turn(text="Sunny", usage=usage(20, None, 50))
        return Turn(text="done", usage=usage(5, 0.02, 7))

    ctx, orchestrator = build(respond, specialist("weather"))
    outcome = await run(orchestrator, AgentRequest(message="q"))

    merged = outcome.to_dict()["usage"]
    assert merged["inputTokens"] == 35
    assert merged["totalTokens"] == 70
    assert merged["cost"] == pytest.approx(0.03)
    assert merged["durationMs"] == 50


@pytest.mark.anyio
async def test_planning_retry_discards_routes_from_failed_attempt() -> None:
    attempts = {"planning": 0}

    def respond(request, step):
        if planning(request):
            if step == 0:
                attempts["planning"] += 1
                return Turn(calls=[call("routeToAgent", agent="weather", query="Forecast")])
            if attempts["planning"] == 1:
                return UpstreamError("overloaded", status_code=503)
            return ""
        if addressed_to(request, "weather"):
            return "Sunny"
        return "final"

    ctx, orchestrator = build(respond, specialist("weather"))
    outcome = await run(orchestrator, AgentRequest(message="Forecast"))

    assert attempts["planning"] == 2
    assert outcome.kind is OutcomeKind.ROUTED
    synthesis = [r for r in ctx.model.requests if synthesizing(r)][0]
    assert "Result 1:" in synthesis.prompt
    assert "Result 2:" not in synthesis.prompt


@pytest.mark.anyio
async def test_conversation_is_persisted_when_id_supplied() -> None:
    ctx, orchestrator = build(lambda request, step: "Hi!", specialist("weather"))

    await run(orchestrator, AgentRequest(message="hello", conversation_id="conv-1"))
    await run(orchestrator, AgentRequest(message="again", conversation_id="conv-1"))

    conversation = await ctx.storage.conversations.get("conv-1")
    assert [(m.role, m.content) for m in conversation.messages] == [
        ("user", "hello"),
        ("assistant", "Hi!"),
        ("user", "again"),
        ("assistant", "Hi!"),
    ]
    second = ctx.model.requests[1]
    assert second.prompt is None
    assert second.messages == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "Hi!"},
        {"role": "user", "content": "again"},
    ]


@pytest.mark.anyio
async def test_handle_json_assigns_conversation_id_and_cleans_up() -> None:
    ctx, orchestrator = build(lambda request, step: "Hi!", specialist("weather"))

    body = await orchestrator.handle_json(AgentRequest(message="hello"))

    assert body["response"] == "Hi!"
    assert body["conversationId"].startswith("conv_")
    assert len(ctx.requests) == 0
    assert await ctx.storage.conversations.list() == []


@pytest.mark.anyio
async def test_reply_written_during_compaction_survives() -> None:
    planning_started = asyncio.Event()
    release = asyncio.Event()

    async def respond(request, step):
        if planning(request):
            planning_started.set()
            await release.wait()
            return "the direct answer"
        # summarizer: let the run finish while the summary is in flight
        release.set()
        await asyncio.sleep(0.05)
        return "summary"

    ctx, orchestrator = build(respond, specialist("weather"))
    for i in range(4):
        role = "user" if i % 2 == 0 else "assistant"
        await ctx.storage.conversations.append("c1", ConversationMessage(role=role, content=f"m{i}"))

    running = asyncio.create_task(run(orchestrator, AgentRequest(message="hi", conversation_id="c1")))
    await planning_started.wait()
    compacted = await ConversationCompactor(ctx).compact("c1", force=True, preserve_recent=2)
    await running

    assert compacted.summarized_count == 3
    conversation = await ctx.storage.conversations.get("c1")
    assert [m.content for m in conversation.messages] == ["summary", "m3", "hi", "the direct answer"]


@pytest.mark.anyio
async def test_streamed_synthesis_emits_text_deltas() -> None:
    def respond(request, step):
        if planning(request):
            return Turn(calls=[call("createTask", agent="weather", query="Forecast")])
        if addressed_to(request, "weather"):
            return "Sunny"
        return "It is sunny"

    ctx, orchestrator = build(respond, specialist("weather"))
    events = [event async for event in orchestrator.handle_stream(AgentRequest(message="Forecast"))]
    names = [event.event for event in events]

    assert names[0] == "session:start"
    assert names[-1] == "done"
    assert names.index("agent:plan") < names.index("agent:think") < names.index("text-delta")
    text = "".join(event.data["text"] for event in events if event.event == "text-delta")
    assert text.strip() == "It is sunny"
    assert "response" not in events[-1].data
    assert events[-1].data["conversationId"] == events[0].data["conversationId"]
    assert [e.sequence_id for e in events] == list(range(len(events)))


@pytest.mark.anyio
async def test_specialist_cannot_delegate_to_orchestrator() -> None:
    def respond(request, step):
        if addressed_to(request, "assistant") and step == 0:
            return Turn(calls=[call("delegate", agent="supervisor", query="help")])
        return "could not delegate"

    ctx = make_context(respond)
    create_orchestrator_agent(ctx, "supervisor")
    executor = TaskExecutor(ctx)
    ctx.registry.register(specialist("assistant", tools={"delegate": create_delegate_tool(executor)}))
    root = root_context()
    events = recorded(root.events)

    with delegation_scope(root):
        result = await executor.execute_task("assistant", "delegate upward")

    assert result.error is False
    delegated = [e for e in events if e.type == "tool:result" and e.data["tool"] == "delegate"]
    assert delegated[0].data["result"] == {
        "agent": "supervisor",
        "error": True,
        "response": 'Agent "supervisor" is an orchestrator and cannot be delegated to',
    }
