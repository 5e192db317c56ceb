"""Tests for shared models, the agent registry, built-in tools and sample agents."""
from __future__ import annotations

import pytest

from scripted import LookupArgs, Turn, call, make_context, specialist, usage
from switchboard.agents.catalog import default_agents, evaluate
from switchboard.agents.specialist import SpecialistRunner
from switchboard.agents.tools import ClarifyArgs, extract_clarify_items
from switchboard.core.errors import RegistrationError
from switchboard.core.models import AgentRequest, UsageInfo, merge_usage
from switchboard.core.registry import AgentRegistry, Tool


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_merge_usage_sums_tokens_and_known_costs() -> None:
    merged = merge_usage(usage(10, 0.5, 100), usage(5, None, 300), usage(1, 0.25, 20))

    assert merged.input_tokens == 16
    assert merged.total_tokens == 32
    assert merged.cost == pytest.approx(0.75)
    assert merged.duration_ms == 300


def test_merge_usage_without_costs_keeps_cost_unknown() -> None:
    assert merge_usage(usage(1), usage(2)).cost is None
    assert merge_usage().to_dict() == UsageInfo().to_dict()


def test_registry_validates_registrations() -> None:
    registry = AgentRegistry()

    with pytest.raises(RegistrationError):
        registry.register(specialist("bad name!"))
    with pytest.raises(RegistrationError):
        registry.register(
            specialist("weather", tools={"forecast": Tool("lookup", "mismatched key", LookupArgs)})
        )
    with pytest.raises(RegistrationError):
        registry.register(specialist("weather", default_format="xml"))


def test_routable_agents_exclude_orchestrators_and_toolless_agents() -> None:
    registry = AgentRegistry()
    registry.register_all(
        [
            specialist("weather"),
            specialist("geo"),
            specialist("chatty", tools={}),
            specialist("planner", is_orchestrator=True),
        ]
    )

    assert [a.name for a in registry.routable()] == ["weather", "geo"]
    assert [a.name for a in registry.routable(["geo", "planner"])] == ["geo"]
    assert registry.orchestrator_names() == {"planner"}


def test_prompt_overrides_fall_back_to_instructions() -> None:
    registry = AgentRegistry()
    registry.register(specialist("weather"))

    registry.set_prompt_override("weather", "Be terse.")
    assert registry.resolved_prompt("weather") == "Be terse."
    registry.reset_prompt("weather")
    assert registry.resolved_prompt("weather") == "You are weather."
    assert registry.resolved_prompt("ghost") is None


def test_legacy_clarify_questions_are_normalized() -> None:
    args = ClarifyArgs(questions=["Which city?", {"question": "Which day?", "context": "forecast range"}])

    assert args.normalized_items() == [
        {"type": "question", "text": "Which city?"},
        {"type": "question", "text": "Which day?", "context": "forecast range"},
    ]


def test_malformed_clarify_calls_are_ignored() -> None:
    calls = [
        call("clarify", "c1", items=[{"type": "bogus", "text": "?"}]),
        call("clarify", "c2", items=[{"type": "option", "text": "Unit?", "choices": ["C", "F"]}]),
        call("lookup", "c3", city="Paris"),
    ]

    assert extract_clarify_items(calls) == [{"type": "option", "text": "Unit?", "choices": ["C", "F"]}]


@pytest.mark.parametrize(
    "expression, expected",
    [("17 * 23", 391), ("(2 + 3) * 4", 20), ("-2 ** 2", -4), ("7 / 2", 3.5)],
)
def test_calculator(expression, expected) -> None:
    assert evaluate(expression) == expected


def test_calculator_rejects_code() -> None:
    with pytest.raises(ValueError):
        evaluate("__import__('os').getcwd()")


@pytest.mark.parametrize("expression", ["9**9**8", "2 ** -1000", "10 ** 100 * 10", "(10 ** 60) ** 2"])
def test_calculator_rejects_oversized_arithmetic(expression) -> None:
    with pytest.raises(ValueError, match="too large"):
        evaluate(expression)


def test_calculator_allows_results_within_limits() -> None:
    assert evaluate("2 ** 100") == 2**100
    assert evaluate("10 ** 100") == 10**100


def test_sample_agents_register() -> None:
    ctx = make_context(lambda request, step: "unused")
    ctx.registry.register_all(default_agents(ctx))

    assert {a.name for a in ctx.registry.routable()} == {"echo", "calculator", "assistant"}
    assert set(ctx.registry.get("assistant").tools) == {"now", "delegate"}


@pytest.mark.anyio
async def test_specialist_stream_reports_tools_and_text() -> None:
    def respond(request, step):
        if step == 0:
            return Turn(calls=[call("lookup", city="Paris")])
        return "Sunny in Paris"

    ctx = make_context(respond, specialist("weather"))
    runner = SpecialistRunner(ctx, ctx.registry.get("weather"))

    events = [e async for e in runner.handle_stream(AgentRequest(message="Paris?", conversation_id="conv-1"))]
    names = [e.event for e in events]

    assert names[:2] == ["session:start", "status"]
    assert names.index("tool-call") < names.index("tool-result") < names.index("text-delta")
    assert events[names.index("tool-call")].data == {"toolName": "lookup", "args": {"city": "Paris"}}
    assert events[-1].event == "done"
    assert events[-1].data["toolsUsed"] == ["lookup"]
    conversation = await ctx.storage.conversations.get("conv-1")
    assert [m.content for m in conversation.messages] == ["Paris?", "Sunny in Paris "]
