"""Built-in sample specialists registered by the application entry point."""
from __future__ import annotations

import ast
import operator
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List

from pydantic import BaseModel, Field

from switchboard.core.registry import AgentRegistration, Tool
from switchboard.orchestration.executor import TaskExecutor, create_delegate_tool

if TYPE_CHECKING:
    from switchboard.runtime import AppContext


class EchoArgs(BaseModel):
    text: str = Field(..., description="Text to repeat back")


async def _echo(args: EchoArgs) -> Dict[str, str]:
    return {"echo": args.text}


class CalculateArgs(BaseModel):
    expression: str = Field(..., description="Arithmetic expression, e.g. '(2 + 3) * 4'")


MAX_EXPONENT = 100
MAX_MAGNITUDE = 10**100


def _bounded(value: Any) -> Any:
    if isinstance(value, int) and abs(value) > MAX_MAGNITUDE:
        raise ValueError("Result too large")
    return value


def _power(base: Any, exponent: Any) -> Any:
    if abs(exponent) > MAX_EXPONENT:
        raise ValueError(f"Exponent too large: {exponent}")
    return operator.pow(base, exponent)


_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: _power,
    ast.Mod: operator.mod,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def evaluate(expression: str) -> float:
    """Evaluate plain arithmetic without executing arbitrary code.

    Integer results are capped at ``MAX_MAGNITUDE`` and exponents at
    ``MAX_EXPONENT``; anything larger raises ``ValueError``.
    """

    def visit(node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return visit(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return _bounded(node.value)
        if isinstance(node, ast.BinOp) and type(node.op) in _OPERATORS:
            left, right = visit(node.left), visit(node.right)
            try:
                return _bounded(_OPERATORS[type(node.op)](left, right))
            except OverflowError as exc:
                raise ValueError(f"Result too large: {expression}") from exc
        if isinstance(node, ast.UnaryOp) and type(node.op) in _OPERATORS:
            return _OPERATORS[type(node.op)](visit(node.operand))
        raise ValueError(f"Unsupported expression: {expression}")

    return visit(ast.parse(expression, mode="eval"))


async def _calculate(args: CalculateArgs) -> Dict[str, Any]:
    return {"expression": args.expression, "result": evaluate(args.expression)}


class ClockArgs(BaseModel):
    pass


async def _now(args: ClockArgs) -> Dict[str, str]:
    return {"utc": datetime.now(timezone.utc).isoformat()}


def default_agents(ctx: "AppContext") -> List[AgentRegistration]:
    echo = Tool("echo", "Repeat the given text verbatim.", EchoArgs, _echo)
    calculate = Tool("calculate", "Evaluate an arithmetic expression.", CalculateArgs, _calculate)
    now = Tool("now", "Current date and time in UTC.", ClockArgs, _now)
    return [
        AgentRegistration(
            name="echo",
            description="Repeats text back; useful for testing the pipeline",
            instructions="You repeat what the user says using the echo tool.",
            tools={echo.name: echo},
            tags=("demo",),
        ),
        AgentRegistration(
            name="calculator",
            description="Evaluates arithmetic expressions",
            instructions="You solve arithmetic questions. Always use the calculate tool for the numbers.",
            tools={calculate.name: calculate},
            tags=("math",),
        ),
        AgentRegistration(
            name="assistant",
            description="General assistant that knows the current time and can hand work to other specialists",
            instructions=(
                "You are a helpful general assistant. Use the now tool for anything time related and "
                "delegate arithmetic to the calculator agent."
            ),
            tools={now.name: now, "delegate": create_delegate_tool(TaskExecutor(ctx), allowed=("calculator",))},
            tags=("general",),
        ),
    ]
