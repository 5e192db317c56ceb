"""Stored commands: named ad-hoc agents that can be run on demand."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from switchboard.agents.specialist import SpecialistRunner
from switchboard.api.agents import SUPPORTED_FORMATS
from switchboard.core.models import AgentRequest, Command
from switchboard.core.registry import AgentRegistration, Tool
from switchboard.runtime import AppContext, get_app_context
from switchboard.services.storage import validate_identifier
from switchboard.streaming.sse import sse_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/commands", tags=["commands"])


class CommandBody(BaseModel):
    name: str
    description: str = ""
    system: str = Field(..., description="System prompt for the ad-hoc agent")
    tools: List[str] = Field(default_factory=list, description="Names of registered agent tools")
    model: Optional[str] = None
    format: Optional[Literal["json", "sse"]] = None

    def to_command(self) -> Command:
        return Command(
            name=self.name,
            description=self.description,
            system=self.system,
            tools=tuple(self.tools),
            model=self.model,
            format=self.format,
        )


class RunCommandBody(BaseModel):
    message: str = Field(..., min_length=1)
    model: Optional[str] = None


async def _require_command(ctx: AppContext, name: str, scope_id: Optional[str]) -> Command:
    command = await ctx.storage.commands.get(name, scope_id)
    if command is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Command not found: {name}")
    return command


def _resolve_tools(ctx: AppContext, command: Command) -> Dict[str, Tool]:
    tools: Dict[str, Tool] = {}
    for name in command.tools:
        tool = ctx.registry.find_tool(name)
        if tool is None:
            logger.warning("Command %s references unknown tool %s", command.name, name)
            continue
        tools[name] = tool
    return tools


@router.get("")
async def list_commands(
    scope_id: Optional[str] = Header(default=None, alias="X-Scope-Id"),
    ctx: AppContext = Depends(get_app_context),
) -> Dict[str, Any]:
    commands = await ctx.storage.commands.list(scope_id)
    return {"commands": [c.to_dict() for c in commands]}


@router.get("/{name}")
async def get_command(
    name: str,
    scope_id: Optional[str] = Header(default=None, alias="X-Scope-Id"),
    ctx: AppContext = Depends(get_app_context),
) -> Dict[str, Any]:
    return (await _require_command(ctx, name, scope_id)).to_dict()


@router.post("")
async def save_command(
    body: CommandBody,
    scope_id: Optional[str] = Header(default=None, alias="X-Scope-Id"),
    ctx: AppContext = Depends(get_app_context),
) -> Dict[str, Any]:
    """Create or replace a command."""
    validate_identifier(body.name, "command name")
    command = await ctx.storage.commands.save(body.to_command(), scope_id)
    return command.to_dict()


@router.delete("/{name}")
async def delete_command(
    name: str,
    scope_id: Optional[str] = Header(default=None, alias="X-Scope-Id"),
    ctx: AppContext = Depends(get_app_context),
) -> Dict[str, Any]:
    return {"deleted": await ctx.storage.commands.delete(name, scope_id)}


@router.post("/{name}/run")
async def run_command(
    name: str,
    body: RunCommandBody,
    format: Optional[str] = Query(default=None, description="json or sse; defaults to the command's format"),
    scope_id: Optional[str] = Header(default=None, alias="X-Scope-Id"),
    ctx: AppContext = Depends(get_app_context),
) -> Response:
    """Run a stored command as a one-off agent; nothing is persisted."""
    command = await _require_command(ctx, name, scope_id)
    if format is not None and format not in SUPPORTED_FORMATS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported format: {format}")

    registration = AgentRegistration(
        name=command.name,
        description=command.description,
        instructions=command.system,
        tools=_resolve_tools(ctx, command),
    )
    runner = SpecialistRunner(ctx, registration, instructions=command.system)
    request = AgentRequest(message=body.message, model=body.model or command.model)

    if (format or command.format or "json") == "sse":
        return sse_response(runner.handle_stream(request))

    try:
        result = await runner.handle_json(request)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Command %s failed", name)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})
    return JSONResponse(content=result)
