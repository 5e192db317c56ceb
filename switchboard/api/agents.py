"""HTTP API exposing registered agents."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from switchboard.agents.specialist import SpecialistRunner
from switchboard.core.models import AgentRequest, Task
from switchboard.core.registry import AgentRegistration
from switchboard.runtime import AppContext, get_app_context
from switchboard.services.storage import validate_identifier
from switchboard.streaming.sse import sse_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["agents"])

SUPPORTED_FORMATS = ("json", "sse")


class TaskBody(BaseModel):
    agent: str
    query: str
    skills: Optional[List[str]] = None


class AgentRequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, description="User message")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    model: Optional[str] = Field(default=None, description="Model identifier override")
    memory_ids: List[str] = Field(default_factory=list, alias="memoryIds")
    plan_mode: bool = Field(default=False, alias="planMode")
    approved_plan: Optional[List[TaskBody]] = Field(default=None, alias="approvedPlan")
    autonomous: Optional[bool] = None

    def to_request(self) -> AgentRequest:
        return AgentRequest(
            message=self.message,
            conversation_id=self.conversation_id,
            model=self.model,
            memory_ids=tuple(self.memory_ids),
            plan_mode=self.plan_mode,
            approved_plan=[
                Task(agent=t.agent, query=t.query, skills=tuple(t.skills or ())) for t in self.approved_plan
            ]
            if self.approved_plan
            else None,
            autonomous=self.autonomous,
        )


class AgentInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str
    tags: List[str]
    tools: List[str]
    is_orchestrator: bool = Field(alias="isOrchestrator")
    default_format: str = Field(alias="defaultFormat")
    agents: Optional[List[str]] = None
    prompt: str
    has_prompt_override: bool = Field(alias="hasPromptOverride")

    @classmethod
    def from_registration(cls, registration: AgentRegistration, ctx: AppContext) -> "AgentInfo":
        return cls(
            name=registration.name,
            description=registration.description,
            tags=list(registration.tags),
            tools=registration.tool_names,
            is_orchestrator=registration.is_orchestrator,
            default_format=registration.default_format,
            agents=list(registration.agents) if registration.agents is not None else None,
            prompt=ctx.registry.resolved_prompt(registration.name) or "",
            has_prompt_override=ctx.registry.has_prompt_override(registration.name),
        )


class PromptPatch(BaseModel):
    prompt: Optional[str] = Field(default=None, description="New instructions; omit to reset")
    reset: bool = False


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId")


def _require_agent(ctx: AppContext, name: str) -> AgentRegistration:
    registration = ctx.registry.get(name)
    if registration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown agent: {name}")
    return registration


@router.get("", response_model=List[AgentInfo])
async def list_agents(ctx: AppContext = Depends(get_app_context)) -> List[AgentInfo]:
    return [AgentInfo.from_registration(r, ctx) for r in ctx.registry.list()]


@router.post("/cancel")
async def cancel_request(request: CancelRequest, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    """Cancel the in-flight request for a conversation."""
    return {"cancelled": ctx.requests.cancel(request.conversation_id), "conversationId": request.conversation_id}


@router.get("/{name}", response_model=AgentInfo)
async def get_agent(name: str, ctx: AppContext = Depends(get_app_context)) -> AgentInfo:
    return AgentInfo.from_registration(_require_agent(ctx, name), ctx)


@router.patch("/{name}", response_model=AgentInfo)
async def patch_agent(name: str, patch: PromptPatch, ctx: AppContext = Depends(get_app_context)) -> AgentInfo:
    """Set or reset an agent's instruction override."""
    registration = _require_agent(ctx, name)
    if patch.reset or patch.prompt is None:
        ctx.registry.reset_prompt(name)
        await ctx.storage.prompts.delete_override(name)
    else:
        ctx.registry.set_prompt_override(name, patch.prompt)
        await ctx.storage.prompts.save_override(name, patch.prompt)
    return AgentInfo.from_registration(registration, ctx)


@router.post("/{name}")
async def invoke_agent(
    name: str,
    body: AgentRequestBody,
    format: Optional[str] = Query(default=None, description="json or sse; defaults to the agent's format"),
    ctx: AppContext = Depends(get_app_context),
) -> Response:
    registration = _require_agent(ctx, name)
    if format is not None and format not in SUPPORTED_FORMATS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported format: {format}")
    if body.conversation_id:
        validate_identifier(body.conversation_id, "conversation id")
    runner = registration.runner or SpecialistRunner(ctx, registration)
    request = body.to_request()

    if (format or registration.default_format) == "sse":
        return sse_response(runner.handle_stream(request))

    try:
        result = await runner.handle_json(request)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Agent %s failed", name)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})
    return JSONResponse(content=result)
