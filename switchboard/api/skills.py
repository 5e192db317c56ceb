"""Skill document routes."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from switchboard.runtime import AppContext, get_app_context

router = APIRouter(prefix="/skills", tags=["skills"])


class SkillCreate(BaseModel):
    name: str = Field(..., description="Kebab-case skill name")
    content: str = Field(..., description="Markdown body with optional YAML frontmatter")


class SkillUpdate(BaseModel):
    content: str


def _skill_not_found(name: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Skill not found: {name}")


@router.get("")
async def list_skills(ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    skills = await ctx.storage.skills.list_skills()
    return {"skills": [s.to_dict() for s in skills], "count": len(skills)}


@router.get("/{name}")
async def get_skill(name: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    skill = await ctx.storage.skills.get_skill(name)
    if skill is None:
        raise _skill_not_found(name)
    return skill.to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_skill(body: SkillCreate, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    try:
        skill = await ctx.storage.skills.create_skill(body.name, body.content)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return skill.to_dict()


@router.put("/{name}")
async def update_skill(name: str, body: SkillUpdate, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    try:
        skill = await ctx.storage.skills.update_skill(name, body.content)
    except KeyError as exc:
        raise _skill_not_found(name) from exc
    return skill.to_dict()


@router.delete("/{name}")
async def delete_skill(name: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    if not await ctx.storage.skills.delete_skill(name):
        raise _skill_not_found(name)
    return {"deleted": True, "name": name}
