"""Memory namespace routes."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from switchboard.runtime import AppContext, get_app_context

router = APIRouter(prefix="/memory", tags=["memory"])


class MemoryEntryBody(BaseModel):
    key: str
    value: str
    context: Optional[str] = None


def _entry_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entry not found")


@router.get("")
async def list_namespaces(ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    namespaces = await ctx.storage.memory.list_namespaces()
    return {"namespaces": namespaces, "count": len(namespaces)}


@router.get("/{namespace}")
async def list_entries(namespace: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    entries = await ctx.storage.memory.list_entries(namespace)
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


@router.post("/{namespace}")
async def save_entry(
    namespace: str, body: MemoryEntryBody, ctx: AppContext = Depends(get_app_context)
) -> Dict[str, Any]:
    entry = await ctx.storage.memory.save_entry(namespace, body.key, body.value, body.context)
    return entry.to_dict()


@router.delete("/{namespace}")
async def clear_namespace(namespace: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    await ctx.storage.memory.clear_namespace(namespace)
    return {"cleared": True, "namespace": namespace}


@router.get("/{namespace}/{key}")
async def get_entry(namespace: str, key: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    entry = await ctx.storage.memory.get_entry(namespace, key)
    if entry is None:
        raise _entry_not_found()
    return entry.to_dict()


@router.delete("/{namespace}/{key}")
async def delete_entry(namespace: str, key: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    if not await ctx.storage.memory.delete_entry(namespace, key):
        raise _entry_not_found()
    return {"deleted": True, "namespace": namespace, "key": key}
