"""File-backed stores rooted at ``data_dir``.

Layout::

    <data_dir>/conversations[/<scope>]/<id>.json
    <data_dir>/memory[/<scope>]/<namespace>.json
    <data_dir>/skills/<name>.md
    <data_dir>/prompt-overrides.json
    <data_dir>/commands[/<scope>]/<name>.json

Blocking file I/O runs in worker threads; writes for one key are serialized
with :class:`KeyedLock`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from switchboard.core.models import (
    Command,
    Conversation,
    ConversationMessage,
    ConversationSummary,
    MemoryEntry,
    PromptOverride,
    Skill,
    utc_now_iso,
)
from switchboard.services.storage import (
    SAFE_IDENTIFIER,
    InMemoryAudioStore,
    KeyedLock,
    StorageProvider,
    format_skill_summaries,
    parse_skill_document,
    validate_identifier,
    validate_skill_name,
)

logger = logging.getLogger(__name__)


def _read_json(path: Path) -> Optional[Any]:
    """Parsed file contents, or ``None`` when missing or corrupted."""
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Skipping unreadable record %s: %s", path, exc)
        return None


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    tmp.replace(path)


class FileConversationStore:
    def __init__(self, data_dir: Path) -> None:
        self._base = Path(data_dir) / "conversations"
        self._locks = KeyedLock()

    def _dir(self, scope_id: Optional[str]) -> Path:
        return self._base / validate_identifier(scope_id, "scope id") if scope_id else self._base

    def _path(self, conversation_id: str, scope_id: Optional[str]) -> Path:
        return self._dir(scope_id) / (validate_identifier(conversation_id, "conversation id") + ".json")

    def _load(self, path: Path) -> Optional[Conversation]:
        data = _read_json(path)
        if data is None:
            return None
        try:
            return Conversation.from_dict(data)
        except (KeyError, TypeError, AttributeError) as exc:
            logger.warning("Skipping malformed conversation %s: %s", path, exc)
            return None

    def _summaries(self, directory: Path) -> List[ConversationSummary]:
        if not directory.is_dir():
            return []
        summaries = []
        for path in sorted(directory.glob("*.json")):
            conversation = self._load(path)
            if conversation is None:
                continue
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    message_count=len(conversation.messages),
                    updated_at=conversation.updated_at,
                )
            )
        return summaries

    def _list_sync(self, scope_id: Optional[str]) -> List[ConversationSummary]:
        if scope_id:
            return self._summaries(self._dir(scope_id))
        summaries = self._summaries(self._base)
        if self._base.is_dir():
            for child in sorted(self._base.iterdir()):
                if child.is_dir():
                    summaries.extend(self._summaries(child))
        return summaries

    async def get(self, conversation_id: str, scope_id: Optional[str] = None) -> Optional[Conversation]:
        return await asyncio.to_thread(self._load, self._path(conversation_id, scope_id))

    async def list(self, scope_id: Optional[str] = None) -> List[ConversationSummary]:
        return await asyncio.to_thread(self._list_sync, scope_id)

    async def create(self, conversation_id: str, scope_id: Optional[str] = None) -> Conversation:
        async with self._locks.hold(conversation_id):
            conversation = Conversation(id=conversation_id)
            await asyncio.to_thread(_write_json, self._path(conversation_id, scope_id), conversation.to_dict())
            return conversation

    async def append(
        self, conversation_id: str, message: ConversationMessage, scope_id: Optional[str] = None
    ) -> Conversation:
        async with self._locks.hold(conversation_id):
            path = self._path(conversation_id, scope_id)
            conversation = await asyncio.to_thread(self._load, path) or Conversation(id=conversation_id)
            conversation.messages.append(message)
            conversation.updated_at = utc_now_iso()
            await asyncio.to_thread(_write_json, path, conversation.to_dict())
            return conversation

    async def delete(self, conversation_id: str, scope_id: Optional[str] = None) -> bool:
        path = self._path(conversation_id, scope_id)
        async with self._locks.hold(conversation_id):
            if not path.is_file():
                return False
            await asyncio.to_thread(path.unlink)
            return True

    async def clear(self, conversation_id: str, scope_id: Optional[str] = None) -> Conversation:
        async with self._locks.hold(conversation_id):
            path = self._path(conversation_id, scope_id)
            conversation = await asyncio.to_thread(self._load, path) or Conversation(id=conversation_id)
            conversation.messages = []
            conversation.updated_at = utc_now_iso()
            await asyncio.to_thread(_write_json, path, conversation.to_dict())
            return conversation


class FileMemoryStore:
    def __init__(self, data_dir: Path) -> None:
        self._base = Path(data_dir) / "memory"
        self._locks = KeyedLock()

    def _dir(self, scope_id: Optional[str]) -> Path:
        return self._base / validate_identifier(scope_id, "scope id") if scope_id else self._base

    def _path(self, namespace: str, scope_id: Optional[str]) -> Path:
        return self._dir(scope_id) / (validate_identifier(namespace, "namespace") + ".json")

    def _read(self, namespace: str, scope_id: Optional[str]) -> Dict[str, MemoryEntry]:
        data = _read_json(self._path(namespace, scope_id))
        if not isinstance(data, dict):
            return {}
        entries = {}
        for key, raw in data.items():
            try:
                entries[key] = MemoryEntry(
                    key=raw["key"],
                    value=raw["value"],
                    context=raw.get("context", ""),
                    created_at=raw.get("createdAt") or utc_now_iso(),
                    updated_at=raw.get("updatedAt") or utc_now_iso(),
                )
            except (KeyError, TypeError, AttributeError):
                logger.warning("Skipping malformed memory entry %s in %s", key, namespace)
        return entries

    def _write(self, namespace: str, entries: Dict[str, MemoryEntry], scope_id: Optional[str]) -> None:
        _write_json(
            self._path(namespace, scope_id),
            {
                key: {
                    "key": entry.key,
                    "value": entry.value,
                    "context": entry.context,
                    "createdAt": entry.created_at,
                    "updatedAt": entry.updated_at,
                }
                for key, entry in entries.items()
            },
        )

    def _lock_key(self, namespace: str, scope_id: Optional[str]) -> str:
        return f"{scope_id}:{namespace}" if scope_id else namespace

    def _scopes(self) -> List[Optional[str]]:
        scopes: List[Optional[str]] = [None]
        if self._base.is_dir():
            scopes.extend(
                child.name
                for child in sorted(self._base.iterdir())
                if child.is_dir() and SAFE_IDENTIFIER.match(child.name)
            )
        return scopes

    async def list_namespaces(self, scope_id: Optional[str] = None) -> List[str]:
        def collect() -> List[str]:
            scopes = [scope_id] if scope_id else self._scopes()
            found: List[str] = []
            for scope in scopes:
                directory = self._dir(scope)
                if directory.is_dir():
                    found.extend(p.stem for p in sorted(directory.glob("*.json")) if p.stem not in found)
            return found

        return await asyncio.to_thread(collect)

    async def list_entries(self, namespace: str, scope_id: Optional[str] = None) -> List[MemoryEntry]:
        if scope_id:
            return list((await asyncio.to_thread(self._read, namespace, scope_id)).values())
        entries: List[MemoryEntry] = []
        for scope in await asyncio.to_thread(self._scopes):
            entries.extend((await asyncio.to_thread(self._read, namespace, scope)).values())
        return entries

    async def save_entry(
        self,
        namespace: str,
        key: str,
        value: str,
        context: Optional[str] = None,
        scope_id: Optional[str] = None,
    ) -> MemoryEntry:
        async with self._locks.hold(self._lock_key(namespace, scope_id)):
            entries = await asyncio.to_thread(self._read, namespace, scope_id)
            existing = entries.get(key)
            now = utc_now_iso()
            entry = MemoryEntry(
                key=key,
                value=value,
                context=context or "",
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            entries[key] = entry
            await asyncio.to_thread(self._write, namespace, entries, scope_id)
            return entry

    async def get_entry(self, namespace: str, key: str, scope_id: Optional[str] = None) -> Optional[MemoryEntry]:
        return (await asyncio.to_thread(self._read, namespace, scope_id)).get(key)

    async def delete_entry(self, namespace: str, key: str, scope_id: Optional[str] = None) -> bool:
        async with self._locks.hold(self._lock_key(namespace, scope_id)):
            entries = await asyncio.to_thread(self._read, namespace, scope_id)
            if entries.pop(key, None) is None:
                return False
            await asyncio.to_thread(self._write, namespace, entries, scope_id)
            return True

    async def clear_namespace(self, namespace: str, scope_id: Optional[str] = None) -> None:
        async with self._locks.hold(self._lock_key(namespace, scope_id)):
            path = self._path(namespace, scope_id)
            await asyncio.to_thread(path.unlink, missing_ok=True)

    async def load_memories_for_ids(
        self, namespaces: Sequence[str], scope_id: Optional[str] = None
    ) -> List[MemoryEntry]:
        loaded: List[MemoryEntry] = []
        for namespace in namespaces:
            for entry in await self.list_entries(namespace, scope_id):
                entry.namespace = namespace
                loaded.append(entry)
        return loaded


class FileSkillStore:
    def __init__(self, data_dir: Path) -> None:
        self._base = Path(data_dir) / "skills"

    def _path(self, name: str) -> Path:
        return self._base / (validate_identifier(name, "skill name") + ".md")

    def _load(self, path: Path) -> Optional[Skill]:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError:
            return None
        return parse_skill_document(path.stem, raw)

    async def list_skills(self) -> List[Skill]:
        def collect() -> List[Skill]:
            if not self._base.is_dir():
                return []
            return [s for s in (self._load(p) for p in sorted(self._base.glob("*.md"))) if s is not None]

        return await asyncio.to_thread(collect)

    async def get_skill(self, name: str) -> Optional[Skill]:
        return await asyncio.to_thread(self._load, self._path(name))

    async def create_skill(self, name: str, content: str) -> Skill:
        validate_skill_name(name)
        path = self._path(name)
        if path.exists():
            raise ValueError(f'Skill "{name}" already exists')
        await asyncio.to_thread(self._save, path, content)
        return parse_skill_document(name, content)

    async def update_skill(self, name: str, content: str) -> Skill:
        path = self._path(name)
        if not path.exists():
            raise KeyError(f'Skill "{name}" not found')
        await asyncio.to_thread(self._save, path, content)
        return parse_skill_document(name, content)

    async def delete_skill(self, name: str) -> bool:
        path = self._path(name)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        return True

    async def skill_summaries(self) -> str:
        return format_skill_summaries(await self.list_skills())

    @staticmethod
    def _save(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


class FilePromptStore:
    def __init__(self, data_dir: Path) -> None:
        self._path = Path(data_dir) / "prompt-overrides.json"
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, PromptOverride]:
        data = _read_json(self._path)
        if not isinstance(data, dict):
            return {}
        overrides = {}
        for name, raw in data.items():
            if isinstance(raw, dict) and isinstance(raw.get("prompt"), str):
                overrides[name] = PromptOverride(prompt=raw["prompt"], updated_at=raw.get("updatedAt") or utc_now_iso())
        return overrides

    def _write(self, overrides: Dict[str, PromptOverride]) -> None:
        _write_json(
            self._path,
            {name: {"prompt": o.prompt, "updatedAt": o.updated_at} for name, o in overrides.items()},
        )

    async def load_overrides(self) -> Dict[str, PromptOverride]:
        return await asyncio.to_thread(self._read)

    async def save_override(self, name: str, prompt: str) -> PromptOverride:
        async with self._lock:
            overrides = await asyncio.to_thread(self._read)
            override = PromptOverride(prompt=prompt)
            overrides[name] = override
            await asyncio.to_thread(self._write, overrides)
            return override

    async def delete_override(self, name: str) -> bool:
        async with self._lock:
            overrides = await asyncio.to_thread(self._read)
            if overrides.pop(name, None) is None:
                return False
            await asyncio.to_thread(self._write, overrides)
            return True


class FileCommandStore:
    def __init__(self, data_dir: Path) -> None:
        self._base = Path(data_dir) / "commands"
        self._locks = KeyedLock()

    def _dir(self, scope_id: Optional[str]) -> Path:
        return self._base / validate_identifier(scope_id, "scope id") if scope_id else self._base

    def _path(self, name: str, scope_id: Optional[str]) -> Path:
        return self._dir(scope_id) / (validate_identifier(name, "command name") + ".json")

    @staticmethod
    def _load(path: Path) -> Optional[Command]:
        data = _read_json(path)
        if data is None:
            return None
        try:
            return Command.from_dict(data)
        except (KeyError, TypeError, AttributeError) as exc:
            logger.warning("Skipping malformed command %s: %s", path, exc)
            return None

    async def list(self, scope_id: Optional[str] = None) -> List[Command]:
        def collect() -> List[Command]:
            directory = self._dir(scope_id)
            if not directory.is_dir():
                return []
            loaded = (self._load(p) for p in sorted(directory.glob("*.json")))
            return [command for command in loaded if command is not None]

        return await asyncio.to_thread(collect)

    async def get(self, name: str, scope_id: Optional[str] = None) -> Optional[Command]:
        return await asyncio.to_thread(self._load, self._path(name, scope_id))

    async def save(self, command: Command, scope_id: Optional[str] = None) -> Command:
        path = self._path(command.name, scope_id)
        async with self._locks.hold(str(path)):
            await asyncio.to_thread(_write_json, path, command.to_dict())
        return command

    async def delete(self, name: str, scope_id: Optional[str] = None) -> bool:
        path = self._path(name, scope_id)
        async with self._locks.hold(str(path)):
            if not path.is_file():
                return False
            await asyncio.to_thread(path.unlink)
            return True


def create_file_storage(data_dir: str) -> StorageProvider:
    """Provider persisting everything but audio under ``data_dir``."""
    root = Path(data_dir)
    return StorageProvider(
        conversations=FileConversationStore(root),
        memory=FileMemoryStore(root),
        skills=FileSkillStore(root),
        prompts=FilePromptStore(root),
        audio=InMemoryAudioStore(),
        commands=FileCommandStore(root),
    )
