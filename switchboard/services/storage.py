"""Storage contracts consumed by the runtime and their in-memory implementations.

Every store is async and reports "not found" with ``None``/``False`` rather
than raising. Conversation writes for one id are serialized through a
:class:`KeyedLock`; different ids never block each other.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple

import yaml

from switchboard.core.errors import InvalidIdentifier
from switchboard.core.models import (
    AudioEntry,
    Command,
    Conversation,
    ConversationMessage,
    ConversationSummary,
    MemoryEntry,
    PromptOverride,
    Skill,
    SkillPhase,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

KEBAB_CASE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
SAFE_IDENTIFIER = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.:@-]{0,199}$")
_FRONTMATTER = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)$", re.DOTALL)


class KeyedLock:
    """Mutual exclusion per key. Idle keys are dropped so the map stays bounded."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ---- Contracts ----


class ConversationStore(Protocol):
    async def get(self, conversation_id: str, scope_id: Optional[str] = None) -> Optional[Conversation]: ...

    async def list(self, scope_id: Optional[str] = None) -> List[ConversationSummary]: ...

    async def create(self, conversation_id: str, scope_id: Optional[str] = None) -> Conversation: ...

    async def append(
        self, conversation_id: str, message: ConversationMessage, scope_id: Optional[str] = None
    ) -> Conversation: ...

    async def delete(self, conversation_id: str, scope_id: Optional[str] = None) -> bool: ...

    async def clear(self, conversation_id: str, scope_id: Optional[str] = None) -> Conversation: ...


class MemoryStore(Protocol):
    async def list_namespaces(self, scope_id: Optional[str] = None) -> List[str]: ...

    async def list_entries(self, namespace: str, scope_id: Optional[str] = None) -> List[MemoryEntry]: ...

    async def save_entry(
        self,
        namespace: str,
        key: str,
        value: str,
        context: Optional[str] = None,
        scope_id: Optional[str] = None,
    ) -> MemoryEntry: ...

    async def get_entry(self, namespace: str, key: str, scope_id: Optional[str] = None) -> Optional[MemoryEntry]: ...

    async def delete_entry(self, namespace: str, key: str, scope_id: Optional[str] = None) -> bool: ...

    async def clear_namespace(self, namespace: str, scope_id: Optional[str] = None) -> None: ...

    async def load_memories_for_ids(
        self, namespaces: Sequence[str], scope_id: Optional[str] = None
    ) -> List[MemoryEntry]: ...


class SkillStore(Protocol):
    async def list_skills(self) -> List[Skill]: ...

    async def get_skill(self, name: str) -> Optional[Skill]: ...

    async def create_skill(self, name: str, content: str) -> Skill: ...

    async def update_skill(self, name: str, content: str) -> Skill: ...

    async def delete_skill(self, name: str) -> bool: ...

    async def skill_summaries(self) -> str: ...


class PromptStore(Protocol):
    async def load_overrides(self) -> Dict[str, PromptOverride]: ...

    async def save_override(self, name: str, prompt: str) -> PromptOverride: ...

    async def delete_override(self, name: str) -> bool: ...


class CommandStore(Protocol):
    async def list(self, scope_id: Optional[str] = None) -> List[Command]: ...

    async def get(self, name: str, scope_id: Optional[str] = None) -> Optional[Command]: ...

    async def save(self, command: Command, scope_id: Optional[str] = None) -> Command: ...

    async def delete(self, name: str, scope_id: Optional[str] = None) -> bool: ...


class AudioStore(Protocol):
    async def save_audio(
        self,
        data: bytes,
        mime_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        scope_id: Optional[str] = None,
    ) -> AudioEntry: ...

    async def get_audio(self, audio_id: str, scope_id: Optional[str] = None) -> Optional[Tuple[AudioEntry, bytes]]: ...

    async def delete_audio(self, audio_id: str, scope_id: Optional[str] = None) -> bool: ...

    async def list_audio(self, scope_id: Optional[str] = None) -> List[AudioEntry]: ...

    async def cleanup_older_than(self, max_age_ms: int, scope_id: Optional[str] = None) -> int: ...


@dataclass(slots=True)
class StorageProvider:
    """Aggregates every store the runtime consumes."""

    conversations: ConversationStore
    memory: MemoryStore
    skills: SkillStore
    prompts: PromptStore
    audio: AudioStore
    commands: CommandStore


# ---- Skills ----


def parse_phase(value: Any) -> SkillPhase:
    try:
        return SkillPhase(value)
    except ValueError:
        return SkillPhase.RESPONSE


def parse_skill_document(name: str, raw: str) -> Skill:
    """Build a skill from Markdown with optional YAML frontmatter."""
    meta: Dict[str, Any] = {}
    body = raw
    match = _FRONTMATTER.match(raw)
    if match:
        try:
            loaded = yaml.safe_load(match.group(1))
        except yaml.YAMLError as exc:
            logger.warning("Ignoring invalid frontmatter in skill '%s': %s", name, exc)
            loaded = None
        if isinstance(loaded, dict):
            meta = loaded
        body = match.group(2)

    tags = meta.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    return Skill(
        name=str(meta.get("name") or name),
        description=str(meta.get("description") or ""),
        phase=parse_phase(meta.get("phase")),
        content=body.strip(),
        tags=tuple(str(t) for t in tags),
        raw_content=raw,
    )


def format_skill_summaries(skills: Sequence[Skill]) -> str:
    if not skills:
        return "No skills available."
    return "\n".join(f"- {s.name} [{s.phase.value}]: {s.description}" for s in skills)


def validate_skill_name(name: str) -> None:
    if not KEBAB_CASE.match(name):
        raise ValueError(f'Invalid skill name "{name}": must be kebab-case (e.g. "my-skill")')


def validate_identifier(value: str, kind: str = "id") -> str:
    """Reject ids that are unsafe as a single path segment or storage key."""
    if not SAFE_IDENTIFIER.match(value) or ".." in value:
        raise InvalidIdentifier(f"Invalid {kind}: {value!r}")
    return value


# ---- In-memory implementations ----


def _copy_conversation(conversation: Conversation) -> Conversation:
    return replace(conversation, messages=list(conversation.messages))


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: Dict[Tuple[Optional[str], str], Conversation] = {}
        self._locks = KeyedLock()

    async def get(self, conversation_id: str, scope_id: Optional[str] = None) -> Optional[Conversation]:
        conversation = self._conversations.get((scope_id, conversation_id))
        return _copy_conversation(conversation) if conversation else None

    async def list(self, scope_id: Optional[str] = None) -> List[ConversationSummary]:
        return [
            ConversationSummary(id=c.id, message_count=len(c.messages), updated_at=c.updated_at)
            for (scope, _), c in self._conversations.items()
            if scope_id is None or scope == scope_id
        ]

    async def create(self, conversation_id: str, scope_id: Optional[str] = None) -> Conversation:
        async with self._locks.hold(conversation_id):
            conversation = Conversation(id=conversation_id)
            self._conversations[(scope_id, conversation_id)] = conversation
            return _copy_conversation(conversation)

    async def append(
        self, conversation_id: str, message: ConversationMessage, scope_id: Optional[str] = None
    ) -> Conversation:
        async with self._locks.hold(conversation_id):
            key = (scope_id, conversation_id)
            conversation = self._conversations.get(key)
            if conversation is None:
                conversation = self._conversations[key] = Conversation(id=conversation_id)
            conversation.messages.append(message)
            conversation.updated_at = utc_now_iso()
            return _copy_conversation(conversation)

    async def delete(self, conversation_id: str, scope_id: Optional[str] = None) -> bool:
        return self._conversations.pop((scope_id, conversation_id), None) is not None

    async def clear(self, conversation_id: str, scope_id: Optional[str] = None) -> Conversation:
        async with self._locks.hold(conversation_id):
            key = (scope_id, conversation_id)
            conversation = self._conversations.get(key)
            if conversation is None:
                conversation = self._conversations[key] = Conversation(id=conversation_id)
            conversation.messages = []
            conversation.updated_at = utc_now_iso()
            return _copy_conversation(conversation)


class InMemoryMemoryStore:
    def __init__(self) -> None:
        self._namespaces: Dict[Tuple[Optional[str], str], Dict[str, MemoryEntry]] = {}

    async def list_namespaces(self, scope_id: Optional[str] = None) -> List[str]:
        return [
            namespace
            for (scope, namespace), entries in self._namespaces.items()
            if entries and (scope_id is None or scope == scope_id)
        ]

    async def list_entries(self, namespace: str, scope_id: Optional[str] = None) -> List[MemoryEntry]:
        return list(self._namespaces.get((scope_id, namespace), {}).values())

    async def save_entry(
        self,
        namespace: str,
        key: str,
        value: str,
        context: Optional[str] = None,
        scope_id: Optional[str] = None,
    ) -> MemoryEntry:
        entries = self._namespaces.setdefault((scope_id, namespace), {})
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
        return entry

    async def get_entry(self, namespace: str, key: str, scope_id: Optional[str] = None) -> Optional[MemoryEntry]:
        return self._namespaces.get((scope_id, namespace), {}).get(key)

    async def delete_entry(self, namespace: str, key: str, scope_id: Optional[str] = None) -> bool:
        entries = self._namespaces.get((scope_id, namespace))
        if not entries:
            return False
        return entries.pop(key, None) is not None

    async def clear_namespace(self, namespace: str, scope_id: Optional[str] = None) -> None:
        self._namespaces.pop((scope_id, namespace), None)

    async def load_memories_for_ids(
        self, namespaces: Sequence[str], scope_id: Optional[str] = None
    ) -> List[MemoryEntry]:
        loaded: List[MemoryEntry] = []
        for namespace in namespaces:
            for entry in self._namespaces.get((scope_id, namespace), {}).values():
                loaded.append(replace(entry, namespace=namespace))
        return loaded


class InMemorySkillStore:
    def __init__(self) -> None:
        self._documents: Dict[str, str] = {}

    async def list_skills(self) -> List[Skill]:
        return [parse_skill_document(name, raw) for name, raw in self._documents.items()]

    async def get_skill(self, name: str) -> Optional[Skill]:
        raw = self._documents.get(name)
        return parse_skill_document(name, raw) if raw is not None else None

    async def create_skill(self, name: str, content: str) -> Skill:
        validate_skill_name(name)
        if name in self._documents:
            raise ValueError(f'Skill "{name}" already exists')
        self._documents[name] = content
        return parse_skill_document(name, content)

    async def update_skill(self, name: str, content: str) -> Skill:
        if name not in self._documents:
            raise KeyError(f'Skill "{name}" not found')
        self._documents[name] = content
        return parse_skill_document(name, content)

    async def delete_skill(self, name: str) -> bool:
        return self._documents.pop(name, None) is not None

    async def skill_summaries(self) -> str:
        return format_skill_summaries(await self.list_skills())


class InMemoryPromptStore:
    def __init__(self) -> None:
        self._overrides: Dict[str, PromptOverride] = {}

    async def load_overrides(self) -> Dict[str, PromptOverride]:
        return dict(self._overrides)

    async def save_override(self, name: str, prompt: str) -> PromptOverride:
        override = PromptOverride(prompt=prompt)
        self._overrides[name] = override
        return override

    async def delete_override(self, name: str) -> bool:
        return self._overrides.pop(name, None) is not None


class InMemoryCommandStore:
    def __init__(self) -> None:
        self._commands: Dict[Tuple[Optional[str], str], Command] = {}

    async def list(self, scope_id: Optional[str] = None) -> List[Command]:
        return [command for (scope, _), command in self._commands.items() if scope == scope_id]

    async def get(self, name: str, scope_id: Optional[str] = None) -> Optional[Command]:
        return self._commands.get((scope_id, name))

    async def save(self, command: Command, scope_id: Optional[str] = None) -> Command:
        self._commands[(scope_id, command.name)] = command
        return command

    async def delete(self, name: str, scope_id: Optional[str] = None) -> bool:
        return self._commands.pop((scope_id, name), None) is not None


class InMemoryAudioStore:
    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[Optional[str], AudioEntry, bytes]] = {}
        self._ids = itertools.count(1)

    async def save_audio(
        self,
        data: bytes,
        mime_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        scope_id: Optional[str] = None,
    ) -> AudioEntry:
        audio_id = f"audio_{next(self._ids)}_{int(time.time() * 1000)}"
        entry = AudioEntry(id=audio_id, mime_type=mime_type, size=len(data), metadata=dict(metadata or {}))
        self._entries[audio_id] = (scope_id, entry, bytes(data))
        return entry

    async def get_audio(self, audio_id: str, scope_id: Optional[str] = None) -> Optional[Tuple[AudioEntry, bytes]]:
        stored = self._entries.get(audio_id)
        if stored is None or (scope_id is not None and stored[0] != scope_id):
            return None
        return stored[1], stored[2]

    async def delete_audio(self, audio_id: str, scope_id: Optional[str] = None) -> bool:
        if await self.get_audio(audio_id, scope_id) is None:
            return False
        del self._entries[audio_id]
        return True

    async def list_audio(self, scope_id: Optional[str] = None) -> List[AudioEntry]:
        return [entry for scope, entry, _ in self._entries.values() if scope_id is None or scope == scope_id]

    async def cleanup_older_than(self, max_age_ms: int, scope_id: Optional[str] = None) -> int:
        cutoff = time.time() - max_age_ms / 1000
        stale = [
            audio_id
            for audio_id, (scope, entry, _) in self._entries.items()
            if (scope_id is None or scope == scope_id)
            and datetime.fromisoformat(entry.created_at).timestamp() < cutoff
        ]
        for audio_id in stale:
            del self._entries[audio_id]
        return len(stale)


def create_memory_storage() -> StorageProvider:
    """Fully in-memory provider; everything is lost on restart."""
    return StorageProvider(
        conversations=InMemoryConversationStore(),
        memory=InMemoryMemoryStore(),
        skills=InMemorySkillStore(),
        prompts=InMemoryPromptStore(),
        audio=InMemoryAudioStore(),
        commands=InMemoryCommandStore(),
    )
