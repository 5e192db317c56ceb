"""Tests for the in-memory and file-backed stores."""
from __future__ import annotations

import asyncio
import json

import pytest

from switchboard.core.errors import InvalidIdentifier
from switchboard.core.models import Command, ConversationMessage, SkillPhase
from switchboard.services.file_storage import create_file_storage
from switchboard.services.storage import (
    KeyedLock,
    create_memory_storage,
    format_skill_summaries,
    parse_skill_document,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(params=["memory", "file"])
def storage(request, tmp_path):
    if request.param == "memory":
        return create_memory_storage()
    return create_file_storage(str(tmp_path))


@pytest.mark.anyio
async def test_conversation_round_trip(storage) -> None:
    await storage.conversations.append("conv-1", ConversationMessage(role="user", content="hello"))
    await storage.conversations.append("conv-1", ConversationMessage(role="assistant", content="hi"))

    conversation = await storage.conversations.get("conv-1")
    assert [m.content for m in conversation.messages] == ["hello", "hi"]

    summaries = await storage.conversations.list()
    assert [(s.id, s.message_count) for s in summaries] == [("conv-1", 2)]

    cleared = await storage.conversations.clear("conv-1")
    assert cleared.messages == []
    assert await storage.conversations.delete("conv-1") is True
    assert await storage.conversations.delete("conv-1") is False
    assert await storage.conversations.get("conv-1") is None


@pytest.mark.anyio
async def test_scoped_conversations_are_separate(storage) -> None:
    await storage.conversations.append("conv-1", ConversationMessage(role="user", content="mine"), scope_id="alice")

    assert await storage.conversations.get("conv-1") is None
    scoped = await storage.conversations.get("conv-1", scope_id="alice")
    assert scoped.messages[0].content == "mine"


@pytest.mark.anyio
async def test_concurrent_appends_are_not_lost(storage) -> None:
    await asyncio.gather(
        *(
            storage.conversations.append("conv-1", ConversationMessage(role="user", content=str(i)))
            for i in range(10)
        )
    )

    conversation = await storage.conversations.get("conv-1")
    assert sorted(m.content for m in conversation.messages) == sorted(str(i) for i in range(10))


@pytest.mark.anyio
async def test_memory_entries(storage) -> None:
    first = await storage.memory.save_entry("prefs", "tone", "casual", "first guess")
    updated = await storage.memory.save_entry("prefs", "tone", "formal")
    await storage.memory.save_entry("facts", "city", "Paris")

    assert updated.created_at == first.created_at
    assert (await storage.memory.get_entry("prefs", "tone")).value == "formal"
    assert sorted(await storage.memory.list_namespaces()) == ["facts", "prefs"]

    loaded = await storage.memory.load_memories_for_ids(["prefs", "facts", "missing"])
    assert [(e.namespace, e.key, e.value) for e in loaded] == [("prefs", "tone", "formal"), ("facts", "city", "Paris")]

    assert await storage.memory.delete_entry("prefs", "tone") is True
    assert await storage.memory.delete_entry("prefs", "tone") is False
    await storage.memory.clear_namespace("facts")
    assert await storage.memory.list_entries("facts") == []


@pytest.mark.anyio
async def test_skills(storage) -> None:
    await storage.skills.create_skill("be-brief", "---\ndescription: Short\nphase: both\ntags: [style]\n---\nBe brief.")

    with pytest.raises(ValueError):
        await storage.skills.create_skill("be-brief", "again")
    with pytest.raises(ValueError):
        await storage.skills.create_skill("Not_Kebab", "bad name")
    with pytest.raises(KeyError):
        await storage.skills.update_skill("missing", "body")

    skill = await storage.skills.get_skill("be-brief")
    assert skill.phase is SkillPhase.BOTH
    assert skill.tags == ("style",)
    assert skill.content == "Be brief."
    assert await storage.skills.skill_summaries() == "- be-brief [both]: Short"

    await storage.skills.update_skill("be-brief", "No frontmatter now.")
    assert (await storage.skills.get_skill("be-brief")).phase is SkillPhase.RESPONSE
    assert await storage.skills.delete_skill("be-brief") is True
    assert await storage.skills.get_skill("be-brief") is None


@pytest.mark.anyio
async def test_prompt_overrides(storage) -> None:
    await storage.prompts.save_override("weather", "Be terse.")

    overrides = await storage.prompts.load_overrides()
    assert overrides["weather"].prompt == "Be terse."
    assert await storage.prompts.delete_override("weather") is True
    assert await storage.prompts.delete_override("weather") is False


@pytest.mark.anyio
async def test_audio_store(storage) -> None:
    entry = await storage.audio.save_audio(b"RIFF....", "audio/wav", {"source": "mic"}, scope_id="alice")

    assert entry.size == 8
    assert await storage.audio.get_audio(entry.id, scope_id="bob") is None
    stored, data = await storage.audio.get_audio(entry.id, scope_id="alice")
    assert stored.mime_type == "audio/wav" and data == b"RIFF...."
    assert await storage.audio.cleanup_older_than(60_000) == 0
    assert await storage.audio.cleanup_older_than(-1_000) == 1
    assert await storage.audio.list_audio() == []


@pytest.mark.anyio
async def test_commands(storage) -> None:
    command = Command(name="forecast", description="Quick forecast", system="You are weather.", tools=("lookup",))
    await storage.commands.save(command)
    await storage.commands.save(Command(name="private", description="", system="Be private."), scope_id="alice")

    assert await storage.commands.get("forecast") == command
    assert await storage.commands.get("forecast", scope_id="alice") is None
    assert [c.name for c in await storage.commands.list()] == ["forecast"]
    assert [c.name for c in await storage.commands.list("alice")] == ["private"]
    assert await storage.commands.delete("forecast") is True
    assert await storage.commands.delete("forecast") is False


@pytest.mark.anyio
@pytest.mark.parametrize("unsafe", ["../../evil", "a/b", "..", ".hidden", "a\\b"])
async def test_file_storage_rejects_path_like_ids(tmp_path, unsafe) -> None:
    storage = create_file_storage(str(tmp_path / "data"))

    with pytest.raises(InvalidIdentifier):
        await storage.conversations.append(unsafe, ConversationMessage(role="user", content="x"))
    with pytest.raises(InvalidIdentifier):
        await storage.conversations.get("conv-1", scope_id=unsafe)
    with pytest.raises(InvalidIdentifier):
        await storage.memory.save_entry(unsafe, "tone", "formal")
    with pytest.raises(InvalidIdentifier):
        await storage.skills.get_skill(unsafe)
    with pytest.raises(InvalidIdentifier):
        await storage.commands.save(Command(name=unsafe, description="", system="x"))

    assert list(tmp_path.rglob("*.json")) == []


@pytest.mark.anyio
async def test_corrupted_conversation_file_is_skipped(tmp_path) -> None:
    storage = create_file_storage(str(tmp_path))
    await storage.conversations.append("good", ConversationMessage(role="user", content="hi"))
    (tmp_path / "conversations" / "broken.json").write_text("{not json", encoding="utf-8")

    summaries = await storage.conversations.list()

    assert [s.id for s in summaries] == ["good"]
    assert await storage.conversations.get("broken") is None


@pytest.mark.anyio
async def test_file_records_are_camel_case_json(tmp_path) -> None:
    storage = create_file_storage(str(tmp_path))
    await storage.conversations.append("conv-1", ConversationMessage(role="user", content="hi"))

    data = json.loads((tmp_path / "conversations" / "conv-1.json").read_text(encoding="utf-8"))

    assert data["id"] == "conv-1"
    assert {"createdAt", "updatedAt", "messages"} <= set(data)
    assert data["messages"][0]["content"] == "hi"


def test_skill_document_defaults() -> None:
    plain = parse_skill_document("plain", "Just instructions.")
    odd = parse_skill_document("odd", "---\nphase: sometimes\nname: renamed\n---\nBody")

    assert plain.phase is SkillPhase.RESPONSE
    assert plain.content == "Just instructions."
    assert odd.phase is SkillPhase.RESPONSE
    assert odd.name == "renamed"
    assert format_skill_summaries([]) == "No skills available."


@pytest.mark.anyio
async def test_keyed_lock_serializes_per_key_and_forgets_idle_keys() -> None:
    locks = KeyedLock()
    order = []

    async def worker(key: str, label: str) -> None:
        async with locks.hold(key):
            order.append(f"{label}-in")
            await asyncio.sleep(0.01)
            order.append(f"{label}-out")

    await asyncio.gather(worker("a", "first"), worker("a", "second"), worker("b", "other"))

    assert order.index("first-out") < order.index("second-in")
    assert order.index("other-in") < order.index("first-out")
    assert len(locks) == 0
