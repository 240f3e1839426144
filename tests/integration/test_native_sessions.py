from __future__ import annotations

import json
import os

import pytest

from deskpilot.core.runtime.errors import OperationNotSupportedError
from deskpilot.core.sessions.models import MessageRole
from deskpilot.core.sessions.native import NativeSessionStorage, encode_project_path

PROJECT = "/Users/dev/my_app"


def _write_transcript(root, project: str, session_id: str, entries: list[dict]):
    directory = root / encode_project_path(project)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{session_id}.jsonl"
    path.write_text("\n".join(json.dumps(e) for e in entries) + "\n", encoding="utf-8")
    return path


def _entry(role: str, content, ts: str, session_id: str = "abc", **extra) -> dict:
    return {
        "type": role,
        "sessionId": session_id,
        "uuid": extra.pop("uuid", "0b7c7f0e-64a5-4c8f-a1e9-55c6a0f1b001"),
        "timestamp": ts,
        "cwd": PROJECT,
        "message": {"role": role, "content": content},
        **extra,
    }


@pytest.fixture
def native(tmp_path):
    storage = NativeSessionStorage(tmp_path, project_path=PROJECT)
    yield storage
    storage.close()


def test_encode_project_path():
    assert encode_project_path("/Users/dev/my_app") == "-Users-dev-my-app"


@pytest.mark.asyncio
async def test_lists_and_reads_transcripts(native, tmp_path):
    _write_transcript(
        tmp_path,
        PROJECT,
        "abc",
        [
            {"type": "summary", "summary": "ignored"},
            _entry("user", "fix the build", "2025-07-01T10:00:00Z"),
            _entry("assistant", [{"type": "text", "text": "Looking."}, {"type": "tool_use", "name": "Bash"}], "2025-07-01T10:00:05Z"),
        ],
    )
    _write_transcript(tmp_path, PROJECT, "def", [_entry("user", "later chat", "2025-07-02T09:00:00Z", "def")])
    ghi_path = tmp_path / encode_project_path(PROJECT) / "ghi.jsonl"
    ghi_path.write_text("not json\n\n", encoding="utf-8")
    os.utime(ghi_path, (1_500_000_000, 1_500_000_000))

    sessions = await native.list_sessions()
    assert [s.id for s in sessions] == ["def", "abc", "ghi"]

    abc = await native.get_session("abc")
    assert abc.first_user_message == "fix the build"
    assert abc.working_directory == PROJECT
    assert [m.role for m in abc.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert abc.messages[1].content == "Looking."
    assert abc.last_accessed_at > abc.created_at

    ghi = await native.get_session("ghi")
    assert ghi.messages == []
    assert ghi.title == "New Session"


@pytest.mark.asyncio
async def test_other_projects_are_not_listed(native, tmp_path):
    _write_transcript(tmp_path, "/elsewhere", "zzz", [_entry("user", "hi", "2025-07-01T10:00:00Z", "zzz")])
    assert await native.list_sessions() == []
    assert await native.list_projects() == ["-elsewhere"]

    native.set_project_path(None)
    assert [s.id for s in await native.list_sessions()] == ["zzz"]


@pytest.mark.asyncio
async def test_rekey_makes_new_id_resolve_to_existing_transcript(native, tmp_path):
    _write_transcript(tmp_path, PROJECT, "abc", [_entry("user", "hello", "2025-07-01T10:00:00Z")])

    await native.rekey_session("abc", "new-id")
    await native.rekey_session("new-id", "newer-id")

    assert (await native.get_session("new-id")).id == "abc"
    assert (await native.get_session("newer-id")).id == "abc"
    assert await native.get_session("unknown") is None


@pytest.mark.asyncio
async def test_resumed_session_id_resolves_to_the_continuing_file(native, tmp_path):
    _write_transcript(tmp_path, PROJECT, "child", [_entry("user", "continue", "2025-07-03T10:00:00Z", "parent")])
    assert (await native.get_session("parent")).id == "child"
    assert [s.id for s in await native.list_sessions()] == ["child"]


@pytest.mark.asyncio
async def test_writes_are_owned_by_the_cli(native, tmp_path):
    path = _write_transcript(tmp_path, PROJECT, "abc", [_entry("user", "hello", "2025-07-01T10:00:00Z")])
    before = path.read_text(encoding="utf-8")

    await native.create_session("abc", "hello")
    await native.touch_last_accessed("abc")
    await native.replace_messages("abc", [])
    with pytest.raises(OperationNotSupportedError):
        await native.delete_session("abc")
    with pytest.raises(OperationNotSupportedError):
        await native.delete_all_sessions()

    assert path.read_text(encoding="utf-8") == before


@pytest.mark.asyncio
async def test_missing_root_lists_nothing(tmp_path):
    storage = NativeSessionStorage(tmp_path / "absent")
    try:
        assert await storage.list_sessions() == []
        assert await storage.list_projects() == []
    finally:
        storage.close()
