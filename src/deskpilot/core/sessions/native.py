"""Read-only view of the assistant CLI's own session transcripts.

The CLI keeps one JSONL file per session under
``<root>/<encoded project path>/<session id>.jsonl``. This adapter lists and
reads those files; it never writes them.
"""

from __future__ import annotations

import json
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from deskpilot.core.runtime.errors import OperationNotSupportedError, StorageError
from deskpilot.core.runtime.worker import SerialWorker
from deskpilot.core.sessions.base import SessionStorage
from deskpilot.core.sessions.models import ChatMessage, MessageRole, StoredSession
from deskpilot.core.telemetry.logging import get_logger

_ROLES = {"user": MessageRole.USER, "assistant": MessageRole.ASSISTANT, "system": MessageRole.SYSTEM}


def encode_project_path(project_path: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "-", project_path)


def _parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [block.get("text", "") for block in content if isinstance(block, dict) and block.get("type") == "text"]
        return "\n".join(p for p in parts if p)
    return ""


class NativeSessionStorage(SessionStorage):
    def __init__(self, root: str | Path, project_path: str | None = None, logger=None) -> None:
        self._root = Path(root).expanduser()
        self._project_path = project_path
        self._aliases: dict[str, str] = {}
        self._logger = logger or get_logger("deskpilot.sessions.native")
        self._worker = SerialWorker("native-sessions")

    @classmethod
    def from_config(cls, cfg, project_path: str | None = None, logger=None) -> NativeSessionStorage:
        return cls(cfg.native_sessions_dir, project_path=project_path, logger=logger)

    def set_project_path(self, project_path: str | None) -> None:
        self._project_path = project_path
        self._aliases.clear()

    def close(self) -> None:
        self._worker.shutdown()

    async def list_projects(self) -> list[str]:
        return await self._worker.run(self._project_dirs_sync)

    # ── reads ────────────────────────────────────────────────────

    async def list_sessions(self) -> list[StoredSession]:
        return await self._worker.run(self._list_sync)

    async def get_session(self, session_id: str) -> StoredSession | None:
        return await self._worker.run(self._get_sync, session_id)

    def _project_dirs_sync(self) -> list[str]:
        if not self._root.is_dir():
            return []
        try:
            return sorted(p.name for p in self._root.iterdir() if p.is_dir())
        except OSError as exc:
            raise StorageError("list_projects", exc) from exc

    def _session_files(self) -> list[Path]:
        if self._project_path is not None:
            dirs = [self._root / encode_project_path(self._project_path)]
        else:
            dirs = [self._root / name for name in self._project_dirs_sync()]
        files: list[Path] = []
        for directory in dirs:
            if directory.is_dir():
                files.extend(sorted(directory.glob("*.jsonl")))
        return files

    def _index_sync(self) -> dict[str, StoredSession]:
        index: dict[str, StoredSession] = {}
        for path in self._session_files():
            parsed = self._parse_file(path)
            if parsed is None:
                continue
            session, chained_id = parsed
            index[session.id] = session
            if chained_id and chained_id not in index:
                index[chained_id] = session
        return index

    def _list_sync(self) -> list[StoredSession]:
        sessions = {id(s): s for s in self._index_sync().values()}
        return sorted(sessions.values(), key=lambda s: s.last_accessed_at, reverse=True)

    def _get_sync(self, session_id: str) -> StoredSession | None:
        index = self._index_sync()
        return index.get(session_id) or index.get(self._aliases.get(session_id, ""))

    def _parse_file(self, path: Path) -> tuple[StoredSession, str | None] | None:
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError as exc:
            self._logger.warning("native_session_unreadable", path=str(path), error=str(exc))
            return None

        messages: list[ChatMessage] = []
        working_directory: str | None = None
        last_session_id: str | None = None
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if not isinstance(entry, dict):
                skipped += 1
                continue
            working_directory = working_directory or entry.get("cwd")
            last_session_id = entry.get("sessionId") or last_session_id
            payload = entry.get("message")
            if not isinstance(payload, dict):
                continue
            role = _ROLES.get(str(payload.get("role") or entry.get("type")))
            text = _message_text(payload)
            if role is None or not text:
                continue
            try:
                message_id = uuid.UUID(str(entry.get("uuid")))
            except ValueError:
                message_id = uuid.uuid4()
            messages.append(
                ChatMessage(
                    id=message_id,
                    role=role,
                    content=text,
                    timestamp=_parse_timestamp(entry.get("timestamp")) or mtime,
                )
            )
        if skipped:
            self._logger.debug("native_session_lines_skipped", path=str(path), skipped=skipped)

        first_user = next((m.content for m in messages if m.role == MessageRole.USER), "New Session")
        session = StoredSession(
            id=path.stem,
            created_at=messages[0].timestamp if messages else mtime,
            first_user_message=first_user,
            last_accessed_at=messages[-1].timestamp if messages else mtime,
            messages=messages,
            working_directory=working_directory,
        )
        chained = last_session_id if last_session_id and last_session_id != session.id else None
        return session, chained

    # ── writes are owned by the CLI ──────────────────────────────

    async def create_session(
        self,
        session_id: str,
        first_message: str,
        working_directory: str | None = None,
        branch_name: str | None = None,
        is_worktree: bool = False,
    ) -> None:
        return None

    async def touch_last_accessed(self, session_id: str) -> None:
        return None

    async def replace_messages(self, session_id: str, messages: list[ChatMessage]) -> None:
        return None

    async def delete_session(self, session_id: str) -> None:
        raise OperationNotSupportedError("delete_session", "session deletion is managed by the assistant CLI")

    async def delete_all_sessions(self) -> None:
        raise OperationNotSupportedError("delete_all_sessions", "bulk session deletion is managed by the assistant CLI")

    async def rekey_session(self, old_id: str, new_id: str) -> None:
        # Both ids keep resolving to the same transcript.
        self._aliases[new_id] = self._aliases.get(old_id, old_id)
