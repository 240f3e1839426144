from __future__ import annotations

import asyncio
from collections.abc import Callable

from deskpilot.core.runtime.errors import compact_error_summary
from deskpilot.core.sessions.base import SessionStorage
from deskpilot.core.sessions.models import ChatMessage, StoredSession
from deskpilot.core.sessions.worktree import WorktreeInfo, detect_worktree_info
from deskpilot.core.telemetry.logging import get_logger

ErrorHandler = Callable[[Exception, str], None]


class SessionManager:
    """Tracks the active conversation and forwards persistence to a storage backend."""

    def __init__(
        self,
        storage: SessionStorage,
        *,
        error_handler: ErrorHandler | None = None,
        worktree_detector: Callable[[str], WorktreeInfo | None] = detect_worktree_info,
        logger=None,
    ) -> None:
        self._storage = storage
        self._error_handler = error_handler
        self._detect_worktree = worktree_detector
        self._logger = logger or get_logger("deskpilot.sessions.manager")
        self.current_session_id: str | None = None
        self.sessions: list[StoredSession] = []
        self.sessions_error: Exception | None = None
        self.is_loading_sessions = False

    @property
    def has_active_session(self) -> bool:
        return self.current_session_id is not None

    def _report(self, exc: Exception, operation: str) -> None:
        self._logger.error("session_operation_failed", operation=operation, error=compact_error_summary(exc))
        if self._error_handler is not None:
            self._error_handler(exc, operation)

    async def start_new_session(
        self,
        session_id: str,
        first_message: str,
        working_directory: str | None = None,
    ) -> None:
        self.current_session_id = session_id
        info = None
        if working_directory:
            info = await asyncio.to_thread(self._detect_worktree, working_directory)
        try:
            await self._storage.create_session(
                session_id,
                first_message,
                working_directory,
                branch_name=info.branch if info else None,
                is_worktree=info.is_worktree if info else False,
            )
        except Exception as exc:
            self._report(exc, "start_new_session")
            return
        await self.fetch_sessions()

    def select_session(self, session_id: str) -> None:
        # The list may not be loaded yet when resuming.
        self.current_session_id = session_id

    def clear_session(self) -> None:
        self.current_session_id = None

    async def update_current_session(self, new_id: str) -> None:
        """Follow the CLI when it reports a different id for the current conversation."""
        previous = self.current_session_id
        self.current_session_id = new_id
        if previous is None or previous == new_id:
            return
        try:
            await self._storage.rekey_session(previous, new_id)
        except Exception as exc:
            self._report(exc, "update_current_session")

    async def update_last_accessed(self, session_id: str) -> None:
        try:
            await self._storage.touch_last_accessed(session_id)
        except Exception as exc:
            self._logger.warning("session_touch_failed", session_id=session_id, error=compact_error_summary(exc))

    async def save_messages(self, messages: list[ChatMessage]) -> None:
        if self.current_session_id is None:
            return
        try:
            await self._storage.replace_messages(self.current_session_id, messages)
        except Exception as exc:
            self._report(exc, "save_messages")

    async def fetch_sessions(self) -> list[StoredSession]:
        self.is_loading_sessions = True
        self.sessions_error = None
        try:
            self.sessions = await self._storage.list_sessions()
        except Exception as exc:
            self.sessions = []
            self.sessions_error = exc
            self._logger.warning("session_list_failed", error=compact_error_summary(exc))
        finally:
            self.is_loading_sessions = False
        return self.sessions

    async def delete_session(self, session_id: str) -> None:
        try:
            await self._storage.delete_session(session_id)
        except Exception as exc:
            self.sessions_error = exc
            self._logger.warning("session_delete_failed", session_id=session_id, error=compact_error_summary(exc))
            return
        await self.fetch_sessions()
        if self.current_session_id == session_id:
            self.current_session_id = None

    async def delete_all_sessions(self) -> None:
        try:
            await self._storage.delete_all_sessions()
        except Exception as exc:
            self.sessions_error = exc
            self._logger.warning("session_delete_all_failed", error=compact_error_summary(exc))
            return
        self.current_session_id = None
        await self.fetch_sessions()
