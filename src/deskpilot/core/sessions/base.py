from __future__ import annotations

from abc import ABC, abstractmethod

from deskpilot.core.sessions.models import ChatMessage, StoredSession


class SessionStorage(ABC):
    """Async persistence interface the session manager talks to."""

    @abstractmethod
    async def create_session(
        self,
        session_id: str,
        first_message: str,
        working_directory: str | None = None,
        branch_name: str | None = None,
        is_worktree: bool = False,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_sessions(self) -> list[StoredSession]:
        raise NotImplementedError

    @abstractmethod
    async def get_session(self, session_id: str) -> StoredSession | None:
        raise NotImplementedError

    @abstractmethod
    async def touch_last_accessed(self, session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_all_sessions(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def replace_messages(self, session_id: str, messages: list[ChatMessage]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def rekey_session(self, old_id: str, new_id: str) -> None:
        raise NotImplementedError


class NoOpSessionStorage(SessionStorage):
    """Storage used when history is switched off: accepts everything, keeps nothing."""

    async def create_session(
        self,
        session_id: str,
        first_message: str,
        working_directory: str | None = None,
        branch_name: str | None = None,
        is_worktree: bool = False,
    ) -> None:
        return None

    async def list_sessions(self) -> list[StoredSession]:
        return []

    async def get_session(self, session_id: str) -> StoredSession | None:
        return None

    async def touch_last_accessed(self, session_id: str) -> None:
        return None

    async def delete_session(self, session_id: str) -> None:
        return None

    async def delete_all_sessions(self) -> None:
        return None

    async def replace_messages(self, session_id: str, messages: list[ChatMessage]) -> None:
        return None

    async def rekey_session(self, old_id: str, new_id: str) -> None:
        return None
