from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import delete, insert, inspect, literal_column, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from deskpilot.core.runtime.errors import (
    ConstraintViolationError,
    StorageError,
    StoreNotOpenError,
    compact_error_summary,
)
from deskpilot.core.runtime.worker import SerialWorker
from deskpilot.core.sessions.base import SessionStorage
from deskpilot.core.sessions.models import (
    ChatMessage,
    MessageRole,
    MessageType,
    StoredAttachment,
    StoredSession,
    ToolInputData,
)
from deskpilot.core.telemetry.logging import get_logger
from deskpilot.db.migrations.engine import BASELINE_VERSION, SCHEMA_VERSION, Migration, MigrationManager
from deskpilot.db.models import AttachmentRecord, MessageRecord, SessionRecord
from deskpilot.db.session import create_session_factory, init_db, session_scope

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore(SessionStorage):
    """SQLite-backed session history.

    Every call is queued on a single worker thread, so at most one read or
    write touches the database at a time and callers are served in the order
    they awaited. ``open()`` must finish (including schema migrations) before
    anything else is accepted.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        backup_retention: int = 3,
        migrations: list[Migration] | None = None,
        target_version: int = SCHEMA_VERSION,
        logger=None,
    ) -> None:
        self._db_path = Path(db_path)
        self._backup_retention = backup_retention
        self._migrations = migrations
        self._target_version = target_version
        self._logger = logger or get_logger("deskpilot.sessions")
        self._worker = SerialWorker("session-store")
        self._engine = None
        self._session_factory = None
        self._migration_manager: MigrationManager | None = None

    @classmethod
    def from_config(cls, cfg, logger=None) -> SessionStore:
        return cls(cfg.sessions_db_path, backup_retention=cfg.migrations.backup_retention, logger=logger)

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._session_factory is not None

    async def __aenter__(self) -> SessionStore:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self._worker.closed:
            self._worker = SerialWorker("session-store")
        await self._worker.run(self._open_sync)

    async def close(self) -> None:
        if self._worker.closed:
            return
        await self._worker.run(self._close_sync)
        self._worker.shutdown()

    def _open_sync(self) -> None:
        if self._session_factory is not None:
            return
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError("open", exc) from exc
        session_factory, engine = create_session_factory(self._db_path)
        try:
            manager = MigrationManager(
                engine,
                self._db_path,
                migrations=self._migrations,
                target_version=self._target_version,
                backup_retention=self._backup_retention,
                logger=self._logger,
            )
            if manager.current_version() == 0 and inspect(engine).has_table("sessions"):
                # Files written before versioning existed carry the baseline schema.
                manager.set_version(BASELINE_VERSION)
                self._logger.info("legacy_schema_stamped", version=BASELINE_VERSION, path=str(self._db_path))
            manager.run_migrations_if_needed()
            # A schema newer than this build understands is never touched.
            if manager.current_version() <= manager.target_version:
                init_db(engine)
        except SQLAlchemyError as exc:
            engine.dispose()
            raise StorageError("open", exc) from exc
        except Exception:
            engine.dispose()
            raise
        self._engine = engine
        self._session_factory = session_factory
        self._migration_manager = manager
        self._logger.info("session_store_opened", path=str(self._db_path), schema_version=manager.current_version())

    def _close_sync(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self._migration_manager = None

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        if self._worker.closed:
            raise StoreNotOpenError(operation)
        return await self._worker.run(self._guarded, operation, fn, *args)

    def _guarded(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        if self._session_factory is None:
            raise StoreNotOpenError(operation)
        try:
            return fn(*args)
        except IntegrityError as exc:
            raise ConstraintViolationError(operation, exc) from exc
        except SQLAlchemyError as exc:
            self._logger.error("session_store_error", operation=operation, error=compact_error_summary(exc))
            raise StorageError(operation, exc) from exc

    # ── maintenance ──────────────────────────────────────────────

    async def schema_version(self) -> int:
        return await self._call("schema_version", lambda: self._migration_manager.current_version())

    async def verify_integrity(self) -> None:
        await self._call("verify_integrity", lambda: self._migration_manager.validate_database())

    # ── sessions ─────────────────────────────────────────────────

    async def create_session(
        self,
        session_id: str,
        first_message: str,
        working_directory: str | None = None,
        branch_name: str | None = None,
        is_worktree: bool = False,
    ) -> None:
        await self._call(
            "create_session",
            self._create_session_sync,
            session_id,
            first_message,
            working_directory,
            branch_name,
            is_worktree,
        )

    def _create_session_sync(
        self,
        session_id: str,
        first_message: str,
        working_directory: str | None,
        branch_name: str | None,
        is_worktree: bool,
    ) -> None:
        now = _utcnow()
        with session_scope(self._session_factory) as db:
            db.add(
                SessionRecord(
                    id=session_id,
                    created_at=now,
                    first_user_message=first_message,
                    last_accessed_at=now,
                    working_directory=working_directory,
                    branch_name=branch_name,
                    is_worktree=is_worktree,
                )
            )
        self._logger.info("session_created", session_id=session_id)

    async def list_sessions(self) -> list[StoredSession]:
        return await self._call("list_sessions", self._list_sessions_sync)

    def _list_sessions_sync(self) -> list[StoredSession]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(SessionRecord).order_by(SessionRecord.last_accessed_at.desc(), SessionRecord.id)
            ).scalars().all()
            if not rows:
                return []
            message_rows = db.execute(
                select(MessageRecord).order_by(MessageRecord.timestamp, literal_column("messages.rowid"))
            ).scalars().all()
            attachments = self._attachments_by_message(db)

            by_session: dict[str, list[ChatMessage]] = defaultdict(list)
            for message_row in message_rows:
                message = self._to_message(message_row, attachments.get(message_row.id, []))
                if message is not None:
                    by_session[message_row.session_id].append(message)
            return [self._to_session(row, by_session.get(row.id, [])) for row in rows]

    async def get_session(self, session_id: str) -> StoredSession | None:
        return await self._call("get_session", self._get_session_sync, session_id)

    def _get_session_sync(self, session_id: str) -> StoredSession | None:
        with session_scope(self._session_factory) as db:
            row = db.get(SessionRecord, session_id)
            if row is None:
                return None
            message_rows = db.execute(
                select(MessageRecord)
                .where(MessageRecord.session_id == session_id)
                .order_by(MessageRecord.timestamp, literal_column("messages.rowid"))
            ).scalars().all()
            attachments = self._attachments_by_message(db, session_id)
            messages = []
            for message_row in message_rows:
                message = self._to_message(message_row, attachments.get(message_row.id, []))
                if message is not None:
                    messages.append(message)
            return self._to_session(row, messages)

    async def touch_last_accessed(self, session_id: str) -> None:
        await self._call("touch_last_accessed", self._touch_sync, session_id)

    def _touch_sync(self, session_id: str) -> None:
        with session_scope(self._session_factory) as db:
            db.execute(
                update(SessionRecord).where(SessionRecord.id == session_id).values(last_accessed_at=_utcnow())
            )

    async def delete_session(self, session_id: str) -> None:
        await self._call("delete_session", self._delete_session_sync, session_id)

    def _delete_session_sync(self, session_id: str) -> None:
        with session_scope(self._session_factory) as db:
            removed = db.execute(delete(SessionRecord).where(SessionRecord.id == session_id)).rowcount
        self._logger.info("session_deleted", session_id=session_id, rows=removed)

    async def delete_all_sessions(self) -> None:
        await self._call("delete_all_sessions", self._delete_all_sync)

    def _delete_all_sync(self) -> None:
        with session_scope(self._session_factory) as db:
            removed = db.execute(delete(SessionRecord)).rowcount
        self._logger.info("sessions_deleted_all", rows=removed)

    # ── messages ─────────────────────────────────────────────────

    async def replace_messages(self, session_id: str, messages: list[ChatMessage]) -> None:
        await self._call("replace_messages", self._replace_messages_sync, session_id, list(messages))

    def _replace_messages_sync(self, session_id: str, messages: list[ChatMessage]) -> None:
        message_rows: list[dict[str, Any]] = []
        attachment_rows: list[dict[str, Any]] = []
        for message in messages:
            message_id = str(message.id)
            message_rows.append(
                {
                    "id": message_id,
                    "session_id": session_id,
                    "content": message.content,
                    "role": message.role.value,
                    "timestamp": message.timestamp,
                    "message_type": message.message_type.value,
                    "tool_name": message.tool_name,
                    "tool_input_data": message.tool_input_data.encode() if message.tool_input_data else None,
                    "is_error": message.is_error,
                    "is_complete": message.is_complete,
                    "was_cancelled": message.was_cancelled,
                    "task_group_id": str(message.task_group_id) if message.task_group_id else None,
                    "is_task_container": message.is_task_container,
                }
            )
            for index, attachment in enumerate(message.attachments):
                attachment_rows.append(
                    {
                        "id": f"{message_id}_{index}",
                        "message_id": message_id,
                        "file_name": attachment.file_name,
                        "file_path": attachment.file_path,
                        "file_type": attachment.file_type,
                    }
                )

        with session_scope(self._session_factory) as db:
            db.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
            if message_rows:
                db.execute(insert(MessageRecord), message_rows)
            if attachment_rows:
                db.execute(insert(AttachmentRecord), attachment_rows)
        self._logger.debug(
            "messages_replaced",
            session_id=session_id,
            messages=len(message_rows),
            attachments=len(attachment_rows),
        )

    async def rekey_session(self, old_id: str, new_id: str) -> None:
        await self._call("rekey_session", self._rekey_sync, old_id, new_id)

    def _rekey_sync(self, old_id: str, new_id: str) -> None:
        with session_scope(self._session_factory) as db:
            if db.get(SessionRecord, new_id) is not None:
                self._logger.info("session_rekey_skipped", old_id=old_id, new_id=new_id, reason="target_exists")
                return
            old = db.get(SessionRecord, old_id)
            if old is None:
                self._logger.warning("session_rekey_skipped", old_id=old_id, new_id=new_id, reason="source_missing")
                return
            # Parent first, then children, then the old parent: the foreign key
            # rejects orphaned messages and the cascade would eat them.
            db.add(
                SessionRecord(
                    id=new_id,
                    created_at=old.created_at,
                    first_user_message=old.first_user_message,
                    last_accessed_at=_utcnow(),
                    working_directory=old.working_directory,
                    branch_name=old.branch_name,
                    is_worktree=old.is_worktree,
                )
            )
            db.flush()
            moved = db.execute(
                update(MessageRecord).where(MessageRecord.session_id == old_id).values(session_id=new_id)
            ).rowcount
            db.execute(delete(SessionRecord).where(SessionRecord.id == old_id))
        self._logger.info("session_rekeyed", old_id=old_id, new_id=new_id, messages=moved)

    # ── row mapping ──────────────────────────────────────────────

    def _attachments_by_message(self, db: Session, session_id: str | None = None) -> dict[str, list[StoredAttachment]]:
        stmt = select(AttachmentRecord).join(MessageRecord, AttachmentRecord.message_id == MessageRecord.id)
        if session_id is not None:
            stmt = stmt.where(MessageRecord.session_id == session_id)
        stmt = stmt.order_by(literal_column("attachments.rowid"))
        grouped: dict[str, list[StoredAttachment]] = defaultdict(list)
        for row in db.execute(stmt).scalars():
            grouped[row.message_id].append(
                StoredAttachment(file_name=row.file_name, file_path=row.file_path, file_type=row.file_type)
            )
        return grouped

    def _to_session(self, row: SessionRecord, messages: list[ChatMessage]) -> StoredSession:
        return StoredSession(
            id=row.id,
            created_at=row.created_at,
            first_user_message=row.first_user_message,
            last_accessed_at=row.last_accessed_at,
            messages=messages,
            working_directory=row.working_directory,
            branch_name=row.branch_name,
            is_worktree=bool(row.is_worktree),
        )

    def _to_message(self, row: MessageRecord, attachments: list[StoredAttachment]) -> ChatMessage | None:
        try:
            message_id = uuid.UUID(row.id)
            role = MessageRole(row.role)
            message_type = MessageType(row.message_type)
            task_group_id = uuid.UUID(row.task_group_id) if row.task_group_id else None
        except ValueError:
            self._logger.warning("message_row_skipped", message_id=row.id, session_id=row.session_id)
            return None

        tool_input = None
        if row.tool_input_data:
            try:
                tool_input = ToolInputData.decode(row.tool_input_data)
            except (ValueError, TypeError, AttributeError) as exc:
                self._logger.warning(
                    "tool_input_undecodable",
                    message_id=row.id,
                    error=compact_error_summary(exc),
                )

        return ChatMessage(
            id=message_id,
            role=role,
            content=row.content,
            timestamp=row.timestamp,
            is_complete=bool(row.is_complete),
            message_type=message_type,
            tool_name=row.tool_name,
            tool_input_data=tool_input,
            is_error=bool(row.is_error),
            attachments=list(attachments),
            was_cancelled=bool(row.was_cancelled),
            task_group_id=task_group_id,
            is_task_container=bool(row.is_task_container),
        )
