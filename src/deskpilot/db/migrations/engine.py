"""Versioned schema migrations for the session database.

The schema version lives in SQLite's own ``PRAGMA user_version`` slot rather
than in a table. Migration bodies are plain modules under ``versions/`` written
against alembic's ``op`` proxy; this module decides which of them run, backs the
database file up first, and undoes a failed step where the migration allows it.
"""

from __future__ import annotations

import importlib.util
import sqlite3
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from deskpilot.core.runtime.errors import (
    BackupFailedError,
    DatabaseCorruptedError,
    InvalidVersionError,
    MigrationFailedError,
    RollbackNotSupportedError,
    compact_error_summary,
)
from deskpilot.core.telemetry.logging import get_logger

VERSIONS_DIR = Path(__file__).resolve().parent / "versions"
SCHEMA_VERSION = 3
BASELINE_VERSION = 1


@dataclass(slots=True, frozen=True)
class Migration:
    version: int
    description: str
    upgrade: Callable[[], None]
    downgrade: Callable[[], None] | None = None


def load_migrations(directory: Path = VERSIONS_DIR) -> list[Migration]:
    migrations: list[Migration] = []
    for path in sorted(directory.glob("[0-9][0-9][0-9][0-9]_*.py")):
        spec = importlib.util.spec_from_file_location(f"deskpilot_migration_{path.stem}", path)
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot load migration file {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        migrations.append(
            Migration(
                version=int(module.revision),
                description=str(getattr(module, "description", "")),
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )
    return sorted(migrations, key=lambda m: m.version)


def validate_migrations(migrations: Iterable[Migration], target_version: int) -> None:
    seen: set[int] = set()
    for migration in migrations:
        if migration.version in seen:
            raise ValueError(f"duplicate migration version {migration.version}")
        if migration.version <= BASELINE_VERSION:
            raise ValueError(f"migration version {migration.version} must be above baseline {BASELINE_VERSION}")
        if migration.version > target_version:
            raise ValueError(f"migration version {migration.version} exceeds target {target_version}")
        seen.add(migration.version)


class MigrationManager:
    def __init__(
        self,
        engine: Engine,
        db_path: str | Path,
        *,
        migrations: list[Migration] | None = None,
        target_version: int = SCHEMA_VERSION,
        backup_retention: int = 3,
        logger=None,
    ) -> None:
        self._engine = engine
        self._db_path = Path(db_path)
        self._migrations = sorted(migrations if migrations is not None else load_migrations(), key=lambda m: m.version)
        validate_migrations(self._migrations, target_version)
        self._target_version = target_version
        self._backup_retention = backup_retention
        self._logger = logger or get_logger("deskpilot.migrations")

    @property
    def target_version(self) -> int:
        return self._target_version

    @property
    def migrations(self) -> list[Migration]:
        return list(self._migrations)

    def current_version(self) -> int:
        with self._engine.connect() as conn:
            value = conn.exec_driver_sql("PRAGMA user_version").scalar()
        return int(value or 0)

    def set_version(self, version: int) -> None:
        with self._engine.begin() as conn:
            conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")

    def run_migrations_if_needed(self) -> None:
        current = self.current_version()
        target = self._target_version
        if current > target:
            self._logger.warning("schema_newer_than_supported", current_version=current, target_version=target)
            return
        if current == target:
            return
        self._run(current, target)

    def migrate_to(self, target: int) -> None:
        current = self.current_version()
        if target < current or target > self._target_version:
            raise InvalidVersionError(current, target)
        if target == current:
            return
        self._run(current, target)

    def _run(self, current: int, target: int) -> None:
        if current == 0:
            # Nothing stored yet, so the tables are created at their newest shape.
            self.set_version(target)
            self._logger.info("schema_version_stamped", version=target)
            return

        backup_path = self.create_backup()
        pending = [m for m in self._migrations if current < m.version <= target]
        self._logger.info(
            "migration_started",
            from_version=current,
            to_version=target,
            pending=[m.version for m in pending],
            backup=str(backup_path),
        )
        for migration in pending:
            self._apply(migration)
            self.set_version(migration.version)
            self._logger.info("migration_applied", version=migration.version, description=migration.description)
        self._logger.info("migration_completed", version=target)
        self.cleanup_old_backups()

    def _apply(self, migration: Migration) -> None:
        before = self._schema_fingerprint()
        try:
            self._run_operation(migration.upgrade)
        except Exception as exc:
            self._logger.error(
                "migration_failed",
                version=migration.version,
                error=compact_error_summary(exc),
            )
            if self._schema_changed_since(before):
                self._attempt_rollback(migration)
            else:
                self._logger.info("migration_body_rolled_back", version=migration.version)
            raise MigrationFailedError(migration.version, exc) from exc

    def _schema_fingerprint(self) -> list[tuple] | None:
        try:
            with self._engine.connect() as conn:
                rows = conn.exec_driver_sql(
                    "SELECT type, name, tbl_name, sql FROM sqlite_master ORDER BY type, name"
                ).all()
        except SQLAlchemyError:
            return None
        return [tuple(row) for row in rows]

    def _schema_changed_since(self, before: list[tuple] | None) -> bool:
        # The body's transaction has been rolled back. Anything still visible
        # was committed outside it and needs the reverse action.
        after = self._schema_fingerprint()
        return before is None or after is None or after != before

    def _attempt_rollback(self, migration: Migration) -> None:
        if migration.downgrade is None:
            err = RollbackNotSupportedError(migration.version)
            self._logger.warning("migration_rollback_unavailable", version=migration.version, error=str(err))
            return
        try:
            self._run_operation(migration.downgrade)
        except Exception as exc:
            self._logger.error(
                "migration_rollback_failed",
                version=migration.version,
                error=compact_error_summary(exc),
            )
            return
        self._logger.info("migration_rolled_back", version=migration.version)

    def _run_operation(self, fn: Callable[[], None]) -> None:
        with self._engine.begin() as conn:
            ctx = MigrationContext.configure(connection=conn)
            with Operations.context(ctx):
                fn()

    # ── backups ──────────────────────────────────────────────────

    def create_backup(self) -> Path:
        backup_path = self._db_path.with_name(f"{self._db_path.name}.backup_{time.time():.6f}")
        try:
            raw = self._engine.raw_connection()
            try:
                dest = sqlite3.connect(str(backup_path))
                try:
                    raw.driver_connection.backup(dest)
                finally:
                    dest.close()
            finally:
                raw.close()
        except (sqlite3.Error, SQLAlchemyError, OSError) as exc:
            raise BackupFailedError(exc) from exc
        self._logger.info("database_backup_created", path=str(backup_path))
        return backup_path

    def list_backups(self) -> list[Path]:
        """Backups of this database, newest first."""
        prefix = f"{self._db_path.name}.backup_"
        found = [p for p in self._db_path.parent.glob(f"{prefix}*") if p.is_file()]

        def _created_at(path: Path) -> float:
            try:
                return float(path.name[len(prefix):])
            except ValueError:
                return path.stat().st_mtime

        return sorted(found, key=_created_at, reverse=True)

    def cleanup_old_backups(self) -> int:
        removed = 0
        try:
            stale = self.list_backups()[self._backup_retention:]
        except OSError as exc:
            self._logger.warning("backup_cleanup_failed", error=compact_error_summary(exc))
            return 0
        for path in stale:
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                self._logger.warning("backup_cleanup_failed", path=str(path), error=compact_error_summary(exc))
        if removed:
            self._logger.info("backup_cleanup_done", removed=removed)
        return removed

    def validate_database(self) -> None:
        try:
            with self._engine.connect() as conn:
                rows = [str(r[0]) for r in conn.exec_driver_sql("PRAGMA integrity_check").fetchall()]
        except SQLAlchemyError as exc:
            raise DatabaseCorruptedError(compact_error_summary(exc)) from exc
        if rows != ["ok"]:
            raise DatabaseCorruptedError("; ".join(rows) or "integrity check returned nothing")
