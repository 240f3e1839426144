"""Error taxonomy shared by the session store, migration engine and preference store.

Every error is a subclass of :class:`DeskpilotError` and carries a stable ``kind``
so callers can switch on it without importing each class.
"""

from __future__ import annotations

import re
from typing import ClassVar


def _compact_message(message: str, max_len: int = 220) -> str:
    msg = message.lower()
    msg = re.sub(r"\s+", " ", msg)
    return msg.strip()[:max_len]


def compact_error_summary(exc: BaseException, max_len: int = 220) -> str:
    return f"{exc.__class__.__name__}: {_compact_message(str(exc), max_len=max_len)}"


class DeskpilotError(Exception):
    kind: ClassVar[str] = "deskpilot_error"


# ── Storage ──────────────────────────────────────────────────────


class StorageError(DeskpilotError):
    kind = "storage_error"

    def __init__(self, operation: str, cause: BaseException | None = None, message: str | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = message or (compact_error_summary(cause) if cause is not None else "storage failure")
        super().__init__(f"{operation} failed: {detail}")


class ConstraintViolationError(StorageError):
    kind = "constraint_violation"


class StoreNotOpenError(StorageError):
    kind = "store_not_open"

    def __init__(self, operation: str) -> None:
        super().__init__(operation, message="store is not open")


class OperationNotSupportedError(StorageError):
    kind = "operation_not_supported"

    def __init__(self, operation: str, reason: str) -> None:
        self.reason = reason
        super().__init__(operation, message=f"operation not supported: {reason}")


# ── Schema migrations ────────────────────────────────────────────


class MigrationError(DeskpilotError):
    kind = "migration_error"


class InvalidVersionError(MigrationError):
    kind = "invalid_version"

    def __init__(self, current: int, target: int) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid migration: current version {current} cannot migrate to {target}")


class MigrationFailedError(MigrationError):
    kind = "migration_failed"

    def __init__(self, version: int, cause: BaseException) -> None:
        self.version = version
        self.cause = cause
        super().__init__(f"Migration to version {version} failed: {compact_error_summary(cause)}")


class BackupFailedError(MigrationError):
    kind = "backup_failed"

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Failed to backup database: {compact_error_summary(cause)}")


class RollbackNotSupportedError(MigrationError):
    kind = "rollback_not_supported"

    def __init__(self, version: int) -> None:
        self.version = version
        super().__init__(f"Rollback not supported for version {version}")


class DatabaseCorruptedError(MigrationError):
    kind = "database_corrupted"

    def __init__(self, detail: str = "unknown") -> None:
        self.detail = detail
        super().__init__(f"Database appears to be corrupted: {detail}")


# ── Preference loading ───────────────────────────────────────────


class PreferencesLoadError(DeskpilotError):
    kind = "preferences_load_error"
    recovery_suggestion: ClassVar[str] = "Reset preferences to start fresh with safe defaults"

    @property
    def technical_description(self) -> str:
        return str(self)


class InvalidJSONError(PreferencesLoadError):
    kind = "invalid_json"

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__("Preferences file contains invalid data and cannot be read")

    @property
    def technical_description(self) -> str:
        return f"JSON parsing failed: {self.cause}"


class InvalidFormatError(PreferencesLoadError):
    kind = "invalid_format"

    def __init__(self, details: str) -> None:
        self.details = details
        super().__init__(f"Preferences file format is incorrect: {details}")

    @property
    def technical_description(self) -> str:
        return f"Format validation failed: {self.details}"


class EmptyFileError(PreferencesLoadError):
    kind = "empty_file"

    def __init__(self) -> None:
        super().__init__("Preferences file is empty")

    @property
    def technical_description(self) -> str:
        return "File has 0 bytes or only whitespace"


class FileSystemError(PreferencesLoadError):
    kind = "filesystem_error"
    recovery_suggestion = "Check file permissions and try again"

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__("Could not access preferences file due to system error")

    @property
    def technical_description(self) -> str:
        return f"File system error: {self.cause}"


class UnknownCorruptionError(PreferencesLoadError):
    kind = "unknown_corruption"

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__("Preferences file is corrupted")

    @property
    def technical_description(self) -> str:
        return f"Unknown corruption: {self.cause}"


# ── Preference operations ────────────────────────────────────────


class PreferencesError(DeskpilotError):
    kind = "preferences_error"


class NoPreferencesToExportError(PreferencesError):
    kind = "no_preferences_to_export"

    def __init__(self) -> None:
        super().__init__("No preferences found to export")


class PreferencesCorruptedStateError(PreferencesError):
    kind = "preferences_corrupted_state"

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} is unavailable until corrupted preferences are reset or restored")


class PreferencesNotInitializedError(PreferencesError):
    kind = "preferences_not_initialized"

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} requires preferences to be loaded first")
