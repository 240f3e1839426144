from __future__ import annotations

import json
import os
import tempfile
from contextlib import suppress
from pathlib import Path

from pydantic import ValidationError

from deskpilot.core.preferences.models import PreferenceDocument
from deskpilot.core.runtime.errors import (
    EmptyFileError,
    FileSystemError,
    InvalidFormatError,
    InvalidJSONError,
    NoPreferencesToExportError,
    PreferencesLoadError,
    StorageError,
    UnknownCorruptionError,
    compact_error_summary,
)
from deskpilot.core.runtime.worker import SerialWorker
from deskpilot.core.telemetry.logging import get_logger


def serialize_document(document: PreferenceDocument) -> str:
    return json.dumps(document.to_json_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _format_details(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "document"
    if first.get("type") == "missing":
        return f"Missing key: {location}"
    return f"Type mismatch for {location}: {first.get('msg', 'invalid value')}"


def parse_document(raw: bytes) -> PreferenceDocument:
    """Decode file contents, classifying every failure as a load error."""
    if not raw.strip():
        raise EmptyFileError()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidJSONError(exc) from exc
    try:
        return PreferenceDocument.model_validate(payload)
    except ValidationError as exc:
        raise InvalidFormatError(_format_details(exc)) from exc


def _atomic_write(target: Path, data: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            delete=False,
            dir=target.parent,
            prefix=f".{target.name}.",
            suffix=".tmp",
        ) as tmp_file:
            temp_path = tmp_file.name
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(temp_path, target)
        temp_path = None
    finally:
        if temp_path is not None:
            with suppress(FileNotFoundError):
                os.remove(temp_path)


class PreferenceStore:
    """Single-file preference document with a one-generation backup.

    ``<file>.backup`` holds the last valid document replaced by a save and
    ``<file>.corrupted`` holds a file set aside after failing to load. All
    methods are serialized on one worker thread.
    """

    def __init__(self, path: str | Path, logger=None) -> None:
        self._path = Path(path)
        self._logger = logger or get_logger("deskpilot.preferences.store")
        self._worker = SerialWorker("preference-store")

    @classmethod
    def from_config(cls, cfg, logger=None) -> PreferenceStore:
        return cls(cfg.preferences_path, logger=logger)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + ".backup")

    @property
    def corrupted_path(self) -> Path:
        return self._path.with_name(self._path.name + ".corrupted")

    def close(self) -> None:
        self._worker.shutdown()

    async def load(self) -> PreferenceDocument | None:
        return await self._worker.run(self._load_sync)

    async def save(self, document: PreferenceDocument) -> None:
        await self._worker.run(self._save_sync, document)

    async def restore_from_backup(self) -> PreferenceDocument | None:
        return await self._worker.run(self._restore_sync)

    async def delete_corrupted(self) -> Path | None:
        return await self._worker.run(self._delete_corrupted_sync)

    async def delete_all(self) -> None:
        await self._worker.run(self._delete_all_sync)

    async def has_backup(self) -> bool:
        return await self._worker.run(self.backup_path.is_file)

    async def export_to(self, destination: str | Path) -> None:
        await self._worker.run(self._export_sync, Path(destination))

    async def import_from(self, source: str | Path) -> PreferenceDocument:
        return await self._worker.run(self._import_sync, Path(source))

    # ── sync implementations ─────────────────────────────────────

    def _read(self, path: Path) -> PreferenceDocument:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise FileSystemError(exc) from exc
        try:
            return parse_document(raw)
        except PreferencesLoadError:
            raise
        except Exception as exc:
            raise UnknownCorruptionError(exc) from exc

    def _load_sync(self) -> PreferenceDocument | None:
        try:
            return self._read(self._path)
        except FileNotFoundError:
            return None
        except PreferencesLoadError as exc:
            self._logger.error(
                "preferences_load_failed",
                path=str(self._path),
                kind=exc.kind,
                detail=exc.technical_description,
            )
            raise

    def _save_sync(self, document: PreferenceDocument) -> None:
        data = serialize_document(document)
        self._backup_current()
        try:
            _atomic_write(self._path, data)
        except OSError as exc:
            raise StorageError("save_preferences", exc) from exc
        self._logger.debug("preferences_saved", path=str(self._path))

    def _backup_current(self) -> None:
        # Only a file that still loads is worth keeping as the previous generation.
        try:
            self._read(self._path)
        except (FileNotFoundError, PreferencesLoadError):
            return
        try:
            _atomic_write(self.backup_path, self._path.read_text(encoding="utf-8"))
        except OSError as exc:
            self._logger.warning("preferences_backup_failed", error=compact_error_summary(exc))

    def _restore_sync(self) -> PreferenceDocument | None:
        try:
            document = self._read(self.backup_path)
        except FileNotFoundError:
            self._logger.info("preferences_backup_missing", path=str(self.backup_path))
            return None
        except PreferencesLoadError as exc:
            self._logger.warning("preferences_backup_invalid", kind=exc.kind, detail=exc.technical_description)
            return None
        try:
            _atomic_write(self._path, self.backup_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StorageError("restore_preferences", exc) from exc
        self._logger.info("preferences_restored_from_backup", path=str(self._path))
        return document

    def _delete_corrupted_sync(self) -> Path | None:
        if not self._path.exists():
            return None
        try:
            os.replace(self._path, self.corrupted_path)
        except OSError as exc:
            raise StorageError("delete_corrupted_preferences", exc) from exc
        self._logger.warning("preferences_moved_aside", path=str(self.corrupted_path))
        return self.corrupted_path

    def _delete_all_sync(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError("delete_preferences", exc) from exc

    def _export_sync(self, destination: Path) -> None:
        try:
            document = self._read(self._path)
        except (FileNotFoundError, PreferencesLoadError) as exc:
            raise NoPreferencesToExportError() from exc
        try:
            _atomic_write(destination, serialize_document(document))
        except OSError as exc:
            raise StorageError("export_preferences", exc) from exc
        self._logger.info("preferences_exported", destination=destination.name)

    def _import_sync(self, source: Path) -> PreferenceDocument:
        try:
            document = self._read(source)
        except FileNotFoundError as exc:
            raise FileSystemError(exc) from exc
        self._save_sync(document)
        self._logger.info("preferences_imported", source=source.name)
        return document
