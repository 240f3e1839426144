from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from deskpilot.core.permissions.policy_engine import ToolSafetyPolicy
from deskpilot.core.preferences.models import (
    DOCUMENT_VERSION,
    GeneralPreferences,
    PreferenceDocument,
    ToolPreference,
    ToolPreferencesContainer,
)
from deskpilot.core.preferences.reconciler import DiscoveredTools, PreferencesReconciler
from deskpilot.core.preferences.store import PreferenceStore
from deskpilot.core.preferences.tools import BUILTIN_TOOLS, mcp_tool_name
from deskpilot.core.runtime.errors import (
    PreferencesCorruptedStateError,
    PreferencesLoadError,
    PreferencesNotInitializedError,
)
from deskpilot.core.telemetry.logging import get_logger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoadState(str, Enum):
    LOADED = "loaded"
    NOT_FOUND = "not_found"
    CORRUPTED = "corrupted"


class PreferencesService:
    """Owns the in-memory preference document and writes every change through.

    After a failed load the service stays in the corrupted state: no tool is
    approved, nothing is written, and mutators refuse to run until the user
    resets or restores from backup.
    """

    def __init__(
        self,
        store: PreferenceStore,
        reconciler: PreferencesReconciler | None = None,
        policy: ToolSafetyPolicy | None = None,
        *,
        builtin_tools: Iterable[str] = BUILTIN_TOOLS,
        logger=None,
    ) -> None:
        self._store = store
        self._policy = policy or ToolSafetyPolicy()
        self._reconciler = reconciler or PreferencesReconciler(self._policy)
        self._builtin_tools = tuple(builtin_tools)
        self._logger = logger or get_logger("deskpilot.preferences")
        self._document: PreferenceDocument | None = None
        self.state: LoadState | None = None
        self.corruption_error: PreferencesLoadError | None = None
        self.backup_available = False

    @classmethod
    def from_config(cls, cfg, logger=None) -> PreferencesService:
        policy = ToolSafetyPolicy.from_config(cfg.reconciler)
        return cls(
            PreferenceStore.from_config(cfg, logger=logger),
            PreferencesReconciler.from_config(cfg.reconciler),
            policy,
            logger=logger,
        )

    @property
    def document(self) -> PreferenceDocument | None:
        return self._document

    @property
    def is_corrupted(self) -> bool:
        return self.state == LoadState.CORRUPTED

    async def initialize(self) -> LoadState:
        try:
            loaded = await self._store.load()
        except PreferencesLoadError as exc:
            self._document = None
            self.state = LoadState.CORRUPTED
            self.corruption_error = exc
            self._logger.warning(
                "preferences_corrupted",
                kind=exc.kind,
                detail=exc.technical_description,
                note="no tools will be auto-approved until reset or restore",
            )
        else:
            self.corruption_error = None
            if loaded is None:
                self.state = LoadState.NOT_FOUND
                self._document = self.default_document()
                await self._store.save(self._document)
                self._logger.info("preferences_seeded", allowed=self.allowed_tools)
            else:
                self.state = LoadState.LOADED
                self._document = loaded
                self._logger.info("preferences_loaded", allowed=len(self.allowed_tools))
        self.backup_available = await self._store.has_backup()
        return self.state

    def default_document(self, now: datetime | None = None) -> PreferenceDocument:
        ts = now or _utcnow()
        builtin: dict[str, ToolPreference] = {}
        for name in sorted(self._builtin_tools):
            decision = self._policy.evaluate_builtin(name)
            builtin[name] = ToolPreference.new(decision.allowed, notes=decision.reason, now=ts)
        return PreferenceDocument(
            version=DOCUMENT_VERSION,
            last_updated=ts,
            tool_preferences=ToolPreferencesContainer(claude_code=builtin),
            general_preferences=GeneralPreferences(),
        )

    # ── read views ───────────────────────────────────────────────

    @property
    def allowed_tools(self) -> list[str]:
        if self._document is None or self.is_corrupted:
            return []
        names = list(self._document.allowed_builtin_tools())
        for server, tools in self._document.allowed_server_tools().items():
            names.extend(mcp_tool_name(server, tool) for tool in tools)
        return sorted(names)

    @property
    def mcp_server_tools(self) -> dict[str, list[str]]:
        if self._document is None:
            return {}
        servers = self._document.tool_preferences.mcp_servers
        return {server: sorted(servers[server]) for server in sorted(servers)}

    @property
    def selected_mcp_tools(self) -> dict[str, list[str]]:
        if self._document is None or self.is_corrupted:
            return {}
        return self._document.allowed_server_tools()

    @property
    def general(self) -> GeneralPreferences:
        if self._document is None:
            return GeneralPreferences()
        return self._document.general_preferences

    # ── mutations ────────────────────────────────────────────────

    def _require_initialized(self, operation: str) -> None:
        # Until the file has been read, a save could replace a corrupted
        # document that has not been set aside yet.
        if self.state is None:
            raise PreferencesNotInitializedError(operation)

    def _require_writable(self, operation: str) -> PreferenceDocument:
        self._require_initialized(operation)
        if self.is_corrupted or self._document is None:
            raise PreferencesCorruptedStateError(operation)
        return self._document

    async def set_tool_allowed(self, tool_name: str, allowed: bool, server: str | None = None) -> None:
        current = self._require_writable("set_tool_allowed")
        now = _utcnow()
        updated = current.model_copy(deep=True)
        container = updated.tool_preferences
        group = container.claude_code if server is None else container.mcp_servers.setdefault(server, {})
        existing = group.get(tool_name)
        group[tool_name] = (
            existing.with_allowed(allowed, now) if existing is not None else ToolPreference.new(allowed, now=now)
        )
        updated.last_updated = now
        await self._store.save(updated)
        self._document = updated
        self._logger.info("tool_preference_set", tool=tool_name, server=server, allowed=allowed)

    async def update_general(self, **changes: Any) -> GeneralPreferences:
        current = self._require_writable("update_general")
        fields = GeneralPreferences.model_fields
        unknown = sorted(k for k in changes if k not in fields)
        if unknown:
            raise ValueError(f"unknown general preference(s): {', '.join(unknown)}")
        payload = current.general_preferences.model_dump(by_alias=True)
        for key, value in changes.items():
            payload[fields[key].alias or key] = value
        general = GeneralPreferences.model_validate(payload)

        updated = current.model_copy(deep=True)
        updated.general_preferences = general
        updated.last_updated = _utcnow()
        await self._store.save(updated)
        self._document = updated
        self._logger.info("general_preferences_updated", fields=sorted(changes))
        return general

    async def reconcile_tools(self, discovered: DiscoveredTools) -> PreferenceDocument:
        self._require_initialized("reconcile_tools")
        if self.is_corrupted:
            # Never persist, never approve: the stored file is unreadable.
            reconciled = self._reconciler.reconcile(discovered, None).with_all_disallowed()
            self._document = reconciled
            self._logger.warning("preferences_reconcile_skipped_save", reason="corrupted")
            return reconciled

        reconciled, report = self._reconciler.reconcile_with_report(discovered, self._document)
        await self._store.save(reconciled)
        self._document = reconciled
        counts = Counter(entry.status.value for entry in report)
        self._logger.info(
            "tools_reconciled",
            renames=[f"{e.renamed_from}->{e.tool_name}" for e in report if e.renamed_from],
            allowed=len(self.allowed_tools),
            **{status: count for status, count in sorted(counts.items())},
        )
        return reconciled

    async def reset_after_corruption(self) -> None:
        self._require_initialized("reset_after_corruption")
        moved = await self._store.delete_corrupted()
        self._logger.info("preferences_reset_after_corruption", moved_to=str(moved) if moved else None)
        self.state = LoadState.LOADED
        self.corruption_error = None
        await self.reset_to_defaults()

    async def restore_from_backup(self) -> bool:
        self._require_initialized("restore_from_backup")
        restored = await self._store.restore_from_backup()
        if restored is None:
            self._logger.warning("preferences_restore_failed")
            return False
        self._document = restored
        self.state = LoadState.LOADED
        self.corruption_error = None
        self._logger.info("preferences_restored", allowed=len(self.allowed_tools))
        return True

    async def reset_to_defaults(self) -> None:
        self._require_initialized("reset_to_defaults")
        if self.is_corrupted:
            raise PreferencesCorruptedStateError("reset_to_defaults")
        self._document = self.default_document()
        await self._store.save(self._document)
        self.backup_available = await self._store.has_backup()
        self._logger.info("preferences_reset_to_defaults")

    async def has_backup_available(self) -> bool:
        self.backup_available = await self._store.has_backup()
        return self.backup_available

    def close(self) -> None:
        self._store.close()
