"""Preference document persisted as ``preferences.json``.

Field names are snake_case in Python and camelCase on disk; the aliases are
the file format and must not change.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StrictBool

DOCUMENT_VERSION = "1.0"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCTimestamp = Annotated[datetime, AfterValidator(_as_utc)]


class ToolPreference(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_allowed: StrictBool = Field(alias="isAllowed")
    last_seen: UTCTimestamp = Field(default_factory=_utcnow, alias="lastSeen")
    notes: str | None = None
    previous_names: list[str] = Field(default_factory=list, alias="previousNames")
    created_at: UTCTimestamp = Field(default_factory=_utcnow, alias="createdAt", frozen=True)
    last_modified: UTCTimestamp = Field(default_factory=_utcnow, alias="lastModified")

    @classmethod
    def new(cls, allowed: bool, notes: str | None = None, now: datetime | None = None) -> ToolPreference:
        ts = now or _utcnow()
        return cls(is_allowed=allowed, notes=notes, last_seen=ts, created_at=ts, last_modified=ts)

    def marked_seen(self, now: datetime | None = None) -> ToolPreference:
        return self.model_copy(update={"last_seen": now or _utcnow()}, deep=True)

    def with_allowed(self, allowed: bool, now: datetime | None = None) -> ToolPreference:
        if allowed == self.is_allowed:
            return self.model_copy(deep=True)
        return self.model_copy(update={"is_allowed": allowed, "last_modified": now or _utcnow()}, deep=True)

    def with_previous_name(self, name: str, now: datetime | None = None) -> ToolPreference:
        if name in self.previous_names:
            return self.model_copy(deep=True)
        return self.model_copy(
            update={"previous_names": [*self.previous_names, name], "last_modified": now or _utcnow()},
            deep=True,
        )

    def might_be_renamed_from(self, name: str) -> bool:
        return name in self.previous_names


class ToolPreferencesContainer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    claude_code: dict[str, ToolPreference] = Field(default_factory=dict, alias="claudeCode")
    mcp_servers: dict[str, dict[str, ToolPreference]] = Field(default_factory=dict, alias="mcpServers")


class GeneralPreferences(BaseModel):
    # Unknown keys written by newer builds are carried through untouched.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    auto_approve_low_risk: bool = Field(default=False, alias="autoApproveLowRisk")
    claude_command: str = Field(default="claude", alias="claudeCommand")
    claude_path: str = Field(default="", alias="claudePath")
    default_working_directory: str = Field(default="", alias="defaultWorkingDirectory")
    append_system_prompt: str = Field(default="", alias="appendSystemPrompt")
    system_prompt: str = Field(default="", alias="systemPrompt")
    show_detailed_permission_info: bool = Field(default=True, alias="showDetailedPermissionInfo")
    permission_request_timeout: float = Field(default=3600.0, alias="permissionRequestTimeout")
    permission_timeout_enabled: bool = Field(default=False, alias="permissionTimeoutEnabled")
    max_concurrent_permission_requests: int = Field(default=5, alias="maxConcurrentPermissionRequests")


class PreferenceDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: str
    last_updated: UTCTimestamp = Field(alias="lastUpdated")
    tool_preferences: ToolPreferencesContainer = Field(alias="toolPreferences")
    general_preferences: GeneralPreferences = Field(alias="generalPreferences")

    @classmethod
    def empty(cls, now: datetime | None = None) -> PreferenceDocument:
        return cls(
            version=DOCUMENT_VERSION,
            last_updated=now or _utcnow(),
            tool_preferences=ToolPreferencesContainer(),
            general_preferences=GeneralPreferences(),
        )

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def allowed_builtin_tools(self) -> list[str]:
        return sorted(name for name, pref in self.tool_preferences.claude_code.items() if pref.is_allowed)

    def allowed_server_tools(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for server in sorted(self.tool_preferences.mcp_servers):
            tools = sorted(n for n, p in self.tool_preferences.mcp_servers[server].items() if p.is_allowed)
            if tools:
                out[server] = tools
        return out

    def with_all_disallowed(self) -> PreferenceDocument:
        """Copy with every tool approval revoked; metadata is kept."""
        copy = self.model_copy(deep=True)
        container = copy.tool_preferences
        container.claude_code = {
            name: pref.model_copy(update={"is_allowed": False}) for name, pref in container.claude_code.items()
        }
        container.mcp_servers = {
            server: {name: pref.model_copy(update={"is_allowed": False}) for name, pref in tools.items()}
            for server, tools in container.mcp_servers.items()
        }
        return copy
