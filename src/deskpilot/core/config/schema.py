from __future__ import annotations

import os
import sys
from pathlib import Path

from pydantic import BaseModel, Field


def default_data_dir() -> Path:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "DeskPilot"
    if sys.platform.startswith("win"):
        appdata = os.getenv("APPDATA")
        return Path(appdata) / "DeskPilot" if appdata else home / "AppData" / "Roaming" / "DeskPilot"
    xdg = os.getenv("XDG_DATA_HOME")
    return Path(xdg) / "deskpilot" if xdg else home / ".local" / "share" / "deskpilot"


class StorageConfig(BaseModel):
    data_dir: str | None = None
    sessions_db_name: str = "sessions.sqlite"
    preferences_file_name: str = "preferences.json"
    native_sessions_dir: str = "~/.claude/projects"

    def resolved_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return default_data_dir()


class MigrationConfig(BaseModel):
    backup_retention: int = Field(default=3, ge=1)


class ReconcilerConfig(BaseModel):
    similarity_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    min_name_length: int = Field(default=3, ge=0)
    rename_patterns: list[tuple[str, str]] = Field(
        default_factory=lambda: [
            ("read", "readfile"),
            ("write", "writefile"),
            ("exec", "execute"),
            ("del", "delete"),
            ("rm", "remove"),
        ]
    )
    safe_tools: list[str] = Field(
        default_factory=lambda: [
            "Read",
            "Grep",
            "Glob",
            "LS",
            "WebSearch",
            "TodoWrite",
            "ExitPlanMode",
            "exit_plan_mode",
        ]
    )
    risky_keywords: list[str] = Field(
        default_factory=lambda: ["bash", "exec", "write", "edit", "delete", "remove", "kill"]
    )


class TelemetryConfig(BaseModel):
    log_level: str = "INFO"
    json_logs: bool = True


class AppConfig(BaseModel):
    environment: str = "dev"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    migrations: MigrationConfig = Field(default_factory=MigrationConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @property
    def sessions_db_path(self) -> Path:
        return self.storage.resolved_data_dir() / self.storage.sessions_db_name

    @property
    def preferences_path(self) -> Path:
        return self.storage.resolved_data_dir() / self.storage.preferences_file_name

    @property
    def native_sessions_dir(self) -> Path:
        return Path(self.storage.native_sessions_dir).expanduser()
