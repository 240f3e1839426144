from __future__ import annotations

import base64
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TITLE_MAX_CHARS = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_USE = "toolUse"
    TOOL_RESULT = "toolResult"
    TOOL_ERROR = "toolError"
    TOOL_DENIED = "toolDenied"
    THINKING = "thinking"


class MessageType(str, Enum):
    TEXT = "text"
    TOOL_USE = "toolUse"
    TOOL_RESULT = "toolResult"
    TOOL_ERROR = "toolError"
    TOOL_DENIED = "toolDenied"
    THINKING = "thinking"
    WEB_SEARCH = "webSearch"
    CODE_EXECUTION = "codeExecution"


@dataclass(slots=True)
class ToolInputData:
    parameters: dict[str, str] = field(default_factory=dict)
    raw_parameters: dict[str, Any] | None = None

    def encode(self) -> str:
        payload = {"parameters": self.parameters, "rawParameters": self.raw_parameters}
        return base64.b64encode(json.dumps(payload, sort_keys=True).encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, blob: str) -> ToolInputData:
        payload = json.loads(base64.b64decode(blob.encode("ascii"), validate=True))
        if not isinstance(payload, dict):
            raise ValueError("tool input payload must be an object")
        return cls(
            parameters={str(k): str(v) for k, v in (payload.get("parameters") or {}).items()},
            raw_parameters=payload.get("rawParameters"),
        )


@dataclass(slots=True)
class StoredAttachment:
    file_name: str
    file_path: str
    file_type: str


@dataclass(slots=True)
class ChatMessage:
    role: MessageRole
    content: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=_utcnow)
    is_complete: bool = True
    message_type: MessageType = MessageType.TEXT
    tool_name: str | None = None
    tool_input_data: ToolInputData | None = None
    is_error: bool = False
    attachments: list[StoredAttachment] = field(default_factory=list)
    was_cancelled: bool = False
    task_group_id: uuid.UUID | None = None
    is_task_container: bool = False

    def __post_init__(self) -> None:
        self.timestamp = ensure_utc(self.timestamp)


@dataclass(slots=True)
class StoredSession:
    id: str
    created_at: datetime
    first_user_message: str
    last_accessed_at: datetime
    messages: list[ChatMessage] = field(default_factory=list)
    working_directory: str | None = None
    branch_name: str | None = None
    is_worktree: bool = False

    def __post_init__(self) -> None:
        self.created_at = ensure_utc(self.created_at)
        self.last_accessed_at = ensure_utc(self.last_accessed_at)

    @property
    def title(self) -> str:
        text = self.first_user_message.strip()
        if not text:
            return "New Session"
        if len(text) > TITLE_MAX_CHARS:
            return text[:TITLE_MAX_CHARS] + "..."
        return text
