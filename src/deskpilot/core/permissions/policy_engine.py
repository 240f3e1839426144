from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

DEFAULT_SAFE_TOOLS = (
    "Read",
    "Grep",
    "Glob",
    "LS",
    "WebSearch",
    "TodoWrite",
    "ExitPlanMode",
    "exit_plan_mode",
)
DEFAULT_RISKY_KEYWORDS = ("bash", "exec", "write", "edit", "delete", "remove", "kill")

ALLOWED_BY_DEFAULT = "Allowed by default"
REQUIRES_APPROVAL = "Requires explicit approval"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(slots=True)
class RiskDecision:
    allowed: bool
    reason: str | None


class ToolSafetyPolicy:
    """Default allow/deny decision for a tool nobody has ruled on yet.

    Only names on the safe list start out allowed. Everything else, and in
    particular anything whose name mentions a risky keyword, waits for the
    user. Tools from external servers are never allowed by default.
    """

    def __init__(
        self,
        safe_tools: Iterable[str] = DEFAULT_SAFE_TOOLS,
        risky_keywords: Iterable[str] = DEFAULT_RISKY_KEYWORDS,
    ) -> None:
        self._safe_tools = frozenset(safe_tools)
        self._risky_keywords = tuple(k.lower() for k in risky_keywords)

    @classmethod
    def from_config(cls, cfg) -> ToolSafetyPolicy:
        return cls(safe_tools=cfg.safe_tools, risky_keywords=cfg.risky_keywords)

    def classify(self, tool_name: str) -> RiskLevel:
        # The safe list wins over keywords ("TodoWrite" contains "write").
        if tool_name in self._safe_tools:
            return RiskLevel.LOW
        lowered = tool_name.lower()
        if any(keyword in lowered for keyword in self._risky_keywords):
            return RiskLevel.HIGH
        return RiskLevel.MEDIUM

    def evaluate_builtin(self, tool_name: str) -> RiskDecision:
        risk = self.classify(tool_name)
        if risk == RiskLevel.LOW:
            return RiskDecision(True, ALLOWED_BY_DEFAULT)
        if risk == RiskLevel.HIGH:
            return RiskDecision(False, REQUIRES_APPROVAL)
        return RiskDecision(False, None)

    def evaluate_server_tool(self, server_name: str, tool_name: str) -> RiskDecision:
        _ = (server_name, tool_name)
        return RiskDecision(False, None)
