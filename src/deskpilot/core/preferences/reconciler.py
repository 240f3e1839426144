"""Merge a fresh tool discovery into the stored preference document.

Pure logic: no I/O and no logging, and the stored document is never mutated.
Callers persist the result themselves.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from deskpilot.core.permissions.policy_engine import ToolSafetyPolicy
from deskpilot.core.preferences.models import (
    PreferenceDocument,
    ToolPreference,
    ToolPreferencesContainer,
)

DEFAULT_RENAME_PATTERNS: tuple[tuple[str, str], ...] = (
    ("read", "readfile"),
    ("write", "writefile"),
    ("exec", "execute"),
    ("del", "delete"),
    ("rm", "remove"),
)


@dataclass(slots=True)
class DiscoveredTools:
    builtin: list[str] = field(default_factory=list)
    servers: dict[str, list[str]] = field(default_factory=dict)


class ToolStatus(str, Enum):
    ACTIVE = "active"
    NEW = "new"
    RENAMED = "renamed"
    MISSING = "missing"


@dataclass(slots=True)
class ToolReconciliationResult:
    tool_name: str
    status: ToolStatus
    is_allowed: bool
    server: str | None = None
    renamed_from: str | None = None


def levenshtein_distance(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def _unique(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for name in names:
        if name not in seen:
            seen.add(name)
            out.append(name)
    return out


def _strip_separators(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


class PreferencesReconciler:
    def __init__(
        self,
        policy: ToolSafetyPolicy | None = None,
        *,
        similarity_threshold: float = 0.8,
        min_name_length: int = 3,
        rename_patterns: Iterable[tuple[str, str]] = DEFAULT_RENAME_PATTERNS,
    ) -> None:
        self._policy = policy or ToolSafetyPolicy()
        self._threshold = similarity_threshold
        self._min_name_length = min_name_length
        self._patterns = tuple((old.lower(), new.lower()) for old, new in rename_patterns)

    @classmethod
    def from_config(cls, cfg) -> PreferencesReconciler:
        return cls(
            ToolSafetyPolicy.from_config(cfg),
            similarity_threshold=cfg.similarity_threshold,
            min_name_length=cfg.min_name_length,
            rename_patterns=cfg.rename_patterns,
        )

    def reconcile(
        self,
        discovered: DiscoveredTools,
        stored: PreferenceDocument | None,
        *,
        now: datetime | None = None,
    ) -> PreferenceDocument:
        document, _ = self.reconcile_with_report(discovered, stored, now=now)
        return document

    def reconcile_with_report(
        self,
        discovered: DiscoveredTools,
        stored: PreferenceDocument | None,
        *,
        now: datetime | None = None,
    ) -> tuple[PreferenceDocument, list[ToolReconciliationResult]]:
        ts = now or datetime.now(timezone.utc)
        base = stored if stored is not None else PreferenceDocument.empty(ts)
        report: list[ToolReconciliationResult] = []

        builtin = self._reconcile_group(
            discovered.builtin,
            base.tool_preferences.claude_code,
            ts,
            report,
            server=None,
        )

        servers: dict[str, dict[str, ToolPreference]] = {}
        stored_servers = base.tool_preferences.mcp_servers
        for server in sorted(set(discovered.servers) | set(stored_servers)):
            if server not in discovered.servers:
                # Server not connected right now: keep its tools exactly as they were.
                servers[server] = {n: p.model_copy(deep=True) for n, p in sorted(stored_servers[server].items())}
                report.extend(
                    ToolReconciliationResult(n, ToolStatus.MISSING, p.is_allowed, server=server)
                    for n, p in sorted(stored_servers[server].items())
                )
                continue
            servers[server] = self._reconcile_group(
                discovered.servers[server],
                stored_servers.get(server, {}),
                ts,
                report,
                server=server,
            )

        document = PreferenceDocument(
            version=base.version,
            last_updated=ts,
            tool_preferences=ToolPreferencesContainer(claude_code=builtin, mcp_servers=servers),
            general_preferences=base.general_preferences.model_copy(deep=True),
        )
        return document, report

    def _reconcile_group(
        self,
        discovered: Iterable[str],
        stored: Mapping[str, ToolPreference],
        now: datetime,
        report: list[ToolReconciliationResult],
        *,
        server: str | None,
    ) -> dict[str, ToolPreference]:
        names = _unique(discovered)
        discovered_set = set(names)
        consumed: set[str] = set()
        result: dict[str, ToolPreference] = {}

        for name in names:
            existing = stored.get(name)
            if existing is not None:
                pref = existing.marked_seen(now)
                result[name] = pref
                report.append(ToolReconciliationResult(name, ToolStatus.ACTIVE, pref.is_allowed, server=server))
                continue

            candidates = sorted(n for n in stored if n not in discovered_set and n not in consumed)
            old_name = self.find_rename(name, candidates)
            if old_name is not None:
                consumed.add(old_name)
                pref = stored[old_name].with_previous_name(old_name, now).marked_seen(now)
                result[name] = pref
                report.append(
                    ToolReconciliationResult(
                        name,
                        ToolStatus.RENAMED,
                        pref.is_allowed,
                        server=server,
                        renamed_from=old_name,
                    )
                )
                continue

            if server is None:
                decision = self._policy.evaluate_builtin(name)
            else:
                decision = self._policy.evaluate_server_tool(server, name)
            pref = ToolPreference.new(decision.allowed, notes=decision.reason, now=now)
            result[name] = pref
            report.append(ToolReconciliationResult(name, ToolStatus.NEW, pref.is_allowed, server=server))

        for name in sorted(stored):
            if name in discovered_set or name in consumed:
                continue
            result[name] = stored[name].model_copy(deep=True)
            report.append(ToolReconciliationResult(name, ToolStatus.MISSING, stored[name].is_allowed, server=server))

        return dict(sorted(result.items()))

    def find_rename(self, name: str, candidates: Iterable[str]) -> str | None:
        """Most likely previous name of ``name`` among ``candidates``, if any."""
        ordered = sorted(candidates)
        for candidate in ordered:
            if self._is_pattern_rename(candidate, name):
                return candidate

        if len(name) <= self._min_name_length:
            return None
        lowered = name.lower()
        best: str | None = None
        best_score = self._threshold
        for candidate in ordered:
            score = similarity(candidate.lower(), lowered)
            if score > best_score or (score == best_score and best is None):
                best, best_score = candidate, score
        return best

    def _is_pattern_rename(self, old_name: str, new_name: str) -> bool:
        if _strip_separators(old_name) == _strip_separators(new_name):
            return True
        old = old_name.lower()
        new = new_name.lower()
        for a, b in self._patterns:
            if (a in old and b in new) or (b in old and a in new):
                return True
        return False
