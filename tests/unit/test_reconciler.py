from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from deskpilot.core.preferences.models import PreferenceDocument, ToolPreference
from deskpilot.core.preferences.reconciler import (
    DiscoveredTools,
    PreferencesReconciler,
    ToolStatus,
    levenshtein_distance,
    similarity,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
NOW = T0 + timedelta(days=10)


def _doc(builtin: dict[str, bool] | None = None, servers: dict[str, dict[str, bool]] | None = None) -> PreferenceDocument:
    doc = PreferenceDocument.empty(T0)
    for name, allowed in (builtin or {}).items():
        doc.tool_preferences.claude_code[name] = ToolPreference.new(allowed, now=T0)
    for server, tools in (servers or {}).items():
        doc.tool_preferences.mcp_servers[server] = {n: ToolPreference.new(a, now=T0) for n, a in tools.items()}
    return doc


@pytest.fixture
def reconciler():
    return PreferencesReconciler()


def test_levenshtein_and_similarity():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert similarity("", "") == 1.0
    assert similarity("grep_files", "grep_file") == pytest.approx(0.9)


def test_known_tool_keeps_decision_and_is_marked_seen(reconciler):
    stored = _doc({"Read": True})
    out = reconciler.reconcile(DiscoveredTools(builtin=["Read"]), stored, now=NOW)
    read = out.tool_preferences.claude_code["Read"]
    assert read.is_allowed is True
    assert read.last_seen == NOW
    assert read.last_seen > stored.tool_preferences.claude_code["Read"].last_seen
    assert read.last_modified == T0


def test_synonym_rename_carries_decision(reconciler):
    stored = _doc({"readfile": True})
    out = reconciler.reconcile(DiscoveredTools(builtin=["read"]), stored, now=NOW)
    tools = out.tool_preferences.claude_code
    assert set(tools) == {"read"}
    assert tools["read"].is_allowed is True
    assert tools["read"].previous_names == ["readfile"]
    assert tools["read"].last_modified == NOW
    assert tools["read"].created_at == T0


def test_similarity_rename_above_threshold(reconciler):
    stored = _doc({"search_files": True})
    out = reconciler.reconcile(DiscoveredTools(builtin=["search_file"]), stored, now=NOW)
    assert out.tool_preferences.claude_code["search_file"].previous_names == ["search_files"]
    assert "search_files" not in out.tool_preferences.claude_code


def test_separator_only_rename(reconciler):
    stored = _doc({"exit_plan_mode": True})
    out = reconciler.reconcile(DiscoveredTools(builtin=["ExitPlanMode"]), stored, now=NOW)
    pref = out.tool_preferences.claude_code["ExitPlanMode"]
    assert pref.is_allowed is True
    assert pref.previous_names == ["exit_plan_mode"]


def test_short_names_skip_similarity(reconciler):
    stored = _doc({"abc": True})
    out = reconciler.reconcile(DiscoveredTools(builtin=["abd"]), stored, now=NOW)
    tools = out.tool_preferences.claude_code
    assert tools["abd"].previous_names == []
    assert tools["abd"].is_allowed is False
    assert tools["abc"].is_allowed is True


def test_new_risky_tool_defaults_closed(reconciler):
    out = reconciler.reconcile(DiscoveredTools(builtin=["bash_exec"]), _doc(), now=NOW)
    pref = out.tool_preferences.claude_code["bash_exec"]
    assert pref.is_allowed is False
    assert pref.notes == "Requires explicit approval"


def test_new_safe_tool_defaults_open(reconciler):
    out = reconciler.reconcile(DiscoveredTools(builtin=["Grep", "TodoWrite"]), None, now=NOW)
    assert out.tool_preferences.claude_code["Grep"].is_allowed is True
    assert out.tool_preferences.claude_code["TodoWrite"].is_allowed is True
    assert out.version == "1.0"
    assert out.last_updated == NOW


@pytest.mark.parametrize("tool", ["Read", "list_files", "get_weather", "search"])
def test_new_server_tool_always_defaults_closed(reconciler, tool):
    out = reconciler.reconcile(DiscoveredTools(servers={"remote": [tool]}), _doc(), now=NOW)
    assert out.tool_preferences.mcp_servers["remote"][tool].is_allowed is False


def test_missing_tools_and_servers_are_retained_unchanged(reconciler):
    stored = _doc({"Read": True, "WebFetch": True}, {"github": {"create_issue": True}, "files": {"list": True}})
    discovered = DiscoveredTools(builtin=["Read"], servers={"files": ["list"]})
    out = reconciler.reconcile(discovered, stored, now=NOW)

    web = out.tool_preferences.claude_code["WebFetch"]
    assert web == stored.tool_preferences.claude_code["WebFetch"]
    assert web.last_seen == T0
    assert out.tool_preferences.mcp_servers["github"] == stored.tool_preferences.mcp_servers["github"]
    assert out.tool_preferences.mcp_servers["files"]["list"].last_seen == NOW


def test_rename_detection_inside_server_group(reconciler):
    stored = _doc(servers={"github": {"create_issues": True}})
    out = reconciler.reconcile(DiscoveredTools(servers={"github": ["create_issue"]}), stored, now=NOW)
    pref = out.tool_preferences.mcp_servers["github"]["create_issue"]
    assert pref.is_allowed is True
    assert pref.previous_names == ["create_issues"]


def test_currently_discovered_names_are_not_rename_sources(reconciler):
    stored = _doc({"Read": True})
    out = reconciler.reconcile(DiscoveredTools(builtin=["Read", "ReadFile"]), stored, now=NOW)
    tools = out.tool_preferences.claude_code
    assert tools["Read"].is_allowed is True
    assert tools["ReadFile"].previous_names == []
    assert tools["ReadFile"].is_allowed is False


def test_old_name_is_consumed_by_one_rename_only(reconciler):
    stored = _doc({"execute_command": True})
    out = reconciler.reconcile(DiscoveredTools(builtin=["exec_command", "executecommand"]), stored, now=NOW)
    tools = out.tool_preferences.claude_code
    renamed = [name for name in ("exec_command", "executecommand") if tools[name].previous_names]
    assert len(renamed) == 1
    assert "execute_command" not in tools


def test_duplicate_discovered_names_processed_once(reconciler):
    out, report = reconciler.reconcile_with_report(DiscoveredTools(builtin=["Read", "Read"]), _doc(), now=NOW)
    assert list(out.tool_preferences.claude_code) == ["Read"]
    assert [r.tool_name for r in report] == ["Read"]


def test_reconcile_is_deterministic_and_does_not_mutate_input(reconciler):
    stored = _doc({"Bash": False, "Read": True, "old_search": True}, {"b": {"x": True}, "a": {"y": False}})
    before = stored.model_dump()
    discovered = DiscoveredTools(builtin=["Read", "Glob", "Bash", "new_search"], servers={"a": ["y", "z"]})

    first = reconciler.reconcile(discovered, stored, now=NOW)
    second = reconciler.reconcile(discovered, stored, now=NOW)

    assert stored.model_dump() == before
    assert first.model_dump() == second.model_dump()
    assert list(first.tool_preferences.claude_code) == sorted(first.tool_preferences.claude_code)
    assert list(first.tool_preferences.mcp_servers) == ["a", "b"]


def test_general_preferences_and_version_carry_over(reconciler):
    stored = _doc({"Read": True})
    stored.general_preferences.system_prompt = "be brief"
    stored.version = "1.1"
    out = reconciler.reconcile(DiscoveredTools(builtin=["Read"]), stored, now=NOW)
    assert out.general_preferences.system_prompt == "be brief"
    assert out.version == "1.1"


def test_report_statuses(reconciler):
    stored = _doc({"Read": True, "readfile_v1": True, "Gone": False})
    discovered = DiscoveredTools(builtin=["Read", "readfile", "Bash"])
    _, report = reconciler.reconcile_with_report(discovered, stored, now=NOW)
    statuses = {r.tool_name: r.status for r in report}
    assert statuses["Read"] == ToolStatus.ACTIVE
    assert statuses["readfile"] == ToolStatus.RENAMED
    assert statuses["Bash"] == ToolStatus.NEW
    assert statuses["Gone"] == ToolStatus.MISSING


def test_thresholds_are_configurable():
    strict = PreferencesReconciler(similarity_threshold=0.99, rename_patterns=[])
    stored = _doc({"search_files": True})
    out = strict.reconcile(DiscoveredTools(builtin=["search_file"]), stored, now=NOW)
    assert out.tool_preferences.claude_code["search_file"].previous_names == []
    assert out.tool_preferences.claude_code["search_files"].is_allowed is True
