from __future__ import annotations

import json

import pytest

from deskpilot.core.preferences.reconciler import DiscoveredTools
from deskpilot.core.preferences.service import LoadState, PreferencesService
from deskpilot.core.preferences.store import PreferenceStore
from deskpilot.core.runtime.errors import (
    InvalidJSONError,
    PreferencesCorruptedStateError,
    PreferencesNotInitializedError,
)

DEFAULT_ALLOWED = ["ExitPlanMode", "Glob", "Grep", "LS", "Read", "TodoWrite", "WebSearch"]


@pytest.fixture
def prefs_path(tmp_path):
    return tmp_path / "preferences.json"


@pytest.fixture
def service(prefs_path):
    store = PreferenceStore(prefs_path)
    yield PreferencesService(store)
    store.close()


@pytest.mark.asyncio
async def test_first_run_seeds_safe_defaults(service, prefs_path):
    assert await service.initialize() == LoadState.NOT_FOUND
    assert service.allowed_tools == DEFAULT_ALLOWED
    assert "Bash" not in service.allowed_tools

    on_disk = json.loads(prefs_path.read_text(encoding="utf-8"))
    claude_code = on_disk["toolPreferences"]["claudeCode"]
    assert claude_code["Bash"]["isAllowed"] is False
    assert claude_code["Bash"]["notes"] == "Requires explicit approval"
    assert claude_code["Read"]["notes"] == "Allowed by default"
    assert on_disk["version"] == "1.0"


@pytest.mark.asyncio
async def test_existing_file_is_loaded(service, prefs_path):
    await service.initialize()
    await service.set_tool_allowed("Bash", True)

    store = PreferenceStore(prefs_path)
    try:
        again = PreferencesService(store)
        assert await again.initialize() == LoadState.LOADED
        assert "Bash" in again.allowed_tools
        assert again.backup_available is True
    finally:
        store.close()


@pytest.mark.asyncio
async def test_corrupted_file_approves_nothing_and_is_never_overwritten(service, prefs_path):
    prefs_path.write_text("{ this is not json", encoding="utf-8")

    assert await service.initialize() == LoadState.CORRUPTED
    assert isinstance(service.corruption_error, InvalidJSONError)
    assert service.is_corrupted
    assert service.allowed_tools == []
    assert service.selected_mcp_tools == {}

    with pytest.raises(PreferencesCorruptedStateError):
        await service.set_tool_allowed("Read", True)
    with pytest.raises(PreferencesCorruptedStateError):
        await service.update_general(system_prompt="x")
    with pytest.raises(PreferencesCorruptedStateError):
        await service.reset_to_defaults()

    reconciled = await service.reconcile_tools(DiscoveredTools(builtin=["Read", "Grep"]))
    assert reconciled.allowed_builtin_tools() == []
    assert service.allowed_tools == []
    assert prefs_path.read_text(encoding="utf-8") == "{ this is not json"


@pytest.mark.asyncio
async def test_reset_after_corruption_restores_defaults(service, prefs_path):
    prefs_path.write_text("", encoding="utf-8")
    await service.initialize()

    await service.reset_after_corruption()

    assert not service.is_corrupted
    assert service.corruption_error is None
    assert service.allowed_tools == DEFAULT_ALLOWED
    assert prefs_path.with_name("preferences.json.corrupted").exists()
    assert json.loads(prefs_path.read_text(encoding="utf-8"))["version"] == "1.0"


@pytest.mark.asyncio
async def test_restore_from_backup_recovers_last_good_file(service, prefs_path):
    await service.initialize()
    await service.set_tool_allowed("WebFetch", True)
    prefs_path.write_text("{oops", encoding="utf-8")

    store = PreferenceStore(prefs_path)
    try:
        recovering = PreferencesService(store)
        assert await recovering.initialize() == LoadState.CORRUPTED
        assert recovering.backup_available is True
        assert await recovering.restore_from_backup() is True
        assert recovering.state == LoadState.LOADED
        assert "WebFetch" not in recovering.allowed_tools
        assert "Read" in recovering.allowed_tools
    finally:
        store.close()


@pytest.mark.asyncio
async def test_restore_without_backup_reports_failure(service, prefs_path):
    prefs_path.write_text("{oops", encoding="utf-8")
    await service.initialize()
    assert await service.has_backup_available() is False
    assert await service.restore_from_backup() is False
    assert service.is_corrupted


@pytest.mark.asyncio
async def test_set_tool_allowed_persists_builtin_and_server_tools(service, prefs_path):
    await service.initialize()
    await service.set_tool_allowed("Read", False)
    await service.set_tool_allowed("create_issue", True, server="github")

    assert "Read" not in service.allowed_tools
    assert "mcp__github__create_issue" in service.allowed_tools
    assert service.selected_mcp_tools == {"github": ["create_issue"]}
    assert service.mcp_server_tools == {"github": ["create_issue"]}

    on_disk = json.loads(prefs_path.read_text(encoding="utf-8"))
    assert on_disk["toolPreferences"]["mcpServers"]["github"]["create_issue"]["isAllowed"] is True
    assert on_disk["toolPreferences"]["claudeCode"]["Read"]["isAllowed"] is False


@pytest.mark.asyncio
async def test_update_general(service, prefs_path):
    await service.initialize()
    general = await service.update_general(system_prompt="be terse", max_concurrent_permission_requests=2)
    assert general.system_prompt == "be terse"
    assert service.general.max_concurrent_permission_requests == 2

    on_disk = json.loads(prefs_path.read_text(encoding="utf-8"))
    assert on_disk["generalPreferences"]["systemPrompt"] == "be terse"

    with pytest.raises(ValueError):
        await service.update_general(no_such_setting=True)


@pytest.mark.asyncio
async def test_reconcile_tools_persists_and_carries_renames(service, prefs_path):
    await service.initialize()
    await service.set_tool_allowed("web_search_tool", True)

    discovered = DiscoveredTools(
        builtin=["Read", "Grep", "web_search_tools", "bash_exec"],
        servers={"files": ["read_file", "delete_file"]},
    )
    document = await service.reconcile_tools(discovered)

    tools = document.tool_preferences.claude_code
    assert tools["web_search_tools"].is_allowed is True
    assert tools["web_search_tools"].previous_names == ["web_search_tool"]
    assert tools["bash_exec"].is_allowed is False
    assert document.tool_preferences.mcp_servers["files"]["read_file"].is_allowed is False

    on_disk = json.loads(prefs_path.read_text(encoding="utf-8"))
    assert "web_search_tools" in on_disk["toolPreferences"]["claudeCode"]
    assert "files" in on_disk["toolPreferences"]["mcpServers"]


@pytest.mark.asyncio
async def test_writes_before_initialize_leave_the_file_alone(service, prefs_path):
    prefs_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PreferencesNotInitializedError):
        await service.reconcile_tools(DiscoveredTools(builtin=["Read", "Bash"]))
    with pytest.raises(PreferencesNotInitializedError):
        await service.set_tool_allowed("Read", True)
    with pytest.raises(PreferencesNotInitializedError):
        await service.update_general(system_prompt="x")
    with pytest.raises(PreferencesNotInitializedError):
        await service.reset_to_defaults()
    with pytest.raises(PreferencesNotInitializedError):
        await service.reset_after_corruption()
    with pytest.raises(PreferencesNotInitializedError):
        await service.restore_from_backup()

    assert prefs_path.read_text(encoding="utf-8") == "{not json"
    assert not prefs_path.with_name("preferences.json.backup").exists()
    assert not prefs_path.with_name("preferences.json.corrupted").exists()
    assert service.allowed_tools == []

    assert await service.initialize() == LoadState.CORRUPTED


@pytest.mark.asyncio
async def test_close_stops_the_store_worker(prefs_path):
    store = PreferenceStore(prefs_path)
    service = PreferencesService(store)
    await service.initialize()
    service.close()

    with pytest.raises(RuntimeError, match="shut down"):
        await store.load()
    service.close()
