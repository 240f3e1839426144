from __future__ import annotations

import asyncio

from deskpilot.cli import base_parser
from deskpilot.core.config.loader import load_app_config
from deskpilot.core.preferences.service import LoadState, PreferencesService
from deskpilot.core.runtime.errors import DeskpilotError
from deskpilot.core.sessions.store import SessionStore
from deskpilot.core.telemetry.logging import configure_logging


async def _run_store(cfg, args) -> None:
    async with SessionStore.from_config(cfg) as store:
        if args.migrate:
            print(f"schema-version={await store.schema_version()} path={store.db_path}")
        if args.verify:
            await store.verify_integrity()
            print("integrity=ok")
        if args.list_sessions:
            sessions = await store.list_sessions()
            print(f"sessions={len(sessions)}")
            for session in sessions:
                print(
                    f"- {session.id} messages={len(session.messages)} "
                    f"last_accessed={session.last_accessed_at.isoformat()} title={session.title!r}"
                )
        if args.delete_session:
            await store.delete_session(args.delete_session)
            print(f"deleted={args.delete_session}")


async def _run_prefs(cfg, args) -> int:
    service = PreferencesService.from_config(cfg)
    try:
        return await _prefs_actions(service, cfg, args)
    finally:
        service.close()


async def _prefs_actions(service: PreferencesService, cfg, args) -> int:
    state = await service.initialize()
    if args.prefs_status:
        print(f"preferences-state={state.value} path={cfg.preferences_path} backup={service.backup_available}")
        if service.corruption_error is not None:
            print(f"- error={service.corruption_error}")
            print(f"- detail={service.corruption_error.technical_description}")
            print(f"- suggestion={service.corruption_error.recovery_suggestion}")
        print(f"- allowed_tools={service.allowed_tools}")
    if args.restore_prefs:
        if not await service.restore_from_backup():
            print("restore-failed (no valid backup)")
            return 1
        print(f"restored allowed_tools={service.allowed_tools}")
    if args.reset_prefs:
        if state == LoadState.CORRUPTED:
            await service.reset_after_corruption()
        else:
            await service.reset_to_defaults()
        print(f"reset allowed_tools={service.allowed_tools}")
    return 0


def main() -> int:
    parser = base_parser("deskpilot-store", "DeskPilot session store and preference maintenance")
    parser.add_argument("--migrate", action="store_true", help="Open the session store and run pending migrations")
    parser.add_argument("--verify", action="store_true", help="Run the database integrity check")
    parser.add_argument("--list-sessions", action="store_true")
    parser.add_argument("--delete-session", default=None, metavar="ID")
    parser.add_argument("--prefs-status", action="store_true")
    parser.add_argument("--restore-prefs", action="store_true", help="Restore preferences from the backup file")
    parser.add_argument("--reset-prefs", action="store_true", help="Reset preferences to safe defaults")
    args = parser.parse_args()

    try:
        cfg = load_app_config(instance_path=args.config)
    except Exception as exc:  # noqa: BLE001
        print(f"config-invalid error={exc}")
        return 1
    configure_logging(cfg.telemetry.log_level, json_logs=cfg.telemetry.json_logs, to_stderr=True)

    store_work = any([args.migrate, args.verify, args.list_sessions, args.delete_session])
    prefs_work = any([args.prefs_status, args.restore_prefs, args.reset_prefs])
    if not store_work and not prefs_work:
        print(
            "store-ready (use --migrate/--verify/--list-sessions/--delete-session "
            "--prefs-status/--restore-prefs/--reset-prefs)"
        )
        return 0

    try:
        if store_work:
            asyncio.run(_run_store(cfg, args))
        if prefs_work:
            return asyncio.run(_run_prefs(cfg, args))
    except DeskpilotError as exc:
        print(f"error kind={exc.kind} message={exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
