from __future__ import annotations

from pathlib import Path

from deskpilot.cli import base_parser
from deskpilot.core.config.loader import load_app_config


def _confirm(prompt: str) -> bool:
    value = input(prompt).strip().lower()
    return value in {"y", "yes"}


def collect_runtime_files(db_path: Path, preferences_path: Path) -> list[Path]:
    paths: list[Path] = [db_path]
    paths.extend(sorted(db_path.parent.glob(f"{db_path.name}.backup_*")))
    paths.extend(db_path.with_name(db_path.name + suffix) for suffix in ("-journal", "-wal", "-shm"))
    paths.append(preferences_path)
    paths.extend(preferences_path.with_name(preferences_path.name + suffix) for suffix in (".backup", ".corrupted"))

    unique_paths: list[Path] = []
    seen: set[Path] = set()
    for path in paths:
        rp = path.resolve()
        if rp not in seen:
            seen.add(rp)
            unique_paths.append(path)
    return unique_paths


def main() -> int:
    parser = base_parser("deskpilot-reset", "Remove local DeskPilot session history and preferences")
    parser.add_argument("--yes", action="store_true", help="Skip confirmation prompt")
    args = parser.parse_args()

    try:
        cfg = load_app_config(instance_path=args.config)
    except ValueError as exc:
        print(f"config-invalid error={exc}")
        return 1

    paths = collect_runtime_files(cfg.sessions_db_path, cfg.preferences_path)

    print("Reset will remove these files if present:")
    for path in paths:
        print(f"- {path}")

    if not args.yes and not _confirm("Proceed? [y/N]: "):
        print("Reset cancelled.")
        return 1

    removed = 0
    for path in paths:
        if path.exists() and path.is_file():
            path.unlink()
            removed += 1
            print(f"removed: {path}")
        else:
            print(f"skip (not found): {path}")

    print(f"Reset complete. removed_files={removed}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
