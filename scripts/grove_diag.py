"""Grove MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
import shutil

from grove_mcp.config import GroveSettings
from grove_mcp.sessions import SessionManager
from grove_mcp.storage import ConfigStore, RegistryError, SessionRegistry
from grove_mcp.terminal import TerminalRunner, TerminalToolNotFoundError


def load_registry(settings: GroveSettings) -> SessionRegistry:
    return SessionRegistry(settings.sessions_file, base_port=settings.base_port)


def load_runner() -> TerminalRunner:
    try:
        return TerminalRunner()
    except TerminalToolNotFoundError as exc:
        print(f"Terminal tools unavailable: {exc}")
        raise SystemExit(1)


def cmd_deps(args: argparse.Namespace) -> None:
    settings = GroveSettings()
    binaries = {
        name: shutil.which(name)
        for name in ("tmux", "ttyd", "git")
    }
    binaries["claude"] = settings.claude_path or shutil.which("claude")
    report = {
        "binaries": binaries,
        "cert_file": {
            "path": str(settings.resolved_cert_file),
            "exists": settings.resolved_cert_file.exists(),
        },
        "key_file": {
            "path": str(settings.resolved_key_file),
            "exists": settings.resolved_key_file.exists(),
        },
        "config_dir": str(settings.config_dir),
    }
    print(json.dumps(report, indent=2))
    if not all(binaries.values()):
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = GroveSettings()
    registry = load_registry(settings)
    state = registry.load()
    if args.json:
        print(json.dumps(state.model_dump(mode="json"), indent=2))
        return
    print(f"next_port: {state.next_port}")
    for record in state.sessions:
        print(f"{record.id} [{record.repo_name}:{record.branch}] port={record.port} pid={record.pid}")


def cmd_reconcile(args: argparse.Namespace) -> None:
    settings = GroveSettings()
    manager = SessionManager(
        load_registry(settings),
        ConfigStore(settings.config_file),
        load_runner(),
        settings,
    )
    try:
        removed = asyncio.run(manager.reconcile_stale_sessions())
    except RegistryError as exc:
        print(f"Registry unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps({"removed": removed}, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Grove MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_deps = sub.add_parser("deps", help="Check external binaries and TLS files")
    p_deps.set_defaults(func=cmd_deps)

    p_sessions = sub.add_parser("sessions", help="List persisted session records")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_reconcile = sub.add_parser("reconcile", help="Drop sessions whose bridge process is gone")
    p_reconcile.set_defaults(func=cmd_reconcile)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
