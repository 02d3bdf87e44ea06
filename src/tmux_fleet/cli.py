"""Command line entry point for tmux-fleet."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any
from typing import Optional
from typing import Sequence

from rich.console import Console
from rich.text import Text

from .config import FleetSettings
from .config import load_settings
from .errors import FleetError
from .launcher import AGENT_CHOICES
from .launcher import recent_claude_sessions
from .launcher import recent_codex_sessions
from .service import FleetService
from .service import WorkspaceRow
from .service import build_service

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tmux-fleet", description="Run coding agents per git worktree inside tmux")
    parser.add_argument("--config", type=Path, default=None, help="Path to fleet config YAML")
    parser.add_argument("--log-level", type=str, default=os.getenv("LOG_LEVEL"), help="Override the configured log level")
    sub = parser.add_subparsers(dest="command")

    dashboard_cmd = sub.add_parser("dashboard", help="Interactive dashboard (default)")
    dashboard_cmd.add_argument("--headless", action="store_true", help="Read key names from stdin instead of the terminal")

    list_cmd = sub.add_parser("list", help="Print registered workspaces with live status")
    list_cmd.add_argument("--json", action="store_true", help="Emit JSON including recorded claude and codex sessions")

    open_cmd = sub.add_parser("open", help="Attach to a workspace, starting its session if needed")
    open_cmd.add_argument("key", help="Workspace key as <repository>/<workspace>")
    open_cmd.add_argument(
        "--agent",
        choices=sorted(AGENT_CHOICES),
        default=None,
        help="Agent for a new session instead of the bound one; skip starts a plain shell",
    )

    serve_cmd = sub.add_parser("serve", help="Serve the HTTP API")
    serve_cmd.add_argument("--host", default="127.0.0.1", help="Host interface to bind")
    serve_cmd.add_argument("--port", type=int, default=8702, help="Port to listen on")

    pane_cmd = sub.add_parser("pane", help="Pane gestures invoked from tmux key bindings")
    pane_sub = pane_cmd.add_subparsers(dest="pane_action", required=True)
    toggle_cmd = pane_sub.add_parser("toggle", help="Open or close the shell pane beside the agent")
    toggle_cmd.add_argument("session")
    editor_cmd = pane_sub.add_parser("editor", help="Open the bound editor in a new pane")
    editor_cmd.add_argument("session")
    return parser


def configure_logging(settings: FleetSettings, level: str, *, to_file: bool) -> None:
    resolved = getattr(logging, level.upper(), logging.INFO)
    if to_file:
        # the terminal belongs to the dashboard
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(level=resolved, format=LOG_FORMAT, filename=str(settings.log_file))
    else:
        logging.basicConfig(level=resolved, format=LOG_FORMAT, stream=sys.stderr)


def gesture_command(config_path: Optional[Path]) -> list[str]:
    command = [sys.executable, "-m", "tmux_fleet"]
    if config_path is not None:
        command += ["--config", str(config_path.expanduser().resolve())]
    return command


# Commands -----------------------------------------------------------------
def cmd_dashboard(args: argparse.Namespace, settings: FleetSettings) -> int:
    service = build_service(settings, gesture_command=gesture_command(args.config))
    service.install_key_bindings()
    if getattr(args, "headless", False):
        from .dashboard.controller import DashboardController
        from .dashboard.headless import HeadlessDriver

        return HeadlessDriver(DashboardController(service), sys.stdin).run()

    from .dashboard.tui import FleetApp

    FleetApp(service, settings).run()
    return 0


def cmd_list(args: argparse.Namespace, settings: FleetSettings) -> int:
    service = build_service(settings)
    snapshot = service.refresh()
    for workspace in snapshot.removed:
        print(f"removed stale workspace {workspace.identity.key}", file=sys.stderr)
    if args.json:
        payload = {"workspaces": [_row_payload(row) for row in snapshot.rows]}
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return 0
    from .dashboard.render import PREVIEW_LIMIT
    from .dashboard.render import session_history
    from .dashboard.render import workspace_table

    console = Console()
    if not snapshot.rows:
        console.print("No workspaces registered.")
        return 0
    console.print(workspace_table(snapshot.rows))
    for row in snapshot.rows:
        lines = session_history("Claude", *recent_claude_sessions(row.path, limit=PREVIEW_LIMIT))
        lines += session_history("Codex", *recent_codex_sessions(row.path, limit=PREVIEW_LIMIT))
        if lines:
            console.print(Text(row.key, style="bold"))
            for line in lines:
                console.print(line)
    return 0


def cmd_open(args: argparse.Namespace, settings: FleetSettings) -> int:
    service = build_service(settings, gesture_command=gesture_command(args.config))
    service.refresh()
    handle = service.attach(args.key, agent_choice=args.agent)
    logger.info("Detached from %s", handle.name)
    return 0


def cmd_serve(args: argparse.Namespace, settings: FleetSettings) -> int:
    import uvicorn

    from .dashboard.api import create_app

    service = build_service(settings)
    uvicorn.run(create_app(service), host=args.host, port=args.port)
    return 0


def cmd_pane(args: argparse.Namespace, settings: FleetSettings) -> int:
    service: FleetService = build_service(settings)
    if args.pane_action == "toggle":
        opened = service.toggle_pane(args.session)
        logger.info("%s secondary pane for %s", "Opened" if opened else "Closed", args.session)
    else:
        service.launch_editor(args.session)
    return 0


COMMANDS = {
    "dashboard": cmd_dashboard,
    "list": cmd_list,
    "open": cmd_open,
    "serve": cmd_serve,
    "pane": cmd_pane,
}


def _row_payload(row: WorkspaceRow) -> dict[str, Any]:
    payload = row.to_dict()
    claude_sessions, claude_total = recent_claude_sessions(row.path, limit=None)
    codex_sessions, codex_total = recent_codex_sessions(row.path, limit=None)
    payload["claude_sessions"] = [_session_payload(session) for session in claude_sessions]
    payload["claude_session_total"] = claude_total
    payload["codex_sessions"] = [_session_payload(session) for session in codex_sessions]
    payload["codex_session_total"] = codex_total
    return payload


def _session_payload(session) -> dict[str, Any]:
    from .dashboard.render import format_age

    stamp = session.last_timestamp
    return {
        "id": session.id,
        "last_timestamp": stamp.isoformat() if stamp else None,
        "time_ago": format_age(stamp) if stamp else "unknown",
        "last_user_message": session.last_user_message,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "dashboard"

    try:
        settings = load_settings(args.config)
    except FleetError as exc:
        print(f"tmux-fleet: {exc}", file=sys.stderr)
        return 1

    interactive = command == "dashboard" and not getattr(args, "headless", False)
    configure_logging(settings, args.log_level or settings.log_level, to_file=interactive)

    try:
        return COMMANDS[command](args, settings)
    except FleetError as exc:
        logger.debug("Command %s failed", command, exc_info=True)
        print(f"tmux-fleet: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
