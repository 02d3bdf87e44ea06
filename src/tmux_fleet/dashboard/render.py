"""Rich renderables shared by the Textual app, the headless driver and ``list``."""
from __future__ import annotations

from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Iterable
from typing import Optional
from typing import Sequence

from rich.console import Group
from rich.console import RenderableType
from rich.table import Table
from rich.text import Text

from ..service import WorkspaceRow
from ..status import Status
from .controller import DashboardView
from .controller import Mode

STATUS_STYLES = {
    Status.WAITING: "bold yellow",
    Status.PROCESSING: "cyan",
    Status.IDLE: "green",
    Status.ERROR: "bold red",
    Status.UNKNOWN: "magenta",
}

PREVIEW_LIMIT = 3
PREVIEW_WIDTH = 60


def format_age(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    if moment is None:
        return "-"
    now = now or datetime.now(timezone.utc)
    seconds = max(0, int((now - moment).total_seconds()))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def status_text(row: WorkspaceRow) -> Text:
    if not row.live or row.status is None:
        return Text("no session", style="dim")
    return Text(row.status.value, style=STATUS_STYLES.get(row.status, ""))


def workspace_table(
    rows: Iterable[WorkspaceRow],
    *,
    cursor: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Table:
    table = Table(expand=True, show_edge=False)
    table.add_column("", width=1)
    table.add_column("Repository", style="bold")
    table.add_column("Workspace")
    table.add_column("Branch", style="dim")
    table.add_column("Status")
    table.add_column("Last activity", justify="right")
    for index, row in enumerate(rows):
        selected = index == cursor
        table.add_row(
            ">" if selected else "",
            row.repo,
            row.name,
            row.branch,
            status_text(row),
            format_age(row.last_activity, now),
            style="reverse" if selected else None,
        )
    return table


def render_view(view: DashboardView, *, now: Optional[datetime] = None) -> RenderableType:
    if view.mode is Mode.HELP_OVERLAY:
        help_table = Table(title="Keys", show_header=False, show_edge=False)
        help_table.add_column(style="bold")
        help_table.add_column()
        for key, description in view.help_lines:
            help_table.add_row(key, description)
        help_table.add_row("", "press any key to return")
        return help_table

    parts: list[RenderableType] = []
    if view.rows:
        parts.append(workspace_table(view.rows, cursor=view.cursor, now=now))
    else:
        parts.append(Text("No workspaces registered. Press n to create one.", style="dim"))
    if view.mode is Mode.PROMPTING and view.prompt_label:
        parts.append(Text.assemble((f"{view.prompt_label}: ", "bold"), view.prompt_text, ("_", "blink")))
    elif view.mode is Mode.CONFIRMING and view.confirm_text:
        parts.append(Text(view.confirm_text, style="bold red"))
    if view.message:
        parts.append(Text(view.message, style="italic"))
    return Group(*parts)


def preview_message(message: Optional[str], width: int = PREVIEW_WIDTH) -> str:
    if not message or not message.strip():
        return "(no user message)"
    flat = " ".join(message.split())
    if len(flat) <= width:
        return flat
    return flat[: width - 3] + "..."


def session_history(
    label: str,
    sessions: Sequence[Any],
    total: int,
    *,
    now: Optional[datetime] = None,
) -> list[Text]:
    """Lines summarising an agent's recorded conversations for one workspace."""
    if total == 0:
        return []
    lines = [Text(f"  {label}: {total} session(s)", style="dim")]
    for session in sessions:
        age = format_age(session.last_timestamp, now) if session.last_timestamp else "unknown"
        lines.append(Text(f"    - {age} {preview_message(session.last_user_message)}", style="dim"))
    if total > len(sessions):
        lines.append(Text(f"    - ... and {total - len(sessions)} more", style="dim"))
    return lines
