"""Key-driven state machine behind every dashboard front-end."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Optional

from ..errors import ActionCancelled
from ..errors import FleetError
from ..service import FleetService
from ..service import Handoff
from ..service import Snapshot
from ..service import WorkspaceRow
from ..service import direct_handoff

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    LISTING = "listing"
    ATTACHED_ELSEWHERE = "attached"
    PROMPTING = "prompting"
    HELP_OVERLAY = "help"
    CONFIRMING = "confirming"


class PromptKind(str, Enum):
    CREATE = "create"
    EDITOR = "editor"


PROMPT_LABELS = {
    PromptKind.CREATE: "New workspace name",
    PromptKind.EDITOR: "Editor command",
}

LISTING_KEYS = {
    "enter": "select",
    "n": "new",
    "d": "destroy",
    "e": "bind_editor",
    "r": "refresh",
    "?": "help",
    "q": "quit",
    "up": "cursor_up",
    "k": "cursor_up",
    "down": "cursor_down",
    "j": "cursor_down",
}

HELP_LINES = [
    ("enter", "attach to the selected workspace (starts its agent if needed)"),
    ("n", "create a workspace from the current repository"),
    ("d", "kill the selected workspace's session"),
    ("e", "set the editor command"),
    ("r", "reconcile and resample every session"),
    ("up/down, k/j", "move the cursor"),
    ("?", "toggle this help"),
    ("q", "quit"),
]


@dataclass
class DashboardView:
    mode: Mode
    rows: list[WorkspaceRow]
    cursor: int
    message: Optional[str] = None
    prompt_label: Optional[str] = None
    prompt_text: str = ""
    confirm_text: Optional[str] = None
    help_lines: list[tuple[str, str]] = field(default_factory=list)

    @property
    def selected(self) -> Optional[WorkspaceRow]:
        if 0 <= self.cursor < len(self.rows):
            return self.rows[self.cursor]
        return None


class DashboardController:
    """Owns mode, cursor and inline messages; front-ends only translate keys and draw views."""

    def __init__(self, service: FleetService, *, handoff: Handoff = direct_handoff) -> None:
        self._service = service
        self._handoff = handoff
        self.mode = Mode.LISTING
        self.running = True
        self._rows: list[WorkspaceRow] = []
        self._cursor = 0
        self._selected_key: Optional[str] = None
        self._message: Optional[str] = None
        self._prompt: Optional[PromptKind] = None
        self._buffer = ""
        self._pending_destroy: Optional[str] = None

    # Public surface -----------------------------------------------------
    def start(self) -> None:
        self.refresh()

    def view(self) -> DashboardView:
        return DashboardView(
            mode=self.mode,
            rows=list(self._rows),
            cursor=self._cursor,
            message=self._message,
            prompt_label=PROMPT_LABELS[self._prompt] if self._prompt else None,
            prompt_text=self._buffer,
            confirm_text=self._confirm_text(),
            help_lines=HELP_LINES if self.mode is Mode.HELP_OVERLAY else [],
        )

    def handle_key(self, key: str) -> None:
        if self.mode is Mode.ATTACHED_ELSEWHERE:
            return
        if self.mode is Mode.HELP_OVERLAY:
            self.mode = Mode.LISTING
            return
        if self.mode is Mode.PROMPTING:
            self._prompt_key(key)
            return
        if self.mode is Mode.CONFIRMING:
            self._confirm_key(key)
            return
        action = LISTING_KEYS.get(key)
        if action is None:
            return
        self._message = None
        getattr(self, f"_action_{action}")()

    def submit(self, text: str) -> None:
        """Replace the prompt buffer with ``text`` and submit it."""
        if self.mode is not Mode.PROMPTING:
            return
        self._buffer = text
        self._prompt_key("enter")

    def tick(self) -> None:
        """Periodic resample of live sessions; never raises."""
        if self.mode is Mode.ATTACHED_ELSEWHERE:
            return
        try:
            self._set_rows(self._service.resample())
        except FleetError as exc:
            logger.warning("Resample failed: %s", exc)
            self._message = f"resample failed: {exc}"

    def refresh(self) -> None:
        try:
            snapshot = self._service.refresh()
        except FleetError as exc:
            logger.warning("Refresh failed: %s", exc)
            self._message = f"refresh failed: {exc}"
            return
        self._set_rows(snapshot.rows)
        self._report_removed(snapshot)

    # Listing actions ----------------------------------------------------
    def _action_select(self) -> None:
        row = self._require_selection()
        if row is None:
            return
        self.mode = Mode.ATTACHED_ELSEWHERE
        try:
            self._service.attach(row.key, self._handoff)
        except FleetError as exc:
            logger.warning("Attach to %s failed: %s", row.key, exc)
            self._message = str(exc)
        finally:
            self.mode = Mode.LISTING
        self.refresh()

    def _action_new(self) -> None:
        self._open_prompt(PromptKind.CREATE, "")

    def _action_bind_editor(self) -> None:
        self._open_prompt(PromptKind.EDITOR, self._service.binding.editor or "")

    def _action_destroy(self) -> None:
        row = self._require_selection()
        if row is None:
            return
        self._pending_destroy = row.key
        self.mode = Mode.CONFIRMING

    def _action_refresh(self) -> None:
        self.refresh()

    def _action_help(self) -> None:
        self.mode = Mode.HELP_OVERLAY

    def _action_quit(self) -> None:
        self.running = False

    def _action_cursor_up(self) -> None:
        self._move_cursor(-1)

    def _action_cursor_down(self) -> None:
        self._move_cursor(1)

    # Prompting and confirming -------------------------------------------
    def _open_prompt(self, kind: PromptKind, initial: str) -> None:
        self._prompt = kind
        self._buffer = initial
        self.mode = Mode.PROMPTING

    def _prompt_key(self, key: str) -> None:
        if key == "escape":
            self._close_prompt()
            return
        if key == "backspace":
            self._buffer = self._buffer[:-1]
            return
        if key == "enter":
            kind, text = self._prompt, self._buffer.strip()
            self._close_prompt()
            try:
                self._submit_prompt(kind, text)
            except ActionCancelled:
                return
            except FleetError as exc:
                logger.warning("%s prompt failed: %s", kind.value if kind else "?", exc)
                self._message = str(exc)
            return
        if key == "space":
            key = " "
        if len(key) == 1 and key.isprintable():
            self._buffer += key

    def _submit_prompt(self, kind: Optional[PromptKind], text: str) -> None:
        if not text:
            raise ActionCancelled("empty input")
        if kind is PromptKind.CREATE:
            workspace = self._service.create_workspace(text)
            self._selected_key = workspace.identity.key
            self.refresh()
            self._message = self._message or f"created {workspace.identity.key}"
        elif kind is PromptKind.EDITOR:
            binding = self._service.bind_editor(text)
            self._message = f"editor set to {binding.editor}"

    def _close_prompt(self) -> None:
        self._prompt = None
        self._buffer = ""
        self.mode = Mode.LISTING

    def _confirm_key(self, key: str) -> None:
        if key in ("y", "Y"):
            target = self._pending_destroy
            self._pending_destroy = None
            self.mode = Mode.LISTING
            if target is None:
                return
            try:
                existed = self._service.destroy(target)
            except FleetError as exc:
                logger.warning("Destroy of %s failed: %s", target, exc)
                self._message = str(exc)
                return
            self.refresh()
            self._message = self._message or (f"killed session for {target}" if existed else f"{target} had no session")
        elif key in ("n", "N", "escape"):
            self._pending_destroy = None
            self.mode = Mode.LISTING

    def _confirm_text(self) -> Optional[str]:
        if self.mode is not Mode.CONFIRMING or self._pending_destroy is None:
            return None
        return f"Kill the session for {self._pending_destroy}? [y/n]"

    # Rows and cursor ----------------------------------------------------
    def _set_rows(self, rows: list[WorkspaceRow]) -> None:
        self._rows = rows
        if not rows:
            self._cursor = 0
            self._selected_key = None
            return
        keys = [row.key for row in rows]
        if self._selected_key in keys:
            self._cursor = keys.index(self._selected_key)
        else:
            self._cursor = min(self._cursor, len(rows) - 1)
            self._selected_key = keys[self._cursor]

    def _move_cursor(self, delta: int) -> None:
        if not self._rows:
            return
        self._cursor = max(0, min(len(self._rows) - 1, self._cursor + delta))
        self._selected_key = self._rows[self._cursor].key

    def _require_selection(self) -> Optional[WorkspaceRow]:
        if not self._rows:
            self._message = "no workspace selected"
            return None
        return self._rows[self._cursor]

    def _report_removed(self, snapshot: Snapshot) -> None:
        if snapshot.removed:
            names = ", ".join(ws.identity.key for ws in snapshot.removed)
            self._message = f"removed {len(snapshot.removed)} stale workspace(s): {names}"
