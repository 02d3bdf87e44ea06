"""Textual front-end for the dashboard controller."""
from __future__ import annotations

from typing import Any
from typing import Callable

from textual import events
from textual.app import App
from textual.app import ComposeResult
from textual.widgets import Header
from textual.widgets import Static

from ..config import FleetSettings
from ..service import FleetService
from .controller import DashboardController
from .controller import Mode
from .render import render_view


class FleetApp(App[None]):
    TITLE = "tmux-fleet"
    CSS = """
    #body {
        height: 1fr;
        padding: 0 1;
    }
    """

    def __init__(self, service: FleetService, settings: FleetSettings) -> None:
        super().__init__()
        self._settings = settings
        self.controller = DashboardController(service, handoff=self._handoff)

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Static("", id="body")

    def on_mount(self) -> None:
        self.controller.start()
        self._redraw()
        self.set_interval(self._settings.poll_interval_seconds(), self._poll)

    def on_key(self, event: events.Key) -> None:
        event.prevent_default()
        event.stop()
        if self.controller.mode is Mode.PROMPTING and event.is_printable and event.character:
            key = event.character
        elif event.character == "?":
            key = "?"
        else:
            key = event.key
        self.controller.handle_key(key)
        if not self.controller.running:
            self.exit()
            return
        self._redraw()

    def _poll(self) -> None:
        self.controller.tick()
        self._redraw()

    def _redraw(self) -> None:
        self.query_one("#body", Static).update(render_view(self.controller.view()))
        self.sub_title = self.controller.mode.value

    def _handoff(self, fn: Callable[[], Any]) -> Any:
        # the terminal belongs to tmux until the user detaches
        with self.suspend():
            return fn()
