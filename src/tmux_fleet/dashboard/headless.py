"""Line-oriented driver for scripted dashboard sessions."""
from __future__ import annotations

from typing import TextIO

from rich.console import Console

from .controller import DashboardController
from .controller import Mode
from .render import render_view

CANCEL = ":cancel"
TICK = ":tick"


class HeadlessDriver:
    """Feeds one key name per line to the controller.

    While a prompt is open the whole line is submitted as its text and
    ``:cancel`` closes it. ``:tick`` triggers a resample as the poll timer would.
    """

    def __init__(self, controller: DashboardController, stream: TextIO, console: Console | None = None) -> None:
        self.controller = controller
        self._stream = stream
        self._console = console or Console()

    def run(self) -> int:
        self.controller.start()
        self._render()
        for raw in self._stream:
            self.step(raw.rstrip("\r\n"))
            self._render()
            if not self.controller.running:
                break
        return 0

    def step(self, line: str) -> None:
        controller = self.controller
        if controller.mode is Mode.PROMPTING:
            if line.strip() == CANCEL:
                controller.handle_key("escape")
            else:
                controller.submit(line)
            return
        command = line.strip()
        if not command:
            return
        if command == TICK:
            controller.tick()
            return
        controller.handle_key(command)

    def _render(self) -> None:
        view = self.controller.view()
        self._console.rule(f"[bold]tmux-fleet[/] · {view.mode.value}")
        self._console.print(render_view(view))
