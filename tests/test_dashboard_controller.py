import errno
import io
import os
import shutil

import pytest
from rich.console import Console

from tmux_fleet.dashboard.controller import DashboardController
from tmux_fleet.dashboard.controller import Mode
from tmux_fleet.dashboard.headless import HeadlessDriver
from tmux_fleet.errors import SampleFailed
from tmux_fleet.service import FleetService
from tmux_fleet.state import StateStore
from tmux_fleet.status import Status
from tmux_fleet.tmux import FakeTmuxAdapter


@pytest.fixture()
def registered(store: StateStore, make_workspace):
    workspaces = [make_workspace("repoA", name) for name in ("feat1", "feat2", "feat3")]
    for workspace in workspaces:
        store.add_workspace(workspace)
    return workspaces


@pytest.fixture()
def controller(service: FleetService, registered) -> DashboardController:
    ctl = DashboardController(service)
    ctl.start()
    return ctl


def _type(controller: DashboardController, text: str) -> None:
    for char in text:
        controller.handle_key(char)


def test_starts_in_listing_with_sorted_rows(controller: DashboardController) -> None:
    view = controller.view()

    assert view.mode is Mode.LISTING
    assert [row.key for row in view.rows] == ["repoA/feat1", "repoA/feat2", "repoA/feat3"]
    assert view.selected.key == "repoA/feat1"


def test_attach_then_detach_restores_listing_and_cursor(
    service: FleetService, store: StateStore, adapter: FakeTmuxAdapter, make_workspace, registered
) -> None:
    observed = []
    other = service.ensure("repoA/feat3")
    adapter.set_pane_text(other.name, "$ idle")

    def handoff(fn):
        observed.append(controller.mode)
        # while attached, another agent starts asking a question and a new workspace appears
        adapter.set_pane_text(other.name, "Do you want to proceed?")
        store.add_workspace(make_workspace("repoA", "aaa"))
        return fn()

    controller = DashboardController(service, handoff=handoff)
    controller.start()
    controller.handle_key("down")
    assert controller.view().selected.key == "repoA/feat2"

    controller.handle_key("enter")

    view = controller.view()
    assert observed == [Mode.ATTACHED_ELSEWHERE]
    assert view.mode is Mode.LISTING
    assert view.selected.key == "repoA/feat2"
    assert view.cursor == 2
    rows = {row.key: row for row in view.rows}
    assert rows["repoA/feat2"].live
    assert rows["repoA/feat3"].status is Status.WAITING
    assert adapter.attached == [rows["repoA/feat2"].session_name]


def test_attach_failure_is_inline(controller: DashboardController, adapter: FakeTmuxAdapter) -> None:
    adapter.fail_create = "server exited unexpectedly"

    controller.handle_key("enter")

    view = controller.view()
    assert view.mode is Mode.LISTING
    assert controller.running
    assert "server exited unexpectedly" in view.message
    assert not view.selected.live


def test_help_overlay_returns_on_any_key(controller: DashboardController) -> None:
    controller.handle_key("?")
    assert controller.view().mode is Mode.HELP_OVERLAY
    assert controller.view().help_lines

    controller.handle_key("x")
    assert controller.view().mode is Mode.LISTING


def test_quit(controller: DashboardController) -> None:
    controller.handle_key("q")
    assert controller.running is False


def test_create_prompt_cancel_has_no_side_effect(controller: DashboardController, store: StateStore) -> None:
    before = store.load().worktrees.keys()

    controller.handle_key("n")
    assert controller.view().mode is Mode.PROMPTING
    _type(controller, "feat9")
    assert controller.view().prompt_text == "feat9"
    controller.handle_key("escape")

    view = controller.view()
    assert view.mode is Mode.LISTING
    assert view.message is None
    assert store.load().worktrees.keys() == before


def test_empty_create_submission_is_silent(controller: DashboardController) -> None:
    controller.handle_key("n")
    controller.handle_key("enter")

    assert controller.view().mode is Mode.LISTING
    assert controller.view().message is None


def test_create_outside_repository_reports_inline(controller: DashboardController) -> None:
    controller.handle_key("n")
    controller.submit("feat9")

    view = controller.view()
    assert view.mode is Mode.LISTING
    assert "git repository" in view.message


def test_bind_editor_prompt(controller: DashboardController, store: StateStore, service: FleetService) -> None:
    controller.handle_key("e")
    _type(controller, "vimx")
    controller.handle_key("backspace")
    controller.handle_key("enter")

    assert controller.view().mode is Mode.LISTING
    assert store.load().editor == "vim"
    assert service.binding.editor == "vim"
    assert "vim" in controller.view().message

    controller.handle_key("e")
    assert controller.view().prompt_text == "vim"
    controller.handle_key("escape")


def test_destroy_requires_confirmation(
    controller: DashboardController, service: FleetService, adapter: FakeTmuxAdapter
) -> None:
    handle = service.ensure("repoA/feat1")
    controller.refresh()

    controller.handle_key("d")
    assert controller.view().mode is Mode.CONFIRMING
    assert "repoA/feat1" in controller.view().confirm_text
    controller.handle_key("n")
    assert controller.view().mode is Mode.LISTING
    assert adapter.session_exists(handle.name)

    controller.handle_key("d")
    controller.handle_key("y")
    assert controller.view().mode is Mode.LISTING
    assert not adapter.session_exists(handle.name)
    assert not controller.view().selected.live


def test_refresh_reports_removed_workspaces(controller: DashboardController, registered) -> None:
    shutil.rmtree(registered[1].path)

    controller.handle_key("r")

    view = controller.view()
    assert [row.key for row in view.rows] == ["repoA/feat1", "repoA/feat3"]
    assert "repoA/feat2" in view.message


def test_cursor_moves_within_bounds(controller: DashboardController) -> None:
    controller.handle_key("up")
    assert controller.view().cursor == 0
    for _ in range(5):
        controller.handle_key("j")
    assert controller.view().cursor == 2
    controller.handle_key("k")
    assert controller.view().selected.key == "repoA/feat2"


def test_rows_are_stable_across_renders(controller: DashboardController, service: FleetService) -> None:
    service.ensure("repoA/feat2")
    controller.tick()
    first = [row.key for row in controller.view().rows]
    controller.tick()
    controller.refresh()
    second = [row.key for row in controller.view().rows]

    assert first == second


def test_tick_resamples_live_sessions(controller: DashboardController, service: FleetService, adapter: FakeTmuxAdapter) -> None:
    handle = service.ensure("repoA/feat1")
    adapter.set_pane_text(handle.name, "• Working (3s • Esc to interrupt)")

    controller.tick()

    assert controller.view().rows[0].status is Status.PROCESSING


def test_actions_with_no_workspaces(service: FleetService) -> None:
    controller = DashboardController(service)
    controller.start()

    controller.handle_key("enter")
    assert controller.view().message == "no workspace selected"
    controller.handle_key("d")
    assert controller.view().mode is Mode.LISTING


def test_headless_driver_script(service: FleetService, registered, store: StateStore) -> None:
    output = io.StringIO()
    script = io.StringIO("down\ne\ncode --wait\nn\n:cancel\n:tick\n?\nx\nq\nr\n")
    driver = HeadlessDriver(DashboardController(service), script, Console(file=output, width=120))

    assert driver.run() == 0

    assert store.load().editor == "code --wait"
    assert driver.controller.running is False
    assert driver.controller.view().selected.key == "repoA/feat2"
    assert "repoA" in output.getvalue()


@pytest.fixture()
def full_disk(monkeypatch: pytest.MonkeyPatch) -> None:
    def replace(src, dst):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(os, "replace", replace)


def test_failed_state_writes_stay_inline(
    controller: DashboardController, registered, adapter: FakeTmuxAdapter, full_disk
) -> None:
    controller.handle_key("e")
    controller.submit("vim")
    assert controller.view().mode is Mode.LISTING
    assert "No space left" in controller.view().message

    controller.handle_key("enter")
    assert controller.view().mode is Mode.LISTING
    assert "No space left" in controller.view().message

    shutil.rmtree(registered[2].path)
    controller.handle_key("r")
    view = controller.view()
    assert view.message.startswith("refresh failed")
    assert controller.running


def test_hung_session_listing_keeps_previous_rows(
    controller: DashboardController, adapter: FakeTmuxAdapter, monkeypatch: pytest.MonkeyPatch
) -> None:
    before = controller.view().rows

    def hung(*, timeout=None):
        raise SampleFailed(f"tmux list-sessions timed out after {timeout}s")

    monkeypatch.setattr(adapter, "list_sessions", hung)
    controller.tick()

    view = controller.view()
    assert view.rows == before
    assert view.message.startswith("resample failed")
    assert "timed out after 2.0s" in view.message
