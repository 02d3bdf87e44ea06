from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Callable

import pytest

from tmux_fleet.config import AgentBinding
from tmux_fleet.config import KeyBindings
from tmux_fleet.launcher import CLAUDE_PROJECTS_ENV
from tmux_fleet.launcher import CODEX_SESSIONS_ENV
from tmux_fleet.service import FleetService
from tmux_fleet.sessions import SessionManager
from tmux_fleet.state import StateStore
from tmux_fleet.state import Workspace
from tmux_fleet.status import StatusInferenceEngine
from tmux_fleet.tmux import FakeTmuxAdapter

FIXTURES = Path(__file__).parent / "fixtures"


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TMUX_FLEET_HOME", str(tmp_path / "home"))
    monkeypatch.setenv(CODEX_SESSIONS_ENV, str(tmp_path / "codex-sessions"))
    monkeypatch.setenv(CLAUDE_PROJECTS_ENV, str(tmp_path / "claude-projects"))


@pytest.fixture()
def adapter() -> FakeTmuxAdapter:
    return FakeTmuxAdapter()


@pytest.fixture()
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "home" / "state.json")


@pytest.fixture()
def make_workspace(tmp_path: Path) -> Callable[..., Workspace]:
    def factory(repo: str, name: str, *, create: bool = True) -> Workspace:
        path = tmp_path / "worktrees" / f"{repo}-{name}"
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return Workspace(name=name, repo_name=repo, path=path, branch=name)

    return factory


@pytest.fixture()
def sessions(adapter: FakeTmuxAdapter, tmp_path: Path) -> SessionManager:
    return SessionManager(adapter, AgentBinding(agent="echo agent"), lock_dir=tmp_path / "locks")


@pytest.fixture()
def clock() -> StepClock:
    return StepClock()


@pytest.fixture()
def engine(adapter: FakeTmuxAdapter, clock: StepClock) -> StatusInferenceEngine:
    return StatusInferenceEngine(adapter, clock=clock)


@pytest.fixture()
def service(store: StateStore, sessions: SessionManager, engine: StatusInferenceEngine) -> FleetService:
    return FleetService(
        store,
        sessions,
        engine,
        keys=KeyBindings(),
        gesture_command=["tmux-fleet"],
    )
