"""Facade tying the store, reconciler, sessions and status sampling together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Any
from typing import Callable
from typing import Sequence

from . import metrics
from .config import AgentBinding
from .config import FleetSettings
from .config import KeyBindings
from .errors import DuplicateWorkspace
from .errors import FleetError
from .errors import WorkspaceNotFound
from .errors import WorktreeError
from .reconcile import reconcile
from .sessions import SessionHandle
from .sessions import SessionManager
from .state import FleetState
from .state import StateStore
from .state import Workspace
from .state import WorkspaceId
from .state import make_key
from .status import Status
from .status import StatusInferenceEngine
from .status import load_rules
from .tmux import TmuxAdapter
from .worktree import WorktreeManager
from .worktree import detect_repo_root
from .worktree import live_paths
from .worktree import sanitize_branch_name

logger = logging.getLogger(__name__)

Handoff = Callable[[Callable[[], Any]], Any]


def direct_handoff(fn: Callable[[], Any]) -> Any:
    return fn()


@dataclass(frozen=True)
class WorkspaceRow:
    key: str
    repo: str
    name: str
    branch: str
    path: Path
    live: bool
    session_name: str | None
    status: Status | None
    last_activity: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "repo": self.repo,
            "name": self.name,
            "branch": self.branch,
            "path": str(self.path),
            "live": self.live,
            "session": self.session_name,
            "status": self.status.value if self.status else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


@dataclass
class Snapshot:
    rows: list[WorkspaceRow]
    removed: list[Workspace] = field(default_factory=list)


class FleetService:
    """Operations shared by the dashboard, the headless driver and the HTTP API."""

    def __init__(
        self,
        store: StateStore,
        sessions: SessionManager,
        engine: StatusInferenceEngine,
        *,
        repo_root: Path | None = None,
        probe: Callable[[list[Workspace]], set[Path]] = live_paths,
        keys: KeyBindings | None = None,
        gesture_command: Sequence[str] | None = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._engine = engine
        self._repo_root = repo_root
        self._probe = probe
        self._keys = keys
        self._gesture_command = list(gesture_command) if gesture_command else None
        self._bindings_installed = False
        self._state = FleetState()
        self._live: dict[WorkspaceId, str] = {}
        self._statuses: dict[WorkspaceId, Status] = {}
        self._activity: dict[WorkspaceId, tuple[int | None, datetime]] = {}

    @property
    def binding(self) -> AgentBinding:
        return self._sessions.binding

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    # Listing ------------------------------------------------------------
    def refresh(self, *, persist: bool = True) -> Snapshot:
        """Reconcile against disk, re-derive liveness and resample every live session.

        With ``persist=False`` stale entries are hidden from the rows but the state
        file is left as it is.
        """
        state = self._store.load()
        result = reconcile(state, self._probe(list(state.worktrees.values())))
        if result.changed and persist:
            self._store.save(result.state)
            metrics.record_reconcile_removed(len(result.removed))
            for workspace in result.removed:
                logger.info("Dropped stale workspace %s (%s)", workspace.identity, workspace.path)
        self._state = result.state
        self.resample()
        return Snapshot(rows=self.rows(), removed=result.removed)

    def resample(self) -> list[WorkspaceRow]:
        self._live = self._sessions.list_live(timeout=self._engine.timeout)
        statuses: dict[WorkspaceId, Status] = {}
        for _, workspace in self._state.sorted_items():
            identity = workspace.identity
            if identity not in self._live:
                continue
            sample = self._engine.sample(self._sessions.handle_for(workspace))
            statuses[identity] = sample.status
            previous = self._activity.get(identity)
            if sample.fingerprint is None and previous is not None:
                continue
            if previous is None or previous[0] != sample.fingerprint:
                self._activity[identity] = (sample.fingerprint, sample.sampled_at)
        self._statuses = statuses
        return self.rows()

    def rows(self) -> list[WorkspaceRow]:
        workspaces = sorted(self._state.worktrees.values(), key=lambda ws: (ws.repo_name, ws.name))
        rows: list[WorkspaceRow] = []
        for workspace in workspaces:
            identity = workspace.identity
            session_name = self._live.get(identity)
            activity = self._activity.get(identity) if session_name else None
            rows.append(
                WorkspaceRow(
                    key=identity.key,
                    repo=workspace.repo_name,
                    name=workspace.name,
                    branch=workspace.branch,
                    path=workspace.path,
                    live=session_name is not None,
                    session_name=session_name,
                    status=self._statuses.get(identity) if session_name else None,
                    last_activity=activity[1] if activity else None,
                )
            )
        return rows

    def workspace(self, key: str) -> Workspace:
        workspace = self._state.get(key)
        if workspace is None:
            self._state = self._store.load()
            workspace = self._state.get(key)
        if workspace is None:
            raise WorkspaceNotFound(f"workspace {key} not found")
        return workspace

    # Session actions ----------------------------------------------------
    def ensure(self, key: str, *, agent_choice: str | None = None) -> SessionHandle:
        workspace = self.workspace(key)
        handle = self._sessions.ensure_session(workspace, agent_choice=agent_choice)
        self._live[handle.identity] = handle.name
        self._store.set_session_hint(key, handle.name)
        if handle.created or not self._bindings_installed:
            self.install_key_bindings()
        return handle

    def attach(
        self,
        key: str,
        handoff: Handoff = direct_handoff,
        *,
        agent_choice: str | None = None,
    ) -> SessionHandle:
        handle = self.ensure(key, agent_choice=agent_choice)
        handoff(lambda: self._sessions.attach(handle))
        return handle

    def destroy(self, key: str) -> bool:
        workspace = self.workspace(key)
        handle = self._sessions.handle_for(workspace)
        existed = self._sessions.destroy(handle)
        self._live.pop(handle.identity, None)
        self._statuses.pop(handle.identity, None)
        self._activity.pop(handle.identity, None)
        return existed

    def toggle_pane(self, session_name: str) -> bool:
        return self._sessions.toggle_secondary_pane(self._handle_by_session(session_name))

    def launch_editor(self, session_name: str) -> None:
        self._sessions.launch_editor(self._handle_by_session(session_name), self.binding.editor)

    def install_key_bindings(self) -> bool:
        """Bind the in-session gestures; a failure only leaves them unavailable."""
        if self._keys is None or self._gesture_command is None:
            return False
        try:
            self._sessions.install_key_bindings(self._keys, self._gesture_command)
        except FleetError as exc:
            logger.warning("Could not install tmux key bindings: %s", exc)
            return False
        self._bindings_installed = True
        return True

    # Workspace and binding actions --------------------------------------
    def create_workspace(self, name: str) -> Workspace:
        if self._repo_root is None:
            raise WorktreeError("not inside a git repository; start the dashboard from one to create workspaces")
        manager = WorktreeManager(self._repo_root)
        key = make_key(manager.repo_name, sanitize_branch_name(name.strip()))
        if self._store.load().get(key) is not None:
            raise DuplicateWorkspace(f"workspace {key} already exists")
        workspace = manager.create(name)
        self._state = self._store.add_workspace(workspace)
        logger.info("Registered workspace %s", key)
        return workspace

    def bind_editor(self, command: str) -> AgentBinding:
        binding = self._store.set_editor(command)
        self._sessions.rebind(binding)
        return binding

    def _handle_by_session(self, session_name: str) -> SessionHandle:
        identity = self._sessions.identity_for(session_name)
        if identity is None:
            raise WorkspaceNotFound(f"{session_name} is not a fleet session")
        return self._sessions.handle_for(self.workspace(identity.key))


def build_service(
    settings: FleetSettings,
    *,
    adapter: TmuxAdapter | None = None,
    repo_root: Path | None = None,
    gesture_command: Sequence[str] | None = None,
) -> FleetService:
    """Startup wiring; raises DependencyMissing or ConfigError before any loop runs."""
    adapter = adapter or TmuxAdapter(tmux_bin=settings.tmux_bin, socket=settings.tmux_socket)
    version = adapter.ensure_available()
    logger.debug("Using %s", version)
    store = StateStore(settings.state_file)
    binding = store.load().binding()
    sessions = SessionManager(
        adapter,
        binding,
        lock_dir=settings.lock_dir,
        prefix=settings.session_prefix,
    )
    engine = StatusInferenceEngine(
        adapter,
        load_rules(settings.patterns_file),
        capture_lines=settings.capture_lines,
        timeout=settings.sample_timeout_s,
    )
    return FleetService(
        store,
        sessions,
        engine,
        repo_root=repo_root if repo_root is not None else detect_repo_root(),
        keys=settings.keys,
        gesture_command=gesture_command,
    )
