"""tmux sessions hosting one agent per workspace."""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass
from dataclasses import replace
from pathlib import Path
from typing import Callable
from typing import Sequence

from . import metrics
from .config import AgentBinding
from .config import KeyBindings
from .errors import ConfigError
from .errors import FleetError
from .errors import SessionCreateFailed
from .launcher import binding_for_choice
from .launcher import resolve_agent_command
from .launcher import resolve_editor_command
from .locking import locked
from .state import Workspace
from .state import WorkspaceId
from .tmux import TmuxAdapter
from .tmux import TmuxResult

logger = logging.getLogger(__name__)

SAFE_CHARS = frozenset(string.ascii_letters + string.digits + "-")
ESCAPE = "_"
# encoded components never contain "__" because every "_" is followed by a hex digit
SEPARATOR = "__"

Launcher = Callable[[Path, AgentBinding], Sequence[str]]


def encode_component(value: str) -> str:
    out: list[str] = []
    for byte in value.encode("utf-8"):
        char = chr(byte)
        if char in SAFE_CHARS:
            out.append(char)
        else:
            out.append(f"{ESCAPE}{byte:02x}")
    return "".join(out)


def decode_component(text: str) -> str:
    raw = bytearray()
    idx = 0
    while idx < len(text):
        char = text[idx]
        if char == ESCAPE:
            chunk = text[idx + 1 : idx + 3]
            if len(chunk) != 2 or any(c not in string.hexdigits for c in chunk):
                raise ValueError(f"malformed escape in {text!r}")
            raw.append(int(chunk, 16))
            idx += 3
            continue
        if char not in SAFE_CHARS:
            raise ValueError(f"unexpected character {char!r} in {text!r}")
        raw.append(ord(char))
        idx += 1
    return raw.decode("utf-8")


@dataclass(frozen=True)
class SessionHandle:
    name: str
    identity: WorkspaceId
    path: Path
    created: bool = False


class SessionManager:
    """Lifecycle of tmux sessions keyed by workspace identity."""

    def __init__(
        self,
        adapter: TmuxAdapter,
        binding: AgentBinding,
        *,
        lock_dir: Path,
        prefix: str = "fleet-",
        launcher: Launcher = resolve_agent_command,
    ) -> None:
        self._adapter = adapter
        self._binding = binding
        self._lock_dir = lock_dir
        self._prefix = prefix
        self._launcher = launcher

    @property
    def binding(self) -> AgentBinding:
        return self._binding

    def rebind(self, binding: AgentBinding) -> None:
        self._binding = binding

    # Naming -------------------------------------------------------------
    def session_name(self, identity: WorkspaceId) -> str:
        return f"{self._prefix}{encode_component(identity.repo)}{SEPARATOR}{encode_component(identity.name)}"

    def identity_for(self, session_name: str) -> WorkspaceId | None:
        if not session_name.startswith(self._prefix):
            return None
        body = session_name[len(self._prefix) :]
        repo, sep, name = body.partition(SEPARATOR)
        if not sep:
            return None
        try:
            return WorkspaceId(repo=decode_component(repo), name=decode_component(name))
        except (ValueError, UnicodeDecodeError):
            return None

    def handle_for(self, workspace: Workspace) -> SessionHandle:
        identity = workspace.identity
        return SessionHandle(name=self.session_name(identity), identity=identity, path=workspace.path)

    # Lifecycle ----------------------------------------------------------
    def ensure_session(self, workspace: Workspace, *, agent_choice: str | None = None) -> SessionHandle:
        """Create the session unless it exists; ``agent_choice`` only applies to a new session."""
        handle = self.handle_for(workspace)
        binding = self._binding if agent_choice is None else binding_for_choice(agent_choice, self._binding)
        if self._adapter.session_exists(handle.name):
            metrics.record_session_create("reused")
            return handle
        with locked(self._lock_path(handle)):
            # another caller may have finished creating while we waited
            if self._adapter.session_exists(handle.name):
                metrics.record_session_create("reused")
                return handle
            try:
                command = [] if binding is None else list(self._launcher(workspace.path, binding))
            except ConfigError as exc:
                metrics.record_session_create("failed")
                raise SessionCreateFailed(handle.name, str(exc)) from exc
            result = self._adapter.create_session(
                handle.name,
                command,
                start_directory=str(workspace.path),
                env={"FLEET_WORKSPACE": handle.identity.key, "FLEET_SESSION": handle.name},
            )
            if not result.ok:
                if self._adapter.session_exists(handle.name):
                    # created by a caller that does not share our lock directory
                    metrics.record_session_create("reused")
                    return handle
                metrics.record_session_create("failed")
                logger.warning("Creating %s failed: %s", handle.name, result.error)
                raise SessionCreateFailed(handle.name, result.error)
        metrics.record_session_create("created")
        logger.info("Created session %s in %s", handle.name, workspace.path)
        return replace(handle, created=True)

    def attach(self, handle: SessionHandle) -> TmuxResult:
        logger.info("Attaching to %s", handle.name)
        result = self._adapter.attach(handle.name)
        logger.info("Returned from %s (status %s)", handle.name, result.returncode)
        return result

    def destroy(self, handle: SessionHandle) -> bool:
        """Kill the session; returns False when it was already gone."""
        if not self._adapter.session_exists(handle.name):
            return False
        result = self._adapter.kill_session(handle.name)
        if not result.ok and self._adapter.session_exists(handle.name):
            raise FleetError(f"failed to kill {handle.name}: {result.error}")
        logger.info("Destroyed session %s", handle.name)
        self._drop_lock_file(handle)
        return True

    def is_live(self, handle: SessionHandle) -> bool:
        return self._adapter.session_exists(handle.name)

    def list_live(self, *, timeout: float | None = None) -> dict[WorkspaceId, str]:
        live: dict[WorkspaceId, str] = {}
        for name in self._adapter.list_sessions(timeout=timeout):
            identity = self.identity_for(name)
            if identity is not None and self.session_name(identity) == name:
                live[identity] = name
        return live

    # Panes --------------------------------------------------------------
    def toggle_secondary_pane(self, handle: SessionHandle) -> bool:
        """Open a shell beside the agent, or close the extra panes; True when one was opened."""
        panes = self._adapter.list_panes(handle.name)
        if not panes:
            raise FleetError(f"session {handle.name} is not running")
        if len(panes) > 1:
            for pane in panes[1:]:
                self._check(self._adapter.kill_pane(pane.pane_id))
            return False
        self._check(self._adapter.split_pane(handle.name, start_directory=str(handle.path)))
        return True

    def launch_editor(self, handle: SessionHandle, editor_command: str | None) -> None:
        if not editor_command:
            raise ConfigError("no editor is bound; set one from the dashboard first")
        command = resolve_editor_command(handle.path, editor_command)
        self._check(self._adapter.split_pane(handle.name, start_directory=str(handle.path), command=command))

    def install_key_bindings(self, keys: KeyBindings, executable: Sequence[str]) -> None:
        """Bind the in-session gestures to ``<executable> pane <action> <session>``."""
        for key, action in ((keys.toggle_pane, "toggle"), (keys.editor, "editor")):
            self._check(self._adapter.bind_key(key, [*executable, "pane", action, "#{session_name}"]))

    def _lock_path(self, handle: SessionHandle) -> Path:
        return self._lock_dir / f"{handle.name}.lock"

    def _drop_lock_file(self, handle: SessionHandle) -> None:
        # a waiter holding the unlinked file still rechecks tmux before creating
        path = self._lock_path(handle)
        with locked(path):
            path.unlink(missing_ok=True)

    @staticmethod
    def _check(result: TmuxResult) -> None:
        if not result.ok:
            raise FleetError(result.error)
