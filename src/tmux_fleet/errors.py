"""Exception hierarchy shared by the fleet components."""
from __future__ import annotations


class FleetError(Exception):
    """Base class for all tmux-fleet failures."""


class ConfigError(FleetError):
    """Settings or state file is unreadable; fatal before the dashboard starts."""


class StoreCorrupt(ConfigError):
    """State payload could not be parsed even after migration."""


class StoreWriteFailed(FleetError):
    """State file could not be written; the previous file is left in place."""


class DependencyMissing(FleetError):
    """The tmux binary is not installed or its server cannot be reached."""


class SessionCreateFailed(FleetError):
    """tmux refused to create a session; the workspace stays session-less."""

    def __init__(self, session_name: str, cause: str) -> None:
        super().__init__(f"failed to create session {session_name}: {cause}")
        self.session_name = session_name
        self.cause = cause


class SampleFailed(FleetError):
    """Pane capture failed; callers degrade the status to Unknown."""


class DuplicateWorkspace(FleetError):
    """A workspace with the same (repository, workspace) key already exists."""


class WorkspaceNotFound(FleetError):
    """No workspace is registered under the requested key."""


class WorktreeError(FleetError):
    """The git worktree collaborator failed."""


class ActionCancelled(FleetError):
    """Operator cancelled a prompt; the dashboard returns to the listing silently."""


__all__ = [
    "FleetError",
    "ConfigError",
    "StoreCorrupt",
    "StoreWriteFailed",
    "DependencyMissing",
    "SessionCreateFailed",
    "SampleFailed",
    "DuplicateWorkspace",
    "WorkspaceNotFound",
    "WorktreeError",
    "ActionCancelled",
]
