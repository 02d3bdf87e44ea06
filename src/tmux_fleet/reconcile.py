"""Align the stored workspace registry with the worktrees that still exist."""
from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Iterable

from .state import FleetState
from .state import Workspace


@dataclass
class ReconcileResult:
    state: FleetState
    removed: list[Workspace] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed)


def reconcile(state: FleetState, live_paths: Iterable[Path | str]) -> ReconcileResult:
    """Drop every entry whose path is not in ``live_paths``.

    Entries are visited in key order so the removal report is reproducible.
    The input state is left untouched.
    """
    live = {_normalise(path) for path in live_paths}
    kept: dict[str, Workspace] = {}
    removed: list[Workspace] = []
    for key, workspace in state.sorted_items():
        if _normalise(workspace.path) in live:
            kept[key] = workspace
        else:
            removed.append(workspace)
    updated = state.model_copy(update={"worktrees": kept})
    return ReconcileResult(state=updated, removed=removed)


def _normalise(path: Path | str) -> str:
    return str(Path(path))
