"""JSON-backed workspace registry with versioned migration and atomic saves."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import Callable

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError

from .config import DEFAULT_AGENT
from .config import AgentBinding
from .errors import DuplicateWorkspace
from .errors import StoreCorrupt
from .errors import StoreWriteFailed

logger = logging.getLogger(__name__)

STATE_VERSION = 2
EPOCH = "1970-01-01T00:00:00+00:00"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class WorkspaceId:
    repo: str
    name: str

    @property
    def key(self) -> str:
        return make_key(self.repo, self.name)

    @classmethod
    def parse(cls, key: str) -> "WorkspaceId":
        repo, sep, name = key.partition("/")
        if not sep or not repo or not name:
            raise ValueError(f"workspace key must look like <repository>/<workspace>: {key!r}")
        return cls(repo=repo, name=name)

    def __str__(self) -> str:
        return self.key


def make_key(repo: str, name: str) -> str:
    return f"{repo}/{name}"


class Workspace(BaseModel):
    """A registered worktree; unknown fields survive a load/save cycle."""

    model_config = ConfigDict(extra="allow")

    name: str
    repo_name: str
    path: Path
    branch: str
    created_at: datetime = Field(default_factory=_now)
    session: str | None = None

    @property
    def identity(self) -> WorkspaceId:
        return WorkspaceId(repo=self.repo_name, name=self.name)


class FleetState(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int = STATE_VERSION
    agent: str | None = None
    editor: str | None = None
    worktrees: dict[str, Workspace] = Field(default_factory=dict)

    def add(self, workspace: Workspace) -> None:
        key = workspace.identity.key
        if key in self.worktrees:
            raise DuplicateWorkspace(f"workspace {key} already exists")
        self.worktrees[key] = workspace

    def get(self, key: str) -> Workspace | None:
        return self.worktrees.get(key)

    def sorted_items(self) -> list[tuple[str, Workspace]]:
        return sorted(self.worktrees.items())

    def binding(self) -> AgentBinding:
        agent = (self.agent or "").strip() or DEFAULT_AGENT
        editor = (self.editor or "").strip() or None
        return AgentBinding(agent=agent, editor=editor)


# Migrations ---------------------------------------------------------------
def _rekey_legacy_entries(data: dict[str, Any]) -> dict[str, Any]:
    """v1: entries keyed by bare workspace name become ``<repo>/<name>``."""
    worktrees = data.get("worktrees") or {}
    if not isinstance(worktrees, dict):
        raise StoreCorrupt("'worktrees' must be an object")
    rekeyed: dict[str, Any] = {}
    for key, entry in sorted(worktrees.items()):
        if not isinstance(entry, dict):
            raise StoreCorrupt(f"worktree entry {key!r} must be an object")
        if "/" in key:
            new_key = key
        else:
            repo = entry.get("repo_name") or entry.pop("repo", None) or _repo_from_path(entry.get("path"), key)
            entry.setdefault("repo_name", repo)
            entry.setdefault("name", key)
            new_key = make_key(repo, key)
        if new_key in rekeyed:
            raise StoreCorrupt(f"legacy entry {key!r} collides with {new_key!r}")
        rekeyed[new_key] = entry
    data["worktrees"] = rekeyed
    return data


def _default_entry_fields(data: dict[str, Any]) -> dict[str, Any]:
    """v2: fill fields that older writers did not record."""
    for key, entry in data.get("worktrees", {}).items():
        repo, _, name = key.partition("/")
        entry.setdefault("repo_name", repo)
        entry.setdefault("name", name)
        entry.setdefault("branch", entry["name"])
        entry.setdefault("created_at", EPOCH)
    return data


def _repo_from_path(path: Any, name: str) -> str:
    # worktrees live beside the repository as ``<repo>-<name>``
    if isinstance(path, str) and path:
        base = Path(path).name
        suffix = f"-{name}"
        if base.endswith(suffix) and len(base) > len(suffix):
            return base[: -len(suffix)]
    return "default"


MIGRATIONS: list[tuple[int, Callable[[dict[str, Any]], dict[str, Any]]]] = [
    (1, _rekey_legacy_entries),
    (2, _default_entry_fields),
]


def migrate(raw: dict[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    version = data.get("version", 0)
    if not isinstance(version, int):
        raise StoreCorrupt(f"unsupported state version {version!r}")
    for target, step in MIGRATIONS:
        if version < target:
            logger.info("Migrating state file from v%s to v%s", version, target)
            data = step(data)
            version = target
    data["version"] = version
    return data


class StateStore:
    """Durable mapping from workspace key to metadata, stored as one JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> FleetState:
        if not self.path.exists():
            return FleetState()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreCorrupt(f"State file {self.path} is not valid JSON: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise StoreCorrupt(f"State file {self.path} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise StoreCorrupt(f"State file {self.path} is unreadable: {exc}") from exc
        if not isinstance(raw, dict):
            raise StoreCorrupt(f"State file {self.path} must contain a JSON object")
        try:
            return FleetState.model_validate(migrate(raw))
        except ValidationError as exc:
            raise StoreCorrupt(f"State file {self.path} failed validation: {exc}") from exc

    def save(self, state: FleetState) -> None:
        payload = state.model_dump(mode="json")
        text = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        except OSError as exc:
            raise StoreWriteFailed(f"cannot write {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException as exc:
            Path(tmp_name).unlink(missing_ok=True)
            if isinstance(exc, OSError):
                raise StoreWriteFailed(f"cannot write {self.path}: {exc}") from exc
            raise

    # Convenience mutations ---------------------------------------------
    def add_workspace(self, workspace: Workspace) -> FleetState:
        state = self.load()
        state.add(workspace)
        self.save(state)
        return state

    def set_session_hint(self, key: str, session_name: str) -> None:
        state = self.load()
        entry = state.get(key)
        if entry is None or entry.session == session_name:
            return
        entry.session = session_name
        self.save(state)

    def set_editor(self, command: str | None) -> AgentBinding:
        state = self.load()
        state.editor = command.strip() if command and command.strip() else None
        self.save(state)
        return state.binding()
