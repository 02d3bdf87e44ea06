"""Resolve the command line that a new workspace session runs."""
from __future__ import annotations

import json
import logging
import os
import re
import shlex
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import Iterator

from .config import DEFAULT_AGENT
from .config import AgentBinding
from .errors import ConfigError

logger = logging.getLogger(__name__)

CODEX_SESSIONS_ENV = "TMUX_FLEET_CODEX_SESSIONS_DIR"
CLAUDE_PROJECTS_ENV = "TMUX_FLEET_CLAUDE_PROJECTS_DIR"

AGENT_ALIASES = {
    "claude": DEFAULT_AGENT,
    "gemini": "gemini -y",
}

# choices offered when a workspace is opened; None starts a plain shell
AGENT_CHOICES: dict[str, str | None] = {
    "codex": "codex",
    "claude": DEFAULT_AGENT,
    "skip": None,
}


@dataclass(frozen=True)
class CodexSession:
    id: str
    cwd: Path
    last_timestamp: datetime | None
    last_user_message: str | None


@dataclass(frozen=True)
class ClaudeSession:
    id: str
    last_timestamp: datetime | None
    last_user_message: str


def normalize_agent_command(command: str) -> str:
    trimmed = command.strip()
    return AGENT_ALIASES.get(trimmed.lower(), trimmed)


def split_command_line(command: str) -> list[str]:
    try:
        parts = shlex.split(command)
    except ValueError as exc:
        raise ConfigError(f"Invalid agent command: {command} ({exc})") from exc
    if not parts:
        raise ConfigError("Agent command is empty")
    return parts


def resolve_agent_command(workspace_path: Path, binding: AgentBinding) -> list[str]:
    """Argument vector for a fresh session; codex resumes its latest log for the path."""
    argv = split_command_line(normalize_agent_command(binding.agent))
    if Path(argv[0]).name == "codex" and "resume" not in argv[1:]:
        session = find_latest_codex_session(workspace_path)
        if session is not None:
            logger.info("Resuming codex session %s for %s", session.id, workspace_path)
            argv += ["resume", session.id]
    return argv


def resolve_editor_command(workspace_path: Path, editor: str) -> list[str]:
    return [*split_command_line(editor), str(workspace_path)]


def binding_for_choice(choice: str, current: AgentBinding) -> AgentBinding | None:
    """Binding for an explicit agent choice; None means launch no agent."""
    try:
        agent = AGENT_CHOICES[choice.strip().lower()]
    except KeyError:
        raise ConfigError(f"Unknown agent choice {choice!r}; expected one of {', '.join(AGENT_CHOICES)}") from None
    if agent is None:
        return None
    return current.model_copy(update={"agent": agent})


# Codex session logs -------------------------------------------------------
def codex_sessions_root() -> Path:
    override = os.getenv(CODEX_SESSIONS_ENV)
    if override:
        return Path(override)
    return Path("~/.codex/sessions").expanduser()


def find_latest_codex_session(workspace_path: Path) -> CodexSession | None:
    target = _canonical(workspace_path)
    for path in _session_files():
        session = _parse_session_file(path)
        if session is not None and _matches(session.cwd, target, workspace_path):
            return session
    return None


def recent_codex_sessions(workspace_path: Path, limit: int | None = 3) -> tuple[list[CodexSession], int]:
    """Newest sessions for the path, at most ``limit`` of them (all when None), and the total count."""
    target = _canonical(workspace_path)
    sessions: list[CodexSession] = []
    total = 0
    for path in _session_files():
        session = _parse_session_file(path)
        if session is None or not _matches(session.cwd, target, workspace_path):
            continue
        total += 1
        if limit is None or len(sessions) < limit:
            sessions.append(session)
    return sessions, total


def _session_files() -> Iterator[Path]:
    """Yield ``YYYY/MM/DD/*.jsonl`` files newest first."""
    root = codex_sessions_root()
    for year in _sorted_children(root, dirs=True):
        for month in _sorted_children(year, dirs=True):
            for day in _sorted_children(month, dirs=True):
                yield from _sorted_children(day, dirs=False)


def _sorted_children(path: Path, *, dirs: bool) -> list[Path]:
    if not path.is_dir():
        return []
    children = [child for child in path.iterdir() if child.is_dir() == dirs]
    return sorted(children, key=lambda child: child.name, reverse=True)


def _parse_session_file(path: Path) -> CodexSession | None:
    try:
        with path.open("r", encoding="utf-8") as handle:
            first = handle.readline()
            if not first.strip():
                return None
            meta = json.loads(first)
            if not isinstance(meta, dict) or meta.get("type") != "session_meta":
                return None
            payload = meta.get("payload")
            if not isinstance(payload, dict):
                return None
            session_id = payload.get("id")
            cwd = payload.get("cwd")
            if not session_id or not cwd:
                return None
            last_timestamp = _parse_timestamp(payload.get("timestamp"))
            last_message: str | None = None
            for line in handle:
                event = _loads(line)
                if not event or event.get("type") != "response_item":
                    continue
                item = event.get("payload")
                if not isinstance(item, dict):
                    continue
                if item.get("role") != "user" or item.get("type") != "message":
                    continue
                stamp = _parse_timestamp(event.get("timestamp"))
                if stamp and (last_timestamp is None or stamp > last_timestamp):
                    last_timestamp = stamp
                message = _extract_user_message(item)
                if message and message.strip():
                    last_message = message
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Skipping unreadable codex session %s: %s", path, exc)
        return None
    return CodexSession(
        id=str(session_id),
        cwd=Path(cwd),
        last_timestamp=last_timestamp,
        last_user_message=last_message,
    )


def _extract_user_message(item: dict[str, Any]) -> str | None:
    content = item.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None
    segments = []
    for node in content:
        if not isinstance(node, dict):
            continue
        text = node.get("text") or node.get("content")
        if isinstance(text, str):
            segments.append(text)
    return "\n".join(segments) or None


def _loads(line: str) -> dict[str, Any] | None:
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _canonical(path: Path) -> Path:
    try:
        return path.resolve(strict=True)
    except OSError:
        return path


def _matches(session_cwd: Path, target: Path, fallback: Path) -> bool:
    return _canonical(session_cwd) == target or session_cwd == fallback


# Claude session logs ------------------------------------------------------
def claude_projects_root() -> Path:
    override = os.getenv(CLAUDE_PROJECTS_ENV)
    if override:
        return Path(override)
    return Path("~/.claude/projects").expanduser()


def claude_project_dir(workspace_path: Path) -> Path:
    # claude keys a project by its path with every non-alphanumeric character replaced by "-"
    encoded = re.sub(r"[^A-Za-z0-9-]", "-", str(_canonical(workspace_path)))
    return claude_projects_root() / encoded


def recent_claude_sessions(workspace_path: Path, limit: int | None = 3) -> tuple[list[ClaudeSession], int]:
    """Claude conversations recorded for the path, newest first."""
    project = claude_project_dir(workspace_path)
    if not project.is_dir():
        return [], 0
    files = [path for path in project.glob("*.jsonl") if path.is_file()]
    files.sort(key=lambda path: path.stat().st_mtime, reverse=True)
    sessions: list[ClaudeSession] = []
    total = 0
    for path in files:
        session = _parse_claude_file(path)
        if session is None:
            continue
        total += 1
        if limit is None or len(sessions) < limit:
            sessions.append(session)
    return sessions, total


def _parse_claude_file(path: Path) -> ClaudeSession | None:
    last_message: str | None = None
    last_timestamp: datetime | None = None
    try:
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                event = _loads(line)
                if not event or event.get("type") != "user":
                    continue
                message = event.get("message")
                if not isinstance(message, dict) or message.get("role") != "user":
                    continue
                text = _claude_text(message.get("content"))
                if not text:
                    continue
                last_message = text
                stamp = _parse_timestamp(event.get("timestamp"))
                if stamp is not None:
                    last_timestamp = stamp
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("Skipping unreadable claude session %s: %s", path, exc)
        return None
    if last_message is None:
        return None
    return ClaudeSession(id=path.stem, last_timestamp=last_timestamp, last_user_message=last_message)


def _claude_text(content: Any) -> str | None:
    if isinstance(content, str):
        text = content.strip()
    elif isinstance(content, list):
        # tool results are user turns too, but carry no typed text
        parts = [
            node.get("text", "")
            for node in content
            if isinstance(node, dict) and node.get("type") == "text" and isinstance(node.get("text"), str)
        ]
        text = "\n".join(parts).strip()
    else:
        return None
    if not text or text.startswith("<command-") or text.startswith("<local-command-"):
        return None
    return text
