"""Configuration loading for tmux-fleet."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import model_validator

from .errors import ConfigError

DEFAULT_AGENT = "claude --dangerously-skip-permissions"
HOME_ENV = "TMUX_FLEET_HOME"


def default_home() -> Path:
    override = os.getenv(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path("~/.tmux_fleet").expanduser()


class KeyBindings(BaseModel):
    """Keys bound in the tmux prefix table for gestures inside a session."""

    toggle_pane: str = "T"
    editor: str = "E"


class FleetSettings(BaseModel):
    """Runtime options for the dashboard and session manager."""

    tmux_bin: str = "tmux"
    tmux_socket: str | None = None
    session_prefix: str = "fleet-"
    poll_interval_ms: int = 1500
    capture_lines: int = Field(default=40, gt=0)
    sample_timeout_s: float = Field(default=2.0, gt=0)
    home: Path = Field(default_factory=default_home)
    state_file: Path | None = None
    patterns_file: Path | None = None
    log_file: Path | None = None
    log_level: str = "INFO"
    keys: KeyBindings = Field(default_factory=KeyBindings)

    @model_validator(mode="after")
    def _resolve_paths(self) -> "FleetSettings":
        self.home = self.home.expanduser()
        if self.state_file is None:
            self.state_file = self.home / "state.json"
        if self.log_file is None:
            self.log_file = self.home / "fleet.log"
        self.state_file = self.state_file.expanduser()
        self.log_file = self.log_file.expanduser()
        if self.patterns_file is not None:
            self.patterns_file = self.patterns_file.expanduser()
        return self

    @property
    def lock_dir(self) -> Path:
        return self.home / "locks"

    def poll_interval_seconds(self) -> float:
        return max(self.poll_interval_ms, 100) / 1000.0  # clamp to avoid a busy loop


class AgentBinding(BaseModel):
    """Agent and editor command-line templates, read once per invocation."""

    model_config = ConfigDict(frozen=True)

    agent: str = DEFAULT_AGENT
    editor: str | None = None


def load_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def load_settings(path: Path | None = None) -> FleetSettings:
    if path is None:
        return FleetSettings()
    try:
        raw = load_yaml(path)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    try:
        return FleetSettings.model_validate(raw or {})
    except ValidationError as exc:
        raise ConfigError(f"Invalid fleet config at {path}: {exc}") from exc
