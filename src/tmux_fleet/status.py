"""Classify a session's pane text into a coarse working status."""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Callable
from typing import Iterable

import yaml
from pydantic import BaseModel
from pydantic import ValidationError
from pydantic import field_validator

from . import metrics
from .errors import ConfigError
from .errors import FleetError
from .errors import SampleFailed
from .sessions import SessionHandle
from .state import WorkspaceId
from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)


class Status(str, Enum):
    WAITING = "WAITING"
    PROCESSING = "PROCESSING"
    IDLE = "IDLE"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class PatternRule(BaseModel):
    status: Status
    pattern: str
    ignore_case: bool = False

    @field_validator("status")
    @classmethod
    def _classifiable(cls, value: Status) -> Status:
        if value is Status.UNKNOWN:
            raise ValueError("UNKNOWN is reserved for failed samples")
        return value

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regex {value!r}: {exc}") from exc
        return value

    def compile(self) -> re.Pattern[str]:
        flags = re.MULTILINE
        if self.ignore_case:
            flags |= re.IGNORECASE
        return re.compile(self.pattern, flags)


class PatternTable(BaseModel):
    rules: list[PatternRule]


@dataclass(frozen=True)
class StatusSample:
    identity: WorkspaceId
    status: Status
    sampled_at: datetime
    fingerprint: int | None = None


def parse_rules(raw: object, source: str) -> list[PatternRule]:
    try:
        return PatternTable.model_validate(raw or {}).rules
    except ValidationError as exc:
        raise ConfigError(f"Invalid status patterns in {source}: {exc}") from exc


def load_rules(path: Path | None = None) -> list[PatternRule]:
    """Rules from ``path``, or the packaged ``patterns.yaml`` when omitted."""
    if path is None:
        text = resources.files("tmux_fleet").joinpath("patterns.yaml").read_text(encoding="utf-8")
        source = "packaged patterns.yaml"
    else:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read status patterns {path}: {exc}") from exc
        source = str(path)
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {source}: {exc}") from exc
    return parse_rules(raw, source)


class StatusInferenceEngine:
    """Samples the primary pane and runs the ordered rule table over its tail."""

    def __init__(
        self,
        adapter: TmuxAdapter,
        rules: Iterable[PatternRule] | None = None,
        *,
        capture_lines: int = 40,
        timeout: float = 2.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._adapter = adapter
        rule_list = list(rules) if rules is not None else load_rules()
        self._compiled = [(rule.status, rule.compile()) for rule in rule_list]
        self._capture_lines = capture_lines
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def timeout(self) -> float:
        return self._timeout

    def classify(self, text: str | None) -> Status:
        region = self._tail(text or "")
        for status, regex in self._compiled:
            if regex.search(region):
                return status
        return Status.IDLE

    def sample(self, handle: SessionHandle) -> StatusSample:
        sampled_at = self._clock()
        try:
            text = self._capture(handle)
        except (FleetError, OSError, ValueError) as exc:
            logger.debug("Sampling %s failed: %s", handle.name, exc)
            metrics.record_sample_failure()
            metrics.record_sample(Status.UNKNOWN.value)
            return StatusSample(identity=handle.identity, status=Status.UNKNOWN, sampled_at=sampled_at)
        status = self.classify(text)
        metrics.record_sample(status.value)
        return StatusSample(
            identity=handle.identity,
            status=status,
            sampled_at=sampled_at,
            fingerprint=hash(self._tail(text)),
        )

    def _capture(self, handle: SessionHandle) -> str:
        # one budget covers both tmux round trips
        deadline = time.monotonic() + self._timeout
        target = self._adapter.primary_pane(handle.name, timeout=self._timeout)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SampleFailed(f"no time left to capture {handle.name} within {self._timeout}s")
        result = self._adapter.capture_pane_text(target, self._capture_lines, timeout=remaining)
        if not result.ok:
            raise SampleFailed(result.error)
        return result.stdout

    def _tail(self, text: str) -> str:
        lines = text.splitlines()
        while lines and not lines[-1].strip():
            lines.pop()
        return "\n".join(lines[-self._capture_lines :])
