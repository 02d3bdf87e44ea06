"""Adapter around the tmux CLI for session lifecycle and pane capture."""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Mapping
from typing import Sequence

from .errors import DependencyMissing
from .errors import SampleFailed

logger = logging.getLogger(__name__)

NO_SERVER_MARKERS = ("no server running", "error connecting to", "no such file or directory")
TIMED_OUT = -1


@dataclass(frozen=True)
class TmuxResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMED_OUT

    @property
    def error(self) -> str:
        return self.stderr.strip() or f"tmux exited with status {self.returncode}"


@dataclass(frozen=True)
class PaneInfo:
    pane_id: str
    session_name: str
    index: int
    is_active: bool = False


class TmuxAdapter:
    """Wrapper around tmux commands; every call is an argument vector, never a shell string."""

    def __init__(self, tmux_bin: str = "tmux", socket: str | None = None) -> None:
        self.tmux_bin = tmux_bin
        self.socket = socket

    def _tmux_command(self, args: Sequence[str]) -> list[str]:
        cmd = [self.tmux_bin]
        if self.socket and self.socket != "default":
            cmd += ["-L", self.socket]
        cmd.extend(args)
        return cmd

    def _run(self, args: Sequence[str], *, timeout: float | None = None) -> TmuxResult:
        cmd = self._tmux_command(args)
        try:
            proc = subprocess.run(
                cmd,
                check=False,
                text=True,
                errors="replace",
                capture_output=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise DependencyMissing(f"tmux is not installed ({self.tmux_bin} not found)") from exc
        except subprocess.TimeoutExpired:
            logger.debug("tmux %s timed out after %.1fs", args[0], timeout)
            return TmuxResult(args=tuple(cmd), returncode=TIMED_OUT, stderr=f"timed out after {timeout}s")
        return TmuxResult(args=tuple(cmd), returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)

    # Host ----------------------------------------------------------------
    def ensure_available(self) -> str:
        if shutil.which(self.tmux_bin) is None:
            raise DependencyMissing("tmux is not installed. Please install tmux to use the dashboard.")
        result = self._run(["-V"])
        if not result.ok:
            raise DependencyMissing(f"tmux is not usable: {result.error}")
        return result.stdout.strip()

    # Session helpers -----------------------------------------------------
    def create_session(
        self,
        name: str,
        command: Sequence[str] | None = None,
        *,
        start_directory: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> TmuxResult:
        args = ["new-session", "-d", "-s", name]
        if start_directory:
            args += ["-c", start_directory]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        if command:
            args.append(shlex.join(command))
        return self._run(args)

    def session_exists(self, name: str) -> bool:
        return self._run(["has-session", "-t", f"={name}"]).ok

    def attach(self, name: str) -> TmuxResult:
        """Hand the terminal to the session; returns once the client detaches or the session ends."""
        env = {key: value for key, value in os.environ.items() if key != "TMUX"}
        cmd = self._tmux_command(["attach-session", "-t", f"={name}"])
        try:
            proc = subprocess.run(cmd, check=False, env=env)
        except FileNotFoundError as exc:
            raise DependencyMissing(f"tmux is not installed ({self.tmux_bin} not found)") from exc
        return TmuxResult(args=tuple(cmd), returncode=proc.returncode)

    def kill_session(self, name: str) -> TmuxResult:
        return self._run(["kill-session", "-t", f"={name}"])

    def list_sessions(self, *, timeout: float | None = None) -> list[str]:
        result = self._run(["list-sessions", "-F", "#{session_name}"], timeout=timeout)
        if not result.ok:
            if result.timed_out:
                raise SampleFailed(f"tmux list-sessions {result.error}")
            if any(marker in result.stderr.lower() for marker in NO_SERVER_MARKERS):
                return []
            logger.warning("tmux list-sessions failed: %s", result.error)
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # Pane helpers --------------------------------------------------------
    def capture_pane_text(self, target: str, lines: int = 40, *, timeout: float | None = None) -> TmuxResult:
        # -J joins wrapped lines so markers split by the terminal width still match
        return self._run(
            ["capture-pane", "-p", "-J", "-t", target, "-S", f"-{lines}"],
            timeout=timeout,
        )

    def split_pane(
        self,
        name: str,
        *,
        start_directory: str | None = None,
        command: Sequence[str] | None = None,
    ) -> TmuxResult:
        args = ["split-window", "-h", "-t", f"={name}:"]
        if start_directory:
            args += ["-c", start_directory]
        if command:
            args.append(shlex.join(command))
        return self._run(args)

    def send_keys(self, target: str, text: str, *, enter: bool = True) -> TmuxResult:
        args = ["send-keys", "-t", target, "-l", text]
        result = self._run(args)
        if result.ok and enter:
            result = self._run(["send-keys", "-t", target, "C-m"])
        return result

    def list_panes(self, name: str, *, timeout: float | None = None) -> list[PaneInfo]:
        result = self._run(
            ["list-panes", "-t", f"={name}:", "-F", "#{pane_id}\t#{pane_index}\t#{?pane_active,1,0}"],
            timeout=timeout,
        )
        if result.timed_out:
            raise SampleFailed(f"tmux list-panes {result.error}")
        if not result.ok:
            return []
        panes: list[PaneInfo] = []
        for line in result.stdout.strip().splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            pane_id, index, active_flag = parts[:3]
            panes.append(
                PaneInfo(
                    pane_id=pane_id,
                    session_name=name,
                    index=int(index) if index.isdigit() else 0,
                    is_active=active_flag == "1",
                )
            )
        return sorted(panes, key=lambda pane: pane.index)

    def primary_pane(self, name: str, *, timeout: float | None = None) -> str:
        """Target of the agent pane: the lowest-index pane, whichever pane has focus."""
        panes = self.list_panes(name, timeout=timeout)
        return panes[0].pane_id if panes else f"={name}:"

    def kill_pane(self, pane_id: str) -> TmuxResult:
        return self._run(["kill-pane", "-t", pane_id])

    def bind_key(self, key: str, command: Sequence[str]) -> TmuxResult:
        return self._run(["bind-key", key, "run-shell", "-b", shlex.join(command)])


class FakeTmuxAdapter(TmuxAdapter):
    """Testing double that keeps sessions and pane buffers in memory."""

    def __init__(self, sessions: dict[str, str] | None = None) -> None:
        super().__init__(tmux_bin="tmux")
        self._panes: dict[str, list[str]] = {}
        self._buffers: dict[str, str] = {}
        self._pane_counter = 0
        self.created: list[tuple[str, tuple[str, ...], str | None]] = []
        self.attached: list[str] = []
        self.bindings: dict[str, tuple[str, ...]] = {}
        self.fail_create: str | None = None
        self.fail_capture: set[str] = set()
        self.create_delay: float = 0.0
        for name, text in (sessions or {}).items():
            self._add_session(name, text)

    def ensure_available(self) -> str:
        return "tmux fake"

    def _add_session(self, name: str, text: str = "") -> str:
        pane_id = self._allocate_pane_id()
        self._panes[name] = [pane_id]
        self._buffers[pane_id] = text
        return pane_id

    def set_pane_text(self, name: str, text: str) -> None:
        self._buffers[self._panes[name][0]] = text

    def create_session(
        self,
        name: str,
        command: Sequence[str] | None = None,
        *,
        start_directory: str | None = None,
        env: Mapping[str, str] | None = None,  # noqa: ARG002
    ) -> TmuxResult:
        if self.create_delay:
            time.sleep(self.create_delay)
        args = ("new-session", name)
        if self.fail_create is not None:
            return TmuxResult(args=args, returncode=1, stderr=self.fail_create)
        if name in self._panes:
            return TmuxResult(args=args, returncode=1, stderr=f"duplicate session: {name}")
        self.created.append((name, tuple(command or ()), start_directory))
        self._add_session(name)
        return TmuxResult(args=args, returncode=0)

    def session_exists(self, name: str) -> bool:
        return name in self._panes

    def attach(self, name: str) -> TmuxResult:
        self.attached.append(name)
        return TmuxResult(args=("attach-session", name), returncode=0 if name in self._panes else 1)

    def kill_session(self, name: str) -> TmuxResult:
        pane_ids = self._panes.pop(name, None)
        if pane_ids is None:
            return TmuxResult(args=("kill-session", name), returncode=1, stderr=f"can't find session: {name}")
        for pane_id in pane_ids:
            self._buffers.pop(pane_id, None)
        return TmuxResult(args=("kill-session", name), returncode=0)

    def list_sessions(self, *, timeout: float | None = None) -> list[str]:  # noqa: ARG002
        return sorted(self._panes)

    def capture_pane_text(self, target: str, lines: int = 40, *, timeout: float | None = None) -> TmuxResult:  # noqa: ARG002
        args = ("capture-pane", target)
        pane_id = self._resolve_pane(target)
        if pane_id is None or self._session_of(pane_id) in self.fail_capture:
            return TmuxResult(args=args, returncode=1, stderr=f"can't find pane: {target}")
        tail = "\n".join(self._buffers.get(pane_id, "").splitlines()[-lines:])
        return TmuxResult(args=args, returncode=0, stdout=tail)

    def split_pane(
        self,
        name: str,
        *,
        start_directory: str | None = None,  # noqa: ARG002
        command: Sequence[str] | None = None,
    ) -> TmuxResult:
        args = ("split-window", name)
        if name not in self._panes:
            return TmuxResult(args=args, returncode=1, stderr=f"can't find session: {name}")
        pane_id = self._allocate_pane_id()
        self._panes[name].append(pane_id)
        self._buffers[pane_id] = shlex.join(command) if command else ""
        return TmuxResult(args=args, returncode=0)

    def send_keys(self, target: str, text: str, *, enter: bool = True) -> TmuxResult:
        pane_id = self._resolve_pane(target)
        if pane_id is None:
            return TmuxResult(args=("send-keys", target), returncode=1, stderr=f"can't find pane: {target}")
        self._buffers[pane_id] += text + ("\n" if enter else "")
        return TmuxResult(args=("send-keys", target), returncode=0)

    def list_panes(self, name: str, *, timeout: float | None = None) -> list[PaneInfo]:  # noqa: ARG002
        return [
            PaneInfo(pane_id=pane_id, session_name=name, index=idx, is_active=idx == 0)
            for idx, pane_id in enumerate(self._panes.get(name, []))
        ]

    def kill_pane(self, pane_id: str) -> TmuxResult:
        for pane_ids in self._panes.values():
            if pane_id in pane_ids:
                pane_ids.remove(pane_id)
                self._buffers.pop(pane_id, None)
                return TmuxResult(args=("kill-pane", pane_id), returncode=0)
        return TmuxResult(args=("kill-pane", pane_id), returncode=1, stderr=f"can't find pane: {pane_id}")

    def bind_key(self, key: str, command: Sequence[str]) -> TmuxResult:
        self.bindings[key] = tuple(command)
        return TmuxResult(args=("bind-key", key), returncode=0)

    def pane_text(self, pane_id: str) -> str:
        return self._buffers.get(pane_id, "")

    def _resolve_pane(self, target: str) -> str | None:
        if target in self._buffers:
            return target
        pane_ids = self._panes.get(target.lstrip("=").rstrip(":"))
        return pane_ids[0] if pane_ids else None

    def _session_of(self, pane_id: str) -> str | None:
        for name, pane_ids in self._panes.items():
            if pane_id in pane_ids:
                return name
        return None

    def _allocate_pane_id(self) -> str:
        self._pane_counter += 1
        return f"%{self._pane_counter}"
