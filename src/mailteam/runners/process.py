from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional

from ..kernel.errors import ProcessError
from ..kernel.settings import DEFAULT_KILL_GRACE_SECONDS

logger = logging.getLogger("mailteam.process")

PTY_WRAPPER = Path(__file__).with_name("pty_wrapper.py")

# Markers that switch the worker binary into the mailbox teammate protocol.
PROTOCOL_ENV: Dict[str, str] = {
    "CLAUDECODE": "1",
    "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS": "1",
}

ExitCallback = Callable[[Optional[int]], None]


@dataclass
class SpawnOptions:
    team_name: str
    agent_name: str
    agent_id: str
    agent_type: Optional[str] = None
    model: Optional[str] = None
    cwd: Optional[str] = None
    parent_session_id: Optional[str] = None
    color: Optional[str] = None
    binary: str = "claude"
    permissions: List[str] = field(default_factory=list)
    permission_mode: Optional[str] = None
    teammate_mode: str = "auto"
    env: Dict[str, str] = field(default_factory=dict)


def resolve_binary(binary: str) -> str:
    b = str(binary or "").strip()
    if not b:
        raise ProcessError("missing worker binary")
    if os.sep in b:
        if os.path.isfile(b) and os.access(b, os.X_OK):
            return b
        raise ProcessError(f"worker binary not executable: {b}")
    found = shutil.which(b)
    if not found:
        raise ProcessError(f"worker binary not found on PATH: {b}")
    return found


def build_command(opts: SpawnOptions, binary: str) -> List[str]:
    """Target argv. Identity flags come first and are never taken from env."""
    argv = [
        binary,
        "--teammate-mode",
        opts.teammate_mode or "auto",
        "--agent-id",
        opts.agent_id,
        "--agent-name",
        opts.agent_name,
        "--team-name",
        opts.team_name,
    ]
    if opts.agent_type:
        argv += ["--agent-type", opts.agent_type]
    if opts.color:
        argv += ["--agent-color", opts.color]
    if opts.parent_session_id:
        argv += ["--parent-session-id", opts.parent_session_id]
    if opts.model:
        argv += ["--model", opts.model]
    if opts.permission_mode:
        argv += ["--permission-mode", opts.permission_mode]
    for perm in opts.permissions:
        argv += ["--allowedTools", perm]
    return argv


def build_env(opts: SpawnOptions, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    env.update(PROTOCOL_ENV)
    env.update({k: v for k, v in opts.env.items() if isinstance(k, str) and isinstance(v, str)})
    env.setdefault("TERM", "xterm-256color")
    return env


class ProcessHandle:
    """One spawned worker (the pty wrapper process and, through it, the target)."""

    def __init__(
        self,
        name: str,
        proc: subprocess.Popen,
        *,
        on_exit: Optional[Callable[["ProcessHandle"], None]] = None,
        max_backlog_bytes: int = 1_000_000,
    ) -> None:
        self.name = name
        self._proc = proc
        self._on_exit = on_exit
        self._exited = threading.Event()
        self._exit_code: Optional[int] = None
        self._lock = threading.Lock()
        self._backlog: Deque[bytes] = deque()
        self._backlog_bytes = 0
        self._max_backlog_bytes = int(max_backlog_bytes)
        self._drain_thread = threading.Thread(target=self._drain, name=f"mailteam-out:{name}", daemon=True)
        self._watch_thread = threading.Thread(target=self._watch, name=f"mailteam-wait:{name}", daemon=True)

    def start(self) -> None:
        self._drain_thread.start()
        self._watch_thread.start()

    @property
    def pid(self) -> int:
        return int(self._proc.pid or 0)

    @property
    def exit_code(self) -> Optional[int]:
        """Exit status once exited; None while running or when killed by a signal."""
        return self._exit_code

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def is_running(self) -> bool:
        return not self._exited.is_set() and self._proc.poll() is None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the exit has been fully processed; False on timeout."""
        return self._exited.wait(timeout)

    def send_signal(self, sig: int) -> None:
        try:
            self._proc.send_signal(sig)
        except (ProcessLookupError, OSError):
            pass

    def write_input(self, data: bytes) -> bool:
        stdin = self._proc.stdin
        if not data or stdin is None or not self.is_running():
            return False
        try:
            stdin.write(data)
            stdin.flush()
        except (BrokenPipeError, OSError, ValueError):
            return False
        return True

    def tail_output(self, *, max_bytes: int = 65536) -> bytes:
        with self._lock:
            data = b"".join(self._backlog)
        return data[-max_bytes:] if max_bytes > 0 else data

    def _append_backlog(self, chunk: bytes) -> None:
        with self._lock:
            self._backlog.append(chunk)
            self._backlog_bytes += len(chunk)
            while self._backlog_bytes > self._max_backlog_bytes and self._backlog:
                self._backlog_bytes -= len(self._backlog.popleft())

    def _drain(self) -> None:
        stdout = self._proc.stdout
        if stdout is None:
            return
        fd = stdout.fileno()
        while True:
            try:
                chunk = os.read(fd, 65536)
            except OSError:
                return
            if not chunk:
                return
            self._append_backlog(chunk)

    def _watch(self) -> None:
        code = self._proc.wait()
        self._drain_thread.join(timeout=1.0)
        for stream in (self._proc.stdin, self._proc.stdout):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
        self._exit_code = code if code >= 0 else None
        self._exited.set()
        logger.info(
            f'agent "{self.name}" exited (code={code})',
            extra={"agent": self.name, "pid": self.pid},
        )
        if self._on_exit is not None:
            self._on_exit(self)


class ProcessSupervisor:
    """Process table for one controller: at most one live process per agent name."""

    def __init__(self, *, python: Optional[str] = None, kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> None:
        self.python = python or "python3"
        self.kill_grace_seconds = float(kill_grace_seconds)
        self._lock = threading.Lock()
        self._spawn_lock = threading.Lock()
        self._procs: Dict[str, ProcessHandle] = {}
        self._callbacks: Dict[int, ExitCallback] = {}

    def _drop_if_same(self, name: str, handle: ProcessHandle) -> None:
        with self._lock:
            if self._procs.get(name) is handle:
                self._procs.pop(name, None)

    def _on_handle_exit(self, handle: ProcessHandle) -> None:
        self._drop_if_same(handle.name, handle)
        with self._lock:
            cb = self._callbacks.pop(id(handle), None)
        if cb is None:
            return
        try:
            cb(handle.exit_code)
        except Exception:
            logger.exception("exit callback failed", extra={"agent": handle.name})

    def spawn(self, opts: SpawnOptions, on_exit: Optional[ExitCallback] = None) -> ProcessHandle:
        """Start the worker inside the pty wrapper.

        Raises ProcessError synchronously when the binary cannot be resolved,
        the wrapper cannot be started, or `opts.agent_name` already has a live
        process. No entry is tracked in any of those cases.
        """
        name = opts.agent_name
        with self._spawn_lock:
            with self._lock:
                existing = self._procs.get(name)
            if existing is not None and existing.is_running():
                raise ProcessError(f'agent "{name}" is already running (pid={existing.pid})')

            binary = resolve_binary(opts.binary)
            argv = build_command(opts, binary)
            cmd = [self.python, str(PTY_WRAPPER), json.dumps(argv)]
            logger.info(f'spawning agent "{name}": {" ".join(argv)}', extra={"agent": name, "team": opts.team_name})
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=opts.cwd or os.getcwd(),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    env=build_env(opts),
                    close_fds=True,
                    start_new_session=True,
                )
            except OSError as e:
                raise ProcessError(f'failed to start agent "{name}": {e}') from e

            handle = ProcessHandle(name, proc, on_exit=self._on_handle_exit)
            with self._lock:
                self._procs[name] = handle
                if on_exit is not None:
                    self._callbacks[id(handle)] = on_exit
            handle.start()
            return handle

    def get(self, name: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._procs.get(name)

    def is_running(self, name: str) -> bool:
        h = self.get(name)
        return bool(h and h.is_running())

    def get_pid(self, name: str) -> Optional[int]:
        h = self.get(name)
        return h.pid if h is not None else None

    def running_agents(self) -> List[str]:
        with self._lock:
            items = list(self._procs.items())
        return [name for name, h in items if h.is_running()]

    def kill(self, name: str, sig: int = signal.SIGTERM) -> None:
        """Signal, wait out the grace window, escalate to SIGKILL. Never raises."""
        h = self.get(name)
        if h is None:
            return
        h.send_signal(sig)
        if not h.wait(self.kill_grace_seconds):
            logger.warning(f'force-killing agent "{name}" with SIGKILL', extra={"agent": name, "pid": h.pid})
            h.send_signal(signal.SIGKILL)
            h.wait(self.kill_grace_seconds)
        self._drop_if_same(name, h)

    def kill_all(self) -> None:
        with self._lock:
            names = list(self._procs)
        if not names:
            return
        with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="mailteam-kill") as pool:
            list(pool.map(self.kill, names))
