"""Run a command inside a pseudo-terminal and relay it over plain stdio.

    python pty_wrapper.py '["claude", "--agent-id", "w1@team", ...]'

The worker binary is an interactive TUI and refuses to run without a
terminal. This wrapper allocates one, execs the command in it, copies bytes
between the pty and its own stdin/stdout and forwards SIGTERM/SIGINT to the
child. It ends the way the child did: with the child's exit status, or killed
by the same signal (so the parent sees a negative return code). A wrapper that
was itself told to stop dies from that signal once the child is reaped. Exec
failure exits 127.

Standalone on purpose: it is launched by path and imports only the stdlib.
"""
from __future__ import annotations

import fcntl
import json
import os
import pty
import selectors
import signal
import struct
import sys
import termios
from typing import List, Optional


class _Terminated(Exception):
    pass


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except OSError:
        pass


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        n = os.write(fd, view)
        view = view[n:]


def _die_by_signal(signum: int) -> int:
    signal.signal(signum, signal.SIG_DFL)
    os.kill(os.getpid(), signum)
    # Only reached for a signal whose default action does not terminate.
    return 128 + signum


def _parse_command(argv: List[str]) -> Optional[List[str]]:
    if len(argv) != 1:
        return None
    try:
        cmd = json.loads(argv[0])
    except ValueError:
        return None
    if not isinstance(cmd, list) or not cmd or not all(isinstance(x, str) for x in cmd):
        return None
    return cmd


def relay(master_fd: int, stdin_fd: int = 0, stdout_fd: int = 1) -> None:
    """Copy pty output to stdout and stdin to the pty until the pty closes."""
    sel = selectors.DefaultSelector()
    sel.register(master_fd, selectors.EVENT_READ, data="pty")
    try:
        sel.register(stdin_fd, selectors.EVENT_READ, data="stdin")
    except (OSError, ValueError):
        pass
    try:
        while True:
            for key, _ in sel.select(timeout=1.0):
                if key.data == "pty":
                    try:
                        chunk = os.read(master_fd, 65536)
                    except OSError:
                        # EIO: every holder of the slave side is gone
                        return
                    if not chunk:
                        return
                    try:
                        _write_all(stdout_fd, chunk)
                    except BrokenPipeError:
                        return
                    continue
                try:
                    data = os.read(stdin_fd, 65536)
                except OSError:
                    data = b""
                if not data:
                    # stdin closed; keep relaying output until the child is done
                    sel.unregister(stdin_fd)
                    continue
                _write_all(master_fd, data)
    finally:
        sel.close()


def main(argv: Optional[List[str]] = None) -> int:
    cmd = _parse_command(sys.argv[1:] if argv is None else argv)
    if cmd is None:
        sys.stderr.write("usage: pty_wrapper.py '<json argv>'\n")
        return 2

    pid, master_fd = pty.fork()
    if pid == 0:
        try:
            os.execvp(cmd[0], cmd)
        except OSError as e:
            os.write(2, f"pty_wrapper: exec {cmd[0]} failed: {e}\n".encode("utf-8", "replace"))
        os._exit(127)

    _set_winsize(master_fd, cols=120, rows=40)
    received: List[int] = []

    def _forward(signum: int, frame: object) -> None:
        received.append(signum)
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        raise _Terminated()

    signal.signal(signal.SIGTERM, _forward)
    signal.signal(signal.SIGINT, _forward)

    try:
        relay(master_fd)
    except _Terminated:
        pass
    finally:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        signal.signal(signal.SIGINT, signal.SIG_IGN)
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        _, status = os.waitpid(pid, 0)
        try:
            os.close(master_fd)
        except OSError:
            pass
    if received:
        return _die_by_signal(received[0])
    if os.WIFSIGNALED(status):
        return _die_by_signal(os.WTERMSIG(status))
    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
