#!/usr/bin/env python3
"""
sandboxed_shell.py — Sandboxed subprocess execution for CodeAgent.

Commands run as an argv list (never through a shell), after validation by
Safety.validate_command(): a blocked list, an allow list, blocked patterns
and a check that path-like arguments stay inside the project root.

Platform behaviour
------------------
  macOS / Linux  → own process group (os.setsid) + RLIMIT_CPU (+ optional RLIMIT_AS)
  Windows        → plain child process; psutil sweeps the tree on timeout

On timeout (or cancellation) the whole process group is SIGKILLed and any
surviving children are swept with psutil.

Requirements
------------
    pip install psutil      # recommended (child-process sweep)
"""

from __future__ import annotations

import os
import platform
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from agent_core import CancelToken, Log, Safety

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_SECS  = 60
DEFAULT_MAX_OUTPUT    = 1_048_576   # bytes per stream
DEFAULT_MAX_MEMORY_MB = 0           # 0 = no address-space cap (node/go reserve a lot of VM)
_POLL_INTERVAL        = 0.1

# ---------------------------------------------------------------------------
# Platform / optional imports
# ---------------------------------------------------------------------------

_IS_WINDOWS = platform.system() == "Windows"
_IS_POSIX   = not _IS_WINDOWS

try:
    import psutil
    _HAVE_PSUTIL = True
except ImportError:
    _HAVE_PSUTIL = False

if _IS_POSIX:
    import resource


@dataclass
class CommandResult:
    success:   bool
    stdout:    str
    stderr:    str
    exit_code: int
    timed_out: bool = False
    cancelled: bool = False


# ---------------------------------------------------------------------------
# POSIX process-group backend
# ---------------------------------------------------------------------------

def _posix_preexec(cpu_secs: int, max_memory_mb: int) -> None:
    os.setsid()
    if max_memory_mb > 0:
        mem = max_memory_mb * 1024 * 1024
        try:
            resource.setrlimit(resource.RLIMIT_AS, (mem, mem))
        except (ValueError, resource.error):
            pass
    try:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_secs, cpu_secs))
    except (ValueError, resource.error):
        pass


def _pump(stream, chunks: List[bytes], limit: int, flags: dict, key: str):
    total = 0
    for chunk in iter(lambda: stream.read(4096), b""):
        if total < limit:
            room = limit - total
            chunks.append(chunk[:room])
            total += min(len(chunk), room)
            if total >= limit:
                flags[key] = True


def _kill_proc(pid: int) -> None:
    if _IS_POSIX:
        try:
            os.killpg(os.getpgid(pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            pass
    _sweep(pid)


def _sweep(pid: int) -> None:
    if not _HAVE_PSUTIL:
        return
    try:
        for child in psutil.Process(pid).children(recursive=True):
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
    except psutil.NoSuchProcess:
        pass


def run_sandboxed(
    argv: List[str],
    cwd: Path,
    timeout: float                 = DEFAULT_TIMEOUT_SECS,
    max_output_bytes: int          = DEFAULT_MAX_OUTPUT,
    max_memory_mb: int             = DEFAULT_MAX_MEMORY_MB,
    cancel: Optional[CancelToken]  = None,
) -> CommandResult:
    """Run *argv* in its own process group and collect stdout/stderr separately."""
    exe = shutil.which(argv[0]) or argv[0]
    popen_kwargs: dict = dict(
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env={**os.environ, "CI": os.environ.get("CI", "true")},
    )
    if _IS_POSIX:
        cpu = max(int(timeout) + 5, 10)
        popen_kwargs["preexec_fn"] = lambda: _posix_preexec(cpu, max_memory_mb)

    try:
        proc = subprocess.Popen([exe, *argv[1:]], **popen_kwargs)
    except FileNotFoundError:
        return CommandResult(False, "", f"Command not found: {argv[0]}", 127)
    except OSError as e:
        return CommandResult(False, "", str(e), 126)

    out_chunks: List[bytes] = []
    err_chunks: List[bytes] = []
    flags = {"out": False, "err": False}
    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, out_chunks, max_output_bytes, flags, "out"),
                         daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, err_chunks, max_output_bytes, flags, "err"),
                         daemon=True),
    ]
    for r in readers:
        r.start()

    deadline  = time.monotonic() + timeout
    timed_out = cancelled = False
    while True:
        try:
            proc.wait(timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                cancelled = True
            elif time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            _kill_proc(proc.pid)
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                Log.warning(f"Process {proc.pid} did not exit after SIGKILL")
            break

    if not (timed_out or cancelled):
        _sweep(proc.pid)
    for r in readers:
        r.join(timeout=2)

    stdout = b"".join(out_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(err_chunks).decode("utf-8", errors="replace")
    if flags["out"]:
        stdout += "\n[output truncated]"
    if flags["err"]:
        stderr += "\n[output truncated]"

    if timed_out:
        return CommandResult(False, stdout, f"Command timed out after {int(timeout * 1000)}ms",
                             -1, timed_out=True)
    if cancelled:
        return CommandResult(False, stdout, "Command cancelled", -1, cancelled=True)
    code = proc.returncode if proc.returncode is not None else -1
    return CommandResult(code == 0, stdout, stderr, code)


def execute_command(
    command: str,
    args: List[str],
    cwd: Path,
    project_root: Path,
    timeout: float                = DEFAULT_TIMEOUT_SECS,
    cancel: Optional[CancelToken] = None,
) -> CommandResult:
    """Validate, then run. Rejections come back as failed results, never raised."""
    ok, reason = Safety.validate_command(command, args, project_root)
    if not ok:
        return CommandResult(False, "", reason, -1)
    Log.debug(f"exec: {command} {' '.join(args)} (cwd={cwd}, timeout={timeout}s)")
    return run_sandboxed([command, *args], cwd, timeout=timeout, cancel=cancel)
