"""
Shell command tool handler: bash() and the process registry.
"""

import os
import re
import signal
import subprocess
import sys
import threading
import time
from typing import IO, Any, Dict, Optional, Set

from localchat.middleware.logging_hook import log_event
from localchat.tool_handlers._sandbox import (
    _check_dangerous_command,
    check_credential_exposure,
    scrubbed_environment,
)
from localchat.tool_handlers._state import (
    DEFAULT_SHELL_MAX_OUTPUT_BYTES,
    DEFAULT_SHELL_TIMEOUT_MS,
    MAX_SHELL_OUTPUT_CHARS,
    MAX_SHELL_TIMEOUT_MS,
    WorkingDirectory,
    _failure,
    _require_args_dict,
)
from localchat.tool_handlers.translate import translate_command

_CD_RE = re.compile(r"^\s*cd\s+(.+?)\s*$")
_CHAINING_RE = re.compile(r"&&|\|\||[;|&`\n]|\$\(")
_POLL_INTERVAL = 0.05
_READ_SIZE = 65536


class ProcessRegistry:
    """Child processes that are still running, so shutdown can kill them."""

    def __init__(self):
        self._lock = threading.Lock()
        self._procs: Set[subprocess.Popen] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def add(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.add(proc)

    def discard(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.discard(proc)

    def kill_all(self) -> int:
        with self._lock:
            procs = list(self._procs)
            self._procs.clear()
        killed = 0
        for proc in procs:
            if proc.poll() is None:
                kill_process(proc)
                killed += 1
        if procs:
            log_event("processes_killed", {"count": killed})
        return killed


def kill_process(proc: subprocess.Popen) -> None:
    """Kill proc and, on POSIX, the process group its shell started."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _truncate_shell_output(text: str) -> str:
    if len(text) <= MAX_SHELL_OUTPUT_CHARS:
        return text
    head_len = MAX_SHELL_OUTPUT_CHARS // 2
    tail_len = MAX_SHELL_OUTPUT_CHARS - head_len
    removed = len(text) - MAX_SHELL_OUTPUT_CHARS
    return f"{text[:head_len]}\n...[truncated {removed} chars]...\n{text[-tail_len:]}"


class _BoundedReader(threading.Thread):
    """Drains one pipe into memory, keeping at most limit bytes."""

    def __init__(self, stream: IO[bytes], limit: int, overflow: threading.Event):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.overflow = overflow
        self.data = bytearray()

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(_READ_SIZE)
                if not chunk:
                    break
                room = self.limit - len(self.data)
                if len(chunk) > room:
                    self.data.extend(chunk[:max(room, 0)])
                    self.overflow.set()
                else:
                    self.data.extend(chunk)
        except (OSError, ValueError):
            pass
        finally:
            self.stream.close()

    def text(self) -> str:
        return _truncate_shell_output(self.data.decode("utf-8", "replace"))


def _timeout_ms(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError("timeout must be a number of milliseconds")
    try:
        timeout = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("timeout must be a number of milliseconds") from exc
    if timeout <= 0:
        return default
    return min(timeout, MAX_SHELL_TIMEOUT_MS)


def _cd_target(command: str) -> Optional[str]:
    match = _CD_RE.match(command)
    if not match or _CHAINING_RE.search(match.group(1)):
        return None
    return match.group(1).replace('"', "").replace("'", "")


def _spawn(command: str, cwd: str) -> subprocess.Popen:
    kwargs: Dict[str, Any] = {
        "shell": True,
        "cwd": cwd,
        "env": scrubbed_environment(),
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.PIPE,
        "stderr": subprocess.PIPE,
    }
    if os.name == "posix":
        kwargs["start_new_session"] = True
    return subprocess.Popen(command, **kwargs)


def bash(
    args: Any,
    cwd: WorkingDirectory,
    registry: ProcessRegistry,
    timeout_ms: int = DEFAULT_SHELL_TIMEOUT_MS,
    max_output_bytes: int = DEFAULT_SHELL_MAX_OUTPUT_BYTES,
    platform: Optional[str] = None,
) -> Dict[str, Any]:
    args, err = _require_args_dict(args, "bash")
    if err:
        return _failure(err)
    command = args.get("command")
    if not command or not isinstance(command, str):
        return _failure("command is required and must be a string")
    description = args.get("description")
    platform = platform or sys.platform

    exposure = check_credential_exposure(command)
    if exposure:
        log_event("shell_blocked", {"reason": exposure})
        return _failure(
            f"Security Error: command blocked ({exposure}). Do not pass credentials or dump "
            "the environment; use a config file or credential helper instead.",
            command=command,
        )
    dangerous = _check_dangerous_command(command)
    if dangerous:
        log_event("shell_blocked", {"reason": "dangerous", "pattern": dangerous})
        return _failure("Command blocked by sandbox (matched dangerous pattern)", command=command)

    limit_ms = _timeout_ms(args.get("timeout"), timeout_ms)
    translated = translate_command(command, platform)
    workdir = cwd.path

    start = time.time()
    proc = _spawn(translated, workdir)
    registry.add(proc)
    overflow = threading.Event()
    out_reader = _BoundedReader(proc.stdout, max_output_bytes, overflow)
    err_reader = _BoundedReader(proc.stderr, max_output_bytes, overflow)
    out_reader.start()
    err_reader.start()

    timed_out = False
    deadline = start + limit_ms / 1000.0
    try:
        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            if overflow.is_set():
                kill_process(proc)
                proc.wait()
                break
            if time.time() >= deadline:
                timed_out = True
                kill_process(proc)
                proc.wait()
                break
    finally:
        registry.discard(proc)
        out_reader.join(timeout=5)
        err_reader.join(timeout=5)

    stdout = out_reader.text()
    stderr = err_reader.text()
    if timed_out:
        return _failure(
            f"Command timed out after {limit_ms} ms",
            stdout=stdout, stderr=stderr, command=command, exit_code=None, timed_out=True,
        )
    if overflow.is_set():
        return _failure(
            f"Command output exceeded {max_output_bytes} bytes; process killed",
            stdout=stdout, stderr=stderr, command=command, exit_code=proc.returncode,
        )
    if proc.returncode != 0:
        return _failure(
            f"Command failed with exit code {proc.returncode}: {command}",
            stdout=stdout, stderr=stderr, command=command, exit_code=proc.returncode,
        )

    target = _cd_target(command)
    if target:
        candidate = os.path.expanduser(target)
        if not os.path.isabs(candidate):
            candidate = os.path.join(workdir, candidate)
        if cwd.change(candidate):
            log_event("working_directory_changed", {"path": cwd.path})

    result: Dict[str, Any] = {
        "success": True,
        "stdout": stdout,
        "stderr": stderr,
        "command": command,
        "platform": platform,
        "duration_seconds": round(time.time() - start, 2),
    }
    if translated != command:
        result["translated_command"] = translated
    if description:
        result["description"] = description
    if target:
        result["working_directory"] = cwd.path
    return result
