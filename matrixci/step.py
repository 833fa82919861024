from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from .errors import CancellationError, StepFailure

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"
CANCELLED = "cancelled"

# Characters of stdout/stderr kept per step for reporting
OUTPUT_TAIL = 4000

Command = Union[str, Sequence[str]]


@dataclass(frozen=True)
class Step:
    """A granular unit of work.

    Fields:
    - name: label used in reports (defaults to the command text).
    - command: str runs through the shell, a sequence is an argv.
    - working_directory: relative to the run workspace (or absolute).
    - env: environment overlay for this step only.
    - timeout: optional seconds before the process is killed.
    """

    command: Command
    name: str = ""
    working_directory: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    @property
    def label(self) -> str:
        return self.name or self.display_command

    @property
    def display_command(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)

    @property
    def uses_shell(self) -> bool:
        return isinstance(self.command, str)


@dataclass(frozen=True)
class StepContext:
    """Environment and working directory handed to one process spawn.

    Built fresh for every step and never written back to os.environ, so
    concurrently running instances cannot observe each other's overlays.
    """

    env: Mapping[str, str]
    cwd: Path

    @classmethod
    def build(cls, ambient: Mapping[str, str], *overlays: Optional[Mapping[str, str]], cwd: Path) -> "StepContext":
        """Merge overlays over the ambient environment, later overlays winning."""
        env: Dict[str, str] = dict(ambient)
        for overlay in overlays:
            if overlay:
                env.update({str(k): str(v) for k, v in overlay.items()})
        return cls(env=env, cwd=cwd)


@dataclass(frozen=True)
class StepResult:
    step: Step
    index: int
    status: str
    returncode: Optional[int] = None
    error: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.step.label,
            "command": self.step.display_command,
            "status": self.status,
            "returncode": self.returncode,
            "error": self.error,
            "duration": self.duration,
            "timed_out": self.timed_out,
        }


class CancellationToken:
    """Cooperative cancellation shared by every worker of a run.

    Processes registered with the token are killed when cancel() is called.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._procs: Set[subprocess.Popen] = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            procs = list(self._procs)
        if procs:
            logger.info(f"Cancelling {len(procs)} in-flight step process(es)")
        for proc in procs:
            _terminate(proc)

    def register(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.add(proc)
        if self.cancelled:
            _terminate(proc)

    def unregister(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.discard(proc)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError("run cancelled")


def _terminate(proc: subprocess.Popen) -> None:
    """Kill the step's process group (shell plus children)."""
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Failed to kill process {proc.pid}: {e}")


def _read_stream(stream, buf: List[str], show: bool) -> None:
    try:
        for line in iter(stream.readline, ""):
            buf.append(line)
            if show:
                print(line, end="", flush=True)
    finally:
        stream.close()


def _tail(buf: List[str]) -> str:
    return "".join(buf).strip()[-OUTPUT_TAIL:]


def spawn_step(
    step: Step,
    context: StepContext,
    timeout: Optional[float] = None,
    token: Optional[CancellationToken] = None,
    show: bool = False,
) -> Dict[str, Any]:
    """Run one step's process in the given context and wait for it.

    Returns a dict with returncode, stdout, stderr and duration.
    Raises StepFailure when the process fails, cannot start, or times out,
    and CancellationError when the token was cancelled while it ran.
    """
    if not context.cwd.is_dir():
        raise StepFailure(step.label, error=f"working directory not found: {context.cwd}")
    if token is not None:
        token.raise_if_cancelled()

    start = time.time()
    stdout_buf: List[str] = []
    stderr_buf: List[str] = []
    try:
        proc = subprocess.Popen(
            step.command if step.uses_shell else list(step.command),
            shell=step.uses_shell,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=dict(context.env),
            cwd=str(context.cwd),
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        raise StepFailure(step.label, error=f"could not start: {e}") from e

    if token is not None:
        token.register(proc)

    readers = [
        threading.Thread(target=_read_stream, args=(proc.stdout, stdout_buf, show), daemon=True),
        threading.Thread(target=_read_stream, args=(proc.stderr, stderr_buf, show), daemon=True),
    ]
    for t in readers:
        t.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning(f"Step '{step.label}' exceeded timeout of {timeout}s, killing")
        _terminate(proc)
        proc.wait()
    finally:
        if token is not None:
            token.unregister(proc)

    for t in readers:
        t.join()

    duration = time.time() - start
    rc = proc.returncode
    output = {
        "returncode": rc,
        "stdout": _tail(stdout_buf),
        "stderr": _tail(stderr_buf),
        "duration": duration,
    }
    if rc == 0 and not timed_out:
        return output
    if token is not None and token.cancelled and not timed_out:
        raise CancellationError(f"step '{step.label}' cancelled")
    raise StepFailure(
        step.label,
        returncode=rc,
        error=f"timed out after {timeout}s" if timed_out else None,
        timed_out=timed_out,
        output=output,
    )
