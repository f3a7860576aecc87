"""
Command executor - runs pipeline steps as local processes.
"""

import logging
import os
import shlex
import subprocess
import threading
import time
from datetime import datetime, timezone
from typing import Dict, IO, List, Optional

import psutil

from controller.src.models.step import OutputLine, OutputStream, Step, StepOutcome

logger = logging.getLogger(__name__)

# Upper bound on waiting for output readers once the process has been reaped
READER_JOIN_TIMEOUT = 5.0

class CommandLaunchError(Exception):
    """Raised when a step's process cannot be started at all."""
    pass

def effective_timeout(step: Step, default_timeout: float = 0) -> Optional[float]:
    """
    Pick the timeout for a step: its own, else the caller's default.
    Returns None when neither is set (wait forever).
    """
    if step.timeout:
        return step.timeout
    if default_timeout:
        return default_timeout
    return None

def resolve_working_directory(step: Step, base_dir: Optional[str] = None) -> str:
    """Resolve where a step runs, relative to the base directory if given."""
    directory = base_dir or os.getcwd()
    if step.working_directory:
        directory = os.path.join(directory, step.working_directory)
    return directory

def build_environment(overrides: Dict[str, str]) -> Dict[str, str]:
    """Inherited environment with the step's overrides applied."""
    env = dict(os.environ)
    env.update(overrides)
    return env

def kill_process_tree(pid: int) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.Error:
        return

    for child in parent.children(recursive=True):
        try:
            child.kill()
        except psutil.Error:
            pass
    try:
        parent.kill()
    except psutil.Error:
        pass

def _pump_lines(
    stream: IO[str],
    source: OutputStream,
    lines: List[OutputLine],
    lock: threading.Lock,
):
    """Append every line read from one stream, tagged with its source."""
    try:
        for raw in iter(stream.readline, ""):
            with lock:
                lines.append(OutputLine(source=source, text=raw.rstrip("\r\n")))
    finally:
        stream.close()

class CommandRunner:
    """
    Runs steps as child processes and keeps track of the ones still running,
    so they can be killed when the daemon shuts down.
    """

    def __init__(self):
        self._active: Dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def running(self) -> int:
        with self._lock:
            return len(self._active)

    def run_command(
        self,
        step: Step,
        timeout: float = 0,
        base_dir: Optional[str] = None,
    ) -> StepOutcome:
        """
        Run a step to completion or timeout.

        A nonzero exit code is reported in the outcome, never raised.
        Raises CommandLaunchError if the process cannot be started.
        """
        try:
            args = shlex.split(step.command)
        except ValueError as e:
            raise CommandLaunchError(f"Cannot parse command {step.command!r}: {e}")
        if not args:
            raise CommandLaunchError("Empty command")

        cwd = resolve_working_directory(step, base_dir)
        limit = effective_timeout(step, timeout)

        with self._lock:
            if self._closed:
                raise CommandLaunchError("Command runner has been shut down")
            try:
                process = subprocess.Popen(
                    args,
                    cwd=cwd,
                    env=build_environment(step.environment),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    start_new_session=True,
                )
            except OSError as e:
                raise CommandLaunchError(f"Cannot start {args[0]!r} in {cwd}: {e}") from e
            self._active[process.pid] = process

        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        logger.debug(f"Started '{step.label}' (pid {process.pid}) in {cwd}")

        lines: List[OutputLine] = []
        lines_lock = threading.Lock()
        readers = [
            threading.Thread(
                target=_pump_lines,
                args=(process.stdout, OutputStream.STDOUT, lines, lines_lock),
                daemon=True,
            ),
            threading.Thread(
                target=_pump_lines,
                args=(process.stderr, OutputStream.STDERR, lines, lines_lock),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            try:
                exit_code = process.wait(timeout=limit)
            except subprocess.TimeoutExpired:
                logger.warning(f"Step '{step.label}' timed out after {limit}s, killing pid {process.pid}")
                kill_process_tree(process.pid)
                exit_code = process.wait()
                timed_out = True

            for reader in readers:
                reader.join(READER_JOIN_TIMEOUT)
        finally:
            with self._lock:
                self._active.pop(process.pid, None)

        duration = time.monotonic() - start

        with lines_lock:
            captured = list(lines)

        return StepOutcome(
            step=step,
            lines=captured,
            exit_code=exit_code,
            timed_out=timed_out,
            duration=duration,
            started_at=started_at,
        )

    def terminate_all(self):
        """Kill every running child process tree and refuse new launches."""
        with self._lock:
            self._closed = True
            active = list(self._active.values())

        for process in active:
            logger.warning(f"Killing running command (pid {process.pid})")
            kill_process_tree(process.pid)
