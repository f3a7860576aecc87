"""
Publish run results to a shared git repository.
"""

import logging
import os
import shlex
import socket
import time
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote

import psutil

from controller.src.models.step import BuildSpec, RunOutcome, Step, StepOutcome
from controller.src.models.test_results import TestResults, TestSummary
from controller.src.services.badges import pass_fail_svg
from controller.src.services.executor import CommandLaunchError, CommandRunner
from controller.src.services.run_log import write_run_log, write_test_log

logger = logging.getLogger(__name__)

LOG_FILE = "log.hs"
TEST_LOG_FILE = "tests.hs"
SUMMARY_FILE = "summary.json"
BUILD_BADGE_FILE = "build-status.svg"
TEST_BADGE_FILE = "test-status.svg"

class ResultStoreError(Exception):
    """Raised when results cannot be published."""
    pass

class LockContention(ResultStoreError):
    """Raised when another writer holds the sentinel lock."""
    pass

class SentinelLock:
    """
    Inter-process mutex backed by the existence of a file.

    The file is created exclusively on acquire and removed on release, so
    any process (on any host sharing the filesystem) sees the lock. It
    records `pid@host`; a lock left behind by a dead process on this host
    is removed and taken over.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._held = False

    def _create(self):
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}@{socket.gethostname()}\n")

    def owner(self) -> Optional[Tuple[int, str]]:
        """The (pid, host) recorded in the lock file, or None if unreadable."""
        try:
            pid, _, host = self.path.read_text(encoding="utf-8").strip().partition("@")
            return int(pid), host
        except (OSError, ValueError):
            return None

    def is_stale(self) -> bool:
        owner = self.owner()
        if owner is None:
            return False
        pid, host = owner
        return host == socket.gethostname() and not psutil.pid_exists(pid)

    def acquire(self):
        try:
            self._create()
        except FileExistsError:
            if not self.is_stale():
                raise LockContention(f"Lock file {self.path} already exists")
            logger.warning(f"Removing stale lock file {self.path} left by {self.owner()}")
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            try:
                self._create()
            except FileExistsError:
                raise LockContention(f"Lock file {self.path} already exists")
        self._held = True

    def release(self):
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file {self.path} was removed while held")

    def __enter__(self) -> "SentinelLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

def build_passed(outcome: RunOutcome) -> bool:
    return outcome.build.attempted and outcome.build.successful

def tests_passed(outcome: RunOutcome, test_results: Iterable[TestResults]) -> bool:
    return (
        outcome.test.attempted
        and outcome.test.successful
        and all(r.succeeded for r in test_results)
    )

def write_results(outdir: Path, outcome: RunOutcome, test_results: List[TestResults]):
    """Write the log, test counters and badges for one run into a directory."""
    with open(outdir / LOG_FILE, "w", encoding="utf-8") as f:
        write_run_log(f, outcome.stages())
    with open(outdir / TEST_LOG_FILE, "w", encoding="utf-8") as f:
        write_test_log(f, test_results)

    build_ok = build_passed(outcome)
    tests_ok = tests_passed(outcome, test_results)
    summary = TestSummary.total(
        test_results,
        build_passed=build_ok,
        tests_passed=tests_ok,
        completed_at=outcome.finished_at,
    )
    (outdir / SUMMARY_FILE).write_text(summary.model_dump_json(indent=2) + "\n", encoding="utf-8")

    (outdir / BUILD_BADGE_FILE).write_text(pass_fail_svg("build", build_ok), encoding="utf-8")
    (outdir / TEST_BADGE_FILE).write_text(pass_fail_svg("tests", tests_ok), encoding="utf-8")

class GitResultStore:
    """
    Local working copy of the results repository.

    Saves are serialized across daemons by a sentinel lock file and retried
    as a whole (checkout, write, commit, push) on any failure.
    """

    def __init__(
        self,
        repo_dir: str,
        remote: str,
        branch: str = "master",
        lock_path: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
        attempts: int = 3,
        retry_delay: float = 3.0,
        git_timeout: float = 10.0,
        clone_timeout: float = 60.0,
        push_timeout: float = 20.0,
    ):
        self.repo_dir = Path(repo_dir).resolve()
        self.remote = remote
        self.branch = branch
        self.lock_path = Path(lock_path) if lock_path else self.repo_dir.with_name(self.repo_dir.name + ".lock")
        self.runner = runner or CommandRunner()
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.git_timeout = git_timeout
        self.clone_timeout = clone_timeout
        self.push_timeout = push_timeout

        if not self.repo_dir.exists():
            self._clone()

    def _git(self, *args: str, timeout: float, cwd: Optional[Path] = None) -> StepOutcome:
        """Run a git command, raising ResultStoreError unless it succeeds."""
        step = Step(name=f"git {args[0]}", command=shlex.join(["git", *args]))
        try:
            outcome = self.runner.run_command(step, timeout, str(cwd or self.repo_dir))
        except CommandLaunchError as e:
            raise ResultStoreError(f"Unable to run git {args[0]}: {e}") from e

        if outcome.timed_out:
            raise ResultStoreError(f"git {args[0]} timed out after {timeout}s")
        if outcome.exit_code != 0:
            detail = " | ".join(line.text for line in outcome.lines[-5:])
            raise ResultStoreError(f"git {args[0]} exited with {outcome.exit_code}: {detail}")
        return outcome

    def _clone(self):
        logger.info(f"Cloning results repository {self.remote} into {self.repo_dir}")
        self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._git(
                "clone", "-q", self.remote, str(self.repo_dir),
                timeout=self.clone_timeout,
                cwd=self.repo_dir.parent,
            )
        except ResultStoreError as e:
            raise ResultStoreError(f"Unable to create result store: cannot clone repository: {e}") from e

    def result_dir(self, title: str) -> Path:
        return self.repo_dir / title

    def save_results(
        self,
        spec: BuildSpec,
        outcome: RunOutcome,
        test_results: Iterable[TestResults],
    ):
        """
        Write and push one run's results.
        Raises ResultStoreError once every attempt has failed.
        """
        test_results = list(test_results)

        for attempt in range(1, self.attempts + 1):
            try:
                with SentinelLock(self.lock_path):
                    self._publish(spec, outcome, test_results)
                logger.info(f"Published results for '{spec.title}' to {self.branch}")
                return
            except LockContention as e:
                logger.warning(f"Results repository busy (attempt {attempt}/{self.attempts}): {e}")
            except (ResultStoreError, OSError) as e:
                logger.error(
                    f"Unable to save results for '{spec.title}' "
                    f"(attempt {attempt}/{self.attempts}): {e}"
                )

            if attempt < self.attempts:
                time.sleep(self.retry_delay)

        raise ResultStoreError(
            f"Unable to save results for '{spec.title}' after {self.attempts} attempts"
        )

    def _publish(self, spec: BuildSpec, outcome: RunOutcome, test_results: List[TestResults]):
        self._git("checkout", "-q", "-B", self.branch, timeout=self.git_timeout)

        outdir = self.result_dir(spec.title)
        outdir.mkdir(parents=True, exist_ok=True)
        write_results(outdir, outcome, test_results)

        self._git("add", "--all", timeout=self.git_timeout)
        self._git(
            "commit", "-q", "--allow-empty", "-m", f"Results for '{spec.title}'",
            timeout=self.git_timeout,
        )
        self._git("push", "-q", "-u", "origin", self.branch, timeout=self.push_timeout)

def result_link(link_base: str, title: str) -> str:
    """Percent-escaped link to a task's entry in the results repository."""
    return quote(f"{link_base.rstrip('/')}/{title}", safe=":/")
