"""
Pipeline runner - sequences a project's setup, build and test stages.
"""

import logging
import os
import shlex
import shutil
import stat
import uuid
from enum import Enum
from pathlib import Path
from typing import List, Optional

from controller.src.models.step import (
    BuildSpec,
    RunOutcome,
    StageName,
    StageOutcome,
    Step,
    StepOutcome,
)
from controller.src.services.executor import CommandLaunchError, CommandRunner

logger = logging.getLogger(__name__)

class PipelineState(str, Enum):
    NOT_STARTED = "not_started"
    SETUP_RUNNING = "setup_running"
    BUILD_RUNNING = "build_running"
    TEST_RUNNING = "test_running"
    DONE = "done"

def checkout_command(spec: BuildSpec, destination: str) -> str:
    """Shallow, single-branch clone of the project into the workspace."""
    args = [
        "git", "clone", "-q",
        "--recurse-submodules",
        "--depth", "1",
        "--single-branch",
        "--shallow-submodules",
    ]
    if spec.commit_reference:
        args += ["--branch", spec.commit_reference]
    args += ["--", spec.repository, destination]
    return shlex.join(args)

def _make_writable(path: str):
    if os.path.islink(path):
        return
    mode = stat.S_IMODE(os.stat(path).st_mode) | stat.S_IRUSR | stat.S_IWUSR
    if os.path.isdir(path):
        mode |= stat.S_IXUSR
    os.chmod(path, mode)

def clear_readonly(root: Path):
    """Clear read-only bits on a tree (git marks some object files read-only)."""
    _make_writable(str(root))
    # Top-down walk: subdirectories are fixed up before they are entered
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            _make_writable(os.path.join(dirpath, name))

class PipelineRunner:
    """
    Runs one BuildSpec in its own workspace.

    Use as a context manager: the workspace is deleted on exit, whether the
    run succeeded, failed or raised.
    """

    def __init__(
        self,
        spec: BuildSpec,
        runner: Optional[CommandRunner] = None,
        workspace_root: str = "workspaces",
    ):
        self.spec = spec
        self.runner = runner or CommandRunner()
        self.workspace_root = Path(workspace_root).resolve()
        self.workspace_dir = self.workspace_root / uuid.uuid4().hex
        self.state = PipelineState.NOT_STARTED
        self._disposed = False

    def __enter__(self) -> "PipelineRunner":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
        return False

    def _run_steps(
        self,
        stage: StageName,
        steps: List[Step],
        base_dir: Optional[str],
        stop_on_failure: bool,
    ) -> StageOutcome:
        results: List[StepOutcome] = []
        for i, step in enumerate(steps):
            logger.info(f"[{self.spec.title}] {stage.value} step {i}: {step.label}")
            try:
                outcome = self.runner.run_command(step, self.spec.default_timeout, base_dir)
            except CommandLaunchError as e:
                logger.error(f"[{self.spec.title}] {stage.value} step {i} could not start: {e}")
                return StageOutcome(stage=stage, results=results, error=str(e))

            results.append(outcome)
            if outcome.timed_out:
                logger.warning(f"[{self.spec.title}] {stage.value} step {i} timed out")
            elif outcome.exit_code != 0:
                logger.warning(
                    f"[{self.spec.title}] {stage.value} step {i} exited with {outcome.exit_code}"
                )

            # Stop on first failure
            if stop_on_failure and not outcome.succeeded:
                break
        return StageOutcome(stage=stage, results=results)

    def run_setup(self) -> StageOutcome:
        self.state = PipelineState.SETUP_RUNNING
        self.workspace_root.mkdir(parents=True, exist_ok=True)
        step = Step(
            name="checkout",
            command=checkout_command(self.spec, str(self.workspace_dir)),
            stage=StageName.SETUP,
        )
        return self._run_steps(StageName.SETUP, [step], None, stop_on_failure=True)

    def run_build(self) -> StageOutcome:
        self.state = PipelineState.BUILD_RUNNING
        return self._run_steps(
            StageName.BUILD, self.spec.build_steps, str(self.workspace_dir), stop_on_failure=True
        )

    def run_test(self) -> StageOutcome:
        self.state = PipelineState.TEST_RUNNING
        return self._run_steps(
            StageName.TEST, self.spec.test_steps, str(self.workspace_dir), stop_on_failure=False
        )

    def run_all(self) -> RunOutcome:
        """Run setup, then build if setup succeeded, then test if build succeeded."""
        setup = self.run_setup()
        build = StageOutcome.empty(StageName.BUILD)
        test = StageOutcome.empty(StageName.TEST)

        if setup.successful:
            build = self.run_build()
            if build.successful:
                test = self.run_test()

        self.state = PipelineState.DONE
        return RunOutcome(spec=self.spec, setup=setup, build=build, test=test)

    def dispose(self):
        """Delete the workspace. Runs once; failures are logged, not raised."""
        if self._disposed:
            return
        self._disposed = True

        if not self.workspace_dir.exists():
            return
        try:
            clear_readonly(self.workspace_dir)
            shutil.rmtree(self.workspace_dir)
            logger.debug(f"Deleted workspace {self.workspace_dir}")
        except OSError as e:
            logger.error(f"Unable to delete workspace {self.workspace_dir}: {e}")
