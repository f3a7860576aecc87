"""
Builders for outcomes and steps used by the test suites.
"""

import shlex
import sys
from datetime import datetime, timezone
from typing import List, Optional

from controller.src.models.step import (
    BuildSpec,
    OutputLine,
    OutputStream,
    RunOutcome,
    StageName,
    StageOutcome,
    Step,
    StepOutcome,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

def python_command(code: str) -> str:
    """Command line running a Python snippet with the current interpreter."""
    return shlex.join([sys.executable, "-c", code])

def python_step(code: str, **kwargs) -> Step:
    return Step(command=python_command(code), **kwargs)

def make_spec(title: str = "demo", **kwargs) -> BuildSpec:
    kwargs.setdefault("repository", "https://example.invalid/demo.git")
    return BuildSpec(title=title, **kwargs)

def make_step_outcome(
    command: str = "true",
    exit_code: int = 0,
    stdout: Optional[List[str]] = None,
    stderr: Optional[List[str]] = None,
    timed_out: bool = False,
    name: Optional[str] = None,
) -> StepOutcome:
    lines = [OutputLine(source=OutputStream.STDOUT, text=t) for t in stdout or []]
    lines += [OutputLine(source=OutputStream.STDERR, text=t) for t in stderr or []]
    return StepOutcome(
        step=Step(name=name, command=command),
        lines=lines,
        exit_code=exit_code,
        timed_out=timed_out,
        duration=0.0,
        started_at=EPOCH,
    )

def make_outcome(
    spec: Optional[BuildSpec] = None,
    setup: Optional[StageOutcome] = None,
    build: Optional[StageOutcome] = None,
    test: Optional[StageOutcome] = None,
) -> RunOutcome:
    """A run outcome; stages default to one passing step each."""
    return RunOutcome(
        spec=spec or make_spec(),
        setup=setup or StageOutcome(stage=StageName.SETUP, results=[make_step_outcome("git clone")]),
        build=build or StageOutcome(stage=StageName.BUILD, results=[make_step_outcome("make")]),
        test=test or StageOutcome(stage=StageName.TEST, results=[make_step_outcome("make test")]),
    )
