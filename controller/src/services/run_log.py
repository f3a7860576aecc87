"""
Stage-by-stage run log: writer and reader.

The log uses `--` line prefixes so it reads as comments under `.hs`
highlighting; error annotations are left unprefixed so they stand out.
"""

import re
from typing import Iterable, List, Optional, TextIO

from pydantic import BaseModel

from controller.src.models.step import OutputStream, StageOutcome
from controller.src.models.test_results import TestResults

SEPARATOR = "-" * 75

STAGE_PREFIX = "--Stage "
COMMAND_PREFIX = "--$ "
INFO_PREFIX = "--# "
STDOUT_PREFIX = "--out| "
STDERR_PREFIX = "--err| "
CONTINUATION_PREFIX = "--+ "

TIMEOUT_ANNOTATION = "[ERROR] Command timed out"
EXIT_ANNOTATION = "[ERROR] Command exited with "
ABORT_ANNOTATION = "[ERROR] Stage aborted: "

_STAGE_RE = re.compile(r'^--Stage "(?P<name>[^"]*)"$')

def _write_field(file: TextIO, prefix: str, text: str):
    # Embedded newlines continue on prefixed lines so they never read as markers
    first, *rest = text.split("\n")
    file.write(f"{prefix}{first}\n")
    for part in rest:
        file.write(f"{CONTINUATION_PREFIX}{part}\n")

def write_run_log(file: TextIO, stages: Iterable[StageOutcome]):
    """Write every stage's step outcomes to an open text file."""
    for stage in stages:
        file.write(f'{STAGE_PREFIX}"{stage.stage.value}"\n')
        file.write(SEPARATOR + "\n")
        for result in stage.results:
            _write_field(file, COMMAND_PREFIX, result.step.command)
            label = result.step.label.replace("\n", "\\n")
            file.write(
                f"{INFO_PREFIX}step '{label}' started "
                f"{result.started_at.isoformat()}, took {result.duration:.2f}s\n"
            )
            for line in result.lines:
                prefix = STDOUT_PREFIX if line.source == OutputStream.STDOUT else STDERR_PREFIX
                _write_field(file, prefix, line.text)
            if result.timed_out:
                file.write(f"\n{TIMEOUT_ANNOTATION}\n\n")
            elif result.exit_code != 0:
                file.write(f"\n{EXIT_ANNOTATION}{result.exit_code}\n\n")
        if stage.error:
            file.write("\n")
            _write_field(file, ABORT_ANNOTATION, stage.error)
            file.write("\n")
        file.write("\n")

def write_test_log(file: TextIO, test_outputs: Iterable[TestResults]):
    """Write the classified results of each test step."""
    for run in test_outputs:
        file.write(SEPARATOR + "\n")
        file.write(f"--Step '{run.step_label}'\n")
        file.write(
            f"--Of {run.tests_run} tests, {run.tests_succeeded} succeeded, "
            f"{run.tests_failed} failed.\n"
        )
        file.write("--Tests:\n")
        for test in run.tests:
            status = "succeeded" if test.succeeded else "FAILED"
            file.write(f"--Test '{test.name}' {status}\n")

class LoggedStep(BaseModel):
    command: str
    lines: List[str] = []
    exit_code: Optional[int] = None  # Only present for failing steps
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code is None and not self.timed_out

class LoggedStage(BaseModel):
    name: str
    steps: List[LoggedStep] = []
    error: Optional[str] = None

def read_run_log(text: str) -> List[LoggedStage]:
    """
    Parse a log produced by write_run_log back into stages and steps.
    Splits on "\\n" only; any other line-break character is line content.
    """
    stages: List[LoggedStage] = []
    continued: Optional[str] = None  # Field the next continuation line extends

    for line in text.split("\n"):
        if line.startswith(CONTINUATION_PREFIX):
            if stages and continued:
                _extend(stages[-1], continued, line[len(CONTINUATION_PREFIX):])
            continue
        continued = None

        match = _STAGE_RE.match(line)
        if match:
            stages.append(LoggedStage(name=match.group("name")))
            continue
        if not stages:
            continue
        stage = stages[-1]

        if line.startswith(COMMAND_PREFIX):
            stage.steps.append(LoggedStep(command=line[len(COMMAND_PREFIX):]))
            continued = "command"
        elif line.startswith(ABORT_ANNOTATION):
            stage.error = line[len(ABORT_ANNOTATION):]
            continued = "error"
        elif not stage.steps:
            continue
        elif line.startswith(STDOUT_PREFIX):
            stage.steps[-1].lines.append(line[len(STDOUT_PREFIX):])
            continued = "line"
        elif line.startswith(STDERR_PREFIX):
            stage.steps[-1].lines.append(line[len(STDERR_PREFIX):])
            continued = "line"
        elif line == TIMEOUT_ANNOTATION:
            stage.steps[-1].timed_out = True
        elif line.startswith(EXIT_ANNOTATION):
            stage.steps[-1].exit_code = int(line[len(EXIT_ANNOTATION):])
    return stages

def _extend(stage: LoggedStage, field: str, text: str):
    if field == "error":
        stage.error += "\n" + text
    elif field == "command":
        stage.steps[-1].command += "\n" + text
    else:
        stage.steps[-1].lines[-1] += "\n" + text
