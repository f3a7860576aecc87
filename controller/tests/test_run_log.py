"""Tests for the run log writer and reader."""

import io

from controller.src.models.step import StageName, StageOutcome
from controller.src.models.test_results import TestCase, TestResults
from controller.src.services.run_log import (
    SEPARATOR,
    read_run_log,
    write_run_log,
    write_test_log,
)
from controller.src.testkit import make_outcome, make_step_outcome

def _render(stages) -> str:
    buffer = io.StringIO()
    write_run_log(buffer, stages)
    return buffer.getvalue()

def test_log_lists_every_stage_in_order():
    text = _render(make_outcome().stages())

    assert [s.name for s in read_run_log(text)] == ["setup", "build", "test"]
    assert text.startswith('--Stage "setup"\n' + SEPARATOR + "\n")

def test_log_reads_back_commands_and_output():
    build = StageOutcome(stage=StageName.BUILD, results=[
        make_step_outcome("make", stdout=["compiling", "linking"], stderr=["warning: x"]),
        make_step_outcome("make install", exit_code=2, stderr=["no permission"]),
    ])

    stages = read_run_log(_render([build]))

    steps = stages[0].steps
    assert [s.command for s in steps] == ["make", "make install"]
    assert steps[0].lines == ["compiling", "linking", "warning: x"]
    assert steps[0].passed
    assert steps[1].exit_code == 2
    assert not steps[1].passed

def test_log_marks_timeouts():
    test = StageOutcome(stage=StageName.TEST, results=[
        make_step_outcome("sleep 100", exit_code=-9, timed_out=True),
    ])

    text = _render([test])
    step = read_run_log(text)[0].steps[0]

    assert "[ERROR] Command timed out" in text
    assert step.timed_out
    assert step.exit_code is None

def test_log_records_aborted_stage():
    setup = StageOutcome(stage=StageName.SETUP, results=[], error="Cannot start 'git': not found")

    stage = read_run_log(_render([setup]))[0]

    assert stage.steps == []
    assert stage.error == "Cannot start 'git': not found"

def test_step_label_and_timing_are_logged():
    text = _render([StageOutcome(stage=StageName.BUILD, results=[make_step_outcome("make", name="compile")])])

    assert "--# step 'compile' started 1970-01-01T00:00:00+00:00, took 0.00s" in text

def test_output_resembling_headers_stays_output():
    build = StageOutcome(stage=StageName.BUILD, results=[
        make_step_outcome("cat log", stdout=['--Stage "fake"', "--$ rm -rf /"]),
    ])

    stages = read_run_log(_render([build]))

    assert len(stages) == 1
    assert stages[0].steps[0].lines == ['--Stage "fake"', "--$ rm -rf /"]

def test_empty_stage_still_has_header():
    stages = read_run_log(_render([StageOutcome.empty(StageName.TEST)]))

    assert stages[0].name == "test"
    assert stages[0].steps == []

def test_test_log_counts_and_names():
    buffer = io.StringIO()
    write_test_log(buffer, [TestResults(
        step_label="unit",
        tests_run=2,
        tests_succeeded=1,
        tests_failed=1,
        tests=[TestCase(name="adds", succeeded=True), TestCase(name="divides", succeeded=False)],
    )])

    text = buffer.getvalue()
    assert "--Step 'unit'" in text
    assert "--Of 2 tests, 1 succeeded, 1 failed." in text
    assert "--Test 'adds' succeeded" in text
    assert "--Test 'divides' FAILED" in text

def test_other_line_breaks_stay_inside_output():
    text_lines = ["ok\x1c[ERROR] Command timed out", "page\x0cbreak", "para\u2028graph", "next\x85line"]
    build = StageOutcome(stage=StageName.BUILD, results=[make_step_outcome("make", stdout=text_lines)])

    step = read_run_log(_render([build]))[0].steps[0]

    assert step.lines == text_lines
    assert not step.timed_out
    assert step.passed

def test_multiline_command_reads_back_whole():
    build = StageOutcome(stage=StageName.BUILD, results=[
        make_step_outcome("make\n[ERROR] Command exited with 9\nall", stdout=["done"]),
    ])

    text = _render([build])
    step = read_run_log(text)[0].steps[0]

    assert "\n[ERROR] Command exited with 9\n" not in text
    assert step.command == "make\n[ERROR] Command exited with 9\nall"
    assert step.exit_code is None
    assert step.lines == ["done"]

def test_multiline_output_and_abort_message_read_back_whole():
    test = StageOutcome(
        stage=StageName.TEST,
        results=[make_step_outcome("check", stderr=["first\nsecond"])],
        error="Cannot start 'x'\nin /tmp",
    )

    stage = read_run_log(_render([test]))[0]

    assert stage.steps[0].lines == ["first\nsecond"]
    assert stage.error == "Cannot start 'x'\nin /tmp"
