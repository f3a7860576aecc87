from controller.src.models.step import (
    StageName,
    OutputStream,
    Step,
    BuildSpec,
    OutputLine,
    StepOutcome,
    StageOutcome,
    RunOutcome,
)
from controller.src.models.test_results import (
    TestCase,
    TestResults,
    TestSummary,
)

__all__ = [
    "StageName",
    "OutputStream",
    "Step",
    "BuildSpec",
    "OutputLine",
    "StepOutcome",
    "StageOutcome",
    "RunOutcome",
    "TestCase",
    "TestResults",
    "TestSummary",
]
