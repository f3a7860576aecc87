"""
Step execution models.
"""

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Dict, Iterator, List, Optional
from datetime import datetime, timezone
from enum import Enum

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class StageName(str, Enum):
    SETUP = "setup"
    BUILD = "build"
    TEST = "test"

class OutputStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"

class Step(BaseModel):
    """One command to run, with its execution parameters."""
    name: Optional[str] = None
    command: str = Field(min_length=1)
    timeout: float = Field(default=0, ge=0)  # seconds, 0 = use the caller's default
    working_directory: Optional[str] = None
    environment: Dict[str, str] = {}
    stage: Optional[StageName] = None

    class Config:
        frozen = True
        alias_generator = to_camel
        populate_by_name = True

    @property
    def label(self) -> str:
        return self.name or self.command

class BuildSpec(BaseModel):
    """Immutable project descriptor loaded once at startup."""
    title: str = Field(min_length=1)
    repository: str = Field(min_length=1)
    commit_reference: Optional[str] = None
    build_steps: List[Step] = []
    test_steps: List[Step] = []
    default_timeout: float = Field(default=0, ge=0)  # seconds, 0 = unbounded

    class Config:
        frozen = True
        alias_generator = to_camel
        populate_by_name = True

    @field_validator("build_steps")
    @classmethod
    def _tag_build_steps(cls, steps: List[Step]) -> List[Step]:
        return [step.model_copy(update={"stage": StageName.BUILD}) for step in steps]

    @field_validator("test_steps")
    @classmethod
    def _tag_test_steps(cls, steps: List[Step]) -> List[Step]:
        return [step.model_copy(update={"stage": StageName.TEST}) for step in steps]

class OutputLine(BaseModel):
    source: OutputStream
    text: str

    class Config:
        frozen = True

class StepOutcome(BaseModel):
    step: Step
    lines: List[OutputLine] = []
    exit_code: int
    timed_out: bool = False
    duration: float  # seconds
    started_at: datetime

    class Config:
        frozen = True

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

class StageOutcome(BaseModel):
    stage: StageName
    results: List[StepOutcome] = []
    attempted: bool = True
    error: Optional[str] = None  # Set when a step could not be launched

    class Config:
        frozen = True

    @property
    def successful(self) -> bool:
        """True iff every step succeeded; vacuously true for zero steps."""
        return self.error is None and all(r.succeeded for r in self.results)

    @classmethod
    def empty(cls, stage: StageName) -> "StageOutcome":
        """Outcome for a stage that was never attempted."""
        return cls(stage=stage, results=[], attempted=False)

class RunOutcome(BaseModel):
    spec: BuildSpec
    setup: StageOutcome
    build: StageOutcome
    test: StageOutcome
    finished_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True

    def stages(self) -> Iterator[StageOutcome]:
        yield self.setup
        yield self.build
        yield self.test
