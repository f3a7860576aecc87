"""
In-memory task and run registries shared by the request workers.
"""

import threading
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from api.src.models.request import UnknownRun, UnknownTask
from controller.src.models.step import BuildSpec, RunOutcome

class RunRecord(BaseModel):
    run_id: int
    spec: BuildSpec
    outcome: Optional[RunOutcome] = None  # None while the run is pending
    published: bool = False
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.outcome is not None

class TaskRegistry:
    """Build specifications by task name."""

    def __init__(self, specs: Iterable[BuildSpec] = ()):
        self._lock = threading.Lock()
        self._tasks: Dict[str, BuildSpec] = {}
        for spec in specs:
            self.add(spec)

    def add(self, spec: BuildSpec):
        with self._lock:
            if spec.title in self._tasks:
                raise ValueError(f"Task '{spec.title}' is already registered")
            self._tasks[spec.title] = spec

    def get(self, name: Optional[str]) -> BuildSpec:
        with self._lock:
            spec = self._tasks.get(name) if name else None
        if spec is None:
            raise UnknownTask(f"No task named '{name}'")
        return spec

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._tasks)

class RunRegistry:
    """Run records by run id; ids are assigned in increasing order."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[int, RunRecord] = {}
        self._next_id = 0

    def register(self, spec: BuildSpec) -> int:
        """Allocate the next run id and record the run as pending."""
        with self._lock:
            run_id = self._next_id
            self._next_id += 1
            self._records[run_id] = RunRecord(run_id=run_id, spec=spec)
        return run_id

    def complete(
        self,
        run_id: int,
        outcome: RunOutcome,
        published: bool = False,
        error: Optional[str] = None,
    ):
        with self._lock:
            record = self._records[run_id]
            if record.completed:
                raise RuntimeError(f"Run {run_id} has already completed")
            record.outcome = outcome
            record.published = published
            record.error = error

    def fail(self, run_id: int, error: str):
        """Record why a run ended without an outcome."""
        with self._lock:
            self._records[run_id].error = error

    def get(self, run_id: Optional[int]) -> RunRecord:
        """Snapshot of a run record."""
        with self._lock:
            record = self._records.get(run_id) if run_id is not None else None
            if record is None:
                raise UnknownRun(f"No run with reference {run_id}")
            return record.model_copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
