"""
Request dispatch - serves "run" and "status" requests for the workers.
"""

import logging
import threading
from typing import Callable, List, Optional, Tuple

from api.src.models.request import Request, RunResponse, StatusResponse, WireModel
from api.src.services.registry import RunRegistry, TaskRegistry
from controller.src.models.step import BuildSpec, RunOutcome
from controller.src.models.test_results import TestResults
from controller.src.services.executor import CommandRunner
from controller.src.services.pipeline import PipelineRunner
from controller.src.services.result_store import GitResultStore, ResultStoreError, result_link
from controller.src.services.test_parser import MarkerTestParser, TestOutputParser

logger = logging.getLogger(__name__)

Respond = Callable[[WireModel], None]

class RequestDispatcher:
    def __init__(
        self,
        tasks: TaskRegistry,
        runs: RunRegistry,
        runner: Optional[CommandRunner] = None,
        result_store: Optional[GitResultStore] = None,
        test_parser: Optional[TestOutputParser] = None,
        workspace_root: str = "workspaces",
        link_base: str = "results",
        pipeline_factory=PipelineRunner,
    ):
        self.tasks = tasks
        self.runs = runs
        self.runner = runner or CommandRunner()
        self.result_store = result_store
        self.test_parser = test_parser or MarkerTestParser()
        self.workspace_root = workspace_root
        self.link_base = link_base
        self.pipeline_factory = pipeline_factory
        self._publishing = 0
        self._publishing_done = threading.Condition()

    def handle(self, request: Request, respond: Respond):
        """
        Serve one request, calling respond exactly once.
        Raises RequestError subclasses before responding for bad requests.
        """
        if request.action == "run":
            self.handle_run(request, respond)
        elif request.action == "status":
            self.handle_status(request, respond)

    def handle_run(self, request: Request, respond: Respond):
        spec = self.tasks.get(request.task_name)
        run_id = self.runs.register(spec)
        respond(RunResponse(build_reference=run_id))

        logger.info(f"Starting run {run_id} of '{spec.title}'")
        try:
            outcome = self.execute(spec)
        except Exception as e:
            logger.exception(f"Run {run_id} failed unexpectedly")
            self.runs.fail(run_id, f"Run failed: {e}")
            return
        logger.info(f"Finished pipeline for run {run_id}")

        test_results = self.classify_tests(run_id, outcome)
        published, error = self.publish(run_id, spec, outcome, test_results)

        self.runs.complete(run_id, outcome, published=published, error=error)
        logger.info(f"Run {run_id} completed.")

    def handle_status(self, request: Request, respond: Respond):
        record = self.runs.get(request.build_reference)
        respond(StatusResponse(
            completed=record.completed,
            result_link=result_link(self.link_base, record.spec.title),
            published=record.published,
            error=record.error,
        ))

    def execute(self, spec: BuildSpec) -> RunOutcome:
        with self.pipeline_factory(spec, self.runner, self.workspace_root) as pipeline:
            return pipeline.run_all()

    def classify_tests(self, run_id: int, outcome: RunOutcome) -> List[TestResults]:
        results = []
        for i, step_outcome in enumerate(outcome.test.results):
            label = step_outcome.step.name or str(i)
            logger.info(f"Classifying results for run {run_id}, test command {label}")
            try:
                results.append(self.test_parser.parse_output(step_outcome))
            except Exception:
                logger.exception(
                    f"Unable to classify results for run {run_id} test command {label}"
                )
        return results

    def publish(
        self,
        run_id: int,
        spec: BuildSpec,
        outcome: RunOutcome,
        test_results: List[TestResults],
    ) -> Tuple[bool, Optional[str]]:
        """Save results; returns (published, error)."""
        if self.result_store is None:
            logger.info(f"Publishing disabled, results of run {run_id} kept in memory only")
            return False, None
        with self._publishing_done:
            self._publishing += 1
        try:
            self.result_store.save_results(spec, outcome, test_results)
        except ResultStoreError as e:
            logger.error(f"Unable to upload results for run {run_id}: {e}")
            return False, str(e)
        finally:
            with self._publishing_done:
                self._publishing -= 1
                self._publishing_done.notify_all()
        return True, None

    @property
    def publishing(self) -> int:
        with self._publishing_done:
            return self._publishing

    def wait_for_publishes(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is saving results; False if the timeout expired."""
        with self._publishing_done:
            return self._publishing_done.wait_for(lambda: self._publishing == 0, timeout)

    def terminate_running(self):
        self.runner.terminate_all()
