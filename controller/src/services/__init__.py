from controller.src.services.executor import CommandRunner, CommandLaunchError
from controller.src.services.pipeline import PipelineRunner, PipelineState
from controller.src.services.result_store import (
    GitResultStore,
    ResultStoreError,
    SentinelLock,
    result_link,
)
from controller.src.services.test_parser import MarkerTestParser

__all__ = [
    "CommandRunner",
    "CommandLaunchError",
    "PipelineRunner",
    "PipelineState",
    "GitResultStore",
    "ResultStoreError",
    "SentinelLock",
    "result_link",
    "MarkerTestParser",
]
