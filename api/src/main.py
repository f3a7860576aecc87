"""
Pipelined - Main entry point.
"""

import logging
import signal
import sys
import threading

from api.src.config import get_settings
from api.src.server import BuildServer
from api.src.services.build_spec_parser import BuildSpecError, load_build_spec
from api.src.services.dispatcher import RequestDispatcher
from api.src.services.registry import RunRegistry, TaskRegistry
from controller.src.config import get_settings as get_controller_settings
from controller.src.services.executor import CommandRunner
from controller.src.services.result_store import GitResultStore, ResultStoreError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

def create_result_store(runner: CommandRunner):
    """Open the results working copy, or None when publishing is disabled."""
    settings = get_controller_settings()

    if not settings.results_remote:
        logger.warning("No results remote configured, results will not be published")
        return None

    return GitResultStore(
        repo_dir=settings.results_repo_dir,
        remote=settings.results_remote,
        branch=settings.results_branch,
        lock_path=settings.results_lock_path or None,
        runner=runner,
        attempts=settings.lock_attempts,
        retry_delay=settings.lock_retry_delay,
        git_timeout=settings.git_timeout,
        clone_timeout=settings.git_clone_timeout,
        push_timeout=settings.git_push_timeout,
    )

def main():
    """Main entry point."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    logger.info("Starting Pipelined")
    logger.info(f"Build specification: {settings.build_spec_path}")

    try:
        spec = load_build_spec(settings.build_spec_path)
    except BuildSpecError as e:
        logger.error(f"Failed to load build specification: {e}")
        sys.exit(1)
    logger.info(f"Loaded task '{spec.title}' ({len(spec.build_steps)} build steps, "
                f"{len(spec.test_steps)} test steps)")

    runner = CommandRunner()
    try:
        result_store = create_result_store(runner)
    except ResultStoreError as e:
        logger.error(f"Failed to open results repository: {e}")
        sys.exit(1)

    dispatcher = RequestDispatcher(
        tasks=TaskRegistry([spec]),
        runs=RunRegistry(),
        runner=runner,
        result_store=result_store,
        workspace_root=get_controller_settings().workspace_root,
        link_base=settings.results_link_base,
    )
    server = BuildServer(
        dispatcher,
        max_connections=settings.max_connections,
        stop_grace_period=settings.stop_grace_period,
    )

    try:
        server.start(
            (settings.listen_host, settings.listen_port),
            settings.max_workers,
            settings.accept_backlog,
        )
    except OSError as e:
        logger.error(f"Failed to listen on {settings.listen_host}:{settings.listen_port}: {e}")
        sys.exit(1)
    logger.info("Server running.")

    stop_requested = threading.Event()

    def request_stop(signum, frame):
        logger.info(f"Received signal {signum}")
        stop_requested.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    while not stop_requested.wait(1.0):
        pass

    server.stop(kill_running=settings.kill_running_on_stop)

if __name__ == "__main__":
    main()
