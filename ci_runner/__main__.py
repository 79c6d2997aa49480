"""
Standalone entrypoint for running a self-hosted CI runner.

Registers a runner with the provider, launches it and supervises its log
until it goes idle, finishes its job in single mode, exits, or receives
SIGINT/SIGTERM. The runner is then terminated and unregistered.

Usage:
    python -m ci_runner [OPTIONS]
    ci-runner [OPTIONS]  (after pip install)

Environment Variables:
    CIBRIDGE_DRIVER, CIBRIDGE_REPO, CIBRIDGE_TOKEN: Provider, repository and token
    CIBRIDGE_RUNNER_IDLE_TIMEOUT: Seconds a runner may idle (default: 300)
    CIBRIDGE_RUNNER_LABELS: Comma-separated runner labels (default: cibridge)
    CIBRIDGE_RUNNER_NAME: Runner name (default: cibridge-<random>)
    CIBRIDGE_RUNNER_SINGLE: Exit after one job when truthy
    CIBRIDGE_RUNNER_PATH: Runner working directory
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from ci_cli.config import build_driver, get_runner_options, migrate_legacy_environment
from ci_common.driver import Driver
from ci_common.errors import CIError, NotFoundError

from .manager import RunnerManager
from .supervisor import RunnerSupervisor
from .watcher import RunnerLogWatcher

logger = logging.getLogger(__name__)

TERMINATE_TIMEOUT = 10.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="CI runner - launch and supervise a self-hosted runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Note: Command-line arguments override environment variables.

Examples:
  # Start a GitLab runner that exits after 10 idle minutes
  ci-runner --driver gitlab --repo https://gitlab.com/group/project --idle-timeout 600

  # Run exactly one job, then unregister
  ci-runner --single --labels gpu,large
        """,
    )
    parser.add_argument("--driver", default=None, help="Provider (github, gitlab, bitbucket)")
    parser.add_argument("--repo", default=None, help="Repository web URL")
    parser.add_argument("--token", default=None, help="Provider token")
    parser.add_argument("--name", default=None, help="Runner name")
    parser.add_argument("--labels", default=None, help="Comma-separated runner labels")
    parser.add_argument(
        "--idle-timeout",
        type=int,
        default=None,
        help="Seconds without jobs before the runner stops; 0 disables (default: 300)",
    )
    parser.add_argument(
        "--single", action="store_true", help="Stop after the first finished job"
    )
    parser.add_argument("--workdir", default=None, help="Runner working directory")
    parser.add_argument(
        "--docker-volume",
        action="append",
        dest="docker_volumes",
        default=[],
        help="Volume to mount into job containers (repeatable)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Send sig to the runner's process group; the runner is its session leader."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        logger.debug(f"Runner process group {process.pid} already gone")


async def stop_process(process: asyncio.subprocess.Process) -> None:
    """
    Terminate the runner and everything its shell started.

    The whole process group is signalled, so commands chained with && in the
    launch command stop too. SIGKILL follows if it does not exit in time.
    """
    signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Runner did not exit after SIGTERM, killing it")
        signal_group(process, signal.SIGKILL)
        await process.wait()


async def unregister(driver: Driver, name: str) -> None:
    """
    Unregister every runner registered under name.

    Runners the provider no longer knows about count as unregistered.
    """
    runners = [runner for runner in await driver.list_runners() if runner.name == name]
    if not runners:
        logger.info(f"No runner named {name} is registered")
    for runner in runners:
        try:
            await driver.unregister_runner(runner.id)
        except NotFoundError:
            logger.info(f"Runner {name} ({runner.id}) already unregistered")


async def run_runner(args: argparse.Namespace) -> None:
    """
    Launch a runner and supervise it until it should stop.

    Args:
        args: Parsed command-line arguments
    """
    driver = build_driver(args.driver, args.repo, args.token)
    options = get_runner_options(
        name=args.name,
        labels=args.labels,
        idle_timeout=args.idle_timeout,
        single=args.single,
        workdir=args.workdir,
        docker_volumes=args.docker_volumes,
    )

    logger.info(f"Starting {driver.display_name} runner")
    logger.info(f"  Name: {options.name}")
    logger.info(f"  Labels: {', '.join(options.labels) or '(none)'}")
    logger.info(f"  Working directory: {options.workdir}")
    logger.info(f"  Idle timeout: {options.idle_timeout or 'disabled'}")
    logger.info(f"  Single job: {options.single}")

    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    process = None
    try:
        # start_runner registers before it spawns
        process = await RunnerManager(driver).start_runner(options)
        supervisor = RunnerSupervisor(
            process,
            RunnerLogWatcher(driver.runner_log_patterns()),
            idle_timeout=options.idle_timeout,
            single=options.single,
        )
        reason = await supervisor.run(shutdown_event)
        logger.info(f"Stopping runner ({reason})")
    finally:
        if process is not None:
            await stop_process(process)
        logger.info("Unregistering runner...")
        try:
            await unregister(driver, options.name)
        except CIError as e:
            logger.error(f"Failed unregistering runner {options.name}: {e}")
        driver.close()
        logger.info("Runner stopped")


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the runner.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    migrate_legacy_environment()

    try:
        asyncio.run(run_runner(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except CIError as e:
        logger.error(f"Error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
