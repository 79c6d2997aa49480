"""
Runner lifecycle manager.

Prepares and launches a provider's self-hosted runner: detects GPUs, puts the
runner binary in place, registers the runner and spawns it. Supervising the
spawned process is left to the caller.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path

import requests

from ci_common.driver import Driver
from ci_common.errors import AuthenticationError, ResourceError
from ci_common.models import RunnerOptions

from .provisioning import ensure_binary, remove_stale_files

logger = logging.getLogger(__name__)


async def gpu_present() -> bool:
    """True when nvidia-smi is on PATH and exits 0."""
    nvidia_smi = shutil.which("nvidia-smi")
    if nvidia_smi is None:
        return False
    try:
        process = await asyncio.create_subprocess_exec(
            nvidia_smi,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        return await process.wait() == 0
    except OSError as e:
        logger.debug(f"nvidia-smi failed to start: {e}")
        return False


def in_container() -> bool:
    """True when this process already runs inside a container."""
    return bool(os.environ.get("IN_DOCKER")) or Path("/.dockerenv").exists()


class RunnerManager:
    """
    Starts self-hosted runners for one driver.

    The registration token returned by the provider only lives inside
    start_runner; it is interpolated into the launch command and dropped.
    """

    def __init__(self, driver: Driver, session: requests.Session | None = None):
        """
        Initialize the runner manager.

        Args:
            driver: Provider driver the runner registers with
            session: Optional HTTP session used for binary downloads
        """
        self.driver = driver
        self.session = session

    async def prepare_binary(self, workdir: Path) -> None:
        binary = self.driver.runner_binary(workdir)
        if binary is None:
            return

        if not binary.path.exists():
            url = await self.driver.runner_download_url()
            await ensure_binary(binary, url, session=self.session)
        else:
            logger.debug(f"Runner binary {binary.path} already present")

        remove_stale_files(workdir, binary.stale_files)

    async def start_runner(self, options: RunnerOptions) -> asyncio.subprocess.Process:
        """
        Register and launch a runner.

        Args:
            options: Launch parameters (workdir, name, labels, timeouts, volumes)

        Returns:
            Handle of the spawned runner process, stdout piped with stderr merged

        Raises:
            ResourceError: If any preparation step fails; the cause is chained
        """
        provider = self.driver.display_name or self.driver.name
        try:
            workdir = Path(options.workdir)
            workdir.mkdir(parents=True, exist_ok=True)

            gpu = await gpu_present()
            logger.info(f"GPU {'detected' if gpu else 'not detected'}")

            await self.prepare_binary(workdir)

            try:
                registration = await self.driver.register_runner(options.name, options.labels)
            except AuthenticationError as e:
                raise AuthenticationError(
                    e.status_code, f"{e.message}{self.driver.runner_permission_hint}"
                ) from e

            command = await self.driver.runner_command(
                options, registration, gpu=gpu, in_container=in_container()
            )

            logger.info(f"Launching {provider} runner {options.name}")
            return await asyncio.create_subprocess_shell(
                command,
                cwd=str(workdir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except Exception as e:
            raise ResourceError(f"Failed preparing {provider} runner: {e}") from e
