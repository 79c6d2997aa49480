"""
Runner binary provisioning.

Downloads a provider's runner into its working directory, unpacking tarball
distributions and marking single binaries executable.
"""

import asyncio
import logging
import tarfile
from pathlib import Path

import requests

from ci_common.models import RunnerBinary

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def download_file(
    url: str, destination: Path, session: requests.Session | None = None, timeout: float = 300
) -> Path:
    """
    Stream a download to disk.

    Args:
        url: File to download
        destination: Target path; parent directories are created

    Returns:
        The destination path

    Raises:
        requests.RequestException: If the download fails
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    getter = session.get if session is not None else requests.get
    with getter(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with destination.open("wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                f.write(chunk)
    return destination


def extract_archive(archive: Path, workdir: Path) -> None:
    """Unpack a tar.gz into workdir, refusing members that escape it."""
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(workdir, filter="data")


def install_binary(
    binary: RunnerBinary, url: str, session: requests.Session | None = None
) -> None:
    """
    Put a runner binary in place (blocking).

    For archives, the tarball is downloaded next to the binary, extracted
    into the binary's directory and removed afterwards.
    """
    workdir = binary.path.parent
    if binary.archive:
        archive = workdir / "runner.tar.gz"
        download_file(url, archive, session=session)
        try:
            extract_archive(archive, workdir)
        finally:
            archive.unlink(missing_ok=True)
    else:
        download_file(url, binary.path, session=session)
        binary.path.chmod(0o755)


async def ensure_binary(
    binary: RunnerBinary, url: str, session: requests.Session | None = None
) -> None:
    logger.info(f"Downloading runner from {url} into {binary.path.parent}")
    await asyncio.to_thread(install_binary, binary, url, session)
    logger.info(f"Runner installed at {binary.path}")


def remove_stale_files(workdir: Path, names: tuple[str, ...]) -> None:
    """Delete leftovers of a previous registration from workdir."""
    for name in names:
        path = workdir / name
        if path.exists():
            logger.debug(f"Removing stale runner file {path}")
            path.unlink()
