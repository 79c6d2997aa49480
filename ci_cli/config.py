"""
Configuration helpers shared by the command-line entry points.

Every setting is resolved with the same priority: explicit command-line value,
then environment variable, then inference from the CI environment.

Environment Variables:
    CIBRIDGE_DRIVER: Provider name (github, gitlab, bitbucket)
    CIBRIDGE_REPO: Repository web URL
    CIBRIDGE_TOKEN: Provider token (also REPO_TOKEN, GITHUB_TOKEN, GITLAB_TOKEN,
                    BITBUCKET_TOKEN)
    CIBRIDGE_RUNNER_IDLE_TIMEOUT: Seconds a runner may idle (default: 300, 0 disables)
    CIBRIDGE_RUNNER_LABELS: Comma-separated runner labels (default: cibridge)
    CIBRIDGE_RUNNER_NAME: Runner name (default: cibridge-<random>)
    CIBRIDGE_RUNNER_SINGLE: Exit after one job when truthy
    CIBRIDGE_RUNNER_PATH: Runner working directory
    CIBRIDGE_RUNNER_IMAGE: Docker image for CPU jobs (default: ubuntu:22.04)
    CIBRIDGE_RUNNER_GPU_IMAGE: Docker image for GPU jobs
"""

import logging
import os
import secrets
from collections.abc import MutableMapping
from pathlib import Path
from urllib.parse import urlsplit

from ci_common.driver import Driver
from ci_common.errors import ConfigurationError
from ci_common.models import RunnerOptions
from ci_drivers import DRIVERS, get_driver

logger = logging.getLogger(__name__)

ENV_PREFIX = "CIBRIDGE_"
LEGACY_PREFIX = "CML_"

# Unprefixed names accepted by earlier releases
LEGACY_ALIASES = {
    "RUNNER_IDLE_TIMEOUT": "CIBRIDGE_RUNNER_IDLE_TIMEOUT",
    "RUNNER_LABELS": "CIBRIDGE_RUNNER_LABELS",
    "RUNNER_SINGLE": "CIBRIDGE_RUNNER_SINGLE",
    "RUNNER_NAME": "CIBRIDGE_RUNNER_NAME",
    "RUNNER_PATH": "CIBRIDGE_RUNNER_PATH",
}

CI_MARKERS = {
    "GITHUB_ACTIONS": "github",
    "GITLAB_CI": "gitlab",
    "BITBUCKET_BUILD_NUMBER": "bitbucket",
}

PROVIDER_TOKENS = {
    "github": "GITHUB_TOKEN",
    "gitlab": "GITLAB_TOKEN",
    "bitbucket": "BITBUCKET_TOKEN",
}

DEFAULT_IDLE_TIMEOUT = 300
DEFAULT_LABELS = ["cibridge"]
DEFAULT_IMAGE = "ubuntu:22.04"
DEFAULT_GPU_IMAGE = "nvidia/cuda:12.2.0-runtime-ubuntu22.04"

TRUTHY = {"1", "true", "yes", "on"}


def migrate_legacy_environment(environ: MutableMapping[str, str] | None = None) -> list[str]:
    """
    Copy legacy variables to their current names.

    Current names always win; a legacy variable only fills in a missing
    value. Returns the legacy names that were copied.
    """
    environ = os.environ if environ is None else environ
    migrated = []

    renames = dict(LEGACY_ALIASES)
    for name in list(environ):
        if name.startswith(LEGACY_PREFIX):
            renames[name] = ENV_PREFIX + name[len(LEGACY_PREFIX) :]

    for legacy, current in renames.items():
        if legacy in environ and current not in environ:
            environ[current] = environ[legacy]
            migrated.append(legacy)
            logger.warning(f"{legacy} is deprecated, use {current} instead")

    return migrated


def is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUTHY


def infer_driver(repo: str | None = None) -> str:
    """
    Work out the provider from the CI environment or the repository host.

    Raises:
        ConfigurationError: If neither identifies a known provider
    """
    for marker, name in CI_MARKERS.items():
        if os.environ.get(marker):
            return name

    host = (urlsplit(repo).hostname or "").lower() if repo else ""
    for name in DRIVERS:
        if name in host:
            return name

    raise ConfigurationError(
        "driver not found; pass --driver or set CIBRIDGE_DRIVER "
        f"({', '.join(DRIVERS)})"
    )


def get_repo(option: str | None = None) -> str | None:
    """Repository URL from the command line, CIBRIDGE_REPO or the CI environment."""
    if option:
        return option
    if os.environ.get(f"{ENV_PREFIX}REPO"):
        return os.environ[f"{ENV_PREFIX}REPO"]
    if os.environ.get("GITHUB_SERVER_URL") and os.environ.get("GITHUB_REPOSITORY"):
        return f"{os.environ['GITHUB_SERVER_URL']}/{os.environ['GITHUB_REPOSITORY']}"
    return os.environ.get("CI_PROJECT_URL") or os.environ.get("BITBUCKET_GIT_HTTP_ORIGIN")


def get_driver_name(option: str | None = None, repo: str | None = None) -> str:
    if option:
        return option.lower()
    if os.environ.get(f"{ENV_PREFIX}DRIVER"):
        return os.environ[f"{ENV_PREFIX}DRIVER"].lower()
    return infer_driver(repo)


def get_token(driver_name: str, option: str | None = None) -> str | None:
    """Token from the command line, CIBRIDGE_TOKEN, REPO_TOKEN or the provider's variable."""
    if option:
        return option
    for name in (f"{ENV_PREFIX}TOKEN", "REPO_TOKEN", PROVIDER_TOKENS.get(driver_name, "")):
        if name and os.environ.get(name):
            return os.environ[name]
    return None


def build_driver(
    driver: str | None = None, repo: str | None = None, token: str | None = None
) -> Driver:
    """
    Resolve driver name, repository and token, then instantiate the driver.

    Raises:
        ConfigurationError: If any of them cannot be determined
    """
    repo = get_repo(repo)
    name = get_driver_name(driver, repo)
    return get_driver(name, repo or "", get_token(name, token) or "")


def get_idle_timeout(option: int | None = None) -> int:
    """
    Idle timeout in seconds; 0 disables it.

    Invalid or negative values fall back to the default with a warning.
    """
    if option is not None:
        if option < 0:
            logger.warning(f"Invalid idle timeout={option}, using default {DEFAULT_IDLE_TIMEOUT}")
            return DEFAULT_IDLE_TIMEOUT
        return option

    raw = os.environ.get(f"{ENV_PREFIX}RUNNER_IDLE_TIMEOUT", str(DEFAULT_IDLE_TIMEOUT))
    try:
        timeout = int(raw)
    except ValueError:
        logger.warning(
            f"Invalid {ENV_PREFIX}RUNNER_IDLE_TIMEOUT={raw}, using default {DEFAULT_IDLE_TIMEOUT}"
        )
        return DEFAULT_IDLE_TIMEOUT
    if timeout < 0:
        logger.warning(
            f"Invalid {ENV_PREFIX}RUNNER_IDLE_TIMEOUT={timeout}, using default {DEFAULT_IDLE_TIMEOUT}"
        )
        return DEFAULT_IDLE_TIMEOUT
    return timeout


def get_labels(option: str | None = None) -> list[str]:
    raw = option if option is not None else os.environ.get(f"{ENV_PREFIX}RUNNER_LABELS")
    if raw is None:
        return list(DEFAULT_LABELS)
    return [label.strip() for label in raw.split(",") if label.strip()]


def get_runner_name(option: str | None = None) -> str:
    return option or os.environ.get(f"{ENV_PREFIX}RUNNER_NAME") or f"cibridge-{secrets.token_hex(4)}"


def get_single(option: bool = False) -> bool:
    return option or is_truthy(os.environ.get(f"{ENV_PREFIX}RUNNER_SINGLE"))


def get_workdir(option: str | None = None, name: str | None = None) -> Path:
    """Runner working directory; defaults to ~/.cibridge/<runner name>."""
    if option:
        return Path(option).expanduser()
    if os.environ.get(f"{ENV_PREFIX}RUNNER_PATH"):
        return Path(os.environ[f"{ENV_PREFIX}RUNNER_PATH"]).expanduser()
    return Path.home() / ".cibridge" / (name or "runner")


def get_runner_options(
    name: str | None = None,
    labels: str | None = None,
    idle_timeout: int | None = None,
    single: bool = False,
    workdir: str | None = None,
    docker_volumes: list[str] | None = None,
) -> RunnerOptions:
    """Assemble RunnerOptions from command-line values and the environment."""
    name = get_runner_name(name)
    return RunnerOptions(
        workdir=get_workdir(workdir, name),
        name=name,
        labels=get_labels(labels),
        idle_timeout=get_idle_timeout(idle_timeout),
        single=get_single(single),
        docker_volumes=list(docker_volumes or []),
        image=os.environ.get(f"{ENV_PREFIX}RUNNER_IMAGE", DEFAULT_IMAGE),
        gpu_image=os.environ.get(f"{ENV_PREFIX}RUNNER_GPU_IMAGE", DEFAULT_GPU_IMAGE),
    )
