"""Provider drivers for GitLab, GitHub and Bitbucket."""

import requests

from ci_common.driver import Driver
from ci_common.errors import ConfigurationError

from .base import RestDriver
from .bitbucket import BitbucketDriver
from .github import GitHubDriver
from .gitlab import GitLabDriver
from .merge import RetryPolicy, merge_with_fallback, retry_with_backoff
from .request_client import RequestClient
from .resolver import BaseResolver

DRIVERS: dict[str, type[RestDriver]] = {
    GitLabDriver.name: GitLabDriver,
    GitHubDriver.name: GitHubDriver,
    BitbucketDriver.name: BitbucketDriver,
}


def get_driver(
    name: str, repo: str, token: str, session: requests.Session | None = None
) -> Driver:
    """
    Instantiate the driver registered under a provider name.

    Raises:
        ConfigurationError: If the provider is unknown, or repo/token are missing
    """
    try:
        driver_class = DRIVERS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown driver {name!r}; expected one of {', '.join(DRIVERS)}"
        ) from None
    return driver_class(repo, token, session=session)


__all__ = [
    "DRIVERS",
    "get_driver",
    "RestDriver",
    "GitLabDriver",
    "GitHubDriver",
    "BitbucketDriver",
    "RequestClient",
    "BaseResolver",
    "RetryPolicy",
    "retry_with_backoff",
    "merge_with_fallback",
]
