"""
Shared mechanics of the REST-backed drivers.

RestDriver owns the repository reference, the request client and the
memoized API base, and implements the provider-independent halves of the
contract (auto-merge sequencing, git remote credentials, CI environment
context). Provider modules supply endpoints and payload translation.
"""

import asyncio
import logging
import os
import platform
import shlex
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

import requests

from ci_common.driver import Driver
from ci_common.errors import UnsupportedOperation
from ci_common.models import MERGE_MODES, PullRequest, Repository

from .merge import RetryPolicy, check_merge_mode, merge_with_fallback
from .request_client import RequestClient
from .resolver import BaseResolver

logger = logging.getLogger(__name__)

SKIP_CI_MARKER = "[skip ci]"

PULL_REQUEST_STATES = {
    "open": "open",
    "opened": "open",
    "closed": "closed",
    "declined": "closed",
    "merged": "merged",
    "all": "all",
}


def host_platform() -> tuple[str, str]:
    """
    Operating system and CPU architecture of this machine.

    Returns:
        ("linux" or "darwin", "amd64" or "arm64")
    """
    system = "darwin" if platform.system().lower() == "darwin" else "linux"
    machine = platform.machine().lower()
    arch = "arm64" if machine in ("arm64", "aarch64") else "amd64"
    return system, arch


def normalize_state(state: str) -> str:
    """Map the state names callers use onto open/closed/merged/all."""
    try:
        return PULL_REQUEST_STATES[state.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown pull request state {state!r}; expected open, closed, merged or all"
        ) from None


def filter_by_state(pull_requests: list[PullRequest], state: str) -> list[PullRequest]:
    """Keep only pull requests in the requested (normalized) state."""
    if state == "all":
        return pull_requests
    return [pr for pr in pull_requests if pr.state == state]


class RestDriver(Driver):
    """
    Base class for provider drivers talking to a REST API.

    The API base is resolved on first use and cached for the lifetime of the
    instance; concurrent first callers wait on a lock so resolution happens
    at most once.
    """

    name = ""
    display_name = ""
    api_path = ""
    supported_merge_modes: tuple[str, ...] = MERGE_MODES
    merge_retry = RetryPolicy()

    # CI environment variables describing the current pipeline
    env_sha = ""
    env_branch = ""
    env_pipeline_id = ""
    env_job_id = ""
    env_user_name = ""
    env_user_email = ""

    def __init__(
        self,
        repo: str,
        token: str,
        session: requests.Session | None = None,
    ):
        """
        Initialize the driver.

        Args:
            repo: Web URL of the repository
            token: Credential for the provider API

        Raises:
            ConfigurationError: If repo or token is missing or repo is not absolute
        """
        self.repository = Repository(repo, token)
        self.client = RequestClient(
            headers=self.auth_headers(), api_root=self.api_root, session=session
        )
        self.resolver = self.make_resolver()
        self._base: str | None = None
        self._base_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(repo={self.repo!r})"

    @property
    def repo(self) -> str:
        return self.repository.web_url

    @property
    def token(self) -> str:
        return self.repository.token

    def auth_headers(self) -> dict[str, str]:
        """Headers authenticating every request of this driver."""
        raise NotImplementedError

    def make_resolver(self) -> BaseResolver:
        """Build the resolver that discovers this provider's API base."""
        raise NotImplementedError

    async def repo_base(self) -> str:
        if self._base is None:
            async with self._base_lock:
                if self._base is None:
                    self._base = await self.resolver.resolve(self.repository.url)
                    logger.debug(f"{self.display_name} API base: {self._base}")
        return self._base

    async def api_root(self) -> str:
        """Root URL that endpoint paths are appended to."""
        return f"{await self.repo_base()}{self.api_path}"

    async def project_path(self) -> str:
        """Repository path relative to the resolved base, without slashes at the ends."""
        base = await self.repo_base()
        path = self.repo
        if path.startswith(base):
            path = path[len(base) :]
        else:
            path = urlsplit(path).path
        return path.strip("/")

    async def request(self, endpoint: str, **kwargs: Any) -> Any:
        return await self.client.request(endpoint=endpoint, **kwargs)

    def close(self) -> None:
        self.client.close()

    def unsupported(self, capability: str) -> UnsupportedOperation:
        return UnsupportedOperation(f"{self.display_name} does not support {capability}")

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    @staticmethod
    def pull_request_title(title: str, skip_ci: bool) -> str:
        return f"{title} {SKIP_CI_MARKER}" if skip_ci else title

    def check_merge_mode(self, merge_mode: str) -> None:
        check_merge_mode(merge_mode, self.supported_merge_modes, self.display_name)

    async def auto_merge(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None = None
    ) -> None:
        self.check_merge_mode(merge_mode)
        logger.info(
            f"Enabling {merge_mode} auto-merge for pull request {pull_request_id}"
        )
        await merge_with_fallback(
            lambda: self._enable_auto_merge(pull_request_id, merge_mode, merge_message),
            lambda: self._merge_now(pull_request_id, merge_mode, merge_message),
            self.merge_retry,
        )

    async def _enable_auto_merge(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None
    ) -> None:
        """Ask the provider to merge once the pipeline succeeds."""
        raise self.unsupported("merging when the pipeline succeeds")

    async def _merge_now(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None
    ) -> None:
        """Merge unconditionally."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    async def runner_download_url(self) -> str:
        raise self.unsupported("downloading a runner binary")

    # ------------------------------------------------------------------
    # Git
    # ------------------------------------------------------------------

    def git_credentials(self) -> tuple[str, str]:
        """User name and password to embed in the git remote URL."""
        return "token", self.token

    def git_remote_url(self) -> str:
        """Repository clone URL with credentials embedded."""
        parts = urlsplit(self.repo)
        user, password = self.git_credentials()
        host = parts.netloc.rsplit("@", 1)[-1]
        netloc = f"{quote(user, safe='')}:{quote(password, safe='')}@{host}"
        return urlunsplit((parts.scheme, netloc, f"{parts.path}.git", "", ""))

    def git_remote_command(
        self,
        user_name: str | None = None,
        user_email: str | None = None,
        remote: str = "origin",
    ) -> str:
        user_name = user_name or self.user_name or ""
        user_email = user_email or self.user_email or ""
        return (
            f"git config user.name {shlex.quote(user_name)} && "
            f"git config user.email {shlex.quote(user_email)} && "
            f"git remote set-url {shlex.quote(remote)} {shlex.quote(self.git_remote_url())}"
        )

    # ------------------------------------------------------------------
    # CI environment context
    # ------------------------------------------------------------------

    def _env(self, name: str) -> str | None:
        return os.environ.get(name) if name else None

    @property
    def sha(self) -> str | None:
        return self._env(self.env_sha)

    @property
    def branch(self) -> str | None:
        return self._env(self.env_branch)

    @property
    def pipeline_id(self) -> str | None:
        return self._env(self.env_pipeline_id)

    @property
    def job_id(self) -> str | None:
        return self._env(self.env_job_id)

    @property
    def user_name(self) -> str | None:
        return self._env(self.env_user_name)

    @property
    def user_email(self) -> str | None:
        return self._env(self.env_user_email)
