"""
Data models shared by every Git-hosting driver.

These models represent the provider-neutral shapes that drivers translate
GitHub, GitLab and Bitbucket payloads into, independent of which provider
backs a session.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlsplit

from .errors import ConfigurationError

PipelineStatus = Literal["pending", "running", "success", "failed", "canceled"]
PullRequestState = Literal["open", "closed", "merged"]
MergeMode = Literal["merge", "squash", "rebase"]

MERGE_MODES = ("merge", "squash", "rebase")


@dataclass(frozen=True)
class Repository:
    """
    Reference to a hosted repository: its web URL and the token used to act on it.

    Immutable for the lifetime of a driver. Validation happens on construction
    so that no network call is ever attempted with a missing token or URL.
    """

    url: str
    token: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.token:
            raise ConfigurationError("token not found")
        if not self.url:
            raise ConfigurationError("repo not found")

        parts = urlsplit(self.url)
        if not parts.scheme or not parts.netloc:
            raise ConfigurationError(f"repo is not an absolute URL: {self.url}")

    @property
    def origin(self) -> str:
        """Scheme and host of the repository URL."""
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def host(self) -> str:
        return urlsplit(self.url).hostname or ""

    @property
    def web_url(self) -> str:
        """Repository URL without a trailing slash or .git suffix."""
        url = self.url.rstrip("/")
        if url.endswith(".git"):
            url = url[: -len(".git")]
        return url


@dataclass
class Comment:
    """A free-text note attached to a commit or a pull/merge request."""

    id: Any  # provider-native identifier
    body: str
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert comment to dictionary format (for JSON output)."""
        result: dict[str, Any] = {"id": self.id, "body": self.body}
        if self.url is not None:
            result["url"] = self.url
        return result


@dataclass
class PullRequest:
    """
    A pull request (GitHub, Bitbucket) or merge request (GitLab).

    The id is the provider-local number (GitLab iid), which is what every
    follow-up endpoint expects.
    """

    id: int
    url: str
    source: str
    target: str
    state: PullRequestState
    title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert pull request to dictionary format (for JSON output)."""
        return {
            "id": self.id,
            "url": self.url,
            "source": self.source,
            "target": self.target,
            "state": self.state,
            "title": self.title,
        }


@dataclass
class Runner:
    """
    A self-hosted CI runner as reported by the provider.

    busy is derived from whether the runner currently has a running job.
    """

    id: Any
    name: str
    labels: list[str] = field(default_factory=list)
    online: bool = False
    busy: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert runner to dictionary format (for JSON output)."""
        return {
            "id": self.id,
            "name": self.name,
            "labels": list(self.labels),
            "online": self.online,
            "busy": self.busy,
        }


@dataclass
class RunnerRegistration:
    """
    Result of registering a runner with a provider.

    The token is a one-time secret that only lives for the duration of the
    start-runner call; it must never be logged or stored.
    """

    id: Any
    token: str = field(repr=False)
    extra: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class Pipeline:
    """A CI pipeline (GitLab pipeline, GitHub workflow run, Bitbucket pipeline)."""

    id: Any
    status: PipelineStatus


@dataclass
class Job:
    """A single job of a pipeline, linked back to its parent pipeline."""

    id: Any
    status: PipelineStatus
    pipeline_id: Any


@dataclass
class Asset:
    """An uploaded file, addressed by an absolute URI."""

    uri: str
    mime: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {"uri": self.uri, "mime": self.mime, "size": self.size}


@dataclass(frozen=True)
class RunnerLogPatterns:
    """
    Line patterns for the structured log of a runner binary.

    Used by a log watcher to classify runner state transitions. The job
    pattern, when present, captures the job identifier in its first group.
    """

    ready: re.Pattern
    job_started: re.Pattern
    job_ended: re.Pattern
    job_ended_succeeded: re.Pattern
    job: re.Pattern | None = None

    def job_id(self, line: str) -> str | None:
        """Extract the job identifier from a log line, if the line carries one."""
        if self.job is None:
            return None
        match = self.job.search(line)
        return match.group(1) if match else None


@dataclass
class RunnerBinary:
    """
    Where a provider's runner executable lives inside a working directory.

    If path does not exist, the runner manager downloads it. archive means
    the download is a tar.gz to be extracted into the working directory
    rather than the executable itself. stale_files are removed from the
    working directory before every launch.
    """

    path: Path
    archive: bool = False
    stale_files: tuple[str, ...] = ()


@dataclass
class RunnerOptions:
    """Parameters of a runner launch."""

    workdir: Path
    name: str
    labels: list[str] = field(default_factory=list)
    idle_timeout: int = 300  # seconds, 0 disables
    single: bool = False
    docker_volumes: list[str] = field(default_factory=list)
    image: str = "ubuntu:22.04"
    gpu_image: str = "nvidia/cuda:12.2.0-runtime-ubuntu22.04"
