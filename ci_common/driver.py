"""
Abstract driver interface for Git-hosting providers.

This module defines the contract that every provider implementation must
follow, so callers select a driver by provider name and never branch on
provider identity themselves. Capabilities a provider lacks are not omitted:
they raise UnsupportedOperation so the surface stays uniform.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .models import (
    Asset,
    Comment,
    PullRequest,
    Runner,
    RunnerBinary,
    RunnerLogPatterns,
    RunnerOptions,
    RunnerRegistration,
)


class Driver(ABC):
    """
    Abstract base class for provider operations.

    Implementations own their resolved API base and must resolve it at most
    once per instance.
    """

    name: str = ""
    display_name: str = ""

    @abstractmethod
    async def repo_base(self) -> str:
        """
        Resolve (once) and return the instance root serving the provider API.

        Raises:
            ResolutionError: If no valid API root is found
        """
        pass

    # ------------------------------------------------------------------
    # Commit comments and checks
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_comment(self, commit_sha: str, body: str) -> str:
        """
        Attach a comment to a commit.

        Args:
            commit_sha: Commit to comment on
            body: Markdown body of the comment

        Returns:
            Web URL pointing at the comment (or its commit)
        """
        pass

    @abstractmethod
    async def update_comment(self, commit_sha: str, comment_id: Any, body: str) -> str:
        """
        Replace the body of an existing commit comment.

        Raises:
            UnsupportedOperation: If the provider cannot edit commit comments
        """
        pass

    @abstractmethod
    async def list_commit_comments(self, commit_sha: str) -> list[Comment]:
        """List the comments attached to a commit."""
        pass

    @abstractmethod
    async def list_commit_pull_requests(self, commit_sha: str) -> list[PullRequest]:
        """List the currently open pull requests that contain a commit."""
        pass

    @abstractmethod
    async def create_check(
        self,
        commit_sha: str,
        report: str,
        title: str = "Report",
        conclusion: str = "success",
        status: str = "completed",
    ) -> str:
        """
        Create a check-run on a commit.

        Raises:
            UnsupportedOperation: If the provider has no check-run concept
        """
        pass

    @abstractmethod
    async def upload_asset(
        self,
        path: Path | None = None,
        buffer: bytes | None = None,
        mime_type: str | None = None,
    ) -> Asset:
        """
        Upload a file through the provider's native upload endpoint.

        Returns:
            Asset with an absolute URI, its mime type and size in bytes

        Raises:
            UnsupportedOperation: If the provider has no upload endpoint
        """
        pass

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_pull_request(
        self,
        source: str,
        target: str,
        title: str,
        description: str = "",
        skip_ci: bool = False,
        auto_merge: str | None = None,
        merge_message: str | None = None,
    ) -> str:
        """
        Open a pull request and optionally engage auto-merge on it.

        Args:
            source: Branch with the changes
            target: Branch to merge into
            title: Title; tagged with a CI-skip marker when skip_ci is set
            description: Body of the pull request
            skip_ci: Ask the provider not to trigger a pipeline
            auto_merge: Merge mode to engage right after creation
            merge_message: Optional commit message for the merge

        Returns:
            Web URL of the new pull request
        """
        pass

    @abstractmethod
    async def create_pull_request_comment(self, pr_number: int, body: str) -> str:
        """Comment on a pull request; returns the comment URL."""
        pass

    @abstractmethod
    async def update_pull_request_comment(
        self, pr_number: int, comment_id: Any, body: str
    ) -> str:
        """Replace the body of a pull request comment; returns the comment URL."""
        pass

    @abstractmethod
    async def list_pull_request_comments(self, pr_number: int) -> list[Comment]:
        """List the comments of a pull request."""
        pass

    @abstractmethod
    async def list_pull_requests(self, state: str = "open") -> list[PullRequest]:
        """
        List pull requests in a given state.

        Args:
            state: "open" (or "opened"), "closed", "merged" or "all"
        """
        pass

    @abstractmethod
    async def auto_merge(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None = None
    ) -> None:
        """
        Merge a pull request once its pipeline succeeds.

        Raises:
            UnsupportedOperation: If merge_mode is not supported by the provider
        """
        pass

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    @abstractmethod
    async def rerun_pipeline(
        self, pipeline_id: Any | None = None, job_id: Any | None = None
    ) -> None:
        """
        Retry a pipeline, cancelling it first if it is still running.

        Args:
            pipeline_id: Pipeline to rerun (defaults to the current CI pipeline)
            job_id: Job whose parent pipeline should be rerun
        """
        pass

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_runners(self) -> list[Runner]:
        """List the runners registered for the repository."""
        pass

    @abstractmethod
    async def get_runner(self, runner_id: Any) -> Runner:
        """Get a single runner by its identifier."""
        pass

    @abstractmethod
    async def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        """Register a new runner and return its one-time registration credentials."""
        pass

    @abstractmethod
    async def unregister_runner(self, runner_id: Any) -> None:
        """
        Remove a runner from the provider.

        Raises:
            NotFoundError: If the runner is already gone
        """
        pass

    @abstractmethod
    def runner_binary(self, workdir: Path) -> RunnerBinary | None:
        """Describe the runner executable inside workdir, or None if none is needed."""
        pass

    @abstractmethod
    async def runner_download_url(self) -> str:
        """URL of the platform-appropriate runner download."""
        pass

    @abstractmethod
    async def runner_command(
        self,
        options: RunnerOptions,
        registration: RunnerRegistration,
        gpu: bool,
        in_container: bool,
    ) -> str:
        """Compose the shell command that launches a registered runner."""
        pass

    @abstractmethod
    def runner_log_patterns(self) -> RunnerLogPatterns:
        """Patterns classifying lines of the runner's log."""
        pass

    runner_permission_hint: str = ""

    def close(self) -> None:
        """Release network resources held by the driver."""

    # ------------------------------------------------------------------
    # Git
    # ------------------------------------------------------------------

    @abstractmethod
    def git_remote_command(
        self,
        user_name: str | None = None,
        user_email: str | None = None,
        remote: str = "origin",
    ) -> str:
        """
        Build the shell command that configures git identity and an authenticated remote.

        Identity defaults to the user of the current CI run. The returned
        string embeds the token and must never be logged.
        """
        pass
