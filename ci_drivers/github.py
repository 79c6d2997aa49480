"""
GitHub driver (REST API v3 and GraphQL).

github.com is served from api.github.com; GitHub Enterprise Server instances
are discovered by probing /api/v3/meta. Auto-merge goes through GraphQL
because the REST API has no endpoint for it.
"""

import logging
import re
import shlex
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from ci_common.errors import ApiError, ConfigurationError
from ci_common.models import (
    Asset,
    Comment,
    Job,
    Pipeline,
    PipelineStatus,
    PullRequest,
    Runner,
    RunnerBinary,
    RunnerLogPatterns,
    RunnerOptions,
    RunnerRegistration,
)

from .base import RestDriver, filter_by_state, host_platform, normalize_state
from .request_client import RequestClient
from .resolver import BaseResolver

logger = logging.getLogger(__name__)

SAAS_HOST = "github.com"
SAAS_API = "https://api.github.com"
RUNNER_RELEASE_URL = f"{SAAS_API}/repos/actions/runner/releases/latest"
RUNNER_DOWNLOAD_URL = (
    "https://github.com/actions/runner/releases/download/"
    "{tag}/actions-runner-{system}-{arch}-{version}.tar.gz"
)

ENABLE_AUTO_MERGE = """
mutation enableAutoMerge(
  $pullRequestId: ID!
  $mergeMethod: PullRequestMergeMethod
  $commitBody: String
) {
  enablePullRequestAutoMerge(
    input: {
      pullRequestId: $pullRequestId
      mergeMethod: $mergeMethod
      commitBody: $commitBody
    }
  ) {
    clientMutationId
  }
}
"""

CONCLUSIONS: dict[str, PipelineStatus] = {
    "success": "success",
    "neutral": "success",
    "cancelled": "canceled",
    "skipped": "canceled",
}


def run_status(status: str, conclusion: str | None) -> PipelineStatus:
    """Collapse a workflow run's status and conclusion into a pipeline status."""
    if status == "in_progress":
        return "running"
    if status != "completed":
        return "pending"
    return CONCLUSIONS.get(conclusion or "", "failed")


def is_enterprise_meta(payload: Any) -> bool:
    """GitHub Enterprise Server answers /meta with its installed version."""
    return isinstance(payload, dict) and bool(payload.get("installed_version"))


class GitHubDriver(RestDriver):
    """Driver for GitHub pull requests, Actions workflow runs and actions/runner."""

    name = "github"
    display_name = "GitHub"
    api_path = "/api/v3"
    runner_permission_hint = (
        ", check the permissions of your GitHub token; registering runners needs "
        "the repo scope (administration: write for fine-grained tokens).\n"
        "See https://docs.github.com/en/rest/actions/self-hosted-runners"
    )

    env_sha = "GITHUB_SHA"
    env_branch = "GITHUB_REF_NAME"
    env_pipeline_id = "GITHUB_RUN_ID"
    env_user_name = "GITHUB_ACTOR"

    def auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def make_resolver(self) -> BaseResolver:
        return BaseResolver(
            self.client,
            probe_path="/api/v3/meta",
            is_valid=is_enterprise_meta,
            hosted=(SAAS_HOST,),
        )

    def _is_saas(self, base: str) -> bool:
        return (urlsplit(base).hostname or "").lower() == SAAS_HOST

    async def api_root(self) -> str:
        base = await self.repo_base()
        return SAAS_API if self._is_saas(base) else f"{base}{self.api_path}"

    async def graphql_url(self) -> str:
        base = await self.repo_base()
        return f"{SAAS_API}/graphql" if self._is_saas(base) else f"{base}/api/graphql"

    async def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """
        Run a GraphQL query.

        Raises:
            ApiError: If the response carries GraphQL errors
        """
        payload = await self.client.request(
            url=await self.graphql_url(),
            method="POST",
            json={"query": query, "variables": variables},
        )
        errors = (payload or {}).get("errors")
        if errors:
            raise ApiError(None, "; ".join(error.get("message", "") for error in errors))
        return (payload or {}).get("data") or {}

    @property
    def user_email(self) -> str | None:
        actor = self.user_name
        return f"{actor}@users.noreply.github.com" if actor else None

    def git_credentials(self) -> tuple[str, str]:
        return "x-access-token", self.token

    def _pull_request(self, payload: dict[str, Any]) -> PullRequest:
        if payload.get("merged_at"):
            state = "merged"
        elif payload.get("state") == "open":
            state = "open"
        else:
            state = "closed"
        return PullRequest(
            id=payload["number"],
            url=payload["html_url"],
            source=payload["head"]["ref"],
            target=payload["base"]["ref"],
            state=state,
            title=payload.get("title"),
        )

    # ------------------------------------------------------------------
    # Commit comments and checks
    # ------------------------------------------------------------------

    async def create_comment(self, commit_sha: str, body: str) -> str:
        repo = await self.project_path()
        comment = await self.request(
            f"/repos/{repo}/commits/{commit_sha}/comments",
            method="POST",
            json={"body": body},
        )
        return comment["html_url"]

    async def update_comment(self, commit_sha: str, comment_id: Any, body: str) -> str:
        repo = await self.project_path()
        comment = await self.request(
            f"/repos/{repo}/comments/{comment_id}",
            method="PATCH",
            json={"body": body},
        )
        return comment["html_url"]

    async def list_commit_comments(self, commit_sha: str) -> list[Comment]:
        repo = await self.project_path()
        comments = await self.request(
            f"/repos/{repo}/commits/{commit_sha}/comments", params={"per_page": 100}
        )
        return [
            Comment(id=comment["id"], body=comment["body"], url=comment.get("html_url"))
            for comment in comments
        ]

    async def list_commit_pull_requests(self, commit_sha: str) -> list[PullRequest]:
        repo = await self.project_path()
        pulls = await self.request(f"/repos/{repo}/commits/{commit_sha}/pulls")
        return [self._pull_request(pr) for pr in pulls if pr.get("state") == "open"]

    async def create_check(
        self,
        commit_sha: str,
        report: str,
        title: str = "Report",
        conclusion: str = "success",
        status: str = "completed",
    ) -> str:
        repo = await self.project_path()
        body: dict[str, Any] = {
            "name": title,
            "head_sha": commit_sha,
            "status": status,
            "output": {"title": title, "summary": report},
        }
        if status == "completed":
            body["conclusion"] = conclusion
        check = await self.request(f"/repos/{repo}/check-runs", method="POST", json=body)
        return check["html_url"]

    async def upload_asset(
        self,
        path: Path | None = None,
        buffer: bytes | None = None,
        mime_type: str | None = None,
    ) -> Asset:
        raise self.unsupported("native asset uploads")

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

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
        if auto_merge:
            self.check_merge_mode(auto_merge)

        repo = await self.project_path()
        pull = await self.request(
            f"/repos/{repo}/pulls",
            method="POST",
            json={
                "head": source,
                "base": target,
                "title": self.pull_request_title(title, skip_ci),
                "body": description,
            },
        )
        logger.info(f"Created pull request #{pull['number']}")

        if auto_merge:
            await self.auto_merge(pull["number"], auto_merge, merge_message)
        return pull["html_url"]

    async def create_pull_request_comment(self, pr_number: int, body: str) -> str:
        repo = await self.project_path()
        comment = await self.request(
            f"/repos/{repo}/issues/{pr_number}/comments",
            method="POST",
            json={"body": body},
        )
        return comment["html_url"]

    async def update_pull_request_comment(
        self, pr_number: int, comment_id: Any, body: str
    ) -> str:
        repo = await self.project_path()
        comment = await self.request(
            f"/repos/{repo}/issues/comments/{comment_id}",
            method="PATCH",
            json={"body": body},
        )
        return comment["html_url"]

    async def list_pull_request_comments(self, pr_number: int) -> list[Comment]:
        repo = await self.project_path()
        comments = await self.request(
            f"/repos/{repo}/issues/{pr_number}/comments", params={"per_page": 100}
        )
        return [
            Comment(id=comment["id"], body=comment["body"], url=comment.get("html_url"))
            for comment in comments
        ]

    async def list_pull_requests(self, state: str = "open") -> list[PullRequest]:
        state = normalize_state(state)
        repo = await self.project_path()
        # Merged pull requests are listed by GitHub as closed
        query = "closed" if state == "merged" else state
        pulls = await self.request(
            f"/repos/{repo}/pulls", params={"state": query, "per_page": 100}
        )
        return filter_by_state([self._pull_request(pr) for pr in pulls], state)

    async def _enable_auto_merge(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None
    ) -> None:
        repo = await self.project_path()
        pull = await self.request(f"/repos/{repo}/pulls/{pull_request_id}")
        await self.graphql(
            ENABLE_AUTO_MERGE,
            {
                "pullRequestId": pull["node_id"],
                "mergeMethod": merge_mode.upper(),
                "commitBody": merge_message,
            },
        )

    async def _merge_now(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None
    ) -> None:
        repo = await self.project_path()
        body = {"merge_method": merge_mode}
        if merge_message:
            body["commit_message"] = merge_message
        await self.request(
            f"/repos/{repo}/pulls/{pull_request_id}/merge", method="PUT", json=body
        )

    # ------------------------------------------------------------------
    # Workflow runs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: Any) -> Job:
        repo = await self.project_path()
        job = await self.request(f"/repos/{repo}/actions/jobs/{job_id}")
        return Job(
            id=job["id"],
            status=run_status(job["status"], job.get("conclusion")),
            pipeline_id=job["run_id"],
        )

    async def get_pipeline(self, pipeline_id: Any) -> Pipeline:
        repo = await self.project_path()
        run = await self.request(f"/repos/{repo}/actions/runs/{pipeline_id}")
        return Pipeline(id=run["id"], status=run_status(run["status"], run.get("conclusion")))

    async def rerun_pipeline(
        self, pipeline_id: Any | None = None, job_id: Any | None = None
    ) -> None:
        if pipeline_id is None and job_id is not None:
            pipeline_id = (await self.get_job(job_id)).pipeline_id
        if pipeline_id is None:
            pipeline_id = self.pipeline_id
        if pipeline_id is None:
            raise ConfigurationError("workflow run id not found")

        repo = await self.project_path()
        run = await self.get_pipeline(pipeline_id)
        if run.status == "running":
            logger.info(f"Cancelling running workflow run {pipeline_id} before rerunning")
            await self.request(
                f"/repos/{repo}/actions/runs/{pipeline_id}/cancel", method="POST"
            )

        await self.request(f"/repos/{repo}/actions/runs/{pipeline_id}/rerun", method="POST")
        logger.info(f"Workflow run {pipeline_id} rerun")

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    def _runner(self, payload: dict[str, Any]) -> Runner:
        return Runner(
            id=payload["id"],
            name=payload["name"],
            labels=[label["name"] for label in payload.get("labels", [])],
            online=payload.get("status") == "online",
            busy=bool(payload.get("busy")),
        )

    async def list_runners(self) -> list[Runner]:
        repo = await self.project_path()
        response = await self.request(
            f"/repos/{repo}/actions/runners", params={"per_page": 100}
        )
        return [self._runner(runner) for runner in response.get("runners", [])]

    async def get_runner(self, runner_id: Any) -> Runner:
        repo = await self.project_path()
        return self._runner(await self.request(f"/repos/{repo}/actions/runners/{runner_id}"))

    async def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        repo = await self.project_path()
        response = await self.request(
            f"/repos/{repo}/actions/runners/registration-token", method="POST"
        )
        return RunnerRegistration(id=None, token=response["token"])

    async def unregister_runner(self, runner_id: Any) -> None:
        repo = await self.project_path()
        await self.request(
            f"/repos/{repo}/actions/runners/{runner_id}", method="DELETE", raw=True
        )
        logger.info(f"Unregistered GitHub runner {runner_id}")

    def runner_binary(self, workdir: Path) -> RunnerBinary:
        return RunnerBinary(
            path=Path(workdir) / "config.sh",
            archive=True,
            stale_files=(".runner", ".credentials", ".credentials_rsaparams"),
        )

    async def runner_download_url(self) -> str:
        # Release metadata is public; the repository token is not sent along
        releases = RequestClient(
            headers={"Accept": "application/vnd.github+json"},
            session=self.client.session,
        )
        release = await releases.request(url=RUNNER_RELEASE_URL)
        tag = release["tag_name"]
        system, arch = host_platform()
        return RUNNER_DOWNLOAD_URL.format(
            tag=tag,
            system="osx" if system == "darwin" else "linux",
            arch="x64" if arch == "amd64" else arch,
            version=tag.lstrip("v"),
        )

    async def runner_command(
        self,
        options: RunnerOptions,
        registration: RunnerRegistration,
        gpu: bool,
        in_container: bool,
    ) -> str:
        workdir = Path(options.workdir)
        args = [
            shlex.quote(str(workdir / "config.sh")),
            "--unattended",
            "--token", shlex.quote(registration.token),
            "--url", shlex.quote(self.repo),
            "--name", shlex.quote(options.name),
            "--work", shlex.quote(str(workdir / "_work")),
        ]
        if options.labels:
            args += ["--labels", shlex.quote(",".join(options.labels))]
        if options.single:
            args.append("--ephemeral")
        return f"{' '.join(args)} && {shlex.quote(str(workdir / 'run.sh'))}"

    def runner_log_patterns(self) -> RunnerLogPatterns:
        return RunnerLogPatterns(
            ready=re.compile(r"Listening for Jobs"),
            job_started=re.compile(r"Running job"),
            job_ended=re.compile(r"Job (.+) completed with result"),
            job_ended_succeeded=re.compile(r"Job (.+) completed with result: Succeeded"),
            job=re.compile(r"Running job: (.+)"),
        )
