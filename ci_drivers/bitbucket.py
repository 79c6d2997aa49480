"""
Bitbucket Cloud driver (REST API 2.0).

Only bitbucket.org is supported. Tokens are base64-encoded
"user:app_password" pairs sent as HTTP basic credentials. Self-hosted runners
go through the internal pipelines-config API and run as the
bitbucket-pipelines-runner container, so there is no binary to download.
"""

import base64
import binascii
import logging
import re
import shlex
from pathlib import Path
from typing import Any

from ci_common.errors import ConfigurationError
from ci_common.models import (
    Asset,
    Comment,
    Pipeline,
    PipelineStatus,
    PullRequest,
    Runner,
    RunnerLogPatterns,
    RunnerOptions,
    RunnerRegistration,
)

from .base import RestDriver, filter_by_state, normalize_state
from .resolver import BaseResolver

logger = logging.getLogger(__name__)

SAAS_HOST = "bitbucket.org"
API_ROOT = "https://api.bitbucket.org/2.0"
RUNNERS_API_ROOT = "https://api.bitbucket.org/internal"
RUNNER_IMAGE = "docker-public.packages.atlassian.com/sox/atlassian/bitbucket-pipelines-runner:1"

PULL_REQUEST_STATES = {
    "OPEN": "open",
    "MERGED": "merged",
    "DECLINED": "closed",
    "SUPERSEDED": "closed",
}

STATE_QUERY = {
    "open": ["OPEN"],
    "closed": ["DECLINED", "SUPERSEDED"],
    "merged": ["MERGED"],
    "all": ["OPEN", "MERGED", "DECLINED", "SUPERSEDED"],
}

MERGE_STRATEGIES = {"merge": "merge_commit", "squash": "squash"}

RESULTS: dict[str, PipelineStatus] = {
    "SUCCESSFUL": "success",
    "FAILED": "failed",
    "ERROR": "failed",
    "STOPPED": "canceled",
}


def pipeline_status(state: dict[str, Any]) -> PipelineStatus:
    name = state.get("name")
    if name == "IN_PROGRESS":
        return "running"
    if name == "COMPLETED":
        result = (state.get("result") or {}).get("name", "")
        return RESULTS.get(result, "failed")
    return "pending"


class BitbucketDriver(RestDriver):
    """Driver for Bitbucket Cloud pull requests, pipelines and runners."""

    name = "bitbucket"
    display_name = "Bitbucket"
    supported_merge_modes = ("merge", "squash")
    runner_permission_hint = (
        ", check the permissions of your Bitbucket app password; registering "
        "runners needs the account and repository admin scopes.\n"
        "See https://support.atlassian.com/bitbucket-cloud/docs/app-passwords/"
    )

    env_sha = "BITBUCKET_COMMIT"
    env_branch = "BITBUCKET_BRANCH"
    env_pipeline_id = "BITBUCKET_PIPELINE_UUID"
    env_job_id = "BITBUCKET_STEP_UUID"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Basic {self.token}", "Accept": "application/json"}

    def make_resolver(self) -> BaseResolver:
        return BaseResolver(self.client, probe_path=None, hosted=(SAAS_HOST,))

    async def api_root(self) -> str:
        # Resolving the base still rejects non-SaaS hosts
        await self.repo_base()
        return API_ROOT

    async def runners_request(self, endpoint: str, **kwargs: Any) -> Any:
        project = await self.project_path()
        return await self.client.request(
            url=f"{RUNNERS_API_ROOT}/repositories/{project}/pipelines-config/runners{endpoint}",
            **kwargs,
        )

    def git_credentials(self) -> tuple[str, str]:
        try:
            decoded = base64.b64decode(self.token, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError(
                "Bitbucket token must be base64-encoded user:app_password"
            ) from e
        user, separator, password = decoded.partition(":")
        if not separator:
            raise ConfigurationError(
                "Bitbucket token must be base64-encoded user:app_password"
            )
        return user, password

    def _pull_request(self, payload: dict[str, Any]) -> PullRequest:
        return PullRequest(
            id=payload["id"],
            url=payload["links"]["html"]["href"],
            source=payload["source"]["branch"]["name"],
            target=payload["destination"]["branch"]["name"],
            state=PULL_REQUEST_STATES.get(payload.get("state", ""), "closed"),
            title=payload.get("title"),
        )

    def _comment(self, payload: dict[str, Any]) -> Comment:
        return Comment(
            id=payload["id"],
            body=payload["content"]["raw"],
            url=payload.get("links", {}).get("html", {}).get("href"),
        )

    async def _paginated(self, endpoint: str, **kwargs: Any) -> list[dict[str, Any]]:
        """Collect every page of a 2.0 collection endpoint."""
        page = await self.request(endpoint, **kwargs)
        values = list(page.get("values", []))
        while page.get("next"):
            page = await self.client.request(url=page["next"])
            values += page.get("values", [])
        return values

    # ------------------------------------------------------------------
    # Commit comments and checks
    # ------------------------------------------------------------------

    async def create_comment(self, commit_sha: str, body: str) -> str:
        project = await self.project_path()
        comment = await self.request(
            f"/repositories/{project}/commit/{commit_sha}/comments",
            method="POST",
            json={"content": {"raw": body}},
        )
        return comment["links"]["html"]["href"]

    async def update_comment(self, commit_sha: str, comment_id: Any, body: str) -> str:
        project = await self.project_path()
        comment = await self.request(
            f"/repositories/{project}/commit/{commit_sha}/comments/{comment_id}",
            method="PUT",
            json={"content": {"raw": body}},
        )
        return comment["links"]["html"]["href"]

    async def list_commit_comments(self, commit_sha: str) -> list[Comment]:
        project = await self.project_path()
        comments = await self._paginated(
            f"/repositories/{project}/commit/{commit_sha}/comments"
        )
        return [self._comment(comment) for comment in comments]

    async def list_commit_pull_requests(self, commit_sha: str) -> list[PullRequest]:
        project = await self.project_path()
        pulls = await self._paginated(
            f"/repositories/{project}/commit/{commit_sha}/pullrequests"
        )
        return [self._pull_request(pr) for pr in pulls if pr.get("state") == "OPEN"]

    async def create_check(
        self,
        commit_sha: str,
        report: str,
        title: str = "Report",
        conclusion: str = "success",
        status: str = "completed",
    ) -> str:
        raise self.unsupported("check runs")

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

        project = await self.project_path()
        pull = await self.request(
            f"/repositories/{project}/pullrequests",
            method="POST",
            json={
                "title": self.pull_request_title(title, skip_ci),
                "description": description,
                "source": {"branch": {"name": source}},
                "destination": {"branch": {"name": target}},
            },
        )
        logger.info(f"Created pull request #{pull['id']}")

        if auto_merge:
            await self.auto_merge(pull["id"], auto_merge, merge_message)
        return pull["links"]["html"]["href"]

    async def create_pull_request_comment(self, pr_number: int, body: str) -> str:
        project = await self.project_path()
        comment = await self.request(
            f"/repositories/{project}/pullrequests/{pr_number}/comments",
            method="POST",
            json={"content": {"raw": body}},
        )
        return comment["links"]["html"]["href"]

    async def update_pull_request_comment(
        self, pr_number: int, comment_id: Any, body: str
    ) -> str:
        project = await self.project_path()
        comment = await self.request(
            f"/repositories/{project}/pullrequests/{pr_number}/comments/{comment_id}",
            method="PUT",
            json={"content": {"raw": body}},
        )
        return comment["links"]["html"]["href"]

    async def list_pull_request_comments(self, pr_number: int) -> list[Comment]:
        project = await self.project_path()
        comments = await self._paginated(
            f"/repositories/{project}/pullrequests/{pr_number}/comments"
        )
        return [self._comment(comment) for comment in comments]

    async def list_pull_requests(self, state: str = "open") -> list[PullRequest]:
        state = normalize_state(state)
        project = await self.project_path()
        pulls = await self._paginated(
            f"/repositories/{project}/pullrequests",
            params={"state": STATE_QUERY[state], "pagelen": 50},
        )
        return filter_by_state([self._pull_request(pr) for pr in pulls], state)

    async def _merge_now(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None
    ) -> None:
        project = await self.project_path()
        body: dict[str, Any] = {"merge_strategy": MERGE_STRATEGIES[merge_mode]}
        if merge_message:
            body["message"] = merge_message
        await self.request(
            f"/repositories/{project}/pullrequests/{pull_request_id}/merge",
            method="POST",
            json=body,
        )

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def _pipeline(self, pipeline_id: Any) -> dict[str, Any]:
        project = await self.project_path()
        return await self.request(f"/repositories/{project}/pipelines/{pipeline_id}")

    async def get_pipeline(self, pipeline_id: Any) -> Pipeline:
        pipeline = await self._pipeline(pipeline_id)
        return Pipeline(id=pipeline["uuid"], status=pipeline_status(pipeline["state"]))

    async def rerun_pipeline(
        self, pipeline_id: Any | None = None, job_id: Any | None = None
    ) -> None:
        if pipeline_id is None and job_id is not None:
            raise self.unsupported("rerunning a pipeline from a step id")
        if pipeline_id is None:
            pipeline_id = self.pipeline_id
        if pipeline_id is None:
            raise ConfigurationError("pipeline uuid not found")

        project = await self.project_path()
        pipeline = await self._pipeline(pipeline_id)
        if pipeline_status(pipeline["state"]) == "running":
            logger.info(f"Stopping running pipeline {pipeline_id} before rerunning")
            await self.request(
                f"/repositories/{project}/pipelines/{pipeline_id}/stopPipeline",
                method="POST",
                raw=True,
            )

        rerun = await self.request(
            f"/repositories/{project}/pipelines/",
            method="POST",
            json={"target": pipeline["target"]},
        )
        logger.info(f"Pipeline {pipeline_id} rerun as {rerun.get('uuid')}")

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    def _runner(self, payload: dict[str, Any]) -> Runner:
        state = payload.get("state") or {}
        return Runner(
            id=payload["uuid"],
            name=payload["name"],
            labels=list(payload.get("labels") or []),
            online=state.get("status") == "ONLINE",
            busy=bool(state.get("step")),
        )

    async def list_runners(self) -> list[Runner]:
        response = await self.runners_request("")
        return [self._runner(runner) for runner in response.get("values", [])]

    async def get_runner(self, runner_id: Any) -> Runner:
        return self._runner(await self.runners_request(f"/{runner_id}"))

    async def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        project = await self.project_path()
        repository = await self.request(f"/repositories/{project}")
        runner = await self.runners_request(
            "",
            method="POST",
            json={"name": name, "labels": ["self.hosted", "linux", *labels]},
        )
        oauth = runner["oauth_client"]
        logger.info(f"Registered Bitbucket runner {runner['uuid']} ({name})")
        return RunnerRegistration(
            id=runner["uuid"],
            token=oauth["secret"],
            extra={
                "client_id": oauth["id"],
                "account_uuid": repository["workspace"]["uuid"],
                "repository_uuid": repository["uuid"],
            },
        )

    async def unregister_runner(self, runner_id: Any) -> None:
        await self.runners_request(f"/{runner_id}", method="DELETE", raw=True)
        logger.info(f"Unregistered Bitbucket runner {runner_id}")

    def runner_binary(self, workdir: Path) -> None:
        return None

    async def runner_command(
        self,
        options: RunnerOptions,
        registration: RunnerRegistration,
        gpu: bool,
        in_container: bool,
    ) -> str:
        workdir = shlex.quote(str(options.workdir))
        environment = {
            "ACCOUNT_UUID": registration.extra["account_uuid"],
            "REPOSITORY_UUID": registration.extra["repository_uuid"],
            "RUNNER_UUID": registration.id,
            "OAUTH_CLIENT_ID": registration.extra["client_id"],
            "OAUTH_CLIENT_SECRET": registration.token,
            "WORKING_DIRECTORY": str(options.workdir),
            "RUNTIME_PREREQUISITES_ENABLED": "true",
        }

        args = [
            "docker", "container", "run", "-t", "-a", "stdout", "-a", "stderr", "--rm",
            "-v", "/var/run/docker.sock:/var/run/docker.sock",
            "-v", "/var/lib/docker/containers:/var/lib/docker/containers:ro",
            "-v", f"{workdir}:{workdir}",
            "--name", shlex.quote(options.name),
        ]
        if gpu:
            args += ["--runtime", "nvidia", "-e", "NVIDIA_VISIBLE_DEVICES=all"]
        for volume in options.docker_volumes:
            args += ["-v", shlex.quote(volume)]
        for key, value in environment.items():
            args += ["-e", shlex.quote(f"{key}={value}")]
        args.append(RUNNER_IMAGE)
        return " ".join(args)

    def runner_log_patterns(self) -> RunnerLogPatterns:
        return RunnerLogPatterns(
            ready=re.compile(r'Updating runner status to "ONLINE"'),
            job_started=re.compile(r"Getting step StepId\{"),
            job_ended=re.compile(r"Completing step with result"),
            job_ended_succeeded=re.compile(
                r"Completing step with result Result\{status=PASSED"
            ),
            job=re.compile(r"stepUuid=\{?([^,}]+)"),
        )
