"""
GitLab driver (REST API v4).

Works against gitlab.com and self-hosted instances, including instances
mounted under a sub-path, by probing /api/v4/version at every prefix of the
repository URL. Request bodies are form-encoded, uploads are multipart.
"""

import asyncio
import logging
import re
import shlex
from pathlib import Path
from typing import Any
from urllib.parse import quote

from ci_common.errors import ConfigurationError
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
from .resolver import BaseResolver, has_version
from .uploads import fetch_upload_data

logger = logging.getLogger(__name__)

API_VERSION = "v4"
RUNNER_DOWNLOAD_URL = (
    "https://gitlab-runner-downloads.s3.amazonaws.com/latest/binaries/"
    "gitlab-runner-{system}-{arch}"
)

PIPELINE_STATUSES: dict[str, PipelineStatus] = {
    "created": "pending",
    "waiting_for_resource": "pending",
    "preparing": "pending",
    "pending": "pending",
    "scheduled": "pending",
    "manual": "pending",
    "running": "running",
    "success": "success",
    "failed": "failed",
    "canceled": "canceled",
    "skipped": "canceled",
}

MERGE_REQUEST_STATES = {
    "opened": "open",
    "closed": "closed",
    "locked": "closed",
    "merged": "merged",
}

STATE_QUERY = {"open": "opened", "closed": "closed", "merged": "merged", "all": "all"}


def pipeline_status(status: str) -> PipelineStatus:
    return PIPELINE_STATUSES.get(status, "pending")


class GitLabDriver(RestDriver):
    """Driver for GitLab merge requests, pipelines and gitlab-runner."""

    name = "gitlab"
    display_name = "GitLab"
    api_path = f"/api/{API_VERSION}"
    supported_merge_modes = ("merge", "squash")
    runner_permission_hint = (
        ", check the permissions (scopes) of your GitLab token.\n"
        "See https://docs.gitlab.com/ee/user/profile/personal_access_tokens.html"
        "#personal-access-token-scopes"
    )

    env_sha = "CI_COMMIT_SHA"
    env_branch = "CI_COMMIT_REF_NAME"
    env_pipeline_id = "CI_PIPELINE_ID"
    env_job_id = "CI_JOB_ID"
    env_user_name = "GITLAB_USER_NAME"
    env_user_email = "GITLAB_USER_EMAIL"

    def auth_headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self.token, "Accept": "application/json"}

    def make_resolver(self) -> BaseResolver:
        return BaseResolver(
            self.client,
            probe_path=f"/api/{API_VERSION}/version",
            is_valid=has_version,
            hosted=(),
        )

    async def project_path(self) -> str:
        """URL-encoded namespace/project path, as GitLab expects in /projects/:id."""
        return quote(await super().project_path(), safe="")

    def _pull_request(self, payload: dict[str, Any]) -> PullRequest:
        return PullRequest(
            id=payload["iid"],
            url=payload["web_url"],
            source=payload["source_branch"],
            target=payload["target_branch"],
            state=MERGE_REQUEST_STATES.get(payload.get("state", ""), "closed"),
            title=payload.get("title"),
        )

    # ------------------------------------------------------------------
    # Commit comments and checks
    # ------------------------------------------------------------------

    async def create_comment(self, commit_sha: str, body: str) -> str:
        project = await self.project_path()
        await self.request(
            f"/projects/{project}/repository/commits/{commit_sha}/comments",
            method="POST",
            data={"note": body},
        )
        return f"{self.repo}/-/commit/{commit_sha}"

    async def update_comment(self, commit_sha: str, comment_id: Any, body: str) -> str:
        raise self.unsupported("commit comment updates")

    async def list_commit_comments(self, commit_sha: str) -> list[Comment]:
        project = await self.project_path()
        comments = await self.request(
            f"/projects/{project}/repository/commits/{commit_sha}/comments",
            params={"per_page": 100},
        )
        return [Comment(id=comment.get("id"), body=comment["note"]) for comment in comments]

    async def list_commit_pull_requests(self, commit_sha: str) -> list[PullRequest]:
        project = await self.project_path()
        merge_requests = await self.request(
            f"/projects/{project}/repository/commits/{commit_sha}/merge_requests"
        )
        return [
            self._pull_request(mr) for mr in merge_requests if mr.get("state") == "opened"
        ]

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
        upload = fetch_upload_data(path=path, buffer=buffer, mime_type=mime_type)
        project = await self.project_path()
        response = await self.request(
            f"/projects/{project}/uploads",
            method="POST",
            files={"file": (upload.filename, upload.data, upload.mime)},
        )
        return Asset(uri=f"{self.repo}{response['url']}", mime=upload.mime, size=upload.size)

    # ------------------------------------------------------------------
    # Merge requests
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
        merge_request = await self.request(
            f"/projects/{project}/merge_requests",
            method="POST",
            data={
                "source_branch": source,
                "target_branch": target,
                "title": self.pull_request_title(title, skip_ci),
                "description": description,
            },
        )
        logger.info(f"Created merge request !{merge_request['iid']}")

        if auto_merge:
            await self.auto_merge(merge_request["iid"], auto_merge, merge_message)
        return merge_request["web_url"]

    async def create_pull_request_comment(self, pr_number: int, body: str) -> str:
        project = await self.project_path()
        note = await self.request(
            f"/projects/{project}/merge_requests/{pr_number}/notes",
            method="POST",
            data={"body": body},
        )
        return f"{self.repo}/-/merge_requests/{pr_number}#note_{note['id']}"

    async def update_pull_request_comment(
        self, pr_number: int, comment_id: Any, body: str
    ) -> str:
        project = await self.project_path()
        note = await self.request(
            f"/projects/{project}/merge_requests/{pr_number}/notes/{comment_id}",
            method="PUT",
            data={"body": body},
        )
        return f"{self.repo}/-/merge_requests/{pr_number}#note_{note['id']}"

    async def list_pull_request_comments(self, pr_number: int) -> list[Comment]:
        project = await self.project_path()
        notes = await self.request(
            f"/projects/{project}/merge_requests/{pr_number}/notes",
            params={"per_page": 100},
        )
        return [Comment(id=note["id"], body=note["body"]) for note in notes]

    async def list_pull_requests(self, state: str = "open") -> list[PullRequest]:
        state = normalize_state(state)
        project = await self.project_path()
        merge_requests = await self.request(
            f"/projects/{project}/merge_requests",
            params={"state": STATE_QUERY[state], "per_page": 100},
        )
        return filter_by_state([self._pull_request(mr) for mr in merge_requests], state)

    def _merge_body(
        self, merge_mode: str, merge_message: str | None, when_pipeline_succeeds: bool
    ) -> dict[str, str]:
        body = {
            "merge_when_pipeline_succeeds": "true" if when_pipeline_succeeds else "false",
            "squash": "true" if merge_mode == "squash" else "false",
        }
        if merge_message:
            body[f"{merge_mode}_commit_message"] = merge_message
        return body

    async def _enable_auto_merge(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None
    ) -> None:
        project = await self.project_path()
        await self.request(
            f"/projects/{project}/merge_requests/{pull_request_id}/merge",
            method="PUT",
            data=self._merge_body(merge_mode, merge_message, True),
        )

    async def _merge_now(
        self, pull_request_id: int, merge_mode: str, merge_message: str | None
    ) -> None:
        project = await self.project_path()
        await self.request(
            f"/projects/{project}/merge_requests/{pull_request_id}/merge",
            method="PUT",
            data=self._merge_body(merge_mode, merge_message, False),
        )

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def get_job(self, job_id: Any) -> Job:
        project = await self.project_path()
        job = await self.request(f"/projects/{project}/jobs/{job_id}")
        return Job(
            id=job["id"],
            status=pipeline_status(job["status"]),
            pipeline_id=job["pipeline"]["id"],
        )

    async def get_pipeline(self, pipeline_id: Any) -> Pipeline:
        project = await self.project_path()
        pipeline = await self.request(f"/projects/{project}/pipelines/{pipeline_id}")
        return Pipeline(id=pipeline["id"], status=pipeline_status(pipeline["status"]))

    async def rerun_pipeline(
        self, pipeline_id: Any | None = None, job_id: Any | None = None
    ) -> None:
        if pipeline_id is None and job_id is not None:
            pipeline_id = (await self.get_job(job_id)).pipeline_id
        if pipeline_id is None:
            pipeline_id = self.pipeline_id
        if pipeline_id is None:
            raise ConfigurationError("pipeline id not found")

        project = await self.project_path()
        pipeline = await self.get_pipeline(pipeline_id)
        if pipeline.status == "running":
            logger.info(f"Cancelling running pipeline {pipeline_id} before retrying")
            await self.request(
                f"/projects/{project}/pipelines/{pipeline_id}/cancel", method="POST"
            )

        await self.request(f"/projects/{project}/pipelines/{pipeline_id}/retry", method="POST")
        logger.info(f"Pipeline {pipeline_id} retried")

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    async def _runner(self, runner_id: Any, online: bool | None = None) -> Runner:
        details, jobs = await asyncio.gather(
            self.request(f"/runners/{runner_id}"),
            self.request(f"/runners/{runner_id}/jobs", params={"status": "running"}),
        )
        return Runner(
            id=runner_id,
            name=details.get("description") or "",
            labels=list(details.get("tag_list") or []),
            online=details.get("online", False) if online is None else online,
            busy=any(job.get("status") == "running" for job in jobs),
        )

    async def list_runners(self) -> list[Runner]:
        project = await self.project_path()
        runners = await self.request(
            f"/projects/{project}/runners", params={"per_page": 100}
        )
        return list(
            await asyncio.gather(
                *(self._runner(runner["id"], runner.get("online")) for runner in runners)
            )
        )

    async def get_runner(self, runner_id: Any) -> Runner:
        return await self._runner(runner_id)

    async def runners_token(self) -> str:
        project = await self.project_path()
        details = await self.request(f"/projects/{project}")
        token = details.get("runners_token")
        if not token:
            raise ConfigurationError(
                "project runners token not available; maintainer access is required"
            )
        return token

    async def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        runners_token = await self.runners_token()
        runner = await self.request(
            "/runners",
            method="POST",
            data={
                "description": name,
                "tag_list": ",".join(labels),
                "token": runners_token,
                "locked": "true",
                "run_untagged": "true",
                "access_level": "not_protected",
            },
        )
        logger.info(f"Registered GitLab runner {runner['id']} ({name})")
        return RunnerRegistration(id=runner["id"], token=runner["token"])

    async def unregister_runner(self, runner_id: Any) -> None:
        await self.request(f"/runners/{runner_id}", method="DELETE", raw=True)
        logger.info(f"Unregistered GitLab runner {runner_id}")

    def runner_binary(self, workdir: Path) -> RunnerBinary:
        return RunnerBinary(path=Path(workdir) / "gitlab-runner")

    async def runner_download_url(self) -> str:
        system, arch = host_platform()
        return RUNNER_DOWNLOAD_URL.format(system=system, arch=arch)

    async def runner_command(
        self,
        options: RunnerOptions,
        registration: RunnerRegistration,
        gpu: bool,
        in_container: bool,
    ) -> str:
        workdir = str(options.workdir)
        binary = str(self.runner_binary(options.workdir).path)
        image = options.gpu_image if gpu else options.image

        args = [
            shlex.quote(binary),
            "--log-format=json",
            "run-single",
            "--builds-dir", shlex.quote(workdir),
            "--cache-dir", shlex.quote(workdir),
            "--url", shlex.quote(await self.repo_base()),
            "--name", shlex.quote(options.name),
            "--token", shlex.quote(registration.token),
            "--wait-timeout", str(options.idle_timeout),
            "--executor", "shell" if in_container else "docker",
            "--docker-image", shlex.quote(image),
        ]
        if gpu:
            args += ["--docker-runtime", "nvidia"]
        for volume in options.docker_volumes:
            args += ["--docker-volumes", shlex.quote(volume)]
        if options.single:
            args += ["--max-builds", "1"]
        return " ".join(args)

    def runner_log_patterns(self) -> RunnerLogPatterns:
        return RunnerLogPatterns(
            ready=re.compile(r"Starting runner for"),
            job_started=re.compile(r'"job":.+received'),
            job_ended=re.compile(r'"duration_s":'),
            job_ended_succeeded=re.compile(r'"duration_s":.+Job succeeded'),
            job=re.compile(r'"job":([0-9]+),"'),
        )
