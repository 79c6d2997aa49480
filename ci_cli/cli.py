"""
Command-line interface for CI provider operations.

Provides commands for comments, pull requests, checks, assets, workflow
reruns, runners and repository preparation against GitHub, GitLab or
Bitbucket.
"""

import asyncio
import json
import logging
import subprocess
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from ci_common.driver import Driver
from ci_common.errors import AuthenticationError, CIError, ConfigurationError
from ci_common.models import MERGE_MODES

from .config import build_driver, migrate_legacy_environment

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

DEFAULT_USER_NAME = "cibridge[bot]"
DEFAULT_USER_EMAIL = "cibridge@users.noreply.github.com"

TOKEN_HINT = (
    "Hint: pass --token or set CIBRIDGE_TOKEN (or REPO_TOKEN) to a token "
    "with access to the repository."
)


def watermark(title: str) -> str:
    """Hidden marker identifying comments a later run should update."""
    return f"<!-- cibridge: {title} -->"


def expand_title(title: str, driver: Driver) -> str:
    """Replace {workflow} and {run} with the current pipeline and job ids."""
    return title.replace("{workflow}", str(driver.pipeline_id or "")).replace(
        "{run}", str(driver.job_id or "")
    )


def resolve_commit(driver: Driver, commit_sha: str | None) -> str:
    """Commit from the option, the CI environment, or the local HEAD."""
    sha = commit_sha or getattr(driver, "sha", None) or "HEAD"
    if sha != "HEAD":
        return sha
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"], capture_output=True, text=True, check=True
        )
    except (OSError, subprocess.CalledProcessError) as e:
        raise ConfigurationError(f"could not resolve HEAD: {e}") from e
    return result.stdout.strip()


def run_shell(command: str, description: str) -> None:
    """Run a shell command without echoing it; the command may carry secrets."""
    result = subprocess.run(command, shell=True, capture_output=True, text=True)
    if result.returncode != 0:
        raise CIError(f"{description} failed: {result.stderr.strip()}")


def run_driver(ctx: click.Context, action: Callable[[Driver], Awaitable[Any]]) -> Any:
    """
    Build the driver from the global options and run an async action with it.

    Errors are reported on stderr and terminate the command with exit code 1.
    """
    options = ctx.obj
    try:
        driver = build_driver(options["driver"], options["repo"], options["token"])
    except CIError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    try:
        return asyncio.run(action(driver))
    except AuthenticationError as e:
        click.echo(f"Error: {e}", err=True)
        click.echo(TOKEN_HINT, err=True)
        sys.exit(1)
    except CIError as e:
        logger.debug("Command failed", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        driver.close()


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option(
    "--log",
    type=click.Choice(list(LOG_LEVELS)),
    default="info",
    show_default=True,
    help="Logging verbosity",
)
@click.option(
    "--driver",
    type=click.Choice(["github", "gitlab", "bitbucket"]),
    default=None,
    help="Git provider where the repository is hosted [default: infer from the environment]",
)
@click.option("--repo", default=None, help="Repository URL [default: infer from the environment]")
@click.option("--token", default=None, help="Personal access token [default: infer from the environment]")
@click.pass_context
def cli(ctx: click.Context, log: str, driver: str | None, repo: str | None, token: str | None):
    """CI Bridge - Drive GitHub, GitLab and Bitbucket from CI jobs."""
    logging.basicConfig(
        level=LOG_LEVELS[log],
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    migrate_legacy_environment()
    ctx.obj = {"driver": driver, "repo": repo, "token": token}


@cli.group()
def comment():
    """Manage commit and pull request comments."""
    pass


@cli.group()
def pr():
    """Manage pull requests."""
    pass


@cli.group()
def check():
    """Manage check runs."""
    pass


@cli.group()
def asset():
    """Manage uploaded assets."""
    pass


@cli.group()
def workflow():
    """Manage pipelines and workflow runs."""
    pass


@cli.group()
def runner():
    """Manage self-hosted runners."""
    pass


@cli.group()
def repo():
    """Prepare the local git repository."""
    pass


# ============================================================================
# Comment Commands
# ============================================================================


@comment.command("create")
@click.argument("markdown_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--commit-sha", "--head-sha", default=None, help="Commit linked to this comment")
@click.option("--pr", "to_pr", is_flag=True, help="Post to the open pull request containing the commit")
@click.option(
    "--watermark-title",
    default="",
    help="Hidden marker; an existing comment with it is updated. {workflow} and {run} are replaced",
)
@click.pass_context
def comment_create(
    ctx: click.Context,
    markdown_file: Path,
    commit_sha: str | None,
    to_pr: bool,
    watermark_title: str,
):
    """Create (or update) a comment from a Markdown file."""
    text = markdown_file.read_text()

    async def create(driver: Driver) -> str:
        sha = resolve_commit(driver, commit_sha)
        marker = watermark(expand_title(watermark_title, driver)) if watermark_title else ""
        body = f"{text}\n\n{marker}" if marker else text

        if to_pr:
            pulls = await driver.list_commit_pull_requests(sha)
            if not pulls:
                raise CIError(f"No open pull request contains commit {sha}")
            number = pulls[0].id
            if marker:
                for existing in await driver.list_pull_request_comments(number):
                    if marker in existing.body:
                        return await driver.update_pull_request_comment(number, existing.id, body)
            return await driver.create_pull_request_comment(number, body)

        if marker:
            for existing in await driver.list_commit_comments(sha):
                if marker in existing.body:
                    return await driver.update_comment(sha, existing.id, body)
        return await driver.create_comment(sha, body)

    click.echo(run_driver(ctx, create))


@comment.command("list")
@click.option("--commit-sha", default=None, help="Commit whose comments to list")
@click.option("--pr", "pr_number", type=int, default=None, help="Pull request whose comments to list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def comment_list(ctx: click.Context, commit_sha: str | None, pr_number: int | None, json_output: bool):
    """List comments of a commit or pull request."""

    async def list_comments(driver: Driver):
        if pr_number is not None:
            return await driver.list_pull_request_comments(pr_number)
        return await driver.list_commit_comments(resolve_commit(driver, commit_sha))

    comments = run_driver(ctx, list_comments)
    if json_output:
        echo_json([c.to_dict() for c in comments])
        return

    if not comments:
        click.echo("No comments found.")
        return
    for c in comments:
        click.echo(f"[{c.id}] {c.body.splitlines()[0] if c.body else ''}")


# ============================================================================
# Pull Request Commands
# ============================================================================


@pr.command("create")
@click.option("--source", required=True, help="Branch with the changes")
@click.option("--target", required=True, help="Branch to merge into")
@click.option("--title", required=True, help="Pull request title")
@click.option("--body", default="", help="Pull request description")
@click.option("--skip-ci", is_flag=True, help="Do not trigger a pipeline for this pull request")
@click.option("--auto-merge", type=click.Choice(MERGE_MODES), default=None, help="Merge once the pipeline succeeds")
@click.option("--merge-message", default=None, help="Commit message for the merge")
@click.pass_context
def pr_create(
    ctx: click.Context,
    source: str,
    target: str,
    title: str,
    body: str,
    skip_ci: bool,
    auto_merge: str | None,
    merge_message: str | None,
):
    """Open a pull request."""

    async def create(driver: Driver) -> str:
        return await driver.create_pull_request(
            source,
            target,
            title,
            description=body,
            skip_ci=skip_ci,
            auto_merge=auto_merge,
            merge_message=merge_message,
        )

    click.echo(run_driver(ctx, create))


@pr.command("list")
@click.option(
    "--state",
    type=click.Choice(["open", "opened", "closed", "merged", "all"]),
    default="open",
    show_default=True,
    help="Pull request state",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def pr_list(ctx: click.Context, state: str, json_output: bool):
    """List pull requests."""
    pulls = run_driver(ctx, lambda driver: driver.list_pull_requests(state))

    if json_output:
        echo_json([p.to_dict() for p in pulls])
        return

    if not pulls:
        click.echo("No pull requests found.")
        return

    click.echo(f"\n{'ID':<8} {'State':<8} {'Source':<30} {'Target':<20} {'Title'}")
    click.echo("-" * 100)
    for p in pulls:
        click.echo(f"{p.id:<8} {p.state:<8} {p.source:<30} {p.target:<20} {p.title or ''}")
    click.echo()


@pr.command("merge")
@click.argument("pr_number", type=int)
@click.option("--mode", type=click.Choice(MERGE_MODES), default="merge", show_default=True)
@click.option("--message", default=None, help="Commit message for the merge")
@click.pass_context
def pr_merge(ctx: click.Context, pr_number: int, mode: str, message: str | None):
    """Merge a pull request once its pipeline succeeds."""
    run_driver(ctx, lambda driver: driver.auto_merge(pr_number, mode, message))
    click.echo(f"✓ Auto-merge ({mode}) requested for pull request {pr_number}")


# ============================================================================
# Check Commands
# ============================================================================


@check.command("create")
@click.argument("report_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--commit-sha", "--head-sha", default=None, help="Commit to attach the check to")
@click.option("--title", default="Report", show_default=True, help="Check title")
@click.option(
    "--conclusion",
    type=click.Choice(
        ["success", "failure", "neutral", "cancelled", "skipped", "timed_out", "action_required"]
    ),
    default="success",
    show_default=True,
)
@click.option(
    "--status",
    type=click.Choice(["queued", "in_progress", "completed"]),
    default="completed",
    show_default=True,
)
@click.pass_context
def check_create(
    ctx: click.Context,
    report_file: Path,
    commit_sha: str | None,
    title: str,
    conclusion: str,
    status: str,
):
    """Create a check run from a Markdown report."""
    report = report_file.read_text()

    async def create(driver: Driver) -> str:
        sha = resolve_commit(driver, commit_sha)
        return await driver.create_check(
            sha, report, title=title, conclusion=conclusion, status=status
        )

    click.echo(run_driver(ctx, create))


# ============================================================================
# Asset Commands
# ============================================================================


@asset.command("publish")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--mime-type", default=None, help="Mime type [default: detected]")
@click.option("--md", "markdown", is_flag=True, help="Output a Markdown link or image")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def asset_publish(
    ctx: click.Context, path: Path, mime_type: str | None, markdown: bool, json_output: bool
):
    """Upload a file with the provider's native upload endpoint."""
    uploaded = run_driver(ctx, lambda driver: driver.upload_asset(path=path, mime_type=mime_type))

    if json_output:
        echo_json(uploaded.to_dict())
    elif markdown:
        prefix = "!" if uploaded.mime.startswith("image/") else ""
        click.echo(f"{prefix}[{path.name}]({uploaded.uri})")
    else:
        click.echo(uploaded.uri)


# ============================================================================
# Workflow Commands
# ============================================================================


@workflow.command("rerun")
@click.option("--pipeline-id", "--id", default=None, help="Pipeline or workflow run to rerun")
@click.option("--job-id", default=None, help="Job whose pipeline should be rerun")
@click.pass_context
def workflow_rerun(ctx: click.Context, pipeline_id: str | None, job_id: str | None):
    """Rerun a pipeline, cancelling it first if it is still running."""
    run_driver(ctx, lambda driver: driver.rerun_pipeline(pipeline_id=pipeline_id, job_id=job_id))
    click.echo("✓ Rerun requested")


# ============================================================================
# Runner Commands
# ============================================================================


@runner.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def runner_list(ctx: click.Context, json_output: bool):
    """List self-hosted runners."""
    runners = run_driver(ctx, lambda driver: driver.list_runners())

    if json_output:
        echo_json([r.to_dict() for r in runners])
        return

    if not runners:
        click.echo("No runners found.")
        return

    click.echo(f"\n{'ID':<40} {'Name':<30} {'Status':<10} {'Labels'}")
    click.echo("-" * 100)
    for r in runners:
        status = "busy" if r.busy else ("online" if r.online else "offline")
        click.echo(f"{str(r.id):<40} {r.name:<30} {status:<10} {', '.join(r.labels)}")
    click.echo()


@runner.command("unregister")
@click.argument("runner_id")
@click.pass_context
def runner_unregister(ctx: click.Context, runner_id: str):
    """Unregister a self-hosted runner."""
    run_driver(ctx, lambda driver: driver.unregister_runner(runner_id))
    click.echo(f"✓ Runner unregistered: {runner_id}")


# ============================================================================
# Repository Commands
# ============================================================================


@repo.command("prepare")
@click.option(
    "--fetch-depth",
    type=int,
    default=1,
    show_default=True,
    help="Number of commits to fetch; 0 fetches all history for all branches and tags",
)
@click.option("--user-email", default=DEFAULT_USER_EMAIL, show_default=True, help="Git user email")
@click.option("--user-name", default=DEFAULT_USER_NAME, show_default=True, help="Git user name")
@click.pass_context
def repo_prepare(ctx: click.Context, fetch_depth: int, user_email: str, user_name: str):
    """Configure git identity and an authenticated remote, then fetch."""

    async def prepare(driver: Driver) -> None:
        run_shell(driver.git_remote_command(user_name, user_email), "Configuring git remote")
        if fetch_depth == 0:
            run_shell("git fetch --all --tags", "Fetching history")
        else:
            run_shell(f"git fetch --depth={fetch_depth}", "Fetching history")

    run_driver(ctx, prepare)
    click.echo("✓ Repository prepared")


if __name__ == "__main__":
    cli()
