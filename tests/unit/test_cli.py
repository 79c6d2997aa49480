"""
Unit tests for ci_cli.cli module.

Commands run through click's CliRunner with build_driver patched to return a
mock driver.
"""

import json
import os
from unittest.mock import AsyncMock, Mock, patch

import pytest
from click.testing import CliRunner

from ci_cli.cli import cli, watermark
from ci_common.errors import ApiError, AuthenticationError
from ci_common.models import Comment, PullRequest, Runner


@pytest.fixture
def driver():
    """Create a mock driver with async operations."""
    driver = Mock()
    driver.sha = None
    driver.pipeline_id = None
    driver.job_id = None
    driver.list_pull_requests = AsyncMock(return_value=[])
    driver.list_commit_comments = AsyncMock(return_value=[])
    driver.create_comment = AsyncMock(return_value="https://example.com/comment/1")
    driver.update_comment = AsyncMock(return_value="https://example.com/comment/7")
    driver.auto_merge = AsyncMock()
    driver.list_runners = AsyncMock(return_value=[])
    return driver


@pytest.fixture
def invoke(driver):
    """Invoke the CLI against the mock driver in a clean environment."""
    runner = CliRunner()

    def run(*args):
        with (
            patch.dict(os.environ, {}, clear=True),
            patch("ci_cli.cli.build_driver", return_value=driver),
        ):
            return runner.invoke(cli, list(args))

    return run


class TestPullRequestCommands:
    """Test suite for pr commands."""

    def test_list_json(self, invoke, driver):
        driver.list_pull_requests.return_value = [
            PullRequest(
                id=3,
                url="https://github.com/octo/metrics/pull/3",
                source="feature",
                target="main",
                state="open",
                title="Add metrics",
            )
        ]

        result = invoke("pr", "list", "--state", "all", "--json")

        assert result.exit_code == 0
        assert json.loads(result.output)[0]["source"] == "feature"
        driver.list_pull_requests.assert_awaited_once_with("all")
        driver.close.assert_called_once()

    def test_list_empty(self, invoke):
        result = invoke("pr", "list")

        assert result.exit_code == 0
        assert "No pull requests found." in result.output

    def test_merge(self, invoke, driver):
        result = invoke("pr", "merge", "12", "--mode", "squash", "--message", "Ship it")

        assert result.exit_code == 0
        assert "Auto-merge (squash) requested for pull request 12" in result.output
        driver.auto_merge.assert_awaited_once_with(12, "squash", "Ship it")


class TestCommentCommands:
    """Test suite for comment commands."""

    def test_create(self, invoke, driver, tmp_path):
        report = tmp_path / "report.md"
        report.write_text("## Metrics")

        result = invoke("comment", "create", str(report), "--commit-sha", "abc123")

        assert result.exit_code == 0
        assert result.output.strip() == "https://example.com/comment/1"
        driver.create_comment.assert_awaited_once_with("abc123", "## Metrics")

    def test_watermark_updates_existing(self, invoke, driver, tmp_path):
        """Test that a comment carrying the watermark is updated instead of duplicated."""
        report = tmp_path / "report.md"
        report.write_text("## Metrics v2")
        driver.list_commit_comments.return_value = [
            Comment(id=5, body="unrelated"),
            Comment(id=7, body=f"## Metrics v1\n\n{watermark('nightly')}"),
        ]

        result = invoke(
            "comment", "create", str(report), "--commit-sha", "abc123", "--watermark-title", "nightly"
        )

        assert result.exit_code == 0
        driver.create_comment.assert_not_awaited()
        sha, comment_id, body = driver.update_comment.await_args.args
        assert (sha, comment_id) == ("abc123", 7)
        assert body == f"## Metrics v2\n\n{watermark('nightly')}"

    def test_watermark_placeholders(self, invoke, driver, tmp_path):
        """Test that {workflow} and {run} take the current pipeline and job ids."""
        report = tmp_path / "report.md"
        report.write_text("## Metrics")
        driver.pipeline_id = "4242"
        driver.job_id = "17"

        result = invoke(
            "comment", "create", str(report), "--commit-sha", "abc123", "--watermark-title", "{workflow}-{run}"
        )

        assert result.exit_code == 0
        driver.create_comment.assert_awaited_once_with(
            "abc123", f"## Metrics\n\n{watermark('4242-17')}"
        )


class TestErrors:
    """Test suite for error reporting."""

    def test_api_error_exits_1(self, invoke, driver):
        driver.list_pull_requests.side_effect = ApiError(500, "500 Internal Server Error")

        result = invoke("pr", "list")

        assert result.exit_code == 1
        assert "Error: 500 Internal Server Error" in result.output
        driver.close.assert_called_once()

    def test_authentication_error_hint(self, invoke, driver):
        driver.list_runners.side_effect = AuthenticationError(401, "401 Unauthorized")

        result = invoke("runner", "list")

        assert result.exit_code == 1
        assert "Hint: pass --token" in result.output


class TestRunnerCommands:
    """Test suite for runner commands."""

    def test_list(self, invoke, driver):
        driver.list_runners.return_value = [
            Runner(id=11, name="cibridge-1", labels=["gpu"], online=True, busy=True),
            Runner(id=12, name="cibridge-2", online=False),
        ]

        result = invoke("runner", "list")

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert any("cibridge-1" in line and "busy" in line and "gpu" in line for line in lines)
        assert any("cibridge-2" in line and "offline" in line for line in lines)
