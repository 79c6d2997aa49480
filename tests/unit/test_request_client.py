"""
Unit tests for ci_drivers.request_client.

The requests session is mocked; tests cover URL building, header injection,
proxy resolution and status-to-exception mapping.
"""

import json
import os
from unittest.mock import AsyncMock, Mock, patch

import pytest
import requests

from ci_common.errors import ApiError, AuthenticationError, NotFoundError
from ci_drivers.request_client import RequestClient, error_message


def make_response(status=200, payload=None, content=None, reason="OK"):
    """Build a mock requests.Response."""
    response = Mock()
    response.status_code = status
    response.reason = reason
    if payload is not None:
        response.content = json.dumps(payload).encode()
        response.json.return_value = payload
    else:
        response.content = content or b""
        response.json.side_effect = ValueError("No JSON object could be decoded")
    return response


def make_client(response=None, side_effect=None, api_root="https://gitlab.com/api/v4"):
    session = Mock()
    if side_effect is not None:
        session.request.side_effect = side_effect
    else:
        session.request.return_value = response
    return RequestClient(
        headers={"PRIVATE-TOKEN": "secret"},
        api_root=AsyncMock(return_value=api_root),
        session=session,
    )


class TestRequest:
    """Test suite for RequestClient.request."""

    @pytest.mark.asyncio
    async def test_endpoint_appended_to_api_root(self):
        """Test that endpoints resolve against the lazily provided API root."""
        client = make_client(make_response(payload={"id": 1}))

        result = await client.request("/projects/1", params={"per_page": 100})

        assert result == {"id": 1}
        args, kwargs = client.session.request.call_args
        assert args == ("GET", "https://gitlab.com/api/v4/projects/1")
        assert kwargs["headers"] == {"PRIVATE-TOKEN": "secret"}
        assert kwargs["params"] == {"per_page": 100}
        assert kwargs["allow_redirects"] is False

    @pytest.mark.asyncio
    async def test_url_used_verbatim(self):
        """Test that an absolute url bypasses the API root."""
        client = make_client(make_response(payload={"version": "16.0"}))

        await client.request(url="https://example.com/api/v4/version")

        client.api_root.assert_not_awaited()
        args, _ = client.session.request.call_args
        assert args[1] == "https://example.com/api/v4/version"

    @pytest.mark.asyncio
    async def test_extra_headers_merged(self):
        client = make_client(make_response(payload={}))

        await client.request("/x", headers={"Accept": "text/plain"})

        _, kwargs = client.session.request.call_args
        assert kwargs["headers"] == {"PRIVATE-TOKEN": "secret", "Accept": "text/plain"}

    @pytest.mark.asyncio
    async def test_no_endpoint_or_url(self):
        """Test that a request without a target fails without network I/O."""
        client = make_client(make_response(payload={}))

        with pytest.raises(ApiError, match="API endpoint not found"):
            await client.request()
        client.session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_endpoint_without_api_root(self):
        client = RequestClient(headers={}, session=Mock())

        with pytest.raises(ApiError, match="no API root"):
            await client.request("/projects")

    @pytest.mark.asyncio
    async def test_proxy_from_environment(self):
        """Test that proxies are resolved from the environment per request."""
        client = make_client(make_response(payload={}))
        env = {
            "HTTPS_PROXY": "http://proxy.internal:3128",
            "https_proxy": "http://proxy.internal:3128",
            "NO_PROXY": "",
            "no_proxy": "",
        }

        with patch.dict(os.environ, env):
            await client.request("/projects/1")

        _, kwargs = client.session.request.call_args
        assert kwargs["proxies"]["https"] == "http://proxy.internal:3128"

    @pytest.mark.asyncio
    async def test_raw_returns_response(self):
        response = make_response(status=204)
        client = make_client(response)

        assert await client.request("/runners/1", method="DELETE", raw=True) is response

    @pytest.mark.asyncio
    async def test_empty_body_is_none(self):
        client = make_client(make_response(status=201))
        assert await client.request("/pipelines/1/retry", method="POST") is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = make_client(make_response(content=b"<html>"))

        with pytest.raises(ApiError, match="Invalid JSON"):
            await client.request("/projects/1")


class TestStatusMapping:
    """Test suite for HTTP status to exception mapping."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_authentication_errors(self, status):
        client = make_client(make_response(status=status, payload={"message": "401 Unauthorized"}))

        with pytest.raises(AuthenticationError) as exc_info:
            await client.request("/projects/1")
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_not_found(self):
        client = make_client(make_response(status=404, payload={"message": "404 Project Not Found"}))

        with pytest.raises(NotFoundError, match="404 Project Not Found"):
            await client.request("/projects/1")

    @pytest.mark.asyncio
    async def test_redirect_is_failure(self):
        """Test that redirects are reported instead of followed."""
        client = make_client(make_response(status=302, reason="Found"))

        with pytest.raises(ApiError) as exc_info:
            await client.request("/projects/1")
        assert exc_info.value.status_code == 302
        assert str(exc_info.value) == "Found (HTTP 302)"

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        """Test that connection errors become ApiError without a status."""
        client = make_client(side_effect=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(ApiError) as exc_info:
            await client.request("/projects/1")
        assert exc_info.value.status_code is None
        assert "refused" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, requests.exceptions.ConnectionError)


class TestErrorMessage:
    """Test suite for error_message extraction."""

    def test_message_field(self):
        assert error_message(make_response(status=400, payload={"message": "bad"})) == "bad"

    def test_nested_bitbucket_error(self):
        response = make_response(status=400, payload={"error": {"message": "Branch not found"}})
        assert error_message(response) == "Branch not found"

    def test_plain_error_field(self):
        response = make_response(status=400, payload={"error": "invalid_token"})
        assert error_message(response) == "invalid_token"

    def test_falls_back_to_reason(self):
        response = make_response(status=502, reason="Bad Gateway")
        assert error_message(response) == "Bad Gateway"
