"""
Authenticated HTTP client for provider REST APIs.

Wraps a requests.Session so every driver call shares the same error
normalization, proxy handling and header injection. Blocking requests run in
a worker thread, which lets drivers await independent calls concurrently.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import requests
from requests.utils import get_environ_proxies

from ci_common.errors import ApiError, AuthenticationError, NotFoundError

logger = logging.getLogger(__name__)


def error_message(response: requests.Response) -> str:
    """
    Extract a human-readable error message from a failed response.

    GitLab answers {"message": ...}, GitHub {"message": ...}, Bitbucket
    {"error": {"message": ...}}; anything else falls back to the HTTP reason.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if isinstance(message, dict):
            message = message.get("message")
        if message:
            return str(message)

    return response.reason or f"HTTP {response.status_code}"


def raise_for_status(response: requests.Response) -> None:
    """
    Raise the ApiError subclass matching a response status.

    Any status >= 300 is a failure: redirects are not followed, so callers
    must never rely on them.
    """
    status = response.status_code
    if status < 300:
        return

    message = error_message(response)
    if status in (401, 403):
        raise AuthenticationError(status, message)
    if status == 404:
        raise NotFoundError(status, message)
    raise ApiError(status, message)


class RequestClient:
    """
    HTTP client bound to one provider and one set of credentials.

    Endpoints are resolved against an API root provided lazily by the owning
    driver, so the first request is what triggers base-URL discovery.
    """

    def __init__(
        self,
        headers: dict[str, str],
        api_root: Callable[[], Awaitable[str]] | None = None,
        timeout: float = 30,
        session: requests.Session | None = None,
    ):
        """
        Initialize the request client.

        Args:
            headers: Provider authentication and content negotiation headers
            api_root: Async callable returning the API root for endpoint requests
            timeout: Seconds before an individual request is abandoned
            session: Optional pre-configured requests session
        """
        self.headers = headers
        self.api_root = api_root
        self.timeout = timeout
        self.session = session or requests.Session()

    async def request(
        self,
        endpoint: str | None = None,
        url: str | None = None,
        method: str = "GET",
        data: Any = None,
        json: Any = None,
        files: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        raw: bool = False,
    ) -> Any:
        """
        Perform an authenticated request.

        Args:
            endpoint: Path appended to the API root (e.g. "/projects/1")
            url: Absolute URL, used verbatim when no endpoint is given
            method: HTTP method
            data: Form-encoded body
            json: JSON body
            files: Multipart body
            params: Query string parameters
            headers: Extra headers merged over the client headers
            raw: Return the requests.Response instead of the decoded body

        Returns:
            Decoded JSON body, None for empty bodies, or the raw response

        Raises:
            AuthenticationError: On 401/403
            NotFoundError: On 404
            ApiError: On any other status >= 300 or on transport failure
        """
        if endpoint is not None:
            if self.api_root is None:
                raise ApiError(None, "API endpoint given but no API root is configured")
            url = f"{await self.api_root()}{endpoint}"
        if not url:
            raise ApiError(None, "API endpoint not found")

        request_headers = {**self.headers, **(headers or {})}
        proxies = get_environ_proxies(url)

        logger.debug(f"{method} {url}")
        try:
            response = await asyncio.to_thread(
                self.session.request,
                method,
                url,
                headers=request_headers,
                data=data,
                json=json,
                files=files,
                params=params,
                proxies=proxies,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.exceptions.RequestException as e:
            raise ApiError(None, f"Error requesting {method} {url}: {e}") from e

        raise_for_status(response)

        if raw:
            return response
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                response.status_code, f"Invalid JSON in response from {url}"
            ) from e

    def close(self) -> None:
        """Release pooled connections."""
        self.session.close()
