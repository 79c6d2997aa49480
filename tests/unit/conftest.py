"""
Shared fixtures for driver tests.

FakeApi stands in for RequestClient.request: requests are routed by
(method, endpoint-or-url) to canned payloads, callables or exceptions, and
every call is recorded.
"""

from typing import Any

import pytest


class FakeApi:
    """In-memory replacement for a driver's request client."""

    def __init__(self):
        self.routes: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def add(self, method: str, path: str, response: Any = None) -> "FakeApi":
        """
        Register a route.

        response may be a payload, an exception instance (raised), or a
        callable receiving the request keyword arguments.
        """
        self.routes[(method, path)] = response
        return self

    async def request(
        self, endpoint: str | None = None, url: str | None = None, method: str = "GET", **kwargs
    ) -> Any:
        path = endpoint if endpoint is not None else url
        self.calls.append((method, path, kwargs))
        if (method, path) not in self.routes:
            raise AssertionError(f"Unexpected request {method} {path}")

        response = self.routes[(method, path)]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(**kwargs)
        return response

    def install(self, driver, base: str | None = None):
        """Route the driver's requests here, optionally pre-resolving its base."""
        driver.client.request = self.request
        if base is not None:
            driver._base = base
        return driver

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call[0] == method and call[1] == path)

    def requested(self) -> list[tuple[str, str]]:
        return [(method, path) for method, path, _ in self.calls]


@pytest.fixture
def fake_api():
    """Create an empty FakeApi."""
    return FakeApi()
