"""
Discovery of a provider's API root from a repository URL.

Self-hosted instances may be mounted under an arbitrary sub-path, so the API
root cannot be assumed to be the URL's origin. Every path prefix of the
repository URL is probed concurrently with a lightweight version request and
the first prefix that answers with a recognizable payload wins.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any
from urllib.parse import urlsplit

from ci_common.errors import ResolutionError

from .request_client import RequestClient

logger = logging.getLogger(__name__)


def has_version(payload: Any) -> bool:
    """Probe validator for endpoints answering {"version": "..."}."""
    return isinstance(payload, dict) and bool(payload.get("version"))


class BaseResolver:
    """
    Resolves the instance root that serves a provider's versioned REST API.

    SaaS hosts resolve to their origin without probing. Other hosts are
    probed at every path prefix; when several prefixes answer, the shortest
    one wins, regardless of which probe completed first.
    """

    def __init__(
        self,
        client: RequestClient,
        probe_path: str | None = None,
        is_valid: Callable[[Any], bool] = has_version,
        hosted: Iterable[str] = (),
    ):
        """
        Initialize the resolver.

        Args:
            client: Request client used for the probe requests
            probe_path: Path appended to each candidate (e.g. "/api/v4/version");
                        None means self-hosted instances are not supported
            is_valid: Predicate deciding whether a probe payload is recognizable
            hosted: Host names of SaaS deployments that need no probing
        """
        self.client = client
        self.probe_path = probe_path
        self.is_valid = is_valid
        self.hosted = {host.lower() for host in hosted}

    @staticmethod
    def candidates(repository_url: str) -> list[str]:
        """
        List candidate instance roots for a repository URL, shortest first.

        For https://host/group/sub/project this yields https://host,
        https://host/group and https://host/group/sub; the full repository
        path is never a candidate.
        """
        parts = urlsplit(repository_url)
        if not parts.scheme or not parts.netloc:
            return []

        origin = f"{parts.scheme}://{parts.netloc}"
        segments = [segment for segment in parts.path.split("/") if segment]
        return ["/".join([origin, *segments[:index]]) for index in range(len(segments))]

    async def _probe(self, candidate: str) -> bool:
        payload = await self.client.request(url=f"{candidate}{self.probe_path}")
        return self.is_valid(payload)

    async def resolve(self, repository_url: str) -> str:
        """
        Find the instance root for a repository URL.

        Returns:
            The candidate prefix whose probe returned a valid payload

        Raises:
            ResolutionError: If the URL has no candidates or no probe succeeded
        """
        candidates = self.candidates(repository_url)
        if not candidates:
            raise ResolutionError(f"Invalid repository address: {repository_url}")

        host = (urlsplit(repository_url).hostname or "").lower()
        if host in self.hosted:
            return candidates[0]

        if self.probe_path is None:
            raise ResolutionError(
                f"{host} is not a supported instance; only {', '.join(sorted(self.hosted))} "
                "can be used"
            )

        logger.debug(f"Probing {len(candidates)} candidate API roots for {repository_url}")
        results = await asyncio.gather(
            *(self._probe(candidate) for candidate in candidates),
            return_exceptions=True,
        )

        for candidate, result in zip(candidates, results):
            if result is True:
                logger.debug(f"Resolved API root {candidate}")
                return candidate

        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            first = errors[0]
            raise ResolutionError(
                f"Failed to resolve API root for {repository_url}: {first}"
            ) from first

        raise ResolutionError(f"No API root found for {repository_url}")
