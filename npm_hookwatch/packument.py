"""Registry packument client.

Fetches the full metadata document ("packument") of a package from an npm
registry over HTTP using an ``httpx.AsyncClient``. The client performs no
retries of its own: a failed fetch raises, and the work queue decides
whether and when to try again.

Public API:
    PackumentClient: Async client fetching packuments
    encode_package_name: Percent-encode a package name as one path segment
    npm_package_url: Public npmjs.com page URL of a package
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.parse import quote

import httpx

from npm_hookwatch.errors import FetchError, FetchTimeoutError, MalformedResponseError, TransientNetworkError
from npm_hookwatch.models import Packument

#: Deadline for one packument request, in seconds.
DEFAULT_FETCH_TIMEOUT = 10.0

#: Maximum number of response-body characters carried in a FetchError.
BODY_SNIPPET_CHARS = 200

USER_AGENT = "npm-hookwatch"


def encode_package_name(name: str) -> str:
    """Percent-encode ``name`` as a single URL path segment.

    Scoped names keep their scope in the same segment: ``@scope/pkg``
    becomes ``%40scope%2Fpkg``.
    """
    return quote(name, safe="")


def npm_package_url(name: str) -> str:
    """Return the npmjs.com page URL for ``name``."""
    return f"https://www.npmjs.com/package/{encode_package_name(name)}"


def truncate_body(text: str, max_chars: int = BODY_SNIPPET_CHARS) -> str:
    """Truncate a response body for inclusion in an error message."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


class PackumentClient:
    """Async client for a registry's packument endpoint.

    Attributes:
        registry_url: Registry base URL, e.g. ``https://registry.npmjs.org/``
        timeout: Per-request deadline in seconds

    Example::

        async with PackumentClient("https://registry.npmjs.org/") as client:
            packument = await client.fetch("@babel/core")
    """

    def __init__(
        self,
        registry_url: str,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialise the client.

        Args:
            registry_url: Registry base URL. A trailing slash is optional.
            timeout: Per-request deadline in seconds. Defaults to 10.
            http_client: Optional shared ``httpx.AsyncClient``. When None the
                client creates and owns one.
        """
        self.registry_url: str = registry_url.rstrip("/")
        self.timeout: float = timeout
        self._owns_client = http_client is None
        self._client: httpx.AsyncClient = http_client or httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            follow_redirects=True,
        )

    async def __aenter__(self) -> PackumentClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def url_for(self, package_name: str) -> str:
        """Return the packument URL for ``package_name``."""
        return f"{self.registry_url}/{encode_package_name(package_name)}"

    async def fetch(self, package_name: str) -> Packument:
        """Fetch and parse the packument of ``package_name``.

        Args:
            package_name: The npm package name, scoped or not.

        Returns:
            The parsed Packument.

        Raises:
            FetchError: If the registry answers with a non-success status.
            FetchTimeoutError: If no response arrives within ``timeout``.
            TransientNetworkError: On connection-level failures.
            MalformedResponseError: If the body is not a JSON object.
        """
        data = await get_json(self._client, self.url_for(package_name), self.timeout)
        return Packument.from_json(data, name=package_name)


async def get_json(client: httpx.AsyncClient, url: str, timeout: float, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """GET ``url`` and return its decoded JSON object body.

    Shared by the packument client and the replication feed, which apply
    the same status, timeout and shape rules.

    Raises:
        FetchError: On a non-success status.
        FetchTimeoutError: If the response body is not complete within
            ``timeout`` seconds.
        TransientNetworkError: On any other request error, including
            redirect loops and undecodable content encodings.
        MalformedResponseError: If the body is not a JSON object.
    """
    try:
        # httpx timeouts apply per phase; wait_for bounds the whole request
        response = await asyncio.wait_for(client.get(url, params=params, timeout=timeout), timeout)
    except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
        raise FetchTimeoutError(url, timeout) from exc
    except httpx.RequestError as exc:
        raise TransientNetworkError(f"request to {url} failed: {exc}") from exc

    if not response.is_success:
        raise FetchError(url, response.status_code, truncate_body(response.text))

    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedResponseError(f"invalid JSON from {url}: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedResponseError(
            f"expected a JSON object from {url}, got {type(data).__name__}"
        )
    return data
