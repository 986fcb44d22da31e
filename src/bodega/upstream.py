"""Signed client for the Chef server API."""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import aiohttp

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

from .errors import UpstreamError, UpstreamUnavailableError
from .models import VersionDetail
from .signing import RequestSigner

logger = logging.getLogger(__name__)


class UpstreamClient:
    """Client for the Chef server cookbook endpoints.

    Every request is signed with the configured client key. Downloads of the
    cookbook files themselves go through pre-signed URLs and do not use this
    client.
    """

    def __init__(
        self,
        server_url: str,
        signer: RequestSigner,
        timeout: int = Constants.REQUEST_TIMEOUT,
        skip_ssl: bool = False,
    ):
        """Initialize the upstream client.

        Args:
            server_url: Chef server URL, including the organization path if any.
            signer: Request signer for the client identity.
            timeout: Request timeout in seconds.
            skip_ssl: Disable TLS certificate verification.
        """
        self._server_url = server_url.rstrip("/")
        self._signer = signer
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._skip_ssl = skip_ssl
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=100, ssl=not self._skip_ssl)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def _build_url(self, path: str) -> str:
        """Build the upstream URL from the server base and an API path."""
        request_path = path if path.startswith("/") else f"/{path}"
        return f"{self._server_url}{request_path}"

    def _build_request_headers(self, url: str, method: str = "GET") -> Dict[str, str]:
        """Build signed request headers for ``url``."""
        path = urllib.parse.urlsplit(url).path
        headers = self._signer.sign(method, path)
        headers["Accept"] = "application/json"
        headers["X-Chef-Version"] = Constants.CHEF_VERSION
        headers["User-Agent"] = Constants.USER_AGENT
        return headers

    @asynccontextmanager
    async def open_response(self, path: str):
        """Open a signed GET as an async context manager."""
        if self._session is None:
            await self.start()
        assert self._session is not None
        url = self._build_url(path)
        headers = self._build_request_headers(url)
        with Timer() as t:
            response = await self._session.request("GET", url, headers=headers)
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP response",
                extra=extra_context(
                    event="http_response",
                    component="upstream",
                    action="GET",
                    status_code=response.status,
                    duration_ms=t.duration_ms(),
                    target=safe_url(url),
                ),
            )
        try:
            yield response
        finally:
            response.release()

    async def list_all_versions(self) -> Dict[str, List[str]]:
        """Return every cookbook and all of its versions.

        Raises:
            UpstreamUnavailableError: If the listing cannot be obtained.
        """
        try:
            async with self.open_response("/cookbooks?num_versions=all") as response:
                if response.status != 200:
                    raise UpstreamUnavailableError(
                        f"Error fetching cookbooks: HTTP {response.status}"
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise UpstreamUnavailableError(f"Error fetching cookbooks: {_describe(exc)}") from exc
        return _parse_listing(payload)

    async def get_version_detail(self, name: str, version: str) -> Optional[VersionDetail]:
        """Fetch the manifest and dependencies of one cookbook version.

        Returns:
            The version detail, or None if the server does not know the version.

        Raises:
            UpstreamUnavailableError: If no connection to the server can be made.
            UpstreamError: On any other failure, including a timeout on this request.
        """
        path = "/cookbooks/{}/{}".format(
            urllib.parse.quote(name, safe=""), urllib.parse.quote(version, safe="")
        )
        try:
            async with self.open_response(path) as response:
                if response.status == 404:
                    return None
                if response.status != 200:
                    raise UpstreamError(
                        f"Failed to fetch cookbook version for: {name}/{version} (HTTP {response.status})"
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientConnectorError as exc:
            raise UpstreamUnavailableError(
                f"Failed to fetch cookbook version for: {name}/{version} ({_describe(exc)})"
            ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            # Timeouts and read errors affect this version only.
            raise UpstreamError(
                f"Failed to fetch cookbook version for: {name}/{version} ({_describe(exc)})"
            ) from exc

        if not isinstance(payload, dict):
            raise UpstreamError(f"Unexpected cookbook version payload for {name}/{version}")
        try:
            return VersionDetail.from_cookbook_version(payload)
        except (AttributeError, TypeError, ValueError) as exc:
            raise UpstreamError(
                f"Malformed cookbook version {name}/{version}: {exc}"
            ) from exc

    async def __aenter__(self) -> "UpstreamClient":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _parse_listing(payload: Any) -> Dict[str, List[str]]:
    """Flatten ``GET /cookbooks?num_versions=all`` into name -> versions."""
    if not isinstance(payload, dict):
        raise UpstreamUnavailableError("Error fetching cookbooks: unexpected listing payload")
    listing: Dict[str, List[str]] = {}
    for name, entry in payload.items():
        versions = entry.get("versions") if isinstance(entry, dict) else None
        listing[name] = [
            str(item["version"])
            for item in versions or ()
            if isinstance(item, dict) and item.get("version")
        ]
    return listing
