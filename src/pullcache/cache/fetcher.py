"""Version probing and idempotent body download for remote resources.

A fetch job has two network steps:

1. **Probe**: a HEAD request resolves the resource's version token from its
   ``ETag`` header, falling back to ``Last-Modified``. Redirects are followed
   manually up to ``CacheConfig.max_redirects`` hops, checking the scheme of
   every hop.
2. **Conditional fetch**: the version token determines the cache path
   ``<cache_root>/<subdir>/<owner>/<alias>-<version>``. If that file exists
   the body is not downloaded again. Otherwise the body is streamed to a
   temporary file in the same directory and renamed into place, so a file
   visible at the cache path is always complete.

Example:
    >>> async with ResourceFetcher(CacheConfig(cache_root=tmp)) as fetcher:
    ...     probe = await fetcher.probe("https://example.com/icon.png")
    ...     path = await fetcher.fetch("ca1", "icon", probe)
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from pullcache.cache.config import CacheConfig, get_global_config
from pullcache.errors import (
    FetchTimeoutError,
    FilesystemError,
    NetworkError,
    NotFoundError,
    ProtocolError,
    RedirectLoopOrExceededError,
    VersionUnavailableError,
)
from pullcache.utils import is_supported_url, sanitize_component

logger = logging.getLogger(__name__)

# Downloads are written to "<name>+<uuid4 hex>.tmp" and renamed into place.
# Sanitized cache names never contain "+", so the pattern cannot match them.
TEMP_FILE_PATTERN = re.compile(r"\+[0-9a-f]{32}\.tmp$")


def temp_path_for(path: Path) -> Path:
    """Get a fresh temporary download path next to a cache file."""
    return path.with_name(f"{path.name}+{uuid.uuid4().hex}.tmp")


def is_temp_file(name: str) -> bool:
    """Check whether a file name is an in-progress or abandoned download.

    Examples:
        >>> is_temp_file("icon-v1+" + "0" * 32 + ".tmp")
        True
        >>> is_temp_file("icon-v1.tmp")
        False
    """
    return TEMP_FILE_PATTERN.search(name) is not None


def _remove_leftover(temp_path: Path) -> None:
    if temp_path.exists():
        try:
            temp_path.unlink()
        except OSError as e:
            logger.warning(f"Failed to clean up temp file {temp_path}: {e}")


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a successful version probe.

    Attributes:
        url: Final URL after following redirects; the body is fetched from here
        version: Version token (ETag or Last-Modified value)
        redirects: Number of redirect hops followed
    """

    url: str
    version: str
    redirects: int = 0


class ResourceFetcher:
    """Probes remote resources for their version and caches their bodies.

    The fetcher holds no per-resource state. It can share an
    ``httpx.AsyncClient`` with its caller; a client it creates itself is
    closed by ``aclose()``.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the fetcher.

        Args:
            config: Cache configuration (uses global if None)
            client: HTTP client to use. Must not follow redirects itself.
            transport: Transport for an internally created client (tests)
        """
        self.config = config or get_global_config()
        self._client = client
        self._transport = transport
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client, created on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=False, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ResourceFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def cache_path(self, owner_id: str, alias: str, version: str) -> Path:
        """Get the deterministic cache path of one resource version.

        Args:
            owner_id: Identity of the owning entity
            alias: Resource name, unique within the owner
            version: Version token from a probe

        Returns:
            Path of the cached file (which may not exist yet)
        """
        return (
            self.config.cache_dir
            / sanitize_component(owner_id)
            / f"{sanitize_component(alias, escape_dash=True)}-{sanitize_component(version)}"
        )

    @staticmethod
    def _check_scheme(url: str) -> None:
        if not is_supported_url(url):
            raise ProtocolError(f"Unsupported protocol in {url}", url)

    async def probe(self, url: str) -> ProbeResult:
        """Resolve the current version token of a resource.

        Args:
            url: Resource URL (http or https)

        Returns:
            ProbeResult with the final URL and its version token

        Raises:
            ProtocolError: If the URL (or a redirect target) is not http(s)
            VersionUnavailableError: If no ETag or Last-Modified header is present
            RedirectLoopOrExceededError: If more than max_redirects hops are needed
            NotFoundError: On any other status
            NetworkError: On transport failures
            FetchTimeoutError: If the request times out
        """
        current = url
        redirects = 0
        while True:
            self._check_scheme(current)
            logger.debug(f"Probing {current} (redirects so far: {redirects})")
            try:
                response = await self.client.head(
                    current, timeout=self.config.probe_timeout
                )
            except httpx.TimeoutException as e:
                raise FetchTimeoutError(f"Timed out probing {current}: {e}", current) from e
            except httpx.UnsupportedProtocol as e:
                raise ProtocolError(f"Unsupported protocol in {current}: {e}", current) from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise NetworkError(f"Cannot probe {current}: {e}", current) from e

            status = response.status_code
            if response.is_success:
                version = response.headers.get("etag") or response.headers.get(
                    "last-modified"
                )
                if not version:
                    raise VersionUnavailableError(
                        f"No version in headers of {current}: {dict(response.headers)}",
                        current,
                    )
                return ProbeResult(url=current, version=version, redirects=redirects)

            location = response.headers.get("location")
            if 300 <= status < 400 and location:
                if redirects >= self.config.max_redirects:
                    raise RedirectLoopOrExceededError(current, self.config.max_redirects)
                current = str(response.url.join(location))
                redirects += 1
                continue

            raise NotFoundError(f"Not found: {current} (status {status})", current, status)

    async def fetch(self, owner_id: str, alias: str, probe: ProbeResult) -> Path:
        """Make sure the probed version of a resource is cached locally.

        The body is downloaded only if no file exists yet at the cache path
        for this (owner, alias, version).

        Args:
            owner_id: Identity of the owning entity
            alias: Resource name
            probe: Result of probe() for this resource

        Returns:
            Path to the cached file

        Raises:
            FilesystemError: If the cache directory or file cannot be written
            NotFoundError: If the body request does not succeed
            NetworkError: On transport failures
            FetchTimeoutError: If the download times out
        """
        path = self.cache_path(owner_id, alias, probe.version)
        if await asyncio.to_thread(path.exists):
            logger.debug(f"Cache hit for {owner_id}/{alias} at version {probe.version}")
            return path

        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                f"Cannot create cache directory {path.parent}: {e}", probe.url
            ) from e

        temp_path = temp_path_for(path)
        try:
            await self._download(probe.url, temp_path)
            await asyncio.to_thread(temp_path.replace, path)
        except OSError as e:
            raise FilesystemError(f"Cannot write cache file {path}: {e}", probe.url) from e
        finally:
            await asyncio.to_thread(_remove_leftover, temp_path)

        logger.debug(f"Cached {probe.url} at {path}")
        return path

    async def _download(self, url: str, destination: Path) -> None:
        """Stream the body of url into destination.

        Disk writes run in worker threads so the event loop keeps serving
        other jobs while a large body is written.
        """
        self._check_scheme(url)
        try:
            async with self.client.stream(
                "GET", url, timeout=self.config.fetch_timeout
            ) as response:
                if not response.is_success:
                    raise NotFoundError(
                        f"Not found: {url} (status {response.status_code})",
                        url,
                        response.status_code,
                    )
                f = await asyncio.to_thread(open, destination, "wb")
                try:
                    async for chunk in response.aiter_bytes(self.config.chunk_size):
                        await asyncio.to_thread(f.write, chunk)
                finally:
                    await asyncio.to_thread(f.close)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Timed out downloading {url}: {e}", url) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Cannot download {url}: {e}", url) from e
