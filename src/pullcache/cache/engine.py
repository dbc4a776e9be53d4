"""Resource cache engine: registrations and per-resource serialized job queues.

Each (owner_id, alias) key owns exactly one SerialJobQueue. Jobs for the same
key run one at a time in submission order, so a cache file or a version is
never written by two jobs at once. Jobs for different keys run concurrently
on the event loop.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, NamedTuple, Optional, Set, Tuple

import httpx

from pullcache.cache.config import CacheConfig, get_global_config
from pullcache.cache.fetcher import ResourceFetcher
from pullcache.errors import (
    CallbackApplicationError,
    CallbackSystemError,
    FetchError,
    FilesystemError,
)

logger = logging.getLogger(__name__)

# Notification handler contract: (cached_file_path, version) -> outcome.
# The handler may be a plain function or a coroutine function.
NotifyHandler = Callable[[str, str], Any]

# Receives CallbackSystemErrors raised by an owner's handler
OwnerFailureHandler = Callable[[str, BaseException], Any]


class ResourceKey(NamedTuple):
    """Composite key of a registration."""

    owner_id: str
    alias: str


@dataclass
class JobOutcome:
    """Result of one fetch job.

    Exactly one of ``path`` or ``error`` is set.
    """

    key: ResourceKey
    url: Optional[str] = None
    version: Optional[str] = None
    path: Optional[Path] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ResourceStatus:
    """Read-only snapshot of an engine registration."""

    owner_id: str
    alias: str
    url: str
    version: Optional[str]
    path: Optional[Path]


@dataclass
class _Registration:
    url: str
    notify: NotifyHandler
    version: Optional[str] = None
    path: Optional[Path] = None


Job = Callable[[], Awaitable[JobOutcome]]


class SerialJobQueue:
    """Runs jobs strictly one at a time, in submission order.

    A worker task is started when a job is submitted to an idle queue and
    exits once the queue is drained. Jobs must report failures through their
    JobOutcome rather than raising.
    """

    def __init__(self, name: str):
        self.name = name
        self._jobs: Deque[Tuple[Job, asyncio.Future]] = deque()
        self._worker: Optional[asyncio.Task] = None

    def submit(self, job: Job) -> asyncio.Future:
        """Append a job and return a future resolving to its JobOutcome.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._jobs.append((job, future))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain(), name=f"pullcache:{self.name}")
        return future

    @property
    def idle(self) -> bool:
        """True if no job is queued or running."""
        return not self._jobs and (self._worker is None or self._worker.done())

    def __len__(self) -> int:
        return len(self._jobs)

    async def _drain(self) -> None:
        while self._jobs:
            job, future = self._jobs.popleft()
            try:
                outcome = await job()
            except asyncio.CancelledError:
                future.cancel()
                for _, pending in self._jobs:
                    pending.cancel()
                self._jobs.clear()
                raise
            if not future.done():
                future.set_result(outcome)


class ResourceCacheEngine:
    """Keeps registered resources cached and notifies owners of new versions.

    Examples:
        >>> async with ResourceCacheEngine(CacheConfig(cache_root=tmp)) as engine:
        ...     outcome = await engine.add_resource("ca1", "icon", url, on_update)
        ...     outcome.version
        'v1'
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        fetcher: Optional[ResourceFetcher] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_owner_failure: Optional[OwnerFailureHandler] = None,
    ):
        """Initialize the engine.

        Args:
            config: Cache configuration (uses global if None)
            fetcher: Fetcher to use; created from config/client/transport if None
            client: Shared HTTP client for an internally created fetcher
            transport: HTTP transport for an internally created fetcher (tests)
            on_owner_failure: Called with (owner_id, error) when an owner's
                handler raises CallbackSystemError
        """
        self.config = config or (fetcher.config if fetcher else get_global_config())
        self.fetcher = fetcher or ResourceFetcher(self.config, client=client, transport=transport)
        self._owns_fetcher = fetcher is None
        self.on_owner_failure = on_owner_failure
        self._registrations: Dict[ResourceKey, _Registration] = {}
        self._queues: Dict[ResourceKey, SerialJobQueue] = {}
        self._pending: Set[asyncio.Future] = set()

    async def __aenter__(self) -> "ResourceCacheEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Registration API
    # ------------------------------------------------------------------

    def add_resource(
        self, owner_id: str, alias: str, url: str, notify: NotifyHandler
    ) -> asyncio.Future:
        """Create or replace a registration and enqueue a fetch job for it.

        A job is enqueued even if the registration already existed, so
        re-declaring a resource forces a new probe.

        Args:
            owner_id: Identity of the owning entity
            alias: Resource name, unique within the owner
            url: Resource URL
            notify: Handler called with (cached_file_path, version)

        Returns:
            Future resolving to the job's JobOutcome
        """
        key = ResourceKey(owner_id, alias)
        registration = self._registrations.get(key)
        if registration is None:
            self._registrations[key] = _Registration(url=url, notify=notify)
        else:
            registration.url = url
            registration.notify = notify
        return self._enqueue(key, url, notify)

    def remove_resource(self, owner_id: str, alias: str) -> None:
        """Delete a registration.

        Only prevents future jobs: jobs already enqueued for the resource,
        running or waiting, still run with the url and handler they were
        submitted with. Cached files are left in place.
        """
        key = ResourceKey(owner_id, alias)
        if self._registrations.pop(key, None) is None:
            logger.debug(f"Remove of unregistered resource {alias} for owner {owner_id}")
            return
        self._discard_queue_if_unused(key)

    def refresh_resource(self, owner_id: str, alias: str) -> Optional[asyncio.Future]:
        """Re-probe a registered resource with its current url and handler.

        Returns:
            Future resolving to the job's JobOutcome, or None (with a warning)
            if the resource is not registered
        """
        registration = self._registrations.get(ResourceKey(owner_id, alias))
        if registration is None:
            logger.warning(f"Cannot refresh non-loaded resource {alias} for owner {owner_id}")
            return None
        return self.add_resource(owner_id, alias, registration.url, registration.notify)

    def remove_owner(self, owner_id: str) -> int:
        """Remove every registration of an owner.

        Returns:
            Number of registrations removed
        """
        keys = [key for key in self._registrations if key.owner_id == owner_id]
        for key in keys:
            self.remove_resource(key.owner_id, key.alias)
        return len(keys)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_registered(self, owner_id: str, alias: str) -> bool:
        return ResourceKey(owner_id, alias) in self._registrations

    def get_status(self, owner_id: str, alias: str) -> Optional[ResourceStatus]:
        """Get a snapshot of a registration, or None if not registered."""
        registration = self._registrations.get(ResourceKey(owner_id, alias))
        if registration is None:
            return None
        return ResourceStatus(
            owner_id=owner_id,
            alias=alias,
            url=registration.url,
            version=registration.version,
            path=registration.path,
        )

    def list_keys(self, owner_id: Optional[str] = None) -> List[ResourceKey]:
        """List registered keys, optionally restricted to one owner."""
        return sorted(
            key for key in self._registrations if owner_id is None or key.owner_id == owner_id
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until every queued job, including jobs queued meanwhile, is done."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """Wait for queued jobs and release the HTTP client if owned."""
        await self.wait_idle()
        if self._owns_fetcher:
            await self.fetcher.aclose()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _enqueue(self, key: ResourceKey, url: str, notify: NotifyHandler) -> asyncio.Future:
        queue = self._queues.get(key)
        if queue is None:
            queue = self._queues[key] = SerialJobQueue(f"{key.owner_id}/{key.alias}")
        future = queue.submit(lambda: self._run_job(key, url, notify))
        self._pending.add(future)
        future.add_done_callback(lambda f: self._job_done(key, f))
        return future

    def _job_done(self, key: ResourceKey, future: asyncio.Future) -> None:
        self._pending.discard(future)
        self._discard_queue_if_unused(key)

    def _discard_queue_if_unused(self, key: ResourceKey) -> None:
        queue = self._queues.get(key)
        if queue is not None and queue.idle and key not in self._registrations:
            del self._queues[key]

    async def _run_job(self, key: ResourceKey, url: str, notify: NotifyHandler) -> JobOutcome:
        logger.debug(f"Begin probe owner:{key.owner_id} alias:{key.alias} url:{url}")
        try:
            probe = await self.fetcher.probe(url)
            logger.debug(f"Begin load owner:{key.owner_id} alias:{key.alias} version:{probe.version}")
            path = await self.fetcher.fetch(key.owner_id, key.alias, probe)
            registration = self._registrations.get(key)
            if registration is not None:
                registration.version = probe.version
                registration.path = path
            logger.debug(f"Begin update owner:{key.owner_id} alias:{key.alias}")
            await self._notify(key, notify, path, probe.version)
        except CallbackSystemError as e:
            logger.error(f"Owner {key.owner_id} failed handling update of {key.alias}: {e}")
            self._report_owner_failure(key.owner_id, e)
            return JobOutcome(key=key, url=url, error=e)
        except FilesystemError as e:
            logger.error(f"Cannot cache {url} for owner {key.owner_id} alias {key.alias}: {e}")
            return JobOutcome(key=key, url=url, error=e)
        except FetchError as e:
            logger.warning(f"Cannot load {url} for owner {key.owner_id} alias {key.alias}: {e}")
            return JobOutcome(key=key, url=url, error=e)
        except Exception as e:
            logger.error(
                f"Unexpected error updating {key.alias} for owner {key.owner_id}: {e}",
                exc_info=True,
            )
            return JobOutcome(key=key, url=url, error=e)

        logger.debug(f"Done update owner:{key.owner_id} alias:{key.alias}")
        return JobOutcome(key=key, url=url, version=probe.version, path=path)

    async def _notify(
        self, key: ResourceKey, notify: NotifyHandler, path: Path, version: str
    ) -> None:
        try:
            result = notify(str(path), version)
            if inspect.isawaitable(result):
                await result
        except CallbackApplicationError as e:
            logger.warning(
                f"Ignoring application error from owner {key.owner_id} handling {key.alias}: {e}"
            )

    def _report_owner_failure(self, owner_id: str, error: CallbackSystemError) -> None:
        if self.on_owner_failure is None:
            return
        try:
            self.on_owner_failure(owner_id, error)
        except Exception as e:
            logger.error(f"Owner failure handler raised for {owner_id}: {e}", exc_info=True)
