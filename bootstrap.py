"""
Bootstrap Loader
================
Cache-first startup for the catalog domains.

Per domain:
1. Publish the locally cached collection immediately (if any)
2. Subscribe to the remote store; every snapshot replaces the published
   collection and is written back to the cache in the background
3. Settled once the first live snapshot arrives

A remote failure leaves the cached collection in place and records an
advisory. The same advisory is raised when no live snapshot arrives within
the sync timeout; a later snapshot still moves the domain to LIVE.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from datetime import datetime, timezone
from enum import Enum

from prometheus_client import Counter, Gauge

from cache_store import CacheStore
from catalog import CATALOG_DOMAINS
from db import RemoteConnectionError
from remote_watcher import RemoteCollectionWatcher


logger = logging.getLogger(__name__)


DEFAULT_SYNC_TIMEOUT = 20.0  # seconds

SOURCE_CACHE = "cache"
SOURCE_REMOTE = "remote"

Listener = Callable[[str, List[Dict[str, Any]], str], Any]


# ============================================================================
# METRICS
# ============================================================================

collections_published = Counter(
    'catalog_collections_published_total',
    'Catalog collections published to listeners',
    ['domain', 'source']
)
sync_advisories = Counter(
    'catalog_sync_advisories_total',
    'Catalog sync advisories raised',
    ['domain', 'reason']
)
domains_live = Gauge(
    'catalog_domains_live',
    'Catalog domains receiving live snapshots'
)


class DomainStatus(Enum):
    """Load status of one catalog domain."""
    IDLE = "idle"            # Nothing published yet
    CACHED = "cached"        # Showing cached data, live sync pending
    LIVE = "live"            # At least one live snapshot received
    DEGRADED = "degraded"    # Remote unavailable or slow, cache only


class BootstrapLoader:
    """
    Loads catalog domains cache-first and keeps them in sync with the
    remote store.

    Usage:
        loader = BootstrapLoader(cache, watcher, listeners=[on_publish])
        await loader.start()           # cached data published on return
        await loader.wait_settled("products", timeout=20)
        await loader.stop()
    """

    def __init__(
        self,
        cache_store: CacheStore,
        watcher: Optional[RemoteCollectionWatcher],
        domains: Iterable[str] = CATALOG_DOMAINS,
        listeners: Optional[List[Listener]] = None,
        sync_timeout: Optional[float] = DEFAULT_SYNC_TIMEOUT,
        write_back: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.cache_store = cache_store
        self.watcher = watcher
        self.domains = tuple(domains)
        self.listeners: List[Listener] = list(listeners or [])
        self.sync_timeout = sync_timeout
        self.write_back = write_back
        self._sleep = sleep

        self._collections: Dict[str, List[Dict[str, Any]]] = {d: [] for d in self.domains}
        self._status: Dict[str, DomainStatus] = {d: DomainStatus.IDLE for d in self.domains}
        self._settled: Dict[str, asyncio.Event] = {d: asyncio.Event() for d in self.domains}
        self._advisories: Dict[str, str] = {}
        self._last_synced: Dict[str, datetime] = {}

        # Cache write-back: latest pending snapshot + one writer per domain
        self._pending_writes: Dict[str, List[Dict[str, Any]]] = {}
        self._writers: Dict[str, asyncio.Task] = {}

        self._tasks: List[asyncio.Task] = []
        self._connect_task: Optional[asyncio.Task] = None
        self.is_running = False

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Publish cached collections, then start live sync in the background."""
        if self.is_running:
            return

        self.is_running = True

        await asyncio.gather(*(self._load_cached(domain) for domain in self.domains))

        if self.watcher is None:
            for domain in self.domains:
                self._degrade(domain, "remote store not configured")
            return

        self._connect_task = asyncio.create_task(self.watcher.connect())

        for domain in self.domains:
            self._tasks.append(asyncio.create_task(self._sync_domain(domain)))
            if self.sync_timeout is not None:
                self._tasks.append(asyncio.create_task(self._sync_timer(domain)))

        logger.info(
            "Bootstrap started",
            extra={"domains": list(self.domains), "sync_timeout": self.sync_timeout}
        )

    async def stop(self):
        """Stop live sync and finish pending cache writes."""
        if not self.is_running:
            return

        self.is_running = False

        tasks = list(self._tasks)
        if self._connect_task is not None:
            tasks.append(self._connect_task)

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.flush_writes()

        for domain in self.domains:
            if self._status[domain] is DomainStatus.LIVE:
                domains_live.dec()

        logger.info("Bootstrap stopped")

    async def flush_writes(self):
        """Wait until every scheduled cache write-back has finished."""
        while self._writers:
            await asyncio.gather(*list(self._writers.values()), return_exceptions=True)

    # ========================================================================
    # PER-DOMAIN WORK
    # ========================================================================

    async def _load_cached(self, domain: str):
        entities = await self.cache_store.get_all(domain)

        if not entities:
            logger.info(f"No cached {domain}")
            return

        self._status[domain] = DomainStatus.CACHED
        self._publish(domain, entities, SOURCE_CACHE)

        logger.info(
            f"Published {len(entities)} cached {domain}",
            extra={"domain": domain, "count": len(entities)}
        )

    async def _sync_domain(self, domain: str):
        try:
            await asyncio.shield(self._connect_task)

            async for snapshot in self.watcher.watch(domain):
                entities = snapshot.to_list()
                self._on_live_snapshot(domain, entities)

        except asyncio.CancelledError:
            raise
        except RemoteConnectionError as e:
            self._degrade(domain, f"remote unavailable: {str(e)}")
        except Exception as e:
            logger.error(
                f"Live sync for {domain} failed: {str(e)}",
                extra={"domain": domain},
                exc_info=True
            )
            self._degrade(domain, f"live sync failed: {str(e)}")

    async def _sync_timer(self, domain: str):
        try:
            await self._sleep(self.sync_timeout)
        except asyncio.CancelledError:
            return

        if not self._settled[domain].is_set():
            sync_advisories.labels(domain=domain, reason='timeout').inc()
            self._degrade(
                domain,
                f"no live data after {self.sync_timeout:g}s, showing cached data"
            )

    def _on_live_snapshot(self, domain: str, entities: List[Dict[str, Any]]):
        if self._status[domain] is not DomainStatus.LIVE:
            domains_live.inc()

        self._status[domain] = DomainStatus.LIVE
        self._advisories.pop(domain, None)
        self._last_synced[domain] = datetime.now(timezone.utc)

        self._publish(domain, entities, SOURCE_REMOTE)
        self._settled[domain].set()

        if self.write_back:
            self._schedule_write_back(domain, entities)

    def _degrade(self, domain: str, reason: str):
        if self._status[domain] is not DomainStatus.LIVE:
            self._status[domain] = DomainStatus.DEGRADED
        self._advisories[domain] = reason

        sync_advisories.labels(domain=domain, reason='degraded').inc()
        logger.warning(
            f"Sync advisory for {domain}: {reason}",
            extra={"domain": domain, "status": self._status[domain].value}
        )

    # ========================================================================
    # PUBLICATION
    # ========================================================================

    def add_listener(self, listener: Listener):
        self.listeners.append(listener)

    def _publish(self, domain: str, entities: List[Dict[str, Any]], source: str):
        self._collections[domain] = list(entities)
        collections_published.labels(domain=domain, source=source).inc()

        for listener in list(self.listeners):
            try:
                listener(domain, list(entities), source)
            except Exception as e:
                logger.error(
                    f"Listener failed for {domain}: {str(e)}",
                    extra={"domain": domain, "source": source}
                )

    # ========================================================================
    # CACHE WRITE-BACK
    # ========================================================================

    def _schedule_write_back(self, domain: str, entities: List[Dict[str, Any]]):
        # Only the newest snapshot waits; the writer picks it up when free
        self._pending_writes[domain] = list(entities)

        if domain not in self._writers:
            task = asyncio.create_task(self._write_back_loop(domain))
            self._writers[domain] = task

    async def _write_back_loop(self, domain: str):
        try:
            while domain in self._pending_writes:
                entities = self._pending_writes.pop(domain)
                written = await self.cache_store.replace_all(domain, entities)
                logger.debug(
                    f"Cache write-back for {domain}: {written}/{len(entities)}",
                    extra={"domain": domain}
                )
        finally:
            self._writers.pop(domain, None)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_all(self, domain: str) -> List[Dict[str, Any]]:
        """Currently published collection for domain."""
        return list(self._collections.get(domain, []))

    def status(self, domain: str) -> DomainStatus:
        return self._status[domain]

    def is_settled(self, domain: str) -> bool:
        """True once the first live snapshot for domain has arrived."""
        return self._settled[domain].is_set()

    async def wait_settled(self, domain: str, timeout: Optional[float] = None) -> bool:
        """
        Wait for the first live snapshot.

        Returns:
            False if the timeout elapsed first
        """
        try:
            await asyncio.wait_for(self._settled[domain].wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @property
    def advisories(self) -> Dict[str, str]:
        """Open sync advisories per domain."""
        return dict(self._advisories)

    def get_status(self) -> Dict[str, Any]:
        """Get bootstrap status."""
        return {
            domain: {
                "status": self._status[domain].value,
                "count": len(self._collections[domain]),
                "settled": self._settled[domain].is_set(),
                "advisory": self._advisories.get(domain),
                "last_synced": (
                    self._last_synced[domain].isoformat()
                    if domain in self._last_synced else None
                ),
            }
            for domain in self.domains
        }
