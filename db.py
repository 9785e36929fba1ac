"""
Database Module
===============
Async access to the authoritative remote store (Supabase tables).

- One table per domain (customers, products, orders)
- Reads and writes run the synchronous client in the default executor
- Retries with linear backoff, circuit breaker on repeated failures
- subscribe(): polled full snapshots, yielded only when the collection changes
- Writes raise on failure; callers decide how to degrade
"""

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar
from datetime import datetime, timezone
from enum import Enum

from prometheus_client import Counter, Histogram
from supabase import create_client, Client

from catalog import key_field


logger = logging.getLogger(__name__)


T = TypeVar("T")


# Configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_COOLDOWN = 30  # seconds
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_POLL_INTERVAL = 5.0  # seconds


# ============================================================================
# METRICS
# ============================================================================

remote_calls = Counter(
    'remote_store_calls_total',
    'Remote store calls',
    ['operation', 'result']
)
remote_call_duration = Histogram(
    'remote_store_call_duration_seconds',
    'Remote store call duration',
    ['operation']
)
snapshots_received = Counter(
    'remote_snapshots_received_total',
    'Changed snapshots yielded by subscriptions',
    ['domain']
)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class RemoteConnectionError(Exception):
    """Raised when the remote store cannot be reached."""
    pass


class RemoteWriteError(Exception):
    """Raised when a remote write is rejected or fails."""
    pass


def snapshot_checksum(entities: List[Dict[str, Any]]) -> str:
    """sha256 of the canonical JSON form of a collection."""
    canonical = json.dumps(entities, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling the remote store after repeated failures.

    OPEN turns into HALF_OPEN once `cooldown` seconds have passed since it
    tripped. While half-open, trial calls go through: `recovery_successes`
    consecutive successes close it, any failure trips it again.
    """

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        cooldown: float = CIRCUIT_BREAKER_COOLDOWN,
        recovery_successes: int = 2,
        clock: Callable[[], float] = time.monotonic
    ):
        self.threshold = threshold
        self.cooldown = cooldown
        self.recovery_successes = recovery_successes
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self.failure_count = 0
        self._trial_successes = 0
        self.trips = 0

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.cooldown
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_successes = 0
            logger.info("Circuit breaker half-open, allowing trial calls")
        return self._state

    def can_execute(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self):
        self.failure_count = 0
        if self.state is not CircuitState.HALF_OPEN:
            return

        self._trial_successes += 1
        if self._trial_successes >= self.recovery_successes:
            self._state = CircuitState.CLOSED
            self._opened_at = None
            logger.info("Circuit breaker closed, remote store recovered")

    def record_failure(self):
        self.failure_count += 1
        tripped = (
            self.state is CircuitState.HALF_OPEN
            or self.failure_count >= self.threshold
        )
        if not tripped:
            return

        if self._state is not CircuitState.OPEN:
            self.trips += 1
            logger.error(
                f"Circuit breaker open after {self.failure_count} failures",
                extra={"trips": self.trips}
            )
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()

    def get_state(self) -> str:
        return self.state.value


# ============================================================================
# REMOTE STORE INTERFACE
# ============================================================================

class RemoteStore:
    """
    Authoritative store interface.

    Implementations: SupabaseRemoteStore (production), in-memory fakes in
    the test suite.
    """

    async def connect(self):
        """Establish the connection. Raises RemoteConnectionError."""
        raise NotImplementedError

    async def close(self):
        pass

    async def get(self, domain: str) -> List[Dict[str, Any]]:
        """Full collection for domain. Raises RemoteConnectionError."""
        raise NotImplementedError

    def subscribe(self, domain: str) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Async iterator of full collection snapshots.

        The first snapshot is the current collection; later ones arrive
        whenever the collection changes.
        """
        raise NotImplementedError

    async def put(self, domain: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or update one record. Returns the stored record."""
        raise NotImplementedError

    async def delete(self, domain: str, key: Any):
        raise NotImplementedError


# ============================================================================
# SUPABASE REMOTE STORE
# ============================================================================

class SupabaseRemoteStore(RemoteStore):
    """
    Remote store over Supabase tables with resilience features.
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        client: Optional[Client] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.url = url
        self.key = key
        self.timeout = timeout
        self.poll_interval = poll_interval

        self.client: Optional[Client] = client
        self.circuit_breaker = CircuitBreaker()
        self._sleep = sleep

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.retry_count = 0

    @property
    def is_connected(self) -> bool:
        return self.client is not None

    async def connect(self):
        """Create the Supabase client."""
        if self.client is not None:
            return

        if not self.url or not self.key:
            raise RemoteConnectionError("SUPABASE_URL and SUPABASE_KEY required")

        loop = asyncio.get_running_loop()
        try:
            self.client = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: create_client(self.url, self.key)),
                timeout=self.timeout
            )
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {str(e)}")
            raise RemoteConnectionError(str(e)) from e

        logger.info("Supabase client initialized")

    async def close(self):
        self.client = None

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def _execute(
        self,
        operation: str,
        func: Callable[[], T],
        retries: int = MAX_RETRIES
    ) -> T:
        """
        Run a blocking client call with timeout, retries and the breaker.

        Raises:
            RemoteConnectionError: If not connected, breaker open, or all
                attempts failed
        """
        if self.client is None:
            raise RemoteConnectionError("Remote store not connected")

        if not self.circuit_breaker.can_execute():
            remote_calls.labels(operation=operation, result='rejected').inc()
            raise RemoteConnectionError(f"Circuit breaker open, {operation} skipped")

        loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                with remote_call_duration.labels(operation=operation).time():
                    result = await asyncio.wait_for(
                        loop.run_in_executor(None, func),
                        timeout=self.timeout
                    )

                self.circuit_breaker.record_success()
                remote_calls.labels(operation=operation, result='success').inc()
                return result

            except asyncio.TimeoutError as e:
                last_error = e
                logger.error(f"Remote {operation} timeout (attempt {attempt + 1})")
            except Exception as e:
                last_error = e
                logger.error(f"Remote {operation} error (attempt {attempt + 1}): {str(e)}")

            self.error_count += 1
            self.circuit_breaker.record_failure()

            if attempt < retries and self.circuit_breaker.can_execute():
                self.retry_count += 1
                await self._sleep(RETRY_DELAY * (attempt + 1))
            else:
                break

        remote_calls.labels(operation=operation, result='error').inc()
        raise RemoteConnectionError(
            f"Remote {operation} failed: {str(last_error) or type(last_error).__name__}"
        ) from last_error

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    async def get(self, domain: str) -> List[Dict[str, Any]]:
        result = await self._execute(
            f"get_{domain}",
            lambda: self.client.table(domain).select("*").execute()
        )
        self.read_count += 1
        return list(result.data or [])

    async def subscribe(self, domain: str) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Poll the domain table, yielding whenever its checksum changes.

        A failure on the first fetch raises RemoteConnectionError; later
        failures are logged and the poll continues.
        """
        entities = await self.get(domain)
        checksum = snapshot_checksum(entities)
        snapshots_received.labels(domain=domain).inc()
        yield entities

        while True:
            await self._sleep(self.poll_interval)

            try:
                entities = await self.get(domain)
            except RemoteConnectionError as e:
                logger.warning(
                    f"Poll failed for {domain}, retrying: {str(e)}",
                    extra={"domain": domain}
                )
                continue

            new_checksum = snapshot_checksum(entities)
            if new_checksum == checksum:
                continue

            checksum = new_checksum
            snapshots_received.labels(domain=domain).inc()
            yield entities

    # ========================================================================
    # WRITE OPERATIONS
    # ========================================================================

    async def put(self, domain: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Upsert a record by its domain key; insert when the key is absent
        (the store assigns it, e.g. a new order id).

        Raises:
            RemoteWriteError: If the write failed
        """
        field = key_field(domain)
        data = dict(record)
        data.setdefault("updatedAt", _utc_now().isoformat())

        if data.get(field) is None:
            data.pop(field, None)
            func = lambda: self.client.table(domain).insert(data).execute()
            # Inserts are not idempotent
            retries = 0
        else:
            func = lambda: self.client.table(domain).upsert(data).execute()
            retries = MAX_RETRIES

        try:
            result = await self._execute(f"put_{domain}", func, retries=retries)
        except RemoteConnectionError as e:
            raise RemoteWriteError(str(e)) from e

        self.write_count += 1
        rows = result.data or []
        return dict(rows[0]) if rows else data

    async def delete(self, domain: str, key: Any):
        field = key_field(domain)

        try:
            await self._execute(
                f"delete_{domain}",
                lambda: self.client.table(domain).delete().eq(field, key).execute()
            )
        except RemoteConnectionError as e:
            raise RemoteWriteError(str(e)) from e

        self.write_count += 1

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get remote store statistics."""
        return {
            "connected": self.is_connected,
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count,
            "circuit_trips": self.circuit_breaker.trips
        }

    def is_healthy(self) -> bool:
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )
