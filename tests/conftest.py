import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from cache_store import CacheStore
from catalog import CATALOG_DOMAINS, key_field
from db import RemoteConnectionError, RemoteStore, RemoteWriteError
from draft_store import DRAFTS_STORE, DraftStore
from local_store import LocalStore


class FakeClock:
    """Manual clock: sleep() blocks until advance() moves past its deadline."""

    def __init__(self):
        self.now = 0.0
        self._sleepers: List[tuple] = []

    async def sleep(self, delay: float):
        future = asyncio.get_running_loop().create_future()
        entry = (self.now + delay, future)
        self._sleepers.append(entry)
        try:
            await future
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float):
        # Let freshly created timer tasks register their sleeps first
        await settle_loop()
        self.now += seconds
        for deadline, future in list(self._sleepers):
            if deadline <= self.now and not future.done():
                future.set_result(None)
        await settle_loop()


async def settle_loop(rounds: int = 20):
    """Give woken tasks a few loop iterations to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeRemoteStore(RemoteStore):
    """
    In-memory remote store.

    subscribe() yields the current collection (if any) then every
    collection passed to publish().
    """

    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.collections: Dict[str, List[Dict[str, Any]]] = {
            domain: [dict(e) for e in entities]
            for domain, entities in (collections or {}).items()
        }
        self.fail_connect = False
        self.fail_writes = False
        self.connected = False
        self.writes: List[tuple] = []
        self.write_gate: Optional[asyncio.Event] = None
        self._queues: Dict[str, List[asyncio.Queue]] = {}
        self._next_id = 1000

    async def connect(self):
        if self.fail_connect:
            raise RemoteConnectionError("connection refused")
        self.connected = True

    async def get(self, domain: str) -> List[Dict[str, Any]]:
        if not self.connected:
            raise RemoteConnectionError("not connected")
        return [dict(e) for e in self.collections.get(domain, [])]

    async def subscribe(self, domain: str):
        if not self.connected:
            raise RemoteConnectionError("not connected")

        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(domain, []).append(queue)

        if domain in self.collections:
            yield [dict(e) for e in self.collections[domain]]

        while True:
            entities = await queue.get()
            yield entities

    def publish(self, domain: str, entities: List[Dict[str, Any]]):
        self.collections[domain] = [dict(e) for e in entities]
        for queue in self._queues.get(domain, []):
            queue.put_nowait([dict(e) for e in entities])

    async def put(self, domain: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.fail_writes:
            raise RemoteWriteError("write rejected")

        stored = dict(record)
        field = key_field(domain)
        if stored.get(field) is None:
            self._next_id += 1
            stored[field] = self._next_id

        entities = [
            e for e in self.collections.get(domain, [])
            if e.get(field) != stored[field]
        ]
        entities.append(stored)
        self.collections[domain] = entities
        self.writes.append((domain, stored))
        return stored

    async def delete(self, domain: str, key: Any):
        field = key_field(domain)
        self.collections[domain] = [
            e for e in self.collections.get(domain, []) if e.get(field) != key
        ]


@dataclass(frozen=True)
class FakeProduct:
    key: str
    name: str
    unit_price: float


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "order_entry.db"


@pytest_asyncio.fixture
async def local_store(db_path):
    store = LocalStore(str(db_path), stores=(DRAFTS_STORE,) + CATALOG_DOMAINS)
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def draft_store(local_store):
    return DraftStore(local_store)


@pytest.fixture
def cache_store(local_store):
    return CacheStore(local_store)


@pytest.fixture
def ramen():
    return FakeProduct("8801", "Ramen", 1250)


@pytest.fixture
def tofu():
    return FakeProduct("8802", "Tofu", 990)
