import pytest

from bootstrap import BootstrapLoader, DomainStatus
from catalog import CUSTOMERS, PRODUCTS
from conftest import FakeRemoteStore, settle_loop
from remote_watcher import RemoteCollectionWatcher


def _products(count, prefix="p"):
    return [
        {"barcode": f"{prefix}{i:03d}", "name": f"Product {i}", "costPrice": 100 + i}
        for i in range(count)
    ]


@pytest.fixture
def published():
    return []


@pytest.fixture
def make_loader(cache_store, published):
    def factory(remote, **kwargs):
        options = {
            "domains": (PRODUCTS,),
            "listeners": [lambda d, e, s: published.append((d, len(e), s))],
            "sync_timeout": None,
        }
        options.update(kwargs)
        watcher = RemoteCollectionWatcher(remote) if remote is not None else None
        loader = BootstrapLoader(cache_store, watcher, **options)
        return loader

    return factory


async def test_cache_first_then_live_snapshot(make_loader, cache_store, published):
    await cache_store.replace_all(PRODUCTS, _products(100, "cached"))
    remote = FakeRemoteStore()
    loader = make_loader(remote)

    await loader.start()

    assert len(loader.get_all(PRODUCTS)) == 100
    assert loader.status(PRODUCTS) is DomainStatus.CACHED
    assert not loader.is_settled(PRODUCTS)
    assert published == [(PRODUCTS, 100, "cache")]

    live = _products(50, "live")
    remote.publish(PRODUCTS, live)
    assert await loader.wait_settled(PRODUCTS, timeout=1)

    assert loader.get_all(PRODUCTS) == live
    assert loader.status(PRODUCTS) is DomainStatus.LIVE
    assert published[-1] == (PRODUCTS, 50, "remote")

    await loader.flush_writes()
    cached = await cache_store.get_all(PRODUCTS)
    assert sorted(p["barcode"] for p in cached) == [p["barcode"] for p in live]

    await loader.stop()


async def test_empty_cache_is_not_published(make_loader, published):
    remote = FakeRemoteStore({PRODUCTS: _products(3)})
    loader = make_loader(remote)

    await loader.start()
    assert await loader.wait_settled(PRODUCTS, timeout=1)

    assert published == [(PRODUCTS, 3, "remote")]
    await loader.stop()


async def test_connection_failure_keeps_cache(make_loader, cache_store):
    await cache_store.replace_all(PRODUCTS, _products(5))
    remote = FakeRemoteStore()
    remote.fail_connect = True
    loader = make_loader(remote)

    await loader.start()
    await settle_loop()

    assert loader.status(PRODUCTS) is DomainStatus.DEGRADED
    assert "remote unavailable" in loader.advisories[PRODUCTS]
    assert len(loader.get_all(PRODUCTS)) == 5
    assert not loader.is_settled(PRODUCTS)

    await loader.stop()


async def test_without_remote_runs_cache_only(make_loader, cache_store):
    await cache_store.replace_all(PRODUCTS, _products(2))
    loader = make_loader(None)

    await loader.start()

    assert loader.status(PRODUCTS) is DomainStatus.DEGRADED
    assert len(loader.get_all(PRODUCTS)) == 2
    await loader.stop()


async def test_sync_timeout_advisory_then_recovery(make_loader, cache_store, clock):
    await cache_store.replace_all(PRODUCTS, _products(4))
    remote = FakeRemoteStore()
    loader = make_loader(remote, sync_timeout=20, sleep=clock.sleep)

    await loader.start()
    await clock.advance(20)

    assert loader.status(PRODUCTS) is DomainStatus.DEGRADED
    assert PRODUCTS in loader.advisories

    remote.publish(PRODUCTS, _products(6))
    assert await loader.wait_settled(PRODUCTS, timeout=1)

    assert loader.status(PRODUCTS) is DomainStatus.LIVE
    assert loader.advisories == {}
    await loader.stop()


async def test_last_snapshot_wins_in_cache(make_loader, cache_store):
    remote = FakeRemoteStore({PRODUCTS: _products(1, "a")})
    loader = make_loader(remote)

    await loader.start()
    await loader.wait_settled(PRODUCTS, timeout=1)
    remote.publish(PRODUCTS, _products(2, "b"))
    remote.publish(PRODUCTS, _products(3, "c"))
    await settle_loop()
    await loader.flush_writes()

    cached = await cache_store.get_all(PRODUCTS)
    assert [p["barcode"] for p in cached] == ["c000", "c001", "c002"]
    assert len(loader.get_all(PRODUCTS)) == 3
    await loader.stop()


async def test_write_back_disabled(make_loader, cache_store):
    await cache_store.replace_all(PRODUCTS, _products(2, "old"))
    remote = FakeRemoteStore({PRODUCTS: _products(1, "new")})
    loader = make_loader(remote, write_back=False)

    await loader.start()
    await loader.wait_settled(PRODUCTS, timeout=1)
    await loader.flush_writes()

    assert len(await cache_store.get_all(PRODUCTS)) == 2
    await loader.stop()


async def test_listener_errors_do_not_stop_publication(make_loader, cache_store, published):
    await cache_store.replace_all(CUSTOMERS, [{"comcode": "C1", "name": "One"}])

    def broken(domain, entities, source):
        raise RuntimeError("render failed")

    loader = make_loader(None, domains=(CUSTOMERS,))
    loader.listeners.insert(0, broken)

    await loader.start()

    assert published == [(CUSTOMERS, 1, "cache")]
    assert loader.get_status()[CUSTOMERS]["count"] == 1
    await loader.stop()
