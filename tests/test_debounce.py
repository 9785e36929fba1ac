import asyncio

import pytest

from conftest import settle_loop
from debounce import Debouncer


@pytest.fixture
def committed():
    return []


@pytest.fixture
def debouncer(clock, committed):
    async def commit(value):
        committed.append(value)

    return Debouncer(commit, delay=0.5, sleep=clock.sleep, name="test")


async def test_coalesces_to_last_value(debouncer, clock, committed):
    for value in (1, 2, 3):
        debouncer.trigger(value)

    await clock.advance(0.5)
    await debouncer.wait_idle()

    assert committed == [3]
    assert debouncer.trigger_count == 3
    assert debouncer.commit_count == 1


async def test_trigger_rearms_timer(debouncer, clock, committed):
    debouncer.trigger("a")
    await clock.advance(0.25)
    debouncer.trigger("b")
    await clock.advance(0.25)

    assert committed == []
    assert debouncer.pending
    assert clock.pending_sleepers == 1

    await clock.advance(0.25)
    await debouncer.wait_idle()

    assert committed == ["b"]
    assert not debouncer.pending


async def test_flush_commits_immediately(debouncer, committed):
    debouncer.trigger("x")

    assert await debouncer.flush() is True
    assert committed == ["x"]
    assert await debouncer.flush() is False


async def test_cancel_drops_pending(debouncer, clock, committed):
    debouncer.trigger("x")
    await debouncer.cancel()
    await clock.advance(1)

    assert committed == []
    assert not debouncer.pending


async def test_cancel_waits_for_inflight_commit(clock):
    release = asyncio.Event()
    finished = []

    async def slow_commit(value):
        await release.wait()
        finished.append(value)

    debouncer = Debouncer(slow_commit, delay=0.5, sleep=clock.sleep)
    debouncer.trigger("first")
    await clock.advance(0.5)
    assert debouncer.busy

    cancel_task = asyncio.create_task(debouncer.cancel())
    await settle_loop()
    assert not cancel_task.done()

    release.set()
    await cancel_task

    assert finished == ["first"]
    assert not debouncer.busy


async def test_commits_never_overlap(clock):
    active = []
    overlaps = []
    release = asyncio.Event()

    async def commit(value):
        if active:
            overlaps.append(value)
        active.append(value)
        await release.wait()
        active.remove(value)

    debouncer = Debouncer(commit, delay=0.5, sleep=clock.sleep)
    debouncer.trigger(1)
    await clock.advance(0.5)
    debouncer.trigger(2)
    await clock.advance(0.5)

    release.set()
    await debouncer.wait_idle()

    assert overlaps == []


async def test_commit_errors_are_logged_not_raised(clock):
    async def failing(value):
        raise RuntimeError("disk full")

    debouncer = Debouncer(failing, delay=0.5, sleep=clock.sleep)
    debouncer.trigger(1)

    await debouncer.flush()

    assert debouncer.error_count == 1
    assert debouncer.get_stats()["errors"] == 1


def test_negative_delay_rejected():
    async def commit(value):
        pass

    with pytest.raises(ValueError):
        Debouncer(commit, delay=-1)
