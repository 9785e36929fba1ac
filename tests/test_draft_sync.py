import asyncio

import pytest

from draft_store import DRAFTS_STORE, DraftRecord, DraftStore
from draft_sync import CommitError, DraftSync, SaveStatus, SessionClosedError
from local_store import LocalStore
from order import LineItem, OrderValidationError, Unit, normalize_items
from session_state import SessionState


ORDER_ID = 501

BASELINE = [
    {"key": "8801", "name": "Ramen", "unit_price": 1250, "quantity": 2, "unit": "ea"},
    {"key": "8803", "name": "Kimchi", "unit_price": 3000, "quantity": 1, "unit": "box", "memo": "spicy"},
]


class RecordingWriter:
    def __init__(self, draft_store=None, draft_key=None):
        self.calls = []
        self.fail = False
        self.draft_seen_during_write = None
        self._draft_store = draft_store
        self._draft_key = draft_key

    async def __call__(self, payload):
        if self._draft_store is not None:
            self.draft_seen_during_write = await self._draft_store.get(self._draft_key)
        self.calls.append(payload)
        if self.fail:
            raise RuntimeError("network down")
        return {**payload, "id": payload.get("id", 9001)}


@pytest.fixture
def writer(draft_store):
    return RecordingWriter(draft_store, ORDER_ID)


@pytest.fixture
def make_session(draft_store, writer, clock):
    def factory(**kwargs):
        options = {
            "save_order": writer,
            "baseline_items": BASELINE,
            "baseline_memo": "",
            "order": {"id": ORDER_ID, "customer": {"comcode": "C1", "name": "Shop"}},
            "delay": 0.5,
            "sleep": clock.sleep,
        }
        options.update(kwargs)
        store = options.pop("draft_store", draft_store)
        return DraftSync(options.pop("draft_key", ORDER_ID), store, **options)

    return factory


async def wait_debounce(session, clock):
    await clock.advance(0.5)
    await session.settle()


# ============================================================================
# START / RESUME
# ============================================================================

async def test_start_without_draft_uses_baseline(make_session):
    session = make_session()

    assert session.save_status is SaveStatus.LOADING
    assert await session.start() is False

    assert session.items == normalize_items(BASELINE)
    assert session.state is SessionState.EDITING
    assert session.save_status is SaveStatus.IDLE
    assert not session.has_pending_draft
    assert not session.has_changes


async def test_resume_seeds_from_draft_not_baseline(make_session, draft_store):
    draft_items = [{"key": "9999", "name": "Soy", "unit_price": 500, "quantity": 7, "unit": "ea"}]
    await draft_store.put(ORDER_ID, DraftRecord.build(ORDER_ID, draft_items, "from draft"))

    session = make_session()
    assert await session.start() is True

    assert session.items == normalize_items(draft_items)
    assert session.memo == "from draft"
    assert session.baseline == normalize_items(BASELINE)
    assert session.has_pending_draft
    assert session.save_status is SaveStatus.SAVED
    assert session.statuses["9999"].is_new
    assert session.removed_keys == ["8801", "8803"]


@pytest.mark.parametrize("payload", [
    {"items": "garbage"},
    {"draft_key": ORDER_ID, "memo": "", "items": [{"key": ["x"], "name": "Ramen", "unit_price": 1250, "quantity": 1}]},
    {"draft_key": ORDER_ID, "memo": "", "items": [{"key": "8801", "name": "Ramen", "unit_price": float("nan"), "quantity": 1}]},
])
async def test_malformed_draft_falls_back_to_baseline(make_session, local_store, payload):
    await local_store.put(DRAFTS_STORE, ORDER_ID, payload)

    session = make_session()
    assert await session.start() is False
    assert session.items == normalize_items(BASELINE)
    assert session.total == 5500
    assert session.get_status()["state"] == "editing"


# ============================================================================
# DRAFT LIFECYCLE
# ============================================================================

async def test_edit_persists_normalized_draft(make_session, draft_store, clock, ramen):
    session = make_session()
    await session.start()

    session.add_or_merge(ramen, 3, Unit.PIECE)
    assert session.save_status is SaveStatus.SAVING
    assert await draft_store.get(ORDER_ID) is None

    await wait_debounce(session, clock)

    record = await draft_store.get(ORDER_ID)
    assert record.items == session.items
    assert record.items[0].quantity == 5
    assert session.has_pending_draft
    assert session.save_status is SaveStatus.SAVED


async def test_revert_to_baseline_deletes_draft(make_session, draft_store, clock, ramen):
    session = make_session()
    await session.start()

    session.add_or_merge(ramen, 1, Unit.PIECE)
    await wait_debounce(session, clock)
    assert await draft_store.get(ORDER_ID) is not None

    session.update_item("8801", quantity=2)
    await wait_debounce(session, clock)

    assert await draft_store.get(ORDER_ID) is None
    assert not session.has_pending_draft
    assert session.save_status is SaveStatus.IDLE


async def test_rapid_edits_write_once(make_session, draft_store, clock, ramen):
    session = make_session()
    await session.start()

    for _ in range(5):
        session.add_or_merge(ramen, 1, Unit.PIECE)
    await wait_debounce(session, clock)

    assert draft_store.write_count == 1
    assert (await draft_store.get(ORDER_ID)).items[0].quantity == 7


async def test_memo_change_is_a_draft(make_session, draft_store, clock):
    session = make_session()
    await session.start()

    session.set_memo("leave at back door")
    await wait_debounce(session, clock)
    assert (await draft_store.get(ORDER_ID)).memo == "leave at back door"

    session.set_memo(None)
    await wait_debounce(session, clock)
    assert await draft_store.get(ORDER_ID) is None


async def test_reorder_and_revert_to_baseline(make_session, draft_store, clock):
    session = make_session()
    await session.start()

    assert session.reorder_items(0, 1)
    await wait_debounce(session, clock)
    assert session.has_pending_draft

    session.revert_to_baseline()
    await wait_debounce(session, clock)
    assert not session.has_pending_draft
    assert await draft_store.list_keys() == []


async def test_storage_failure_never_reaches_session(make_session, db_path, clock, ramen):
    unopened = DraftStore(LocalStore(str(db_path), stores=(DRAFTS_STORE,)))
    session = make_session(draft_store=unopened)

    assert await session.start() is False
    session.add_or_merge(ramen, 1, Unit.PIECE)
    await wait_debounce(session, clock)

    assert not session.has_pending_draft
    assert session.save_status is SaveStatus.IDLE
    assert session.state is SessionState.EDITING


# ============================================================================
# COMMIT
# ============================================================================

async def test_commit_deletes_draft_after_write(make_session, draft_store, writer, clock, tofu):
    session = make_session()
    await session.start()

    session.add_or_merge(tofu, 4, Unit.BOX)
    session.set_memo("before noon")
    result = await session.commit()

    assert writer.draft_seen_during_write is not None
    assert await draft_store.get(ORDER_ID) is None
    assert session.state is SessionState.COMMITTED
    assert not session.has_pending_draft

    payload = writer.calls[0]
    assert payload["id"] == ORDER_ID
    assert payload["memo"] == "before noon"
    assert payload["item_count"] == 3
    assert payload["total"] == 1250 * 2 + 3000 + 990 * 4
    assert payload["items"][-1]["unit"] == "box"
    assert payload["customer"] == {"comcode": "C1", "name": "Shop"}
    assert result["id"] == ORDER_ID


async def test_commit_failure_keeps_draft(make_session, draft_store, writer, clock, ramen):
    session = make_session()
    await session.start()

    session.add_or_merge(ramen, 1, Unit.PIECE)
    await wait_debounce(session, clock)
    before = await draft_store.get(ORDER_ID)

    writer.fail = True
    with pytest.raises(CommitError):
        await session.commit()

    after = await draft_store.get(ORDER_ID)
    assert after.items == before.items
    assert after.memo == before.memo
    assert session.state is SessionState.EDITING
    assert session.has_pending_draft

    writer.fail = False
    await session.commit()
    assert await draft_store.get(ORDER_ID) is None


async def test_commit_flushes_pending_edit_before_writing(make_session, draft_store, writer, ramen):
    session = make_session()
    await session.start()

    session.add_or_merge(ramen, 10, Unit.PIECE)
    writer.fail = True
    with pytest.raises(CommitError):
        await session.commit()

    record = await draft_store.get(ORDER_ID)
    assert record.items[0].quantity == 12


async def test_commit_rejects_invalid_items(make_session, writer):
    session = make_session()
    await session.start()

    session.update_item("8801", quantity=-1)
    with pytest.raises(OrderValidationError):
        await session.commit()

    session.reset_items([])
    with pytest.raises(OrderValidationError):
        await session.commit()

    assert writer.calls == []
    assert session.state is SessionState.EDITING


async def test_commit_without_changes_skips_writer(make_session, writer):
    session = make_session()
    await session.start()

    assert await session.commit() is None
    assert writer.calls == []
    assert session.state is SessionState.COMMITTED


# ============================================================================
# DISCARD / CLOSE / READ-ONLY
# ============================================================================

async def test_discard_deletes_draft_and_ends_session(make_session, draft_store, writer, clock, ramen):
    session = make_session()
    await session.start()

    session.add_or_merge(ramen, 1, Unit.PIECE)
    await wait_debounce(session, clock)
    await session.discard()

    assert await draft_store.get(ORDER_ID) is None
    assert writer.calls == []
    assert session.state is SessionState.DISCARDED
    with pytest.raises(SessionClosedError):
        session.set_memo("late")


async def test_discard_cancels_pending_checkpoint(make_session, draft_store, clock, ramen):
    session = make_session()
    await session.start()

    session.add_or_merge(ramen, 1, Unit.PIECE)
    await session.discard()
    await clock.advance(1)

    assert await draft_store.list_keys() == []


async def test_close_keeps_latest_edit(make_session, draft_store, ramen):
    session = make_session()
    await session.start()

    session.add_or_merge(ramen, 1, Unit.PIECE)
    await session.close()

    assert (await draft_store.get(ORDER_ID)).items[0].quantity == 3
    assert session.state is SessionState.CLOSED


async def test_close_during_commit_leaves_commit_in_charge(make_session, draft_store, clock, ramen):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_writer(payload):
        started.set()
        await release.wait()
        return {**payload, "id": ORDER_ID}

    session = make_session(save_order=slow_writer)
    await session.start()
    session.add_or_merge(ramen, 1, Unit.PIECE)

    commit = asyncio.ensure_future(session.commit())
    await asyncio.wait_for(started.wait(), timeout=1)
    assert session.state is SessionState.COMMITTING

    await session.close()
    assert session.state is SessionState.COMMITTING

    release.set()
    await commit
    assert session.state is SessionState.COMMITTED
    assert await draft_store.get(ORDER_ID) is None


async def test_read_only_session(make_session, draft_store, ramen):
    await draft_store.put(ORDER_ID, DraftRecord.build(ORDER_ID, [], "stale"))

    session = make_session(read_only=True)
    assert await session.start() is False
    assert session.items == normalize_items(BASELINE)

    with pytest.raises(SessionClosedError):
        session.add_or_merge(ramen, 1, Unit.PIECE)
    with pytest.raises(SessionClosedError):
        await session.commit()


async def test_new_order_draft_includes_customer(make_session, draft_store, clock, tofu):
    session = make_session(
        draft_key="new-order-draft",
        baseline_items=None,
        order=None,
    )
    await session.start()

    session.set_customer({"comcode": "C9", "name": "Corner Mart"})
    session.add_or_merge(tofu, 2, Unit.PIECE)
    await wait_debounce(session, clock)

    record = await draft_store.get("new-order-draft")
    assert record.customer == {"comcode": "C9", "name": "Corner Mart"}
    assert record.items == [LineItem("8802", "Tofu", 990, 2, Unit.PIECE, "")]
    assert session.statuses["8802"].is_new
