"""
Draft Sync (Session Controller)
===============================
Owns one order editing session: seeds the item collection from an existing
draft or the authoritative order, debounces edits into the draft store, and
drives commit/discard.

Responsibilities:
- Draft wins over baseline on session start
- Debounced checkpoint: put when different from baseline, delete when equal
- Commit: authoritative write first, draft delete only after it succeeds
- Discard: delete draft, never touch the authoritative store
- Storage failures never reach the caller; commit failures always do
"""

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass
from enum import Enum

from prometheus_client import Counter, Gauge

from change_tracker import ChangeStatus, classify, has_changes, removed_keys
from debounce import Debouncer, SleepFunc
from draft_store import DraftKey, DraftRecord, DraftStore
from order import (
    ItemLike,
    LineItem,
    OrderItemCollection,
    OrderValidationError,
    Unit,
)
from session_state import SessionState, SessionStateMachine


# Structured logging
logger = structlog.get_logger(__name__)


DEFAULT_DEBOUNCE_SECONDS = 0.5

OrderWriter = Callable[[Dict[str, Any]], Awaitable[Any]]


# ============================================================================
# METRICS
# ============================================================================

sessions_active = Gauge(
    'edit_sessions_active',
    'Currently open editing sessions'
)
session_commits = Counter(
    'edit_session_commits_total',
    'Session commit attempts',
    ['result']
)
draft_checkpoints = Counter(
    'draft_checkpoints_total',
    'Debounced draft checkpoints',
    ['action', 'result']
)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class SessionClosedError(Exception):
    """Raised when mutating a session that is read-only or has ended."""
    pass


class CommitError(Exception):
    """Raised when the authoritative save fails; the draft is preserved."""
    pass


# ============================================================================
# SAVE STATUS
# ============================================================================

class SaveStatus(Enum):
    """Draft save indicator for the UI."""
    LOADING = "loading"
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"


@dataclass(frozen=True)
class _Checkpoint:
    items: Tuple[LineItem, ...]
    memo: str
    customer: Optional[Dict[str, Any]]


# ============================================================================
# DRAFT SYNC
# ============================================================================

class DraftSync:
    """
    One editing session over one order identity.

    The baseline (authoritative items and memo at session start) is never
    replaced by the draft: it stays the diff reference for the whole session.
    """

    def __init__(
        self,
        draft_key: DraftKey,
        draft_store: DraftStore,
        save_order: Optional[OrderWriter] = None,
        baseline_items: Optional[List[ItemLike]] = None,
        baseline_memo: Optional[str] = "",
        baseline_customer: Optional[Dict[str, Any]] = None,
        order: Optional[Dict[str, Any]] = None,
        read_only: bool = False,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
        sleep: SleepFunc = asyncio.sleep
    ):
        self.draft_key = draft_key
        self.read_only = read_only

        self._draft_store = draft_store
        self._save_order = save_order
        self._order = dict(order) if order else None

        # Baseline (immutable for the session)
        self._baseline: Tuple[LineItem, ...] = tuple(OrderItemCollection(baseline_items).items)
        self._baseline_memo = baseline_memo or ""
        self._baseline_customer = dict(baseline_customer) if baseline_customer else None

        # Live edit state
        self._collection = OrderItemCollection(self._baseline)
        self._memo = self._baseline_memo
        self._customer = self._baseline_customer

        self._machine = SessionStateMachine(draft_key)
        self._debouncer: Debouncer[_Checkpoint] = Debouncer(
            self._persist,
            delay=delay,
            sleep=sleep,
            name=f"draft:{draft_key}"
        )

        self._has_draft = False
        self._save_status = SaveStatus.LOADING
        self.restored_from_draft = False

        sessions_active.inc()

        logger.info(
            "edit_session_created",
            draft_key=draft_key,
            baseline_items=len(self._baseline),
            read_only=read_only
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> bool:
        """
        Load any existing draft and seed the collection.

        Returns:
            True if the session was seeded from a draft
        """
        if self._machine.current_state is not SessionState.LOADING:
            logger.warning("edit_session_already_started", draft_key=self.draft_key)
            return self.restored_from_draft

        record = await self._draft_store.get(self.draft_key)

        if record is not None and not self.read_only:
            self._collection.reset(record.items)
            self._memo = record.memo
            self._customer = record.customer
            self._has_draft = True
            self.restored_from_draft = True

            logger.info(
                "draft_restored",
                draft_key=self.draft_key,
                item_count=len(record.items),
                saved_at=record.saved_at
            )
        elif record is not None:
            logger.info("draft_ignored_read_only", draft_key=self.draft_key)

        self._machine.transition(SessionState.EDITING, reason="loaded")
        self._save_status = SaveStatus.SAVED if self._has_draft else SaveStatus.IDLE

        return self.restored_from_draft

    async def close(self):
        """
        Leave the editor, keeping the latest edit as a draft.

        Any pending checkpoint is written immediately.
        """
        if self._machine.is_terminal():
            return

        if self._machine.current_state is SessionState.COMMITTING:
            # The in-flight commit decides how the session ends
            logger.info("edit_session_close_skipped", draft_key=self.draft_key, reason="committing")
            return

        await self._debouncer.flush()
        self._machine.transition(SessionState.CLOSED, reason="closed")
        sessions_active.dec()

        logger.info(
            "edit_session_closed",
            draft_key=self.draft_key,
            has_draft=self._has_draft
        )

    async def discard(self):
        """
        Cancel the session: drop pending checkpoints and delete the draft.

        The delete is issued only after any in-flight checkpoint write has
        finished, so the draft cannot reappear.
        """
        if self._machine.is_terminal():
            logger.warning("discard_on_ended_session", draft_key=self.draft_key)
            return

        await self._debouncer.cancel()

        if await self._draft_store.delete(self.draft_key):
            self._has_draft = False

        self._machine.transition(SessionState.DISCARDED, reason="discarded")
        self._collection.reset(self._baseline)
        self._memo = self._baseline_memo
        self._customer = self._baseline_customer
        self._save_status = SaveStatus.IDLE
        sessions_active.dec()

        logger.info("edit_session_discarded", draft_key=self.draft_key)

    async def commit(self) -> Any:
        """
        Save the edited order to the authoritative store.

        The draft is deleted only after the write is acknowledged. On
        failure the session returns to editing with the draft intact.

        Returns:
            Whatever the authoritative writer returned (None if skipped)

        Raises:
            SessionClosedError: If the session cannot be committed
            OrderValidationError: If items are invalid
            CommitError: If the authoritative write failed
        """
        self._require_editable()

        if self._save_order is None:
            raise SessionClosedError("No authoritative writer configured for this session")

        is_valid, errors = self._collection.validate()
        if len(self._collection) == 0:
            is_valid = False
            errors = ["Order has no items"] + errors
        if not is_valid:
            session_commits.labels(result='invalid').inc()
            raise OrderValidationError(errors)

        # Keep the latest edit on disk in case the write fails
        await self._debouncer.flush()

        self._machine.transition(SessionState.COMMITTING, reason="commit")
        payload = self.build_payload()

        result = None
        try:
            if self.has_changes or self._order is None:
                result = await self._save_order(payload)
            else:
                logger.info("commit_without_changes", draft_key=self.draft_key)
        except Exception as e:
            self._machine.transition(SessionState.EDITING, reason="commit_failed")
            session_commits.labels(result='failed').inc()

            logger.error(
                "commit_failed",
                draft_key=self.draft_key,
                error=str(e),
                has_draft=self._has_draft
            )
            raise CommitError(f"Order save failed: {str(e)}") from e

        if await self._draft_store.delete(self.draft_key):
            self._has_draft = False
        else:
            logger.warning("draft_delete_after_commit_failed", draft_key=self.draft_key)

        self._machine.transition(SessionState.COMMITTED, reason="saved")
        self._save_status = SaveStatus.IDLE
        session_commits.labels(result='success').inc()
        sessions_active.dec()

        logger.info(
            "order_committed",
            draft_key=self.draft_key,
            item_count=len(self._collection),
            total=self._collection.total
        )

        return result

    async def settle(self):
        """Wait for in-flight checkpoint writes (pending timers are left armed)."""
        await self._debouncer.wait_idle()

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def add_or_merge(
        self,
        product: Any,
        quantity: int,
        unit: Any = Unit.PIECE,
        memo: Optional[str] = None
    ) -> Optional[LineItem]:
        """Add a catalog product or merge into its existing line."""
        self._require_editable()
        item = self._collection.add_or_merge(product, quantity, unit, memo)
        self._on_mutation()
        return item

    def update_item(self, key: str, **changes: Any) -> Optional[LineItem]:
        """Merge field changes into an existing line (no-op if absent)."""
        self._require_editable()
        item = self._collection.update(key, **changes)
        self._on_mutation()
        return item

    def remove_item(self, key: str) -> bool:
        self._require_editable()
        removed = self._collection.remove(key)
        if removed:
            self._on_mutation()
        return removed

    def reorder_items(self, start_index: int, end_index: int) -> bool:
        self._require_editable()
        moved = self._collection.reorder(start_index, end_index)
        if moved:
            self._on_mutation()
        return moved

    def reset_items(self, items: Optional[List[ItemLike]] = None):
        """Replace every line (full rollback when items is the baseline)."""
        self._require_editable()
        self._collection.reset(items)
        self._on_mutation()

    def revert_to_baseline(self):
        """Roll items, memo and customer back to the baseline."""
        self._require_editable()
        self._collection.reset(self._baseline)
        self._memo = self._baseline_memo
        self._customer = self._baseline_customer
        self._on_mutation()

    def set_memo(self, memo: Optional[str]):
        self._require_editable()
        self._memo = memo or ""
        self._on_mutation()

    def set_customer(self, customer: Optional[Dict[str, Any]]):
        """Select the order's customer (new orders)."""
        self._require_editable()
        self._customer = dict(customer) if customer else None
        self._on_mutation()

    def _require_editable(self):
        if self.read_only:
            raise SessionClosedError(f"Order {self.draft_key} is read-only")
        if not self._machine.is_editable():
            raise SessionClosedError(
                f"Session {self.draft_key} is {self._machine.current_state.value}"
            )

    def _on_mutation(self):
        if self._machine.current_state is SessionState.PERSISTING:
            self._machine.transition(SessionState.EDITING, reason="mutation")

        self._save_status = SaveStatus.SAVING
        self._debouncer.trigger(self._checkpoint())

    def _checkpoint(self) -> _Checkpoint:
        return _Checkpoint(
            items=tuple(self._collection.items),
            memo=self._memo,
            customer=dict(self._customer) if self._customer else None,
        )

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    async def _persist(self, checkpoint: _Checkpoint):
        """Debounced write: put when different from baseline, delete when equal."""
        if self._machine.current_state is SessionState.EDITING:
            self._machine.transition(SessionState.PERSISTING, reason="checkpoint")

        try:
            differs = (
                has_changes(self._baseline, checkpoint.items, self._baseline_memo, checkpoint.memo)
                or checkpoint.customer != self._baseline_customer
            )

            if differs:
                record = DraftRecord.build(
                    self.draft_key,
                    list(checkpoint.items),
                    checkpoint.memo,
                    checkpoint.customer
                )
                ok = await self._draft_store.put(self.draft_key, record)
                draft_checkpoints.labels(action='put', result='success' if ok else 'error').inc()
                if ok:
                    self._has_draft = True
            else:
                ok = await self._draft_store.delete(self.draft_key)
                draft_checkpoints.labels(action='delete', result='success' if ok else 'error').inc()
                if ok:
                    self._has_draft = False

            if not self._debouncer.pending:
                if not ok:
                    self._save_status = SaveStatus.IDLE
                else:
                    self._save_status = SaveStatus.SAVED if self._has_draft else SaveStatus.IDLE

            logger.debug(
                "draft_checkpoint",
                draft_key=self.draft_key,
                action="put" if differs else "delete",
                ok=ok
            )
        finally:
            if self._machine.current_state is SessionState.PERSISTING:
                self._machine.transition(SessionState.EDITING, reason="checkpoint_done")

    # ========================================================================
    # DERIVED STATE (for rendering)
    # ========================================================================

    @property
    def state(self) -> SessionState:
        return self._machine.current_state

    @property
    def items(self) -> List[LineItem]:
        return self._collection.items

    @property
    def baseline(self) -> List[LineItem]:
        return list(self._baseline)

    @property
    def memo(self) -> str:
        return self._memo

    @property
    def customer(self) -> Optional[Dict[str, Any]]:
        return dict(self._customer) if self._customer else None

    @property
    def total(self) -> int:
        return self._collection.total

    @property
    def statuses(self) -> Dict[str, ChangeStatus]:
        """Per-item new/modified/unchanged status against the baseline."""
        return classify(self._baseline, self._collection.items)

    @property
    def removed_keys(self) -> List[str]:
        return removed_keys(self._baseline, self._collection.items)

    @property
    def has_changes(self) -> bool:
        return (
            has_changes(self._baseline, self._collection.items, self._baseline_memo, self._memo)
            or self._customer != self._baseline_customer
        )

    @property
    def has_pending_draft(self) -> bool:
        """True while an unsaved draft for this order exists in the draft store."""
        return self._has_draft

    @property
    def save_status(self) -> SaveStatus:
        return self._save_status

    def build_payload(self) -> Dict[str, Any]:
        """Order record sent to the authoritative store on commit."""
        payload = dict(self._order or {})
        payload.update({
            "items": self._collection.to_dicts(),
            "item_count": len(self._collection),
            "total": self._collection.total,
            "memo": self._memo,
        })
        if self._customer is not None:
            payload["customer"] = dict(self._customer)
        return payload

    def get_status(self) -> Dict[str, Any]:
        """Get session status."""
        return {
            "draft_key": self.draft_key,
            "state": self._machine.current_state.value,
            "save_status": self._save_status.value,
            "has_pending_draft": self._has_draft,
            "has_changes": self.has_changes,
            "restored_from_draft": self.restored_from_draft,
            "item_count": len(self._collection),
            "total": self._collection.total,
            "debounce": self._debouncer.get_stats(),
        }
