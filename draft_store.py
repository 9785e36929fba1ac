"""
Draft Store Module
==================
Keyed scratch area for in-progress order edits, one record per order
identity (or one fixed key for a new order in progress).

Failure policy: storage errors never reach the editing session.
- get: failure or malformed record -> None (session falls back to baseline)
- put/delete: failure -> logged, returns False
- list_keys: failure -> []
"""

import math
import logging
from typing import Dict, List, Any, Optional, Union
from datetime import datetime, timezone
from dataclasses import dataclass, field

from prometheus_client import Counter

from local_store import LocalStore, LocalStoreError
from order import LineItem, ItemLike, normalize_items


logger = logging.getLogger(__name__)


DRAFTS_STORE = "drafts"

DraftKey = Union[str, int]


# ============================================================================
# METRICS
# ============================================================================

draft_operations = Counter(
    'draft_operations_total',
    'Draft store operations',
    ['operation', 'result']
)


# ============================================================================
# DRAFT RECORD
# ============================================================================

class DraftFormatError(Exception):
    """Raised when a persisted draft cannot be parsed."""
    pass


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DraftRecord:
    """A locally persisted, not-yet-committed edit of an order."""
    draft_key: DraftKey
    items: List[LineItem] = field(default_factory=list)
    memo: str = ""
    saved_at: str = field(default_factory=_utc_now_iso)
    customer: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft_key": self.draft_key,
            "items": [item.to_dict() for item in self.items],
            "memo": self.memo,
            "saved_at": self.saved_at,
            "customer": self.customer,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'DraftRecord':
        """
        Parse a stored draft.

        Raises:
            DraftFormatError: If the payload is not a valid draft
        """
        if not isinstance(data, dict):
            raise DraftFormatError(f"Draft payload is not an object: {type(data).__name__}")

        items = data.get("items")
        if not isinstance(items, list):
            raise DraftFormatError("Draft items missing or not a list")

        try:
            parsed_items = normalize_items(items)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise DraftFormatError(f"Invalid draft item: {str(e)}") from e

        for item in parsed_items:
            if not isinstance(item.key, str) or not item.key:
                raise DraftFormatError(f"Invalid item key: {item.key!r}")
            if not isinstance(item.name, str) or not isinstance(item.memo, str):
                raise DraftFormatError(f"Invalid name or memo for {item.key}")
            if not isinstance(item.quantity, int) or isinstance(item.quantity, bool):
                raise DraftFormatError(f"Invalid quantity for {item.key}: {item.quantity!r}")
            if not isinstance(item.unit_price, (int, float)) or isinstance(item.unit_price, bool):
                raise DraftFormatError(f"Invalid price for {item.key}: {item.unit_price!r}")
            if not math.isfinite(item.unit_price):
                raise DraftFormatError(f"Non-finite price for {item.key}: {item.unit_price!r}")

        customer = data.get("customer")
        if customer is not None and not isinstance(customer, dict):
            raise DraftFormatError("Draft customer is not an object")

        memo = data.get("memo") or ""
        if not isinstance(memo, str):
            raise DraftFormatError("Draft memo is not a string")

        if "draft_key" not in data:
            raise DraftFormatError("Draft key missing")

        return cls(
            draft_key=data["draft_key"],
            items=parsed_items,
            memo=memo,
            saved_at=data.get("saved_at") or "",
            customer=customer,
        )

    @classmethod
    def build(
        cls,
        draft_key: DraftKey,
        items: List[ItemLike],
        memo: Optional[str] = "",
        customer: Optional[Dict[str, Any]] = None
    ) -> 'DraftRecord':
        """Create a record from live session state (normalized)."""
        return cls(
            draft_key=draft_key,
            items=normalize_items(items),
            memo=memo or "",
            customer=dict(customer) if customer else None,
        )


# ============================================================================
# DRAFT STORE
# ============================================================================

class DraftStore:
    """
    Draft persistence on the local keyed store.

    Process-wide; sessions editing different orders use disjoint keys.
    """

    def __init__(self, local_store: LocalStore):
        self._store = local_store

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.delete_count = 0
        self.error_count = 0

    async def get(self, draft_key: DraftKey) -> Optional[DraftRecord]:
        """
        Load the draft for draft_key.

        Returns:
            DraftRecord, or None if absent, unreadable or malformed
        """
        try:
            payload = await self._store.get(DRAFTS_STORE, draft_key)
        except LocalStoreError as e:
            self.error_count += 1
            draft_operations.labels(operation='get', result='error').inc()
            logger.error(
                f"Draft read failed, treating as no draft: {str(e)}",
                extra={"draft_key": draft_key}
            )
            return None

        self.read_count += 1

        if payload is None:
            draft_operations.labels(operation='get', result='miss').inc()
            return None

        try:
            record = DraftRecord.from_dict(payload)
        except DraftFormatError as e:
            self.error_count += 1
            draft_operations.labels(operation='get', result='malformed').inc()
            logger.warning(
                f"Malformed draft ignored: {str(e)}",
                extra={"draft_key": draft_key}
            )
            return None

        draft_operations.labels(operation='get', result='hit').inc()
        return record

    async def put(self, draft_key: DraftKey, record: DraftRecord) -> bool:
        """
        Write (overwrite) the draft for draft_key.

        Returns:
            True on success; failures are logged, never raised
        """
        record.draft_key = draft_key
        record.saved_at = _utc_now_iso()

        try:
            await self._store.put(DRAFTS_STORE, draft_key, record.to_dict())
        except LocalStoreError as e:
            self.error_count += 1
            draft_operations.labels(operation='put', result='error').inc()
            logger.error(
                f"Draft write failed: {str(e)}",
                extra={"draft_key": draft_key}
            )
            return False

        self.write_count += 1
        draft_operations.labels(operation='put', result='success').inc()
        logger.debug(
            "Draft saved",
            extra={"draft_key": draft_key, "item_count": len(record.items)}
        )
        return True

    async def delete(self, draft_key: DraftKey) -> bool:
        """
        Delete the draft for draft_key (absent key counts as success).

        Returns:
            True on success; failures are logged, never raised
        """
        try:
            await self._store.delete(DRAFTS_STORE, draft_key)
        except LocalStoreError as e:
            self.error_count += 1
            draft_operations.labels(operation='delete', result='error').inc()
            logger.error(
                f"Draft delete failed: {str(e)}",
                extra={"draft_key": draft_key}
            )
            return False

        self.delete_count += 1
        draft_operations.labels(operation='delete', result='success').inc()
        logger.debug("Draft deleted", extra={"draft_key": draft_key})
        return True

    async def list_keys(self) -> List[DraftKey]:
        """Keys of every stored draft, without loading draft bodies."""
        try:
            return await self._store.keys(DRAFTS_STORE)
        except LocalStoreError as e:
            self.error_count += 1
            draft_operations.labels(operation='list', result='error').inc()
            logger.error(f"Draft key listing failed: {str(e)}")
            return []

    def get_stats(self) -> Dict[str, Any]:
        """Get draft store statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "deletes": self.delete_count,
            "errors": self.error_count,
        }
