"""
Order Module
============
Line items and the in-memory item collection for one editing session.

- LineItem: immutable, canonical shape (memo always present)
- normalize_items: stable structural form for comparisons
- OrderItemCollection: add/merge, update, remove, reorder, reset, total
- Commit-time validation (quantities must be positive)
"""

import logging
import math
from typing import Dict, List, Any, Optional, Tuple, Iterable, Mapping, Union
from dataclasses import dataclass, asdict, replace
from enum import Enum

from prometheus_client import Counter


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_item_mutations = Counter(
    'order_item_mutations_total',
    'Line item mutations',
    ['operation']
)
order_validation_failures = Counter(
    'order_validation_failures_total',
    'Order validation failures',
    ['reason']
)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class OrderValidationError(Exception):
    """Raised when an item collection cannot be committed."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid order")


# ============================================================================
# LINE ITEM
# ============================================================================

class Unit(str, Enum):
    """Order unit for a line item."""
    PIECE = "ea"
    BOX = "box"


@dataclass(frozen=True)
class LineItem:
    """
    One product entry within an order.

    frozen=True: mutations go through dataclasses.replace, so a baseline
    captured at session start can never be altered by later edits.
    """
    key: str
    name: str
    unit_price: float
    quantity: int
    unit: Unit
    memo: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (unit as its string value)."""
        data = asdict(self)
        data["unit"] = self.unit.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LineItem':
        """
        Build from a mapping.

        Accepts items loaded from storage (snake_case) as well as items
        coming from the network (``barcode`` / ``unitPrice`` / ``price``).

        Raises:
            KeyError, ValueError: If required fields are missing or invalid
        """
        key = data["key"] if "key" in data else data["barcode"]

        if "unit_price" in data:
            unit_price = data["unit_price"]
        elif "unitPrice" in data:
            unit_price = data["unitPrice"]
        else:
            unit_price = data["price"]

        return cls(
            key=key,
            name=data.get("name") or "",
            unit_price=unit_price,
            quantity=data["quantity"],
            unit=Unit(data.get("unit") or Unit.PIECE),
            memo=data.get("memo") or "",
        )

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity


ItemLike = Union[LineItem, Mapping[str, Any]]


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_item(item: ItemLike) -> LineItem:
    """Canonicalize a single item (see normalize_items)."""
    if isinstance(item, LineItem):
        if isinstance(item.unit, Unit) and item.memo is not None:
            return item
        return replace(item, unit=Unit(item.unit), memo=item.memo or "")
    return LineItem.from_dict(item)


def normalize_items(items: Optional[Iterable[ItemLike]]) -> List[LineItem]:
    """
    Canonicalize optional fields so equality comparisons are stable.

    Fixed field order, memo coerced to "" when missing or None, unit
    coerced to Unit. Quantity and unit price are left untouched.
    Idempotent and order-preserving.
    """
    if not items:
        return []
    return [normalize_item(item) for item in items]


# ============================================================================
# ORDER ITEM COLLECTION
# ============================================================================

class OrderItemCollection:
    """
    Ordered, unique-by-key list of line items for one editing session.

    Every mutation keeps the list normalized. Existing items keep their
    relative order; new items append at the end.
    """

    def __init__(self, items: Optional[Iterable[ItemLike]] = None):
        self._items: List[LineItem] = self._unique(items)
        self.modification_count = 0

    @staticmethod
    def _unique(items: Optional[Iterable[ItemLike]]) -> List[LineItem]:
        """Normalized copy of items; later duplicates of a key are dropped."""
        seen = set()
        unique: List[LineItem] = []

        for item in normalize_items(items):
            if item.key in seen:
                logger.warning(f"Duplicate key {item.key} dropped")
                continue
            seen.add(item.key)
            unique.append(item)

        return unique

    # ========================================================================
    # READ ACCESS
    # ========================================================================

    @property
    def items(self) -> List[LineItem]:
        """Current items (copy of the list; items themselves are immutable)."""
        return list(self._items)

    @property
    def total(self) -> int:
        """floor(sum(unit_price * quantity)), recomputed on every read."""
        return math.floor(math.fsum(item.unit_price * item.quantity for item in self._items))

    def get(self, key: str) -> Optional[LineItem]:
        for item in self._items:
            if item.key == key:
                return item
        return None

    def __contains__(self, key: str) -> bool:
        return self._index_of(key) is not None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def _index_of(self, key: str) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.key == key:
                return index
        return None

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def add_or_merge(
        self,
        product: Any,
        quantity: int,
        unit: Union[Unit, str],
        memo: Optional[str] = None
    ) -> Optional[LineItem]:
        """
        Add a product or merge it into the existing line.

        Existing key: quantity is incremented, unit and memo overwritten and
        the unit price refreshed from the product. If the merged quantity
        drops to zero or below the line is removed.
        New key: appended, unless the quantity is zero or below.

        Args:
            product: Catalog product exposing key, name and unit_price
            quantity: Quantity to add (may be negative to subtract)
            unit: Order unit
            memo: Optional line memo

        Returns:
            The resulting item, or None if no item remains for the key
        """
        unit = Unit(unit)
        memo = memo or ""
        index = self._index_of(product.key)

        if index is not None:
            existing = self._items[index]
            new_quantity = existing.quantity + quantity

            if new_quantity <= 0:
                del self._items[index]
                self._touch("merge_remove")
                logger.info(f"Merged {product.key} to {new_quantity}, removed line")
                return None

            merged = replace(
                existing,
                quantity=new_quantity,
                unit=unit,
                memo=memo,
                unit_price=product.unit_price,
            )
            self._items[index] = merged
            self._touch("merge")
            logger.debug(
                f"Merged {product.key}: {existing.quantity} + {quantity} = {new_quantity}"
            )
            return merged

        if quantity <= 0:
            logger.debug(f"Ignored add of {product.key} with quantity {quantity}")
            return None

        item = LineItem(
            key=product.key,
            name=product.name,
            unit_price=product.unit_price,
            quantity=quantity,
            unit=unit,
            memo=memo,
        )
        self._items.append(item)
        self._touch("add")
        logger.debug(f"Added {product.key} (quantity={quantity})")
        return item

    def update(self, key: str, **changes: Any) -> Optional[LineItem]:
        """
        Merge field changes into the item located by key.

        No-op when the key is absent: callers validate existence first.
        Setting quantity to 0 removes the line.

        Returns:
            Updated item, or None if absent or removed
        """
        index = self._index_of(key)
        if index is None:
            logger.debug(f"Update ignored, {key} not in collection")
            return None

        if changes.get("quantity") == 0:
            self.remove(key)
            return None

        changes.pop("key", None)
        if "unit" in changes:
            changes["unit"] = Unit(changes["unit"])
        if "memo" in changes:
            changes["memo"] = changes["memo"] or ""

        updated = replace(self._items[index], **changes)
        self._items[index] = updated
        self._touch("update")
        return updated

    def remove(self, key: str) -> bool:
        """Remove the item with key. Returns False (no-op) when absent."""
        before = len(self._items)
        self._items = [item for item in self._items if item.key != key]

        if len(self._items) == before:
            return False

        self._touch("remove")
        return True

    def reorder(self, start_index: int, end_index: int) -> bool:
        """
        Move one item from start_index to end_index.

        Returns:
            False if either index is out of range
        """
        size = len(self._items)
        if not (0 <= start_index < size and 0 <= end_index < size):
            logger.warning(f"Reorder out of range: {start_index} -> {end_index} (size={size})")
            return False

        item = self._items.pop(start_index)
        self._items.insert(end_index, item)
        self._touch("reorder")
        return True

    def reset(self, items: Optional[Iterable[ItemLike]] = None):
        """Replace the whole collection with a normalized copy of items."""
        self._items = self._unique(items)
        self._touch("reset")

    def _touch(self, operation: str):
        self.modification_count += 1
        order_item_mutations.labels(operation=operation).inc()

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Commit-time validation.

        Checks:
        - Quantities are positive integers
        - Prices are non-negative
        - Keys are unique

        Returns:
            (is_valid, error_messages)
        """
        errors = []
        seen = set()

        for item in self._items:
            if item.key in seen:
                errors.append(f"Duplicate key: {item.key}")
            seen.add(item.key)

            if not isinstance(item.quantity, int) or isinstance(item.quantity, bool):
                errors.append(f"Invalid quantity for {item.key}: {item.quantity!r}")
            elif item.quantity <= 0:
                errors.append(f"Invalid quantity for {item.key}: {item.quantity}")

            if item.unit_price < 0:
                errors.append(f"Invalid price for {item.key}: {item.unit_price}")

        is_valid = len(errors) == 0

        if not is_valid:
            logger.warning(f"Order validation failed: {errors}")
            for error in errors:
                order_validation_failures.labels(reason=error.split(':')[0]).inc()

        return is_valid, errors

    def to_dicts(self) -> List[Dict[str, Any]]:
        """Export items for drafts and the remote store."""
        return [item.to_dict() for item in self._items]


# ============================================================================
# EXAMPLE USAGE
# ============================================================================

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    @dataclass(frozen=True)
    class _Product:
        key: str
        name: str
        unit_price: float

    collection = OrderItemCollection()
    collection.add_or_merge(_Product("8801", "Ramen", 1250.5), 2, Unit.PIECE)
    collection.add_or_merge(_Product("8801", "Ramen", 1250.5), 1, Unit.BOX, memo="top shelf")
    collection.add_or_merge(_Product("8802", "Tofu", 990), 4, "ea")

    for line in collection:
        print(f"  {line.key} {line.name} x{line.quantity} {line.unit.value} {line.memo!r}")
    print(f"Total: {collection.total}")
