"""
Change Tracker
==============
Classifies edited line items against the session baseline.

Each current item is NEW (no baseline entry), MODIFIED (quantity, unit or
memo differ, with per-field flags) or UNCHANGED. Baseline items missing from
the current list are reported separately as removed keys for the save path.
"""

import logging
from typing import Dict, List, Iterable, Optional
from dataclasses import dataclass
from enum import Enum

from order import LineItem, ItemLike, normalize_items


logger = logging.getLogger(__name__)


class ItemStatus(Enum):
    """Per-item status relative to the baseline."""
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ChangeStatus:
    """Status plus the field-level change map for one line item."""
    status: ItemStatus
    quantity_changed: bool = False
    unit_changed: bool = False
    memo_changed: bool = False

    @property
    def is_new(self) -> bool:
        return self.status is ItemStatus.NEW

    @property
    def is_modified(self) -> bool:
        return self.status is ItemStatus.MODIFIED

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "quantity_changed": self.quantity_changed,
            "unit_changed": self.unit_changed,
            "memo_changed": self.memo_changed,
        }


_NEW = ChangeStatus(ItemStatus.NEW)
_UNCHANGED = ChangeStatus(ItemStatus.UNCHANGED)


def compare_items(original: LineItem, current: LineItem) -> ChangeStatus:
    """Field-by-field comparison of one baseline item and its edited form."""
    quantity_changed = original.quantity != current.quantity
    unit_changed = original.unit != current.unit
    memo_changed = original.memo != current.memo

    if not (quantity_changed or unit_changed or memo_changed):
        return _UNCHANGED

    return ChangeStatus(
        status=ItemStatus.MODIFIED,
        quantity_changed=quantity_changed,
        unit_changed=unit_changed,
        memo_changed=memo_changed,
    )


def classify(
    baseline: Iterable[ItemLike],
    current: Iterable[ItemLike]
) -> Dict[str, ChangeStatus]:
    """
    Classify every current item against the baseline.

    The result follows the order of ``current`` (what renders), and is
    independent of baseline ordering. O(n) via a key lookup.

    Args:
        baseline: Items as last saved to the authoritative store
        current: Items as currently edited

    Returns:
        Mapping of item key to ChangeStatus
    """
    lookup = {item.key: item for item in normalize_items(baseline)}
    result: Dict[str, ChangeStatus] = {}

    for item in normalize_items(current):
        original = lookup.get(item.key)
        if original is None:
            result[item.key] = _NEW
        else:
            result[item.key] = compare_items(original, item)

    return result


def removed_keys(
    baseline: Iterable[ItemLike],
    current: Iterable[ItemLike]
) -> List[str]:
    """Baseline keys absent from current, in baseline order."""
    present = {item.key for item in normalize_items(current)}
    return [item.key for item in normalize_items(baseline) if item.key not in present]


def has_changes(
    baseline: Iterable[ItemLike],
    current: Iterable[ItemLike],
    baseline_memo: Optional[str] = "",
    memo: Optional[str] = ""
) -> bool:
    """
    True when the normalized item lists or the order memos differ.

    Item order counts: a reordered list is a change worth keeping as a draft.
    """
    if (baseline_memo or "") != (memo or ""):
        return True
    return normalize_items(baseline) != normalize_items(current)


def summarize(statuses: Dict[str, ChangeStatus]) -> Dict[str, int]:
    """Count items per status (for badges and logs)."""
    counts = {status.value: 0 for status in ItemStatus}
    for change in statuses.values():
        counts[change.status.value] += 1
    return counts
