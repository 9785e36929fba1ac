"""
Remote Collection Watcher
=========================
Turns a remote store subscription into a stream of immutable collection
snapshots, logging what changed between consecutive ones.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from datetime import datetime, timezone
from dataclasses import dataclass, field

from catalog import entity_key
from db import RemoteStore, snapshot_checksum


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionSnapshot:
    """One full copy of a remote collection."""
    domain: str
    entities: Tuple[Dict[str, Any], ...]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    checksum: str = ""

    @classmethod
    def capture(cls, domain: str, entities: List[Dict[str, Any]]) -> 'CollectionSnapshot':
        copies = tuple(dict(entity) for entity in entities)
        return cls(
            domain=domain,
            entities=copies,
            checksum=snapshot_checksum(list(copies)),
        )

    def to_list(self) -> List[Dict[str, Any]]:
        return [dict(entity) for entity in self.entities]

    def __len__(self) -> int:
        return len(self.entities)


@dataclass(frozen=True)
class SnapshotDiff:
    added: Tuple[Any, ...] = ()
    removed: Tuple[Any, ...] = ()
    changed: Tuple[Any, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def to_dict(self) -> Dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "changed": len(self.changed),
        }


def diff_snapshots(
    old: Optional[CollectionSnapshot],
    new: CollectionSnapshot
) -> SnapshotDiff:
    """Keys added, removed and changed between two snapshots of a domain."""
    def index(snapshot: Optional[CollectionSnapshot]) -> Dict[Any, Dict[str, Any]]:
        if snapshot is None:
            return {}
        return {
            entity_key(snapshot.domain, entity): entity
            for entity in snapshot.entities
        }

    before = index(old)
    after = index(new)

    added = tuple(key for key in after if key not in before)
    removed = tuple(key for key in before if key not in after)
    changed = tuple(
        key for key, entity in after.items()
        if key in before and before[key] != entity
    )

    return SnapshotDiff(added=added, removed=removed, changed=changed)


class RemoteCollectionWatcher:
    """
    Wraps RemoteStore.subscribe into CollectionSnapshot streams.

    Identical consecutive snapshots are dropped.
    """

    def __init__(self, remote: RemoteStore):
        self.remote = remote
        self.snapshot_counts: Dict[str, int] = {}

    async def connect(self):
        await self.remote.connect()

    async def watch(self, domain: str) -> AsyncIterator[CollectionSnapshot]:
        """
        Yield a snapshot per remote change.

        Raises:
            RemoteConnectionError: If the subscription cannot be started
        """
        previous: Optional[CollectionSnapshot] = None

        async for entities in self.remote.subscribe(domain):
            snapshot = CollectionSnapshot.capture(domain, entities)

            if previous is not None and snapshot.checksum == previous.checksum:
                continue

            diff = diff_snapshots(previous, snapshot)
            self.snapshot_counts[domain] = self.snapshot_counts.get(domain, 0) + 1

            logger.info(
                f"Snapshot for {domain}: {len(snapshot)} entities",
                extra={"domain": domain, "checksum": snapshot.checksum[:12], **diff.to_dict()}
            )

            previous = snapshot
            yield snapshot
