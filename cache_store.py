"""
Cache Store Module
==================
Local mirror of the catalog collections, read at startup before the remote
store answers.

The cache is advisory: every failure is logged and degrades to "no cache",
nothing is raised to the bootstrap path.
"""

import logging
from typing import Dict, List, Any, Iterable, Mapping

from prometheus_client import Counter

from catalog import CATALOG_DOMAINS, entity_key
from local_store import LocalStore, LocalStoreError


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

cache_writes = Counter(
    'catalog_cache_writes_total',
    'Catalog cache writes',
    ['domain', 'result']
)
cache_reads = Counter(
    'catalog_cache_reads_total',
    'Catalog cache reads',
    ['domain', 'result']
)


class CacheStore:
    """
    Per-domain entity cache on the local keyed store.

    One store (table) per domain; entities are keyed by the domain's
    business key.
    """

    def __init__(self, local_store: LocalStore, domains: Iterable[str] = CATALOG_DOMAINS):
        self._store = local_store
        self.domains = tuple(domains)

    async def get_all(self, domain: str) -> List[Dict[str, Any]]:
        """All cached entities for domain ([] when empty or unreadable)."""
        try:
            entities = await self._store.get_all(domain)
        except LocalStoreError as e:
            cache_reads.labels(domain=domain, result='error').inc()
            logger.error(
                f"Cache read failed: {str(e)}",
                extra={"domain": domain}
            )
            return []

        cache_reads.labels(domain=domain, result='hit' if entities else 'empty').inc()
        return entities

    async def replace_all(self, domain: str, entities: Iterable[Mapping[str, Any]]) -> int:
        """
        Clear the domain then write every entity.

        Per-entity writes are best-effort: one bad entity does not abort
        the rest.

        Returns:
            Number of entities written
        """
        entries = []
        skipped = 0

        for entity in entities:
            key = entity_key(domain, entity)
            if key is None:
                skipped += 1
                continue
            entries.append((key, dict(entity)))

        try:
            written, failed = await self._store.replace_all(domain, entries)
        except LocalStoreError as e:
            cache_writes.labels(domain=domain, result='error').inc()
            logger.error(
                f"Cache replace failed: {str(e)}",
                extra={"domain": domain, "entity_count": len(entries)}
            )
            return 0

        failed += skipped
        cache_writes.labels(domain=domain, result='success').inc()

        if failed:
            logger.warning(
                f"Cache replace for {domain} skipped {failed} entities",
                extra={"domain": domain, "written": written, "failed": failed}
            )
        else:
            logger.debug(
                f"Cache replaced for {domain}",
                extra={"domain": domain, "written": written}
            )

        return written

    async def put_one(self, domain: str, entity: Mapping[str, Any]) -> bool:
        """Insert or update one cached entity."""
        key = entity_key(domain, entity)
        if key is None:
            logger.warning("Cache put skipped, entity has no key", extra={"domain": domain})
            return False

        try:
            await self._store.put(domain, key, dict(entity))
        except LocalStoreError as e:
            cache_writes.labels(domain=domain, result='error').inc()
            logger.error(
                f"Cache put failed: {str(e)}",
                extra={"domain": domain, "key": key}
            )
            return False

        cache_writes.labels(domain=domain, result='success').inc()
        return True

    async def remove_one(self, domain: str, key: Any) -> bool:
        try:
            await self._store.delete(domain, key)
        except LocalStoreError as e:
            logger.error(
                f"Cache remove failed: {str(e)}",
                extra={"domain": domain, "key": key}
            )
            return False
        return True

    async def clear(self, domain: str) -> bool:
        try:
            await self._store.clear(domain)
        except LocalStoreError as e:
            logger.error(f"Cache clear failed: {str(e)}", extra={"domain": domain})
            return False

        logger.info(f"Cache cleared for {domain}")
        return True
