"""
Order Entry Application
=======================
Wires the local store, catalog bootstrap, remote store and editing sessions
together, and owns process-wide logging setup.

Usage:
    app = OrderEntryApp(get_config())
    await app.start()
    session = await app.open_order(order)
    session.add_or_merge(app.products.product("8801"), 2)
    await session.commit()
    await app.stop()
"""

import asyncio
import logging
import sys
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone

import structlog

from bootstrap import BootstrapLoader, DomainStatus
from cache_store import CacheStore
from catalog import CATALOG_DOMAINS, CUSTOMERS, ORDERS, PRODUCTS, CustomerCatalog, ProductCatalog
from config import Config, get_config, validate_configuration
from db import RemoteStore, RemoteWriteError, SupabaseRemoteStore
from draft_store import DRAFTS_STORE, DraftKey, DraftStore
from draft_sync import DraftSync
from local_store import LocalStore
from remote_watcher import RemoteCollectionWatcher
from session_state import TERMINAL_STATES


logger = logging.getLogger(__name__)


# ============================================================================
# LOGGING
# ============================================================================

def configure_logging(config: Optional[Config] = None):
    """
    Configure stdlib logging and route structlog through it.

    LOG_JSON switches both stdlib and structlog records to JSON lines.
    """
    config = config or get_config()
    level = getattr(logging, config.logging.log_level, logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if config.logging.log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_completed(order: Dict[str, Any]) -> bool:
    """Completed (sent) orders are read-only."""
    return bool(order.get("completedAt") or order.get("completionDetails"))


# ============================================================================
# APPLICATION
# ============================================================================

class OrderEntryApp:
    """
    Application context for the order entry screens.

    Exposes the catalogs, editing sessions and draft badges.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        remote: Optional[RemoteStore] = None,
        local_store: Optional[LocalStore] = None
    ):
        self.config = config or get_config()

        self.local_store = local_store or LocalStore(
            self.config.storage.local_db_path,
            stores=(DRAFTS_STORE,) + CATALOG_DOMAINS
        )
        self.draft_store = DraftStore(self.local_store)
        self.cache_store = CacheStore(self.local_store)

        if remote is None and self.config.supabase.enabled:
            remote = SupabaseRemoteStore(
                self.config.supabase.url,
                self.config.supabase.key,
                timeout=self.config.supabase.timeout,
                poll_interval=self.config.supabase.poll_interval
            )
        self.remote = remote

        self.customers = CustomerCatalog()
        self.products = ProductCatalog()

        self.loader = BootstrapLoader(
            self.cache_store,
            RemoteCollectionWatcher(remote) if remote is not None else None,
            domains=CATALOG_DOMAINS,
            listeners=[self._on_collection],
            sync_timeout=self.config.bootstrap.sync_timeout,
            write_back=self.config.bootstrap.enable_cache_write_back
        )

        self._sessions: Dict[DraftKey, DraftSync] = {}
        self._open_locks: Dict[DraftKey, asyncio.Lock] = {}
        self.is_running = False

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Open local storage and start the catalog bootstrap."""
        if self.is_running:
            return

        await self.local_store.open()
        await self.loader.start()
        self.is_running = True

        logger.info(
            "Order entry app started",
            extra={
                "remote_enabled": self.remote is not None,
                "customers": len(self.customers),
                "products": len(self.products)
            }
        )

    async def stop(self):
        """Close open sessions (keeping their drafts) and release resources."""
        if not self.is_running:
            return

        self.is_running = False

        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()

        await self.loader.stop()

        if self.remote is not None:
            await self.remote.close()

        await self.local_store.close()
        logger.info("Order entry app stopped")

    def _on_collection(self, domain: str, entities: List[Dict[str, Any]], source: str):
        if domain == CUSTOMERS:
            self.customers.replace(entities)
        elif domain == PRODUCTS:
            self.products.replace(entities)

    # ========================================================================
    # SESSIONS
    # ========================================================================

    async def open_order(self, order: Dict[str, Any]) -> DraftSync:
        """
        Open an editing session for an existing order.

        Completed orders open read-only and ignore any draft.
        """
        def build(draft_key: DraftKey) -> DraftSync:
            return DraftSync(
                draft_key,
                self.draft_store,
                save_order=self._save_existing_order,
                baseline_items=order.get("items") or [],
                baseline_memo=order.get("memo") or "",
                baseline_customer=order.get("customer"),
                order=order,
                read_only=is_completed(order),
                delay=self.config.drafts.debounce_seconds
            )

        return await self._open_session(order["id"], build)

    async def open_new_order(self) -> DraftSync:
        """Open (or resume) the new-order session under the fixed draft key."""
        def build(draft_key: DraftKey) -> DraftSync:
            return DraftSync(
                draft_key,
                self.draft_store,
                save_order=self._save_new_order,
                delay=self.config.drafts.debounce_seconds
            )

        return await self._open_session(self.config.drafts.new_order_key, build)

    async def _open_session(
        self,
        draft_key: DraftKey,
        build: Callable[[DraftKey], DraftSync]
    ) -> DraftSync:
        # One session per draft key; concurrent openers wait for the first
        lock = self._open_locks.setdefault(draft_key, asyncio.Lock())

        async with lock:
            existing = self._active_session(draft_key)
            if existing is not None:
                return existing

            session = build(draft_key)
            await session.start()
            self._sessions[draft_key] = session
            return session

    def _active_session(self, draft_key: DraftKey) -> Optional[DraftSync]:
        session = self._sessions.get(draft_key)
        if session is None:
            return None
        if session.state in TERMINAL_STATES:
            del self._sessions[draft_key]
            return None
        return session

    async def close_session(self, draft_key: DraftKey):
        """Leave an editor; its latest edit stays as a draft."""
        session = self._sessions.pop(draft_key, None)
        if session is not None:
            await session.close()

    async def draft_keys(self) -> List[DraftKey]:
        """Orders with an unsaved draft (for list badges)."""
        return await self.draft_store.list_keys()

    # ========================================================================
    # AUTHORITATIVE WRITERS
    # ========================================================================

    async def _save_existing_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.remote is None:
            raise RemoteWriteError("Remote store not configured")

        record = {**payload, "updatedAt": _utc_now_iso()}
        return await self.remote.put(ORDERS, record)

    async def _save_new_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.remote is None:
            raise RemoteWriteError("Remote store not configured")
        if not payload.get("customer"):
            raise ValueError("Select a customer before saving the order")

        now = _utc_now_iso()
        record = {
            **payload,
            "date": now[:10],
            "createdAt": now,
            "updatedAt": now,
        }
        return await self.remote.put(ORDERS, record)

    # ========================================================================
    # STATUS
    # ========================================================================

    @property
    def is_catalog_ready(self) -> bool:
        """True when every catalog domain shows something (cached or live)."""
        return all(
            self.loader.status(domain) is not DomainStatus.IDLE
            for domain in CATALOG_DOMAINS
        )

    def get_status(self) -> Dict[str, Any]:
        """Get application status."""
        status = {
            "running": self.is_running,
            "catalogs": self.loader.get_status(),
            "advisories": self.loader.advisories,
            "sessions": {
                str(key): session.get_status()
                for key, session in self._sessions.items()
            },
        }
        if isinstance(self.remote, SupabaseRemoteStore):
            status["remote"] = self.remote.get_stats()
        return status


# ============================================================================
# ENTRYPOINT
# ============================================================================

async def main():
    config = get_config()
    configure_logging(config)
    validate_configuration()

    app = OrderEntryApp(config)
    await app.start()

    try:
        for domain in CATALOG_DOMAINS:
            settled = await app.loader.wait_settled(domain, timeout=config.bootstrap.sync_timeout)
            logger.info(
                f"{domain}: {'live' if settled else 'cache only'}",
                extra={"domain": domain, "count": len(app.loader.get_all(domain))}
            )

        logger.info(f"Pending drafts: {await app.draft_keys()}")

        # Keep syncing until interrupted
        await asyncio.Event().wait()
    finally:
        await app.stop()


def run():
    """Console entrypoint."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
