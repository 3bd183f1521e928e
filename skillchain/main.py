"""SkillChain composition root: wires settings, logging, backend, cache and services.

Invariants:
    - Every service receives its collaborators explicitly; nothing is module-global
    - open_marketplace() always closes what it opened (HTTP client, cache engine,
      reconciler timer), also when the body raises
    - An unusable cache never blocks startup: the store runs network-only

Design Decisions:
    - asynccontextmanager lifecycle: setup before yield, cleanup after
    - Storage and transport are injectable so tests and embedders can swap them
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from skillchain.config import Settings, get_settings
from skillchain.core.errors import StorageError
from skillchain.core.repository_protocols import AuthSession, SnapshotStorage, WalletProvider
from skillchain.infrastructure.backend_client import BackendClient
from skillchain.infrastructure.observability import setup_logging
from skillchain.infrastructure.snapshot_storage import SqlSnapshotStorage
from skillchain.services.course_store import CourseStore
from skillchain.services.enrollment_coordinator import ConfirmPayment, EnrollmentCoordinator
from skillchain.services.pending_enrollments import PendingEnrollmentLedger
from skillchain.services.sync_reconciler import SyncReconciler
from skillchain.services.wallet_adapter import WalletAdapter

logger = logging.getLogger(__name__)


@dataclass
class Marketplace:
    """Wired services for one signed-in (or anonymous) user."""
    settings: Settings
    backend: BackendClient
    wallet: WalletAdapter
    store: CourseStore
    coordinator: EnrollmentCoordinator
    reconciler: SyncReconciler
    ledger: PendingEnrollmentLedger


async def _open_storage(settings: Settings) -> SqlSnapshotStorage | None:
    storage = SqlSnapshotStorage(settings.cache_database_url, settings.cache_namespace)
    try:
        await storage.init()
    except StorageError as e:
        logger.warning(f"Cache disabled: {e.message}")
        await storage.close()
        return None
    return storage


@asynccontextmanager
async def open_marketplace(
    session: AuthSession,
    provider: WalletProvider | None,
    confirm: ConfirmPayment,
    settings: Settings | None = None,
    storage: SnapshotStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    start_timer: bool = True,
) -> AsyncIterator[Marketplace]:
    """Startup/shutdown lifecycle for the client core."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    owned_storage = None
    if storage is None:
        owned_storage = await _open_storage(settings)
        storage = owned_storage

    backend = BackendClient(
        settings.api_base_url,
        session,
        timeout_seconds=settings.request_timeout_seconds,
        max_retries=settings.backend_max_retries,
        base_delay_ms=settings.backend_base_delay_ms,
        max_delay_ms=settings.backend_max_delay_ms,
        transport=transport,
    )
    wallet = WalletAdapter(
        provider,
        payment_timeout_seconds=settings.payment_timeout_seconds,
        receipt_poll_interval_ms=settings.receipt_poll_interval_ms,
    )
    store = CourseStore(backend, storage, session, include_drafts=settings.include_drafts)
    reconciler = SyncReconciler(store, settings.sync_interval_seconds)
    ledger = PendingEnrollmentLedger(storage)
    coordinator = EnrollmentCoordinator(
        store,
        wallet,
        session,
        confirm,
        settings.payment_recipient,
        ledger=ledger,
        retry_budget=settings.enrollment_retry_budget,
        retry_base_delay_ms=settings.enrollment_retry_base_delay_ms,
        retry_max_delay_ms=settings.enrollment_retry_max_delay_ms,
    )
    marketplace = Marketplace(
        settings=settings, backend=backend, wallet=wallet, store=store,
        coordinator=coordinator, reconciler=reconciler, ledger=ledger,
    )

    try:
        await store.initialize()
        store.add_mutation_listener(reconciler.schedule)
        if start_timer:
            reconciler.start()
        await coordinator.resume_pending()
        logger.info("SkillChain core started")
        yield marketplace
    finally:
        logger.info("SkillChain core shutting down")
        await reconciler.stop()
        store.dispose()
        await backend.aclose()
        if owned_storage is not None:
            await owned_storage.close()
