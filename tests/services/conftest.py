"""Service test fixtures: wallet provider, adapter, confirmation prompt, coordinator.

Invariants:
    - Receipt polling and payment timeouts are shortened so tests finish fast
    - The confirmation prompt records every quote it was shown
"""

import asyncio
from decimal import Decimal

import pytest

from skillchain.services.enrollment_coordinator import EnrollmentCoordinator
from skillchain.services.pending_enrollments import PendingEnrollmentLedger
from skillchain.services.sync_reconciler import SyncReconciler
from skillchain.services.wallet_adapter import WalletAdapter

from tests.mock_wallet import RECIPIENT, FakeWalletProvider


class FakeConfirm:
    """User confirmation prompt with a scripted answer."""

    def __init__(self, answer: bool = True):
        self.answer = answer
        self.quotes = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def __call__(self, quote) -> bool:
        self.quotes.append(quote)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.fixture
def provider():
    return FakeWalletProvider(balance=Decimal("0.2"))


@pytest.fixture
def wallet(provider):
    return WalletAdapter(provider, payment_timeout_seconds=1.0, receipt_poll_interval_ms=1)


@pytest.fixture
def confirm():
    return FakeConfirm()


@pytest.fixture
def ledger(storage):
    return PendingEnrollmentLedger(storage)


@pytest.fixture
def coordinator(store, wallet, auth_session, confirm, ledger):
    return EnrollmentCoordinator(
        store,
        wallet,
        auth_session,
        confirm,
        RECIPIENT,
        ledger=ledger,
        retry_budget=3,
        retry_base_delay_ms=0,
        retry_max_delay_ms=0,
    )


@pytest.fixture
async def reconciler(store):
    sync = SyncReconciler(store, interval_seconds=3600)
    store.add_mutation_listener(sync.schedule)
    yield sync
    await sync.stop()
