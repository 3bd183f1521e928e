"""Wallet Schemas: read-only snapshots handed out by WalletAdapter.

Invariants:
    - All models are frozen; only WalletAdapter creates WalletSession instances
    - balance is Decimal in the native currency (converted from wei)
"""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict

from skillchain.core.domain_types import WalletEventKind


class WalletSession(BaseModel):
    """Connected account as last observed by the adapter. balance may be stale."""
    model_config = ConfigDict(frozen=True)

    address: str | None
    balance: Decimal
    network_id: str | None = None

    @property
    def connected(self) -> bool:
        return self.address is not None


class WalletEvent(BaseModel):
    """Provider notification delivered to on_account_or_network_change handlers."""
    model_config = ConfigDict(frozen=True)

    kind: WalletEventKind
    payload: Any = None


class PaymentQuote(BaseModel):
    """What the user is asked to approve before funds move."""
    model_config = ConfigDict(frozen=True)

    course_id: str
    course_title: str
    amount: Decimal
    recipient: str
    payer_address: str
    balance: Decimal
