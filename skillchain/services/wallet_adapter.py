"""Wallet Adapter: stateful façade over an injected wallet provider.

Invariants:
    - WalletSession is owned and mutated only here; callers receive frozen snapshots
    - A missing provider is a normal condition -> WalletUnavailableError, never a crash
    - pay() fast-fails InsufficientFundsError from the balance snapshot before any provider call
    - pay() returns only after the network confirms the transaction, bounded by
      payment_timeout_seconds (PaymentTimeoutError otherwise)
    - Account/chain/disconnect events invalidate the session BEFORE handlers run

Design Decisions:
    - Provider events are subscriptions registered once in __init__, not a polling loop
    - Balance is refreshed lazily: connect(), ensure_session(), and a local estimate after pay()
"""

import asyncio
import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from skillchain.core.domain_types import (
    NATIVE_TRANSFER_GAS,
    PROVIDER_UNAUTHORIZED,
    PROVIDER_USER_REJECTED,
    WEI_PER_UNIT,
    WalletEventKind,
)
from skillchain.core.errors import (
    ErrorContext,
    InsufficientFundsError,
    PaymentFailedError,
    PaymentTimeoutError,
    ProviderError,
    UserRejectedError,
    ValidationError,
    WalletUnavailableError,
)
from skillchain.core.repository_protocols import WalletProvider
from skillchain.schemas.wallet import WalletEvent, WalletSession

logger = logging.getLogger(__name__)

WalletChangeHandler = Callable[[WalletEvent], None]

_REJECTED_CODES = {PROVIDER_USER_REJECTED, "ACTION_REJECTED"}


def wei_to_amount(raw: Any) -> Decimal:
    """Provider balances arrive as hex strings ("0x...") or ints of wei."""
    if isinstance(raw, str):
        wei = int(raw, 16) if raw.lower().startswith("0x") else int(raw)
    else:
        wei = int(raw)
    return Decimal(wei) / Decimal(WEI_PER_UNIT)


def amount_to_wei(amount: Decimal) -> int:
    return int(amount * WEI_PER_UNIT)


def _is_rejection(e: ProviderError) -> bool:
    return e.code in _REJECTED_CODES


def _is_insufficient_funds(e: ProviderError) -> bool:
    return e.code == "INSUFFICIENT_FUNDS" or "insufficient funds" in e.message.lower()


def _receipt_succeeded(receipt: dict) -> bool:
    status = receipt.get("status")
    return status in ("0x1", 1, "1", True)


class WalletAdapter:
    """Connect, read balance, pay, and observe account/network changes."""

    def __init__(
        self,
        provider: WalletProvider | None,
        payment_timeout_seconds: float = 300.0,
        receipt_poll_interval_ms: int = 1_500,
    ):
        self._provider = provider
        self._session: WalletSession | None = None
        self._handlers: list[WalletChangeHandler] = []
        self.payment_timeout_seconds = payment_timeout_seconds
        self.receipt_poll_interval_ms = receipt_poll_interval_ms
        if provider is not None:
            for kind in WalletEventKind:
                provider.on(kind.value, self._make_listener(kind))

    @property
    def available(self) -> bool:
        return self._provider is not None

    @property
    def session(self) -> WalletSession | None:
        return self._session

    # ─── Session ────────────────────────────────────────────────

    async def connect(self) -> WalletSession:
        """Prompt for account access and establish a session."""
        provider = self._require_provider()
        try:
            accounts = await provider.request_accounts()
        except ProviderError as e:
            if _is_rejection(e):
                raise UserRejectedError("Wallet connection was rejected")
            if e.code == PROVIDER_UNAUTHORIZED:
                raise WalletUnavailableError("Wallet refused account access")
            raise WalletUnavailableError(f"Failed to connect wallet: {e.message}")
        if not accounts:
            raise WalletUnavailableError("No wallet account authorized")

        address = accounts[0]
        balance = await self._read_balance(address)
        network_id = await self._read_network()
        self._session = WalletSession(
            address=address, balance=balance, network_id=network_id,
        )
        logger.info("Wallet connected", extra={"event": "wallet_connected"})
        return self._session

    async def current_address(self) -> str | None:
        """Non-prompting read of the provider's current account."""
        if self._provider is None:
            return None
        try:
            accounts = await self._provider.rpc("eth_accounts")
        except ProviderError as e:
            logger.warning(f"Failed to read wallet accounts: {e.message}")
            return None
        return accounts[0] if accounts else None

    async def ensure_session(self) -> WalletSession:
        """Connect if needed, otherwise re-derive address and balance from the provider."""
        if self._session is None:
            return await self.connect()
        address = await self.current_address()
        if address is None:
            self._invalidate("account list empty")
            raise WalletUnavailableError("Wallet is no longer connected")
        balance = await self._read_balance(address)
        network_id = self._session.network_id if self._session else None
        self._session = WalletSession(
            address=address, balance=balance, network_id=network_id,
        )
        return self._session

    # ─── Payment ────────────────────────────────────────────────

    async def pay(self, amount: Decimal, recipient: str) -> str:
        """Submit a native transfer and wait for confirmation. Returns the tx hash."""
        provider = self._require_provider()
        session = self._session
        if session is None or session.address is None:
            raise WalletUnavailableError("Wallet not connected")
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")
        if session.balance < amount:
            raise InsufficientFundsError(amount, session.balance)

        tx = {
            "from": session.address,
            "to": recipient,
            "value": hex(amount_to_wei(amount)),
            "gas": hex(NATIVE_TRANSFER_GAS),
        }
        try:
            tx_hash = await provider.send_transaction(tx)
        except ProviderError as e:
            if _is_rejection(e):
                raise UserRejectedError("Transaction was rejected by user")
            if _is_insufficient_funds(e):
                raise InsufficientFundsError(amount, session.balance)
            raise PaymentFailedError(f"Payment failed: {e.message}")

        ctx = ErrorContext(transaction_reference=tx_hash)
        try:
            receipt = await asyncio.wait_for(
                self._wait_for_receipt(tx_hash), timeout=self.payment_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Payment confirmation timed out",
                extra={"transaction_reference": tx_hash},
            )
            raise PaymentTimeoutError(self.payment_timeout_seconds, ctx)
        except ProviderError as e:
            raise PaymentFailedError(f"Payment confirmation failed: {e.message}", context=ctx)
        if not _receipt_succeeded(receipt):
            raise PaymentFailedError("Transaction reverted on-chain", context=ctx)

        # Local estimate until the next ensure_session(); skipped if the session
        # was invalidated while we waited.
        if self._session is session:
            self._session = session.model_copy(
                update={"balance": max(session.balance - amount, Decimal("0"))},
            )
        logger.info(
            "Payment confirmed", extra={"transaction_reference": tx_hash},
        )
        return tx_hash

    # ─── Events ─────────────────────────────────────────────────

    def on_account_or_network_change(
        self, handler: WalletChangeHandler,
    ) -> Callable[[], None]:
        """Register a change handler. Returns an unsubscribe callable."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _make_listener(self, kind: WalletEventKind) -> Callable[..., None]:
        def listener(*args: Any) -> None:
            payload = args[0] if args else None
            self._invalidate(kind.value)
            event = WalletEvent(kind=kind, payload=payload)
            for handler in list(self._handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Wallet change handler failed", extra={"event": kind.value},
                    )
        return listener

    def _invalidate(self, reason: str) -> None:
        if self._session is not None:
            logger.info(f"Wallet session invalidated: {reason}", extra={"event": reason})
        self._session = None

    # ─── Provider helpers ───────────────────────────────────────

    def _require_provider(self) -> WalletProvider:
        if self._provider is None:
            raise WalletUnavailableError(
                "A Web3 wallet is required. Install a wallet extension to continue.",
            )
        return self._provider

    async def _read_balance(self, address: str) -> Decimal:
        provider = self._require_provider()
        try:
            raw = await provider.rpc("eth_getBalance", [address, "latest"])
        except ProviderError as e:
            raise WalletUnavailableError(f"Could not read wallet balance: {e.message}")
        return wei_to_amount(raw)

    async def _read_network(self) -> str | None:
        provider = self._require_provider()
        try:
            chain_id = await provider.rpc("eth_chainId")
        except ProviderError as e:
            logger.warning(f"Could not read wallet network: {e.message}")
            return None
        return str(chain_id) if chain_id is not None else None

    async def _wait_for_receipt(self, tx_hash: str) -> dict:
        provider = self._require_provider()
        while True:
            receipt = await provider.rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return receipt
            await asyncio.sleep(self.receipt_poll_interval_ms / 1000)
