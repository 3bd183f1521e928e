"""Boundary Protocols: contracts between core and the injected outside world.

Invariants:
    - Core NEVER imports a concrete provider, HTTP client, or storage engine
    - Absence of a wallet provider is modelled as None, not as a broken object
    - Storage values are opaque JSON strings; parsing belongs to core/cache_snapshot.py

Design Decisions:
    - Protocol over ABC: structural subtyping, fakes in tests need no inheritance
    - Async in Protocol: boundary methods do IO; core pure functions never await
"""

from collections.abc import Callable
from typing import Any, Protocol


class AuthSession(Protocol):
    """Opaque signed-in user. The core only reads the id and the bearer token."""
    user_id: str | None
    token: str | None


class WalletProvider(Protocol):
    """Injected wallet (browser extension or similar) holding the private keys.

    Implementations raise errors.ProviderError with EIP-1193 codes
    (4001 user rejected, 4100 unauthorized, 4900 disconnected).
    """

    async def request_accounts(self) -> list[str]:
        """Prompt the user for account access (eth_requestAccounts)."""
        ...

    async def rpc(self, method: str, params: list | None = None) -> Any:
        """JSON-RPC query that never prompts (eth_accounts, eth_getBalance, ...)."""
        ...

    async def send_transaction(self, tx: dict) -> str:
        """Sign and broadcast; returns the transaction hash."""
        ...

    def on(self, event: str, handler: Callable[..., None]) -> None:
        """Subscribe to accountsChanged / chainChanged / disconnect."""
        ...


class SnapshotStorage(Protocol):
    """Key-value scoped storage for JSON documents."""

    async def get(self, key: str) -> str | None: ...
    async def set(self, key: str, value: str) -> None: ...
    async def delete(self, key: str) -> None: ...
