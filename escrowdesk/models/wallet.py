"""Wallet session models: provider kinds, session states and the published snapshot."""

import enum
from dataclasses import dataclass


class ProviderKind(enum.Enum):
    METAMASK = "metamask"
    COINBASE = "coinbase"
    TRUST = "trust"
    GENERIC_INJECTED = "generic_injected"
    NONE = "none"


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SessionChange(enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ACCOUNT_CHANGED = "account_changed"
    CHAIN_CHANGED = "chain_changed"
    BALANCE_UPDATED = "balance_updated"


@dataclass(frozen=True)
class WalletSnapshot:
    """Everything dependents may observe about the session, published as one value."""

    state: SessionState = SessionState.DISCONNECTED
    address: str | None = None  # lowercase
    balance: str = "0"  # ether, decimal string
    balance_wei: int = 0
    chain_id: int | None = None
    provider_kind: ProviderKind = ProviderKind.NONE

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED and self.address is not None


DISCONNECTED = WalletSnapshot()
