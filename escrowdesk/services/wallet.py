"""Wallet session: provider discovery, connection and account/chain reconciliation.

The session is the single source of truth for which account is active, on which
chain, with what balance. Dependents never see a half-built state: every change
is published as one new ``WalletSnapshot``. Provider notifications are handled
by one reconciliation entry point per event and are registered on connect and
removed on disconnect.
"""

import logging
from collections.abc import Callable
from dataclasses import replace

from escrowdesk.errors import (
    ConnectionFailed,
    EscrowError,
    NotReady,
    UserRejected,
    classify_error,
)
from escrowdesk.models.wallet import (
    DISCONNECTED,
    ProviderKind,
    SessionChange,
    SessionState,
    WalletSnapshot,
)
from escrowdesk.services.providers import (
    ACCOUNTS_CHANGED,
    CHAIN_CHANGED,
    ProviderRegistry,
    WalletProvider,
    detect_kind,
)
from escrowdesk.utils.format import wei_to_ether

logger = logging.getLogger(__name__)

SessionListener = Callable[[WalletSnapshot, SessionChange], None]


def _parse_chain_id(value: int | str) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class WalletSession:
    def __init__(
        self,
        registry: ProviderRegistry,
        default_kind: ProviderKind | None = None,
    ) -> None:
        self._registry = registry
        self._default_kind = default_kind
        self._provider: WalletProvider | None = None
        self._snapshot: WalletSnapshot = DISCONNECTED
        # Epoch of the connect in flight; CONNECTING only while no other change has
        # taken the epoch since.
        self._connecting_epoch: int | None = None
        # Bumped by every connect/disconnect/reconcile; async work that finds it
        # moved on while suspended discards its result.
        self._epoch = 0
        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> WalletSnapshot:
        return self._snapshot

    @property
    def state(self) -> SessionState:
        if self._connecting_epoch == self._epoch:
            return SessionState.CONNECTING
        return self._snapshot.state

    @property
    def provider(self) -> WalletProvider | None:
        return self._provider

    @property
    def address(self) -> str | None:
        return self._snapshot.address

    @property
    def is_connected(self) -> bool:
        return self._snapshot.is_connected and self._provider is not None

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self, snapshot: WalletSnapshot, change: SessionChange) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot, change)
            except Exception:
                logger.exception("Session listener failed on %s", change.value)

    # ------------------------------------------------------------------
    # Provider subscriptions
    # ------------------------------------------------------------------

    def _attach(self, provider: WalletProvider) -> None:
        provider.on(ACCOUNTS_CHANGED, self._on_accounts_changed)
        provider.on(CHAIN_CHANGED, self._on_chain_changed)
        self._provider = provider

    def _detach(self) -> None:
        if self._provider is not None:
            self._provider.remove_listener(ACCOUNTS_CHANGED, self._on_accounts_changed)
            self._provider.remove_listener(CHAIN_CHANGED, self._on_chain_changed)
        self._provider = None

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self, preferred_kind: ProviderKind | None = None) -> WalletSnapshot:
        """Authorize an account with the best matching provider and publish the session.

        Raises NoProviderFound, UserRejected or ConnectionFailed. A failed
        reconnect leaves an already connected session as it was.
        """
        provider = self._registry.discover().select(preferred_kind or self._default_kind)

        self._epoch += 1
        epoch = self._epoch
        self._connecting_epoch = epoch
        try:
            accounts = await provider.request_accounts()
            if not accounts:
                raise ConnectionFailed("Wallet returned no accounts")
            address = accounts[0].lower()
            balance_wei = await provider.get_balance(address)
            chain_id = _parse_chain_id(await provider.get_chain_id())
        except EscrowError:
            raise
        except Exception as exc:
            classified = classify_error(exc)
            if isinstance(classified, UserRejected):
                logger.warning("Wallet connection rejected by user")
                raise classified from exc
            logger.warning("Wallet connection failed: %s", exc)
            raise ConnectionFailed(f"Wallet connection failed: {exc}") from exc
        finally:
            if self._connecting_epoch == epoch:
                self._connecting_epoch = None

        if epoch != self._epoch:
            logger.warning("Discarding connect result for %s: superseded", address)
            return self._snapshot

        # Replace, never stack, the provider handle and its subscriptions
        self._detach()
        self._attach(provider)
        snapshot = WalletSnapshot(
            state=SessionState.CONNECTED,
            address=address,
            balance=str(wei_to_ether(balance_wei)),
            balance_wei=balance_wei,
            chain_id=chain_id,
            provider_kind=detect_kind(provider),
        )
        logger.info(
            "Wallet connected: %s via %s on chain %s",
            address, snapshot.provider_kind.value, chain_id,
        )
        self._publish(snapshot, SessionChange.CONNECTED)
        return snapshot

    def disconnect(self) -> None:
        """Clear the session unconditionally. Never fails."""
        self._epoch += 1
        self._connecting_epoch = None
        was_connected = self._snapshot.is_connected
        self._detach()
        if was_connected:
            logger.info("Wallet disconnected: %s", self._snapshot.address)
            self._publish(DISCONNECTED, SessionChange.DISCONNECTED)
        else:
            self._snapshot = DISCONNECTED

    async def aclose(self) -> None:
        self.disconnect()
        self._listeners.clear()

    async def refresh_balance(self) -> WalletSnapshot:
        """Re-read the active account's balance and republish."""
        if not self.is_connected:
            raise NotReady("Wallet not connected")
        epoch = self._epoch
        provider = self._provider
        address = self._snapshot.address
        try:
            balance_wei = await provider.get_balance(address)
        except Exception as exc:
            classified = classify_error(exc)
            if classified is exc:
                raise
            raise classified from exc

        if epoch != self._epoch:
            return self._snapshot
        snapshot = replace(self._snapshot, balance=str(wei_to_ether(balance_wei)), balance_wei=balance_wei)
        self._publish(snapshot, SessionChange.BALANCE_UPDATED)
        return snapshot

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _on_accounts_changed(self, accounts: list[str]) -> None:
        if not self.is_connected:
            return
        if not accounts:
            logger.info("Wallet reported no accounts")
            self.disconnect()
            return

        address = accounts[0].lower()
        if address == self._snapshot.address:
            return

        self._epoch += 1
        epoch = self._epoch
        provider = self._provider
        try:
            balance_wei = await provider.get_balance(address)
        except Exception:
            logger.exception("Balance fetch failed after switch to %s; disconnecting", address)
            if epoch == self._epoch:
                self.disconnect()
            return

        if epoch != self._epoch:
            logger.warning("Discarding account switch to %s: superseded", address)
            return

        previous = self._snapshot.address
        snapshot = replace(
            self._snapshot,
            address=address,
            balance=str(wei_to_ether(balance_wei)),
            balance_wei=balance_wei,
        )
        logger.info("Account switched: %s -> %s", previous, address)
        self._publish(snapshot, SessionChange.ACCOUNT_CHANGED)

    async def _on_chain_changed(self, chain_id: int | str) -> None:
        if not self.is_connected:
            return

        new_chain = _parse_chain_id(chain_id)
        self._epoch += 1
        epoch = self._epoch
        provider = self._provider
        address = self._snapshot.address
        try:
            balance_wei = await provider.get_balance(address)
        except Exception:
            logger.exception("Balance fetch failed after chain change to %s; disconnecting", new_chain)
            if epoch == self._epoch:
                self.disconnect()
            return

        if epoch != self._epoch:
            logger.warning("Discarding chain change to %s: superseded", new_chain)
            return

        previous = self._snapshot.chain_id
        snapshot = replace(
            self._snapshot,
            chain_id=new_chain,
            balance=str(wei_to_ether(balance_wei)),
            balance_wei=balance_wei,
        )
        logger.info("Chain changed: %s -> %s, reloading dependent state", previous, new_chain)
        self._publish(snapshot, SessionChange.CHAIN_CHANGED)
