"""Wallet providers: the EIP-1193-style boundary, discovery and a web3.py implementation.

A provider authorizes accounts, answers balance and chain queries, sends
transactions and pushes ``accountsChanged`` / ``chainChanged`` notifications to
subscribers. Several providers may be announced at once (one per installed
wallet); ``ProviderRegistry.discover`` resolves them into an explicit
``ProviderDiscovery`` result once per connect.
"""

import asyncio
import enum
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3

from escrowdesk.config import Settings
from escrowdesk.errors import UNAUTHORIZED_CODE, USER_REJECTED_CODE, NoProviderFound, ProviderRpcError
from escrowdesk.models.wallet import ProviderKind

logger = logging.getLogger(__name__)

ACCOUNTS_CHANGED = "accountsChanged"
CHAIN_CHANGED = "chainChanged"

Listener = Callable[[Any], Awaitable[None] | None]

# Called before the provider acts on the human's behalf: (method, params) -> approved?
Authorizer = Callable[[str, dict], Awaitable[bool]]


class WalletProvider(ABC):
    """Base class for wallet providers. Kind flags mirror what injected wallets announce."""

    is_metamask: bool = False
    is_coinbase_wallet: bool = False
    is_trust: bool = False

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {ACCOUNTS_CHANGED: [], CHAIN_CHANGED: []}

    @property
    @abstractmethod
    def web3(self) -> AsyncWeb3:
        """The web3 instance contract bindings are built on."""

    @abstractmethod
    async def request_accounts(self) -> list[str]:
        """Ask the wallet to authorize accounts. Raises ProviderRpcError(4001) if declined."""

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""

    @abstractmethod
    async def get_chain_id(self) -> int: ...

    @abstractmethod
    async def send_transaction(self, tx: dict) -> str:
        """Sign and broadcast. Returns the 0x-prefixed transaction hash."""

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, payload: Any) -> None:
        """Deliver a notification to every subscriber. A failing subscriber never blocks the rest."""
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Provider listener for %s failed", event)


def detect_kind(provider: WalletProvider) -> ProviderKind:
    # Coinbase and Trust also set is_metamask for compatibility, so check them first
    if provider.is_coinbase_wallet:
        return ProviderKind.COINBASE
    if provider.is_trust:
        return ProviderKind.TRUST
    if provider.is_metamask:
        return ProviderKind.METAMASK
    return ProviderKind.GENERIC_INJECTED


class DiscoveryOutcome(enum.Enum):
    NONE = "none"
    SINGLE = "single"
    MANY = "many"


@dataclass(frozen=True)
class ProviderDiscovery:
    providers: tuple[WalletProvider, ...] = ()

    @property
    def outcome(self) -> DiscoveryOutcome:
        if not self.providers:
            return DiscoveryOutcome.NONE
        if len(self.providers) == 1:
            return DiscoveryOutcome.SINGLE
        return DiscoveryOutcome.MANY

    @property
    def kinds(self) -> list[ProviderKind]:
        return [detect_kind(p) for p in self.providers]

    def select(self, preferred: ProviderKind | None = None) -> WalletProvider:
        """Pick the provider matching ``preferred``, else the first one announced."""
        if self.outcome == DiscoveryOutcome.NONE:
            raise NoProviderFound("No wallet provider found. Install a wallet or configure one.")
        if preferred is not None and preferred != ProviderKind.NONE:
            for provider in self.providers:
                if detect_kind(provider) == preferred:
                    return provider
        return self.providers[0]


class ProviderRegistry:
    """Providers announced to this process, in announcement order."""

    def __init__(self, providers: Sequence[WalletProvider] = ()) -> None:
        self._providers: list[WalletProvider] = list(providers)

    def register(self, provider: WalletProvider) -> None:
        if provider not in self._providers:
            self._providers.append(provider)

    def unregister(self, provider: WalletProvider) -> None:
        if provider in self._providers:
            self._providers.remove(provider)

    def discover(self) -> ProviderDiscovery:
        return ProviderDiscovery(tuple(self._providers))


class Web3WalletProvider(WalletProvider):
    """Provider backed by a JSON-RPC node.

    With local ``accounts`` it signs with eth_account keys; without, it relies on
    accounts the node manages. ``authorize`` stands in for the wallet's
    confirmation prompt: returning False declines with EIP-1193 code 4001.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        accounts: Sequence[LocalAccount] = (),
        *,
        kind: ProviderKind = ProviderKind.GENERIC_INJECTED,
        authorize: Authorizer | None = None,
    ) -> None:
        super().__init__()
        self._w3 = w3
        self._accounts: list[LocalAccount] = list(accounts)
        self._authorize = authorize
        self._authorized = False
        self.is_metamask = kind == ProviderKind.METAMASK
        self.is_coinbase_wallet = kind == ProviderKind.COINBASE
        self.is_trust = kind == ProviderKind.TRUST

    @classmethod
    def from_settings(cls, settings: Settings, authorize: Authorizer | None = None) -> "Web3WalletProvider":
        w3 = AsyncWeb3(AsyncHTTPProvider(settings.resolved_rpc_url))
        accounts = [Account.from_key(key) for key in settings.wallet_private_keys]
        return cls(
            w3,
            accounts,
            kind=ProviderKind(settings.wallet_provider_kind),
            authorize=authorize,
        )

    @property
    def web3(self) -> AsyncWeb3:
        return self._w3

    async def _confirm(self, method: str, params: dict) -> None:
        if self._authorize is not None and not await self._authorize(method, params):
            raise ProviderRpcError(USER_REJECTED_CODE, "User rejected the request.")

    async def _addresses(self) -> list[str]:
        if self._accounts:
            return [acct.address for acct in self._accounts]
        return list(await self._w3.eth.accounts)

    async def request_accounts(self) -> list[str]:
        await self._confirm("eth_requestAccounts", {})
        addresses = await self._addresses()
        if not addresses:
            raise ProviderRpcError(UNAUTHORIZED_CODE, "No accounts available")
        self._authorized = True
        return addresses

    async def get_balance(self, address: str) -> int:
        return await self._w3.eth.get_balance(self._w3.to_checksum_address(address))

    async def get_chain_id(self) -> int:
        return await self._w3.eth.chain_id

    async def send_transaction(self, tx: dict) -> str:
        await self._confirm("eth_sendTransaction", tx)
        sender = tx.get("from")
        local = next(
            (a for a in self._accounts if sender and a.address.lower() == str(sender).lower()),
            None,
        )
        if local is None:
            tx_hash = await self._w3.eth.send_transaction(tx)
        else:
            tx = dict(tx)
            if "nonce" not in tx:
                tx["nonce"] = await self._w3.eth.get_transaction_count(local.address, "pending")
            if "chainId" not in tx:
                tx["chainId"] = await self._w3.eth.chain_id
            if "gas" not in tx:
                tx["gas"] = await self._w3.eth.estimate_gas(tx)
            if "maxFeePerGas" not in tx and "gasPrice" not in tx:
                tx["maxFeePerGas"] = (await self._w3.eth.gas_price) * 2
                tx["maxPriorityFeePerGas"] = await self._w3.eth.max_priority_fee
            signed = local.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        h = tx_hash.hex()
        return h if h.startswith("0x") else f"0x{h}"

    async def select_account(self, address: str) -> None:
        """Make ``address`` the active account, as a wallet's account switcher would."""
        index = next(
            (i for i, a in enumerate(self._accounts) if a.address.lower() == address.lower()),
            None,
        )
        if index is None:
            raise ValueError(f"Unknown account {address}")
        self._accounts.insert(0, self._accounts.pop(index))
        if self._authorized:
            await self.emit(ACCOUNTS_CHANGED, [a.address for a in self._accounts])

    async def revoke(self) -> None:
        """Withdraw authorization, as when the human disconnects the site from the wallet."""
        self._authorized = False
        await self.emit(ACCOUNTS_CHANGED, [])

    async def watch(self, poll_interval: float = 4.0) -> None:
        """Poll the node and emit chainChanged/accountsChanged when either moves.

        Runs until cancelled.
        """
        last_chain: int | None = None
        last_accounts: list[str] | None = None

        while True:
            try:
                chain_id = await self.get_chain_id()
                if last_chain is not None and chain_id != last_chain:
                    logger.info("Chain changed %s -> %s", last_chain, chain_id)
                    await self.emit(CHAIN_CHANGED, chain_id)
                last_chain = chain_id

                if self._authorized:
                    accounts = await self._addresses()
                    if last_accounts is not None and accounts != last_accounts:
                        await self.emit(ACCOUNTS_CHANGED, accounts)
                    last_accounts = accounts

                await asyncio.sleep(poll_interval)
            except asyncio.CancelledError:
                logger.info("Provider watcher shutting down")
                break
            except Exception:
                logger.exception("Provider watcher error, retrying in %ss", poll_interval)
                await asyncio.sleep(poll_interval)
