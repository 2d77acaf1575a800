"""Test configuration and fixtures.

No node or wallet is needed: ``FakeProvider`` stands in for an injected wallet
and ``FakeChain`` keeps escrow state in memory, enforcing the same role and
status rules as the deployed contract. Each ``FakeEscrowContract`` is a view of
the shared chain as one account (the contract keys its ``getMy*`` views off
msg.sender). Writes take effect when the transaction is "mined", i.e. when the
``PendingTransaction`` is awaited.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from web3.exceptions import ContractLogicError

from escrowdesk.config import settings
from escrowdesk.errors import USER_REJECTED_CODE, ProviderRpcError
from escrowdesk.models.escrow import EscrowRecord, EscrowStatus
from escrowdesk.models.wallet import ProviderKind
from escrowdesk.services.contract import EscrowContract, PendingTransaction, TransactionReceipt
from escrowdesk.services.escrow import EscrowClient
from escrowdesk.services.notifications import Notifier, Severity
from escrowdesk.services.providers import (
    ACCOUNTS_CHANGED,
    CHAIN_CHANGED,
    ProviderRegistry,
    WalletProvider,
)
from escrowdesk.services.wallet import WalletSession

CLIENT = "0x" + "aa" * 20
FREELANCER = "0x" + "bb" * 20
OUTSIDER = "0x" + "cc" * 20
CONTRACT_ADDRESS = "0x" + "ee" * 20

ONE_ETHER = 10**18


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "escrow_contract_address", CONTRACT_ADDRESS)
    object.__setattr__(settings, "tx_poll_interval_seconds", 0.0)
    object.__setattr__(settings, "notify_webhook_url", "")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Wallet provider fake
# ---------------------------------------------------------------------------


class FakeProvider(WalletProvider):
    def __init__(
        self,
        accounts: list[str] | None = None,
        *,
        balances: dict[str, int] | None = None,
        chain_id: int | str = 84532,
        kind: ProviderKind = ProviderKind.GENERIC_INJECTED,
    ) -> None:
        super().__init__()
        self.accounts = list(accounts if accounts is not None else [CLIENT, FREELANCER])
        self.balances = {k.lower(): v for k, v in (balances or {}).items()}
        self.chain_id = chain_id
        self.is_metamask = kind in (ProviderKind.METAMASK, ProviderKind.COINBASE, ProviderKind.TRUST)
        self.is_coinbase_wallet = kind == ProviderKind.COINBASE
        self.is_trust = kind == ProviderKind.TRUST
        self.reject_requests = False
        self.request_error: Exception | None = None
        self.balance_error: Exception | None = None
        self.request_count = 0
        self._web3 = MagicMock()

    @property
    def web3(self):
        return self._web3

    async def request_accounts(self) -> list[str]:
        self.request_count += 1
        if self.reject_requests:
            raise ProviderRpcError(USER_REJECTED_CODE, "User rejected the request.")
        if self.request_error is not None:
            raise self.request_error
        return list(self.accounts)

    async def get_balance(self, address: str) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(address.lower(), 0)

    async def get_chain_id(self) -> int | str:
        return self.chain_id

    async def send_transaction(self, tx: dict) -> str:
        return "0x" + uuid.uuid4().hex * 2

    async def switch_account(self, address: str) -> None:
        self.accounts.remove(address)
        self.accounts.insert(0, address)
        await self.emit(ACCOUNTS_CHANGED, list(self.accounts))

    async def switch_chain(self, chain_id: int | str) -> None:
        self.chain_id = chain_id
        await self.emit(CHAIN_CHANGED, chain_id)


# ---------------------------------------------------------------------------
# Contract fake
# ---------------------------------------------------------------------------


def _revert(reason: str) -> ContractLogicError:
    return ContractLogicError(f"execution reverted: {reason}")


class FakeChain:
    """In-memory escrow contract state shared by every account's binding."""

    def __init__(self, platform_fee: int = 2) -> None:
        self.escrows: dict[int, dict] = {}
        self.earnings: dict[str, int] = {}
        self.platform_fee = platform_fee
        self.owner = "0x" + "dd" * 20
        self.next_id = 1
        self.clock = 1_700_000_000
        self.submitted: list[tuple[str, str]] = []
        # Failure injection
        self.read_error: Exception | None = None
        self.hydrate_error: Exception | None = None
        self.submit_error: Exception | None = None
        self.mine_error: Exception | None = None
        # Pausing: reads block on ``read_gate`` and mining on ``mine_gate`` while set
        self.read_gate: asyncio.Event | None = None
        self.mine_gate: asyncio.Event | None = None
        self.read_paused = asyncio.Event()
        self.mine_paused = asyncio.Event()

    def add_escrow(
        self,
        client: str,
        freelancer: str,
        amount: int = ONE_ETHER,
        status: EscrowStatus = EscrowStatus.OPEN,
        description: str = "Build landing page",
        timestamp: int | None = None,
    ) -> int:
        escrow_id = self.next_id
        self.next_id += 1
        self.clock += 60
        self.escrows[escrow_id] = {
            "id": escrow_id,
            "client": client.lower(),
            "freelancer": freelancer.lower(),
            "description": description,
            "amount": amount,
            "status": status,
            "timestamp": timestamp if timestamp is not None else self.clock,
        }
        return escrow_id

    def record(self, escrow_id: int) -> EscrowRecord:
        e = self.escrows[escrow_id]
        return EscrowRecord(
            id=e["id"],
            client=e["client"],
            freelancer=e["freelancer"],
            description=e["description"],
            amount=e["amount"],
            status=e["status"],
            created_at=datetime.fromtimestamp(e["timestamp"], tz=UTC),
        )

    async def read_checkpoint(self) -> None:
        gate = self.read_gate
        if gate is not None:
            self.read_paused.set()
            await gate.wait()

    async def mine_checkpoint(self) -> None:
        gate = self.mine_gate
        if gate is not None:
            self.mine_paused.set()
            await gate.wait()


class FakeEscrowContract(EscrowContract):
    def __init__(self, chain: FakeChain, account: str) -> None:
        self._chain = chain
        self.address = CONTRACT_ADDRESS
        self.account = account.lower()

    # Reads

    async def get_escrow(self, escrow_id: int) -> EscrowRecord:
        await self._chain.read_checkpoint()
        if self._chain.hydrate_error is not None:
            raise self._chain.hydrate_error
        if escrow_id not in self._chain.escrows:
            raise _revert("Escrow does not exist")
        return self._chain.record(escrow_id)

    async def get_my_client_escrows(self) -> list[int]:
        if self._chain.read_error is not None:
            raise self._chain.read_error
        return [i for i, e in self._chain.escrows.items() if e["client"] == self.account]

    async def get_my_freelancer_escrows(self) -> list[int]:
        if self._chain.read_error is not None:
            raise self._chain.read_error
        return [i for i, e in self._chain.escrows.items() if e["freelancer"] == self.account]

    async def get_my_earnings(self) -> int:
        if self._chain.read_error is not None:
            raise self._chain.read_error
        return self._chain.earnings.get(self.account, 0)

    async def platform_fee(self) -> int:
        return self._chain.platform_fee

    async def owner(self) -> str:
        return self._chain.owner

    # Writes

    def _escrow(self, escrow_id: int) -> dict:
        if escrow_id not in self._chain.escrows:
            raise _revert("Escrow does not exist")
        return self._chain.escrows[escrow_id]

    def _pending(self, name: str, apply) -> PendingTransaction:
        if self._chain.submit_error is not None:
            raise self._chain.submit_error
        tx_hash = "0x" + uuid.uuid4().hex * 2
        self._chain.submitted.append((name, self.account))

        async def confirm() -> TransactionReceipt:
            await self._chain.mine_checkpoint()
            if self._chain.mine_error is not None:
                raise self._chain.mine_error
            apply()
            return TransactionReceipt(tx_hash=tx_hash, block_number=len(self._chain.submitted), status=1)

        return PendingTransaction(tx_hash, confirm)

    async def create_escrow(self, description: str, freelancer: str, value: int) -> PendingTransaction:
        if value <= 0:
            raise _revert("Amount must be greater than 0")
        return self._pending(
            "createEscrow",
            lambda: self._chain.add_escrow(self.account, freelancer, value, description=description),
        )

    async def accept_escrow(self, escrow_id: int) -> PendingTransaction:
        e = self._escrow(escrow_id)
        if e["freelancer"] != self.account:
            raise _revert("Only freelancer can accept")
        if e["status"] != EscrowStatus.OPEN:
            raise _revert("Escrow not open")
        return self._pending("acceptEscrow", lambda: e.update(status=EscrowStatus.IN_PROGRESS))

    async def submit_work(self, escrow_id: int) -> PendingTransaction:
        e = self._escrow(escrow_id)
        if e["freelancer"] != self.account:
            raise _revert("Only freelancer can submit")
        if e["status"] != EscrowStatus.IN_PROGRESS:
            raise _revert("Escrow not in progress")
        return self._pending("submitWork", lambda: e.update(status=EscrowStatus.COMPLETED))

    async def approve_and_release(self, escrow_id: int) -> PendingTransaction:
        e = self._escrow(escrow_id)
        if e["client"] != self.account:
            raise _revert("Only client can approve")
        if e["status"] != EscrowStatus.COMPLETED:
            raise _revert("Work not submitted")

        def apply() -> None:
            payout = e["amount"] * (100 - self._chain.platform_fee) // 100
            self._chain.earnings[e["freelancer"]] = self._chain.earnings.get(e["freelancer"], 0) + payout
            e["status"] = EscrowStatus.RELEASED

        return self._pending("approveAndRelease", apply)

    async def dispute(self, escrow_id: int) -> PendingTransaction:
        e = self._escrow(escrow_id)
        if self.account not in (e["client"], e["freelancer"]):
            raise _revert("Not a party to this escrow")
        if e["status"] not in (EscrowStatus.IN_PROGRESS, EscrowStatus.COMPLETED):
            raise _revert("Cannot dispute in current state")
        return self._pending("dispute", lambda: e.update(status=EscrowStatus.DISPUTED))

    async def cancel_escrow(self, escrow_id: int) -> PendingTransaction:
        e = self._escrow(escrow_id)
        if e["client"] != self.account:
            raise _revert("Only client can cancel")
        if e["status"] != EscrowStatus.OPEN:
            raise _revert("Can only cancel open escrows")
        return self._pending("cancelEscrow", lambda: e.update(status=EscrowStatus.CANCELLED))

    async def withdraw_earnings(self) -> PendingTransaction:
        if self._chain.earnings.get(self.account, 0) <= 0:
            raise _revert("No earnings to withdraw")
        return self._pending("withdrawEarnings", lambda: self._chain.earnings.update({self.account: 0}))


# ---------------------------------------------------------------------------
# Notifier fake
# ---------------------------------------------------------------------------


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[tuple[Severity, str, str, str | None]] = []

    async def notify(
        self,
        severity: Severity,
        message: str,
        correlation_id: str,
        description: str | None = None,
    ) -> None:
        self.events.append((severity, message, correlation_id, description))

    @property
    def severities(self) -> list[Severity]:
        return [e[0] for e in self.events]

    @property
    def messages(self) -> list[str]:
        return [e[1] for e in self.events]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(balances={CLIENT: 5 * ONE_ETHER, FREELANCER: 2 * ONE_ETHER})


@pytest.fixture
def registry(provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry([provider])


@pytest.fixture
def session(registry: ProviderRegistry) -> WalletSession:
    return WalletSession(registry)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


def make_factory(chain: FakeChain):
    return lambda provider, account: FakeEscrowContract(chain, account)


@pytest_asyncio.fixture
async def escrow_client(
    session: WalletSession,
    chain: FakeChain,
    notifier: RecordingNotifier,
) -> AsyncGenerator[EscrowClient, None]:
    """Client bound to a session connected as CLIENT."""
    await session.connect()
    client = EscrowClient(session, notifier, contract_factory=make_factory(chain), auto_refresh=False)
    yield client
    await client.aclose()
    await session.aclose()
