"""Binding to the remote escrow contract.

``EscrowContract`` is the surface the escrow client consumes; ``Web3EscrowContract``
implements it over web3.py with the connected wallet provider as signer. Reads are
issued ``from`` the bound account because the ``getMy*`` views key off msg.sender.
Writes return a ``PendingTransaction`` so callers can report "submitted" before
awaiting confirmation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal

from web3.exceptions import TransactionNotFound

from escrowdesk.errors import RemoteReverted
from escrowdesk.models.escrow import EscrowRecord
from escrowdesk.services.providers import WalletProvider

logger = logging.getLogger(__name__)


def _fn(name: str, inputs: list[dict], outputs: list[dict], mutability: str) -> dict:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": outputs,
        "stateMutability": mutability,
        "type": "function",
    }


_ID_INPUT = [{"name": "_escrowId", "type": "uint256"}]
_UINT = [{"name": "", "type": "uint256"}]

ESCROW_ABI = [
    _fn(
        "getEscrow",
        _ID_INPUT,
        [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "escrowId", "type": "uint256"},
                    {"name": "employer", "type": "address"},
                    {"name": "employee", "type": "address"},
                    {"name": "jobDesc", "type": "string"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "status", "type": "uint8"},
                    {"name": "timestamp", "type": "uint256"},
                ],
            }
        ],
        "view",
    ),
    _fn("getMyClientEscrows", [], [{"name": "", "type": "uint256[]"}], "view"),
    _fn("getMyFreelancerEscrows", [], [{"name": "", "type": "uint256[]"}], "view"),
    _fn("getMyEarnings", [], _UINT, "view"),
    _fn("platformFee", [], _UINT, "view"),
    _fn("owner", [], [{"name": "", "type": "address"}], "view"),
    _fn(
        "createEscrow",
        [
            {"name": "description", "type": "string"},
            {"name": "_freelancer", "type": "address"},
        ],
        _UINT,
        "payable",
    ),
    _fn("acceptEscrow", _ID_INPUT, [], "nonpayable"),
    _fn("submitWork", _ID_INPUT, [], "nonpayable"),
    _fn("approveAndRelease", _ID_INPUT, [], "nonpayable"),
    _fn("dispute", _ID_INPUT, [], "nonpayable"),
    _fn("cancelEscrow", _ID_INPUT, [], "nonpayable"),
    _fn("withdrawEarnings", [], [], "nonpayable"),
]


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: int | None = None
    status: int = 1


class PendingTransaction:
    """A submitted write. ``wait()`` resolves once the chain reports the outcome."""

    def __init__(self, tx_hash: str, confirm: Callable[[], Awaitable[TransactionReceipt]]) -> None:
        self.tx_hash = tx_hash
        self._confirm = confirm

    async def wait(self) -> TransactionReceipt:
        return await self._confirm()


class EscrowContract(ABC):
    """Remote escrow contract as seen by one account."""

    address: str
    account: str

    @abstractmethod
    async def get_escrow(self, escrow_id: int) -> EscrowRecord: ...

    @abstractmethod
    async def get_my_client_escrows(self) -> list[int]: ...

    @abstractmethod
    async def get_my_freelancer_escrows(self) -> list[int]: ...

    @abstractmethod
    async def get_my_earnings(self) -> int: ...

    @abstractmethod
    async def platform_fee(self) -> int: ...

    @abstractmethod
    async def owner(self) -> str: ...

    @abstractmethod
    async def create_escrow(self, description: str, freelancer: str, value: int) -> PendingTransaction: ...

    @abstractmethod
    async def accept_escrow(self, escrow_id: int) -> PendingTransaction: ...

    @abstractmethod
    async def submit_work(self, escrow_id: int) -> PendingTransaction: ...

    @abstractmethod
    async def approve_and_release(self, escrow_id: int) -> PendingTransaction: ...

    @abstractmethod
    async def dispute(self, escrow_id: int) -> PendingTransaction: ...

    @abstractmethod
    async def cancel_escrow(self, escrow_id: int) -> PendingTransaction: ...

    @abstractmethod
    async def withdraw_earnings(self) -> PendingTransaction: ...


class Web3EscrowContract(EscrowContract):
    def __init__(
        self,
        provider: WalletProvider,
        address: str,
        account: str,
        *,
        tx_poll_interval: float = 2.0,
        gas_limit_multiplier: Decimal = Decimal("1.2"),
    ) -> None:
        w3 = provider.web3
        self._provider = provider
        self._w3 = w3
        self.address = w3.to_checksum_address(address)
        self.account = w3.to_checksum_address(account)
        self._contract = w3.eth.contract(address=self.address, abi=ESCROW_ABI)
        self._tx_poll_interval = tx_poll_interval
        self._gas_limit_multiplier = gas_limit_multiplier

    async def _call(self, fn):
        return await fn.call({"from": self.account})

    async def _transact(self, fn, value: int = 0) -> PendingTransaction:
        # build_transaction runs eth_estimateGas, so role/state reverts surface here
        tx = await fn.build_transaction({"from": self.account, "value": value})
        tx["gas"] = int(Decimal(tx["gas"]) * self._gas_limit_multiplier)
        tx_hash = await self._provider.send_transaction(tx)
        logger.info("Submitted %s from %s: tx=%s", fn.fn_name, self.account, tx_hash)
        return PendingTransaction(tx_hash, lambda: self._wait_for_receipt(tx_hash))

    async def _wait_for_receipt(self, tx_hash: str) -> TransactionReceipt:
        """Poll until the transaction is mined. No timeout: cancel the awaiting task to abandon."""
        while True:
            try:
                receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                logger.debug("Transaction %s not mined yet", tx_hash)
                await asyncio.sleep(self._tx_poll_interval)
                continue

            if receipt["status"] == 0:
                raise RemoteReverted("Transaction reverted on chain")
            return TransactionReceipt(
                tx_hash=tx_hash,
                block_number=receipt["blockNumber"],
                status=receipt["status"],
            )

    async def get_escrow(self, escrow_id: int) -> EscrowRecord:
        raw = await self._call(self._contract.functions.getEscrow(escrow_id))
        return EscrowRecord.from_chain(raw)

    async def get_my_client_escrows(self) -> list[int]:
        return [int(i) for i in await self._call(self._contract.functions.getMyClientEscrows())]

    async def get_my_freelancer_escrows(self) -> list[int]:
        return [int(i) for i in await self._call(self._contract.functions.getMyFreelancerEscrows())]

    async def get_my_earnings(self) -> int:
        return int(await self._call(self._contract.functions.getMyEarnings()))

    async def platform_fee(self) -> int:
        return int(await self._call(self._contract.functions.platformFee()))

    async def owner(self) -> str:
        return str(await self._call(self._contract.functions.owner()))

    async def create_escrow(self, description: str, freelancer: str, value: int) -> PendingTransaction:
        fn = self._contract.functions.createEscrow(description, self._w3.to_checksum_address(freelancer))
        return await self._transact(fn, value=value)

    async def accept_escrow(self, escrow_id: int) -> PendingTransaction:
        return await self._transact(self._contract.functions.acceptEscrow(escrow_id))

    async def submit_work(self, escrow_id: int) -> PendingTransaction:
        return await self._transact(self._contract.functions.submitWork(escrow_id))

    async def approve_and_release(self, escrow_id: int) -> PendingTransaction:
        return await self._transact(self._contract.functions.approveAndRelease(escrow_id))

    async def dispute(self, escrow_id: int) -> PendingTransaction:
        return await self._transact(self._contract.functions.dispute(escrow_id))

    async def cancel_escrow(self, escrow_id: int) -> PendingTransaction:
        return await self._transact(self._contract.functions.cancelEscrow(escrow_id))

    async def withdraw_earnings(self) -> PendingTransaction:
        return await self._transact(self._contract.functions.withdrawEarnings())
