"""Escrow record, earnings and lifecycle action models."""

import enum
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Sequence


class EscrowStatus(enum.IntEnum):
    """Mirrors the contract's uint8 status field."""

    OPEN = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    DISPUTED = 3
    RELEASED = 4
    CANCELLED = 5


class EscrowAction(enum.Enum):
    CREATE = "create"
    ACCEPT = "accept"
    SUBMIT_WORK = "submit_work"
    APPROVE_AND_RELEASE = "approve_and_release"
    DISPUTE = "dispute"
    CANCEL = "cancel"
    WITHDRAW = "withdraw"


@dataclass(frozen=True)
class EscrowRecord:
    """Local cache of one on-chain escrow. Never authoritative, never edited in place."""

    id: int
    client: str
    freelancer: str
    description: str
    amount: int  # wei
    status: EscrowStatus
    created_at: datetime

    @classmethod
    def from_chain(cls, raw: Sequence) -> "EscrowRecord":
        """Build from the getEscrow tuple: (escrowId, employer, employee, jobDesc, amount, status, timestamp)."""
        escrow_id, employer, employee, job_desc, amount, status, timestamp = raw
        return cls(
            id=int(escrow_id),
            client=str(employer),
            freelancer=str(employee),
            description=str(job_desc),
            amount=int(amount),
            status=EscrowStatus(int(status)),
            created_at=datetime.fromtimestamp(int(timestamp), tz=UTC),
        )

    def is_client(self, account: str | None) -> bool:
        return account is not None and self.client.lower() == account.lower()

    def is_freelancer(self, account: str | None) -> bool:
        return account is not None and self.freelancer.lower() == account.lower()


@dataclass(frozen=True)
class EarningsBalance:
    """Withdrawable proceeds of the connected account.

    ``optimistic`` is set after a confirmed withdrawal zeroes the value locally;
    it stays set until the next successful refresh replaces it.
    """

    amount: int = 0  # wei
    optimistic: bool = False


def available_actions(record: EscrowRecord, account: str | None) -> list[EscrowAction]:
    """Lifecycle actions the account may attempt on the record.

    These are hints only: the contract enforces roles and states.
    """
    is_client = record.is_client(account)
    is_freelancer = record.is_freelancer(account)
    actions = []

    if is_freelancer and record.status == EscrowStatus.OPEN:
        actions.append(EscrowAction.ACCEPT)
    if is_freelancer and record.status == EscrowStatus.IN_PROGRESS:
        actions.append(EscrowAction.SUBMIT_WORK)
    if is_client and record.status == EscrowStatus.COMPLETED:
        actions.append(EscrowAction.APPROVE_AND_RELEASE)
    if is_client and record.status == EscrowStatus.OPEN:
        actions.append(EscrowAction.CANCEL)
    if (is_client or is_freelancer) and record.status in (
        EscrowStatus.IN_PROGRESS,
        EscrowStatus.COMPLETED,
    ):
        actions.append(EscrowAction.DISPUTE)

    return actions
