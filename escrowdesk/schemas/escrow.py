"""Pydantic v2 schemas for escrow requests and views."""

import re
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from escrowdesk.models.escrow import EscrowRecord, EscrowStatus, available_actions
from escrowdesk.utils.format import STATUS_LABELS, escrow_label, format_ether, truncate_address

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class CreateEscrowRequest(BaseModel):
    """Input for createEscrow. ``amount`` is in ether and becomes the escrowed value."""

    description: str
    freelancer: str
    amount: Decimal = Field(..., gt=0)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str, info: ValidationInfo) -> str:
        min_length = (info.context or {}).get("min_description_length", 10)
        if len(v.strip()) < min_length:
            raise ValueError(f"Description must be at least {min_length} characters")
        return v

    @field_validator("freelancer")
    @classmethod
    def validate_freelancer(cls, v: str) -> str:
        if not _ETH_ADDRESS_RE.match(v):
            raise ValueError("Invalid Ethereum address format (expected 0x + 40 hex chars)")
        return v


class EscrowView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    label: str
    client: str
    freelancer: str
    client_short: str
    freelancer_short: str
    description: str
    amount_wei: int
    amount_eth: str
    status: EscrowStatus
    status_label: str
    created_at: datetime
    is_client: bool
    is_freelancer: bool
    actions: list[str]

    @classmethod
    def from_record(cls, record: EscrowRecord, account: str | None) -> "EscrowView":
        return cls(
            id=record.id,
            label=escrow_label(record.id),
            client=record.client,
            freelancer=record.freelancer,
            client_short=truncate_address(record.client),
            freelancer_short=truncate_address(record.freelancer),
            description=record.description,
            amount_wei=record.amount,
            amount_eth=format_ether(record.amount),
            status=record.status,
            status_label=STATUS_LABELS[record.status],
            created_at=record.created_at,
            is_client=record.is_client(account),
            is_freelancer=record.is_freelancer(account),
            actions=[a.value for a in available_actions(record, account)],
        )


class EscrowStats(BaseModel):
    total: int = 0
    in_progress: int = 0
    completed: int = 0  # Completed or Released
    disputed: int = 0

    @classmethod
    def from_records(cls, records: Iterable[EscrowRecord]) -> "EscrowStats":
        stats = cls()
        for record in records:
            stats.total += 1
            if record.status == EscrowStatus.IN_PROGRESS:
                stats.in_progress += 1
            elif record.status in (EscrowStatus.COMPLETED, EscrowStatus.RELEASED):
                stats.completed += 1
            elif record.status == EscrowStatus.DISPUTED:
                stats.disputed += 1
        return stats
