"""Display helpers for addresses, ether amounts and escrow statuses."""

from decimal import ROUND_DOWN, Decimal

from web3 import Web3

from escrowdesk.models.escrow import EscrowStatus

STATUS_LABELS = {
    EscrowStatus.OPEN: "Open",
    EscrowStatus.IN_PROGRESS: "In Progress",
    EscrowStatus.COMPLETED: "Completed",
    EscrowStatus.DISPUTED: "Disputed",
    EscrowStatus.RELEASED: "Released",
    EscrowStatus.CANCELLED: "Cancelled",
}


def truncate_address(address: str) -> str:
    """0x742d35Cc6634C0532925a3b844Bc9e7595f8dB21 -> 0x742d...dB21"""
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def wei_to_ether(amount_wei: int) -> Decimal:
    return Decimal(Web3.from_wei(amount_wei, "ether"))


def ether_to_wei(amount: Decimal | str | int | float) -> int:
    # str() first so floats like 0.1 don't carry binary noise into the conversion
    return int(Web3.to_wei(Decimal(str(amount)), "ether"))


def format_ether(amount_wei: int, places: int = 4) -> str:
    quantum = Decimal(1).scaleb(-places)
    return str(wei_to_ether(amount_wei).quantize(quantum, rounding=ROUND_DOWN))


def escrow_label(escrow_id: int) -> str:
    return f"#{escrow_id:04d}"
