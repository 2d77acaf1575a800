#!/usr/bin/env python3
"""
Live Demo: a client and a freelancer take one escrow through its whole lifecycle.

Account 1: the client (funds the escrow, approves the work)
Account 2: the freelancer (accepts, delivers, withdraws earnings)

Showcases:
  1. Wallet discovery & connection
  2. Escrow creation (funds held by the contract)
  3. Account switch without a reconnect
  4. Accept & submit work
  5. Approve & release
  6. Earnings withdrawal
  7. A role violation surfacing as a contract revert

Run against a local node with the escrow contract deployed:
  1. Start a node:   anvil
  2. Configure:      BLOCKCHAIN_NETWORK=local ESCROW_CONTRACT_ADDRESS=0x...
                     WALLET_PRIVATE_KEYS='["0x<client key>", "0x<freelancer key>"]'
  3. Run this demo:  python scripts/demo_escrow.py [--yes]
"""

import asyncio
import logging
import sys

from eth_account import Account

from escrowdesk.config import settings
from escrowdesk.errors import EscrowError, RemoteReverted
from escrowdesk.models.wallet import ProviderKind
from escrowdesk.services.escrow import EscrowClient
from escrowdesk.services.notifications import notifier_from_settings
from escrowdesk.services.providers import ProviderRegistry, Web3WalletProvider
from escrowdesk.services.wallet import WalletSession
from escrowdesk.utils.format import format_ether, truncate_address

AUTO_APPROVE = "--yes" in sys.argv[1:]

# ─── Colors ───

BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
MAGENTA = "\033[95m"
RESET = "\033[0m"


def banner(text: str) -> None:
    print(f"\n{'═' * 64}")
    print(f"  {BOLD}{text}{RESET}")
    print(f"{'═' * 64}")


def step(num: int, text: str) -> None:
    print(f"\n{BOLD}{CYAN}Step {num:2d}{RESET} │ {text}")


def party_says(name: str, color: str, msg: str) -> None:
    print(f"         {color}{BOLD}{name}{RESET}: {msg}")


def chain_says(msg: str) -> None:
    print(f"         {MAGENTA}⛓ Chain{RESET}: {msg}")


def fail(msg: str) -> None:
    print(f"\n{RED}{BOLD}✖ FAILED: {msg}{RESET}")
    sys.exit(1)


async def approve(method: str, params: dict) -> bool:
    """Stand-in for the wallet's confirmation prompt."""
    if AUTO_APPROVE:
        return True
    summary = method
    if params.get("value"):
        summary += f" sending {format_ether(params['value'])} ETH"
    answer = await asyncio.to_thread(input, f"         {YELLOW}Wallet{RESET}: approve {summary}? [Y/n] ")
    return answer.strip().lower() in ("", "y", "yes")


def show_escrows(client: EscrowClient) -> None:
    for view in client.views():
        actions = ", ".join(view.actions) or "-"
        print(
            f"         {DIM}{view.label}  {view.status_label:<12} {view.amount_eth} ETH  "
            f"client={view.client_short} freelancer={view.freelancer_short}  actions: {actions}{RESET}"
        )


async def main() -> None:
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if len(settings.wallet_private_keys) < 2:
        fail("WALLET_PRIVATE_KEYS must hold two keys (client, freelancer)")
    if not settings.contract_configured:
        fail("ESCROW_CONTRACT_ADDRESS is not set")

    provider = Web3WalletProvider.from_settings(settings, authorize=approve)
    session = WalletSession(ProviderRegistry([provider]))
    notifier = notifier_from_settings(settings)
    client = EscrowClient(session, notifier)
    watcher = asyncio.create_task(provider.watch(settings.chain_poll_interval_seconds))

    try:
        banner("ESCROW LIFECYCLE DEMO")

        # ─── Step 1: Connect ───
        step(1, "Connect wallet")
        preferred = ProviderKind(settings.preferred_provider_kind) if settings.preferred_provider_kind else None
        snapshot = await session.connect(preferred)
        client_addr = snapshot.address
        freelancer_addr = Account.from_key(settings.wallet_private_keys[1]).address.lower()
        party_says("Client", GREEN, f"connected {truncate_address(client_addr)} on chain {snapshot.chain_id}")
        party_says("Client", GREEN, f"balance {snapshot.balance} ETH via {snapshot.provider_kind.value}")
        chain_says(f"platform fee {await client.platform_fee()}%, owner {truncate_address(await client.owner())}")

        # ─── Step 2: Create ───
        step(2, "Client creates an escrow for 0.01 ETH")
        receipt = await client.create_escrow("Build a landing page for the launch", freelancer_addr, "0.01")
        chain_says(f"mined in block {receipt.block_number}: {receipt.tx_hash[:18]}...")
        escrow_id = client.client_records()[0].id
        show_escrows(client)

        # ─── Step 3: Role violation ───
        step(3, "Client tries to accept their own posting")
        try:
            await client.accept_escrow(escrow_id)
            fail("accept by the client should have reverted")
        except RemoteReverted as e:
            chain_says(f"reverted as expected: {e.reason}")

        # ─── Step 4: Switch to freelancer ───
        step(4, "Switch wallet to the freelancer account")
        await provider.select_account(freelancer_addr)
        party_says("Freelancer", YELLOW, f"now active: {truncate_address(session.address)}")
        await client.refresh()
        show_escrows(client)

        # ─── Step 5: Accept & submit ───
        step(5, "Freelancer accepts and submits work")
        await client.accept_escrow(escrow_id)
        await client.submit_work(escrow_id)
        show_escrows(client)

        # ─── Step 6: Approve & release ───
        step(6, "Client approves and releases payment")
        await provider.select_account(client_addr)
        await client.approve_and_release(escrow_id)
        show_escrows(client)

        # ─── Step 7: Withdraw ───
        step(7, "Freelancer withdraws earnings")
        await provider.select_account(freelancer_addr)
        await client.refresh()
        party_says("Freelancer", YELLOW, f"earnings {format_ether(client.earnings.amount)} ETH")
        await client.withdraw_earnings()
        party_says("Freelancer", YELLOW, f"wallet balance now {session.snapshot.balance} ETH")

        stats = client.stats()
        chain_says(
            f"{stats.total} escrows: {stats.in_progress} in progress, "
            f"{stats.completed} completed, {stats.disputed} disputed"
        )

        banner(f"{GREEN}✔ DEMO COMPLETE{RESET}")
    except EscrowError as e:
        fail(f"{type(e).__name__}: {e.detail}")
    finally:
        watcher.cancel()
        await watcher
        await client.aclose()
        await session.aclose()
        await notifier.aclose()


if __name__ == "__main__":
    asyncio.run(main())
