"""Escrow client: cached, role-partitioned view of the connected account's escrows.

The cache is replaced wholesale by ``refresh()`` and never edited record by
record. Lifecycle operations submit one transaction, await its confirmation and
refresh before returning, so callers always observe post-mutation state. A
single busy flag keeps at most one mutating request outstanding per client.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal

from pydantic import ValidationError

from escrowdesk.config import settings
from escrowdesk.errors import (
    EscrowError,
    InvalidRequest,
    NetworkFailure,
    NotReady,
    RemoteReverted,
    UserRejected,
    classify_error,
)
from escrowdesk.models.escrow import EarningsBalance, EscrowAction, EscrowRecord
from escrowdesk.models.wallet import SessionChange, WalletSnapshot
from escrowdesk.schemas.escrow import CreateEscrowRequest, EscrowStats, EscrowView
from escrowdesk.services.contract import (
    EscrowContract,
    PendingTransaction,
    TransactionReceipt,
    Web3EscrowContract,
)
from escrowdesk.services.notifications import LoggingNotifier, Notifier, Severity
from escrowdesk.services.providers import WalletProvider
from escrowdesk.services.wallet import WalletSession
from escrowdesk.utils.format import ether_to_wei

logger = logging.getLogger(__name__)

# (provider, account) -> binding, or None when no contract is deployed/configured
ContractFactory = Callable[[WalletProvider, str], EscrowContract | None]


def web3_contract_factory(provider: WalletProvider, account: str) -> EscrowContract | None:
    if not settings.contract_configured:
        return None
    return Web3EscrowContract(
        provider,
        settings.escrow_contract_address,
        account,
        tx_poll_interval=settings.tx_poll_interval_seconds,
        gas_limit_multiplier=settings.gas_limit_multiplier,
    )


@dataclass(frozen=True)
class _Messages:
    pending: str
    success: str
    failure: str


_MESSAGES = {
    EscrowAction.CREATE: _Messages("Transaction pending...", "Escrow created!", "Transaction failed"),
    EscrowAction.ACCEPT: _Messages("Accepting job...", "Job accepted!", "Failed to accept job"),
    EscrowAction.SUBMIT_WORK: _Messages("Submitting work...", "Work submitted!", "Failed to submit work"),
    EscrowAction.APPROVE_AND_RELEASE: _Messages(
        "Releasing payment...", "Payment released!", "Failed to release payment"
    ),
    EscrowAction.DISPUTE: _Messages("Filing dispute...", "Dispute filed!", "Failed to file dispute"),
    EscrowAction.CANCEL: _Messages("Cancelling escrow...", "Escrow cancelled!", "Failed to cancel escrow"),
    EscrowAction.WITHDRAW: _Messages("Withdrawing earnings...", "Earnings withdrawn!", "Failed to withdraw"),
}


def _correlation_id(action: EscrowAction, escrow_id: int | None) -> str:
    suffix = uuid.uuid4().hex[:8]
    if escrow_id is None:
        return f"{action.value}-{suffix}"
    return f"{action.value}-{escrow_id}-{suffix}"


class EscrowClient:
    def __init__(
        self,
        session: WalletSession,
        notifier: Notifier | None = None,
        *,
        contract_factory: ContractFactory = web3_contract_factory,
        auto_refresh: bool = True,
    ) -> None:
        self._session = session
        self._notifier = notifier or LoggingNotifier()
        self._contract_factory = contract_factory
        self._auto_refresh = auto_refresh

        self._binding: EscrowContract | None = None
        # Bumped whenever the binding is replaced; results fetched through an
        # older binding are discarded.
        self._generation = 0
        # (records sorted newest first, earnings) replaced in a single assignment
        self._cache: tuple[tuple[EscrowRecord, ...], EarningsBalance] = ((), EarningsBalance())
        # Generation the cache was last filled for; None until the first refresh lands
        self._loaded_generation: int | None = None
        self._refresh_seq = 0
        self._applied_seq = 0
        self._refreshing = 0
        self._busy = False
        self._background: asyncio.Task | None = None

        session.subscribe(self._on_session_change)
        if session.is_connected:
            self._rebind(session.snapshot)
            if self._auto_refresh and self.is_ready:
                self._schedule_refresh()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def binding(self) -> EscrowContract | None:
        return self._binding

    @property
    def is_ready(self) -> bool:
        return self._session.is_connected and self._binding is not None

    @property
    def is_contract_ready(self) -> bool:
        return settings.contract_configured

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing > 0

    @property
    def is_loaded(self) -> bool:
        """True once a refresh has been applied for the current binding."""
        return self._loaded_generation == self._generation

    @property
    def records(self) -> tuple[EscrowRecord, ...]:
        return self._cache[0]

    @property
    def earnings(self) -> EarningsBalance:
        return self._cache[1]

    def client_records(self) -> list[EscrowRecord]:
        account = self._session.address
        return [r for r in self.records if r.is_client(account)]

    def freelancer_records(self) -> list[EscrowRecord]:
        account = self._session.address
        return [r for r in self.records if r.is_freelancer(account)]

    def stats(self) -> EscrowStats:
        return EscrowStats.from_records(self.records)

    def views(self) -> list[EscrowView]:
        account = self._session.address
        return [EscrowView.from_record(r, account) for r in self.records]

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def _rebind(self, snapshot: WalletSnapshot) -> None:
        self._generation += 1
        self._cache = ((), EarningsBalance())
        provider = self._session.provider
        if not snapshot.is_connected or provider is None:
            self._binding = None
            return
        self._binding = self._contract_factory(provider, snapshot.address)
        if self._binding is None:
            logger.warning("Escrow contract address not configured; client not ready")

    def _on_session_change(self, snapshot: WalletSnapshot, change: SessionChange) -> None:
        if change == SessionChange.BALANCE_UPDATED:
            return
        self._rebind(snapshot)
        if self._auto_refresh and self.is_ready:
            self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._background is not None and not self._background.done():
            self._background.cancel()
        self._background = loop.create_task(self._background_refresh())

    async def _background_refresh(self) -> None:
        try:
            await self.refresh()
        except EscrowError as exc:
            await self._notify(Severity.ERROR, "Failed to fetch escrows", f"refresh-{uuid.uuid4().hex[:8]}", exc.detail)
        except Exception:
            logger.exception("Background escrow refresh failed")

    def _require_binding(self) -> tuple[EscrowContract, int]:
        if not self._session.is_connected:
            raise NotReady("Wallet not connected")
        if self._binding is None:
            raise NotReady("Contract not connected. Please ensure you are connected to the correct network.")
        return self._binding, self._generation

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> tuple[EscrowRecord, ...]:
        """Refetch ids, earnings and every record; replace the cache only if all succeed."""
        binding, generation = self._require_binding()
        self._refresh_seq += 1
        seq = self._refresh_seq
        self._refreshing += 1
        try:
            client_ids, freelancer_ids, earnings = await asyncio.gather(
                binding.get_my_client_escrows(),
                binding.get_my_freelancer_escrows(),
                binding.get_my_earnings(),
            )
            ids = sorted(set(client_ids) | set(freelancer_ids))

            semaphore = asyncio.Semaphore(max(1, settings.hydration_concurrency))

            async def hydrate(escrow_id: int) -> EscrowRecord:
                async with semaphore:
                    return await binding.get_escrow(escrow_id)

            fetched = await asyncio.gather(*(hydrate(i) for i in ids))
        except Exception as exc:
            classified = classify_error(exc)
            logger.warning("Escrow refresh failed for %s: %s", binding.account, classified)
            if classified is exc:
                raise
            raise classified from exc
        finally:
            self._refreshing -= 1

        if generation != self._generation:
            logger.info("Discarding escrow refresh for %s: binding replaced", binding.account)
            return self.records
        if seq < self._applied_seq:
            logger.info("Discarding escrow refresh #%d: newer refresh already applied", seq)
            return self.records

        by_id = {record.id: record for record in fetched}
        records = tuple(sorted(by_id.values(), key=lambda r: (r.created_at, r.id), reverse=True))
        self._applied_seq = seq
        self._cache = (records, EarningsBalance(int(earnings)))
        self._loaded_generation = generation
        logger.debug("Escrow refresh #%d: %d records, earnings=%s", seq, len(records), earnings)
        return records

    # ------------------------------------------------------------------
    # Informational reads
    # ------------------------------------------------------------------

    async def _read(self, call: Callable[[EscrowContract], Awaitable]):
        binding, _ = self._require_binding()
        try:
            return await call(binding)
        except Exception as exc:
            classified = classify_error(exc)
            if classified is exc:
                raise
            raise classified from exc

    async def platform_fee(self) -> int:
        """Fee percentage the contract reports. Informational; never used locally."""
        return await self._read(lambda c: c.platform_fee())

    async def owner(self) -> str:
        return await self._read(lambda c: c.owner())

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def _notify(
        self,
        severity: Severity,
        message: str,
        correlation_id: str,
        description: str | None = None,
    ) -> None:
        try:
            await self._notifier.notify(severity, message, correlation_id, description)
        except Exception:
            logger.exception("Notifier failed for %s", correlation_id)

    async def _report_failure(self, exc: BaseException, messages: _Messages, correlation_id: str) -> None:
        if isinstance(exc, UserRejected):
            await self._notify(
                Severity.ERROR, "Request cancelled", correlation_id, "You rejected the request in your wallet."
            )
        elif isinstance(exc, RemoteReverted):
            await self._notify(Severity.ERROR, messages.failure, correlation_id, exc.reason or exc.detail)
        elif isinstance(exc, NetworkFailure):
            await self._notify(Severity.ERROR, messages.failure, correlation_id, f"Network error: {exc.detail}")
        else:
            await self._notify(Severity.ERROR, messages.failure, correlation_id, str(exc))

    async def _run(
        self,
        action: EscrowAction,
        escrow_id: int | None,
        submit: Callable[[EscrowContract], Awaitable[PendingTransaction]],
    ) -> TransactionReceipt:
        binding, generation = self._require_binding()
        if self._busy:
            raise NotReady("Another transaction is in progress")

        messages = _MESSAGES[action]
        correlation_id = _correlation_id(action, escrow_id)
        self._busy = True
        try:
            try:
                pending = await submit(binding)
                await self._notify(Severity.LOADING, messages.pending, correlation_id, f"Transaction {pending.tx_hash}")
                receipt = await pending.wait()
            except Exception as exc:
                classified = classify_error(exc)
                logger.warning("%s failed for %s: %s", action.value, binding.account, classified)
                await self._report_failure(classified, messages, correlation_id)
                if classified is exc:
                    raise
                raise classified from exc

            logger.info("%s confirmed for %s: tx=%s", action.value, binding.account, receipt.tx_hash)
            await self._notify(
                Severity.SUCCESS, messages.success, correlation_id,
                f"Transaction confirmed: {receipt.tx_hash[:10]}...",
            )

            if action == EscrowAction.WITHDRAW and generation == self._generation:
                # Optimistic until the refresh below reports the authoritative value
                self._cache = (self.records, EarningsBalance(0, optimistic=True))

            await self._refresh_after_mutation(correlation_id)
            return receipt
        finally:
            self._busy = False

    async def _refresh_after_mutation(self, correlation_id: str) -> None:
        """The mutation already succeeded; a failed resync is reported, not raised."""
        if not self.is_ready:
            return
        try:
            await self.refresh()
        except EscrowError as exc:
            await self._notify(Severity.ERROR, "Failed to fetch escrows", f"{correlation_id}-refresh", exc.detail)
        try:
            await self._session.refresh_balance()
        except EscrowError as exc:
            logger.warning("Wallet balance refresh failed: %s", exc.detail)

    async def create_escrow(
        self, description: str, freelancer: str, amount: Decimal | str | float
    ) -> TransactionReceipt:
        """Escrow ``amount`` ether for ``freelancer``. The value is fixed at submission."""
        try:
            request = CreateEscrowRequest.model_validate(
                {"description": description, "freelancer": freelancer, "amount": amount},
                context={"min_description_length": settings.min_description_length},
            )
        except ValidationError as exc:
            raise InvalidRequest(exc.errors()[0]["msg"]) from exc

        value = ether_to_wei(request.amount)
        return await self._run(
            EscrowAction.CREATE,
            None,
            lambda c: c.create_escrow(request.description, request.freelancer, value),
        )

    async def accept_escrow(self, escrow_id: int) -> TransactionReceipt:
        return await self._run(EscrowAction.ACCEPT, escrow_id, lambda c: c.accept_escrow(escrow_id))

    async def submit_work(self, escrow_id: int) -> TransactionReceipt:
        return await self._run(EscrowAction.SUBMIT_WORK, escrow_id, lambda c: c.submit_work(escrow_id))

    async def approve_and_release(self, escrow_id: int) -> TransactionReceipt:
        return await self._run(
            EscrowAction.APPROVE_AND_RELEASE, escrow_id, lambda c: c.approve_and_release(escrow_id)
        )

    async def dispute(self, escrow_id: int) -> TransactionReceipt:
        return await self._run(EscrowAction.DISPUTE, escrow_id, lambda c: c.dispute(escrow_id))

    async def cancel_escrow(self, escrow_id: int) -> TransactionReceipt:
        return await self._run(EscrowAction.CANCEL, escrow_id, lambda c: c.cancel_escrow(escrow_id))

    async def withdraw_earnings(self) -> TransactionReceipt:
        self._require_binding()
        if not self.is_loaded:
            await self.refresh()
        if self.earnings.amount <= 0:
            raise NotReady("No earnings to withdraw")
        return await self._run(EscrowAction.WITHDRAW, None, lambda c: c.withdraw_earnings())

    async def aclose(self) -> None:
        self._session.unsubscribe(self._on_session_change)
        if self._background is not None and not self._background.done():
            self._background.cancel()
            try:
                await self._background
            except asyncio.CancelledError:
                pass
