"""
Settlement coordinator - pays out approved task rewards exactly once.

A settlement row is written in the same transaction as the task's
Approved transition (see TaskHandlers). After that transaction commits,
dispatch() submits the RewardToken mint/transfer with bounded,
exponentially backed-off retries. The signed transaction is persisted
before the first broadcast so retries and restarts re-send the same
bytes instead of signing a second payout. Confirmation happens when the
ingestor observes the matching Transfer event.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Tuple

from eth_account.signers.local import LocalAccount
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import REWARD_TOKEN, Settings
from ..core.database import Database
from ..core.exceptions import (
    LedgerRevertError,
    NotFoundError,
    SettlementFailure,
    StateViolation,
    TransientRPCError,
    ValidationError,
)
from ..core.logging import get_logger
from ..models.base import utcnow
from ..models.settlement import Settlement, SettlementStatus
from ..models.task import Task, TaskSettlementStatus, TaskStatus
from ..utils.amounts import convert_units
from .ledger_client import PreparedTransaction


RESUMABLE = (SettlementStatus.QUEUED, SettlementStatus.SUBMITTING)


class SettlementCoordinator:
    """Drives reward settlement transactions for approved tasks."""

    def __init__(
        self,
        database: Database,
        adapter,
        settings: Settings,
        signer: Optional[LocalAccount] = None,
        logger=None,
    ):
        self.database = database
        self.adapter = adapter
        self.settings = settings
        self.signer = signer
        self.logger = (logger or get_logger(__name__)).bind(service="settlement_coordinator")

        self._inflight: Dict[int, asyncio.Task] = {}
        self._stopping = False

    @property
    def enabled(self) -> bool:
        return self.settings.settlement_enabled and self.signer is not None and self.adapter is not None

    # Engine-side bookkeeping (runs inside the engine's transaction)

    async def enqueue(self, session: AsyncSession, task: Task) -> Tuple[Optional[Settlement], bool]:
        """
        Record that the task's reward is owed.

        Returns the settlement and whether it needs dispatching. Insert-if-
        absent on task_id keeps this idempotent across duplicate approvals
        and replays.
        """
        amount = convert_units(
            task.reward_amount,
            self.settings.ledger_decimals,
            self.settings.token_decimals,
        )
        if amount == 0:
            self.logger.info("Zero reward, nothing to settle", task_id=task.id)
            return None, False

        result = await session.execute(
            select(Settlement)
            .where(Settlement.task_id == task.id)
            .execution_options(populate_existing=True)
        )
        settlement = result.scalar_one_or_none()
        fresh = False

        if settlement is None:
            settlement = Settlement(
                task_id=task.id,
                recipient_address=task.assigned_child_address,
                amount=amount,
                method=self.settings.settlement_method,
                status=SettlementStatus.QUEUED,
                attempts=0,
            )
            session.add(settlement)
            fresh = True
            self.logger.info(
                "Settlement queued",
                task_id=task.id,
                recipient=task.assigned_child_address,
                amount=amount,
            )
        elif settlement.status == SettlementStatus.CANCELLED:
            settlement.status = SettlementStatus.QUEUED
            settlement.recipient_address = task.assigned_child_address
            settlement.amount = amount
            settlement.attempts = 0
            settlement.last_error = None
            fresh = True
            self.logger.info("Cancelled settlement revived", task_id=task.id)

        task.settlement_status = settlement.status.task_status
        return settlement, fresh

    async def find_by_tx_hash(self, session: AsyncSession, tx_hash: str) -> Optional[Settlement]:
        result = await session.execute(
            select(Settlement)
            .where(Settlement.tx_hash == tx_hash)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def confirm(
        self,
        session: AsyncSession,
        settlement: Settlement,
        recipient: str,
        amount: int,
        block_number: int,
    ) -> bool:
        """
        Mark a settlement confirmed by its on-ledger Transfer.

        Returns False when it was already confirmed.
        """
        if recipient != settlement.recipient_address or amount != settlement.amount:
            raise StateViolation(
                f"Transfer for settlement of task {settlement.task_id} does not match",
                {
                    "task_id": settlement.task_id,
                    "expected_recipient": settlement.recipient_address,
                    "expected_amount": str(settlement.amount),
                    "recipient": recipient,
                    "amount": str(amount),
                },
            )
        if settlement.status == SettlementStatus.CONFIRMED:
            return False

        settlement.status = SettlementStatus.CONFIRMED
        settlement.confirmed_block = block_number
        settlement.confirmed_at = utcnow()

        task = await session.get(Task, settlement.task_id, populate_existing=True)
        if task is not None:
            task.settlement_status = TaskSettlementStatus.SETTLED

        self.logger.info(
            "Settlement confirmed",
            task_id=settlement.task_id,
            tx_hash=settlement.tx_hash,
            block_number=block_number,
        )
        return True

    async def reconcile_after_rollback(self, session: AsyncSession) -> Tuple[List[int], List[int]]:
        """
        Bring settlements back in line with the replayed tasks.

        Queued settlements whose task is no longer approved are cancelled.
        Submitted ones cannot be recalled and are reported for review.
        Submitted settlements of still-approved tasks have lost (or never
        had) their confirming Transfer on the canonical chain; they go back
        to submitting so the stored transaction is broadcast again.

        Returns (cancelled, resubmit) task ids.
        """
        result = await session.execute(
            select(Settlement, Task)
            .outerjoin(Task, Task.id == Settlement.task_id)
            .where(Settlement.status.in_([
                SettlementStatus.QUEUED,
                SettlementStatus.SUBMITTING,
                SettlementStatus.SUBMITTED,
            ]))
        )
        cancelled, resubmit = [], []
        for settlement, task in result.all():
            if task is not None and task.status == TaskStatus.APPROVED:
                if settlement.status == SettlementStatus.SUBMITTED:
                    settlement.status = SettlementStatus.SUBMITTING
                    task.settlement_status = settlement.status.task_status
                    resubmit.append(settlement.task_id)
                continue
            if settlement.status == SettlementStatus.QUEUED:
                settlement.status = SettlementStatus.CANCELLED
                settlement.last_error = "approval dropped by chain reorganisation"
                cancelled.append(settlement.task_id)
            else:
                self.logger.error(
                    "Submitted settlement lost its approval in a reorg",
                    alert="settlement_review",
                    task_id=settlement.task_id,
                    tx_hash=settlement.tx_hash,
                )

        if cancelled:
            self.logger.warning("Settlements cancelled after rollback", task_ids=cancelled)
        if resubmit:
            self.logger.warning("Unconfirmed settlements queued for re-broadcast", task_ids=resubmit)
        return cancelled, resubmit

    # Submission

    def dispatch(self, task_ids: Iterable[int]) -> None:
        """Start submissions for committed settlements. Non-blocking."""
        task_ids = list(task_ids)
        if not task_ids:
            return
        if not self.enabled:
            self.logger.warning("Settlement disabled, leaving queued", task_ids=task_ids)
            return
        if self._stopping:
            return

        for task_id in task_ids:
            if task_id in self._inflight:
                continue
            job = asyncio.create_task(self._settle(task_id), name=f"settle-{task_id}")
            self._inflight[task_id] = job
            job.add_done_callback(lambda _, task_id=task_id: self._inflight.pop(task_id, None))

    async def start(self) -> None:
        """Resume settlements interrupted by a restart."""
        self._stopping = False
        await self.resume()

    async def resume(self) -> List[int]:
        async with self.database.session() as session:
            result = await session.execute(
                select(Settlement.task_id).where(Settlement.status.in_(RESUMABLE))
            )
            task_ids = list(result.scalars())

        if task_ids:
            self.logger.info("Resuming settlements", count=len(task_ids))
            self.dispatch(task_ids)
        return task_ids

    async def retry(self, task_id: int, fresh: bool = False) -> None:
        """
        Operator retry of an escalated settlement.

        By default the stored signed transaction is re-broadcast; fresh=True
        discards it and signs a new one.
        """
        async with self.database.session() as session:
            result = await session.execute(select(Settlement).where(Settlement.task_id == task_id))
            settlement = result.scalar_one_or_none()
            if settlement is None:
                raise NotFoundError(f"No settlement for task {task_id}", {"task_id": task_id})
            if settlement.status != SettlementStatus.SETTLEMENT_PENDING:
                raise ValidationError(
                    f"Settlement for task {task_id} is {settlement.status.value}, not settlement_pending",
                    {"task_id": task_id, "status": settlement.status.value},
                )

            if fresh or settlement.raw_transaction is None:
                settlement.raw_transaction = None
                settlement.tx_hash = None
                settlement.nonce = None
                settlement.status = SettlementStatus.QUEUED
            else:
                settlement.status = SettlementStatus.SUBMITTING
            settlement.attempts = 0
            settlement.last_error = None

            task = await session.get(Task, task_id)
            if task is not None:
                task.settlement_status = settlement.status.task_status

        self.logger.info("Settlement retry requested", task_id=task_id, fresh=fresh)
        self.dispatch([task_id])

    async def wait_idle(self) -> None:
        """Wait for every in-flight submission to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Drain in-flight submissions, then cancel what is left."""
        self._stopping = True
        if not self._inflight:
            return

        timeout = self.settings.shutdown_grace_period if timeout is None else timeout
        jobs = list(self._inflight.values())
        self.logger.info("Draining settlements", count=len(jobs), timeout=timeout)

        done, pending = await asyncio.wait(jobs, timeout=timeout)
        for job in pending:
            job.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self.logger.warning("Settlements interrupted by shutdown", count=len(pending))

    async def _settle(self, task_id: int) -> None:
        try:
            tx_hash = await self._submit_with_retries(task_id)
            if tx_hash is not None and self.settings.settlement_receipt_timeout > 0:
                await self._await_receipt(task_id, tx_hash)
        except SettlementFailure as failure:
            await self._escalate(failure)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception("Unexpected settlement error", task_id=task_id)
            await self._escalate(SettlementFailure(task_id, f"unexpected error: {e}"))

    async def _submit_with_retries(self, task_id: int) -> Optional[str]:
        async with self.database.session() as session:
            result = await session.execute(select(Settlement).where(Settlement.task_id == task_id))
            settlement = result.scalar_one_or_none()
            if settlement is None or settlement.status not in RESUMABLE:
                return None
            recipient = settlement.recipient_address
            amount = settlement.amount
            method = settlement.method
            attempt = 0
            prepared = None
            if settlement.raw_transaction is not None:
                prepared = PreparedTransaction(
                    contract=REWARD_TOKEN,
                    method=method,
                    sender=self.signer.address,
                    nonce=settlement.nonce,
                    raw_transaction=settlement.raw_transaction,
                    tx_hash=settlement.tx_hash,
                )

        max_attempts = self.settings.settlement_max_attempts
        timeout = self.settings.settlement_submit_timeout
        last_error = None

        while attempt < max_attempts:
            attempt += 1
            try:
                if prepared is None:
                    prepared = await asyncio.wait_for(
                        self.adapter.prepare_transaction(
                            REWARD_TOKEN, method, [recipient, amount], self.signer
                        ),
                        timeout,
                    )
                    if not await self._mark_submitting(task_id, prepared, attempt):
                        self.adapter.reset_nonce(self.signer.address)
                        self.logger.info("Settlement no longer queued, not broadcasting", task_id=task_id)
                        return None

                tx_hash = await asyncio.wait_for(self.adapter.broadcast(prepared), timeout)

            except LedgerRevertError as e:
                raise SettlementFailure(task_id, f"ledger rejected {method}: {e.message}", {"attempt": attempt})

            except (TransientRPCError, asyncio.TimeoutError) as e:
                last_error = getattr(e, "message", None) or type(e).__name__
                delay = min(
                    self.settings.settlement_backoff_base * (2 ** (attempt - 1)),
                    self.settings.settlement_backoff_max,
                )
                self.logger.warning(
                    "Settlement attempt failed",
                    task_id=task_id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=last_error,
                    retry_in=delay if attempt < max_attempts else None,
                )
                await self._record_attempt(task_id, attempt, last_error)
                if attempt < max_attempts:
                    await asyncio.sleep(delay)
                continue

            await self._mark_submitted(task_id, tx_hash, attempt)
            self.logger.info("Settlement submitted", task_id=task_id, tx_hash=tx_hash, attempt=attempt)
            return tx_hash

        raise SettlementFailure(
            task_id,
            f"gave up after {max_attempts} attempts: {last_error}",
            {"attempts": attempt},
        )

    async def _await_receipt(self, task_id: int, tx_hash: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.settlement_receipt_timeout

        while loop.time() < deadline:
            try:
                status = await self.adapter.get_receipt_status(tx_hash)
            except TransientRPCError as e:
                self.logger.debug("Receipt poll failed", task_id=task_id, error=e.message)
                status = None

            if status is True:
                self.logger.info("Settlement mined", task_id=task_id, tx_hash=tx_hash)
                return
            if status is False:
                raise SettlementFailure(task_id, "settlement transaction reverted", {"tx_hash": tx_hash})
            await asyncio.sleep(self.settings.poll_interval)

        self.logger.warning("Settlement receipt not seen yet", task_id=task_id, tx_hash=tx_hash)

    async def _mark_submitting(self, task_id: int, prepared: PreparedTransaction, attempt: int) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(Settlement)
                .where(Settlement.task_id == task_id, Settlement.status.in_(RESUMABLE))
                .values(
                    status=SettlementStatus.SUBMITTING,
                    nonce=prepared.nonce,
                    tx_hash=prepared.tx_hash,
                    raw_transaction=prepared.raw_transaction,
                    attempts=attempt,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount == 0:
                return False
            await session.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(settlement_status=TaskSettlementStatus.SUBMITTED)
            )
        return True

    async def _mark_submitted(self, task_id: int, tx_hash: str, attempt: int) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(Settlement)
                .where(Settlement.task_id == task_id, Settlement.status == SettlementStatus.SUBMITTING)
                .values(
                    status=SettlementStatus.SUBMITTED,
                    tx_hash=tx_hash,
                    attempts=attempt,
                    last_error=None,
                    submitted_at=utcnow(),
                    updated_at=utcnow(),
                )
            )

    async def _record_attempt(self, task_id: int, attempt: int, error: str) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(Settlement)
                .where(Settlement.task_id == task_id)
                .values(attempts=attempt, last_error=error, updated_at=utcnow())
            )

    async def _escalate(self, failure: SettlementFailure) -> None:
        self.logger.error(
            "Settlement escalated for operator review",
            alert="settlement_pending",
            task_id=failure.task_id,
            reason=failure.reason,
            code=failure.code,
        )
        if self.signer is not None:
            self.adapter.reset_nonce(self.signer.address)

        async with self.database.session() as session:
            await session.execute(
                update(Settlement)
                .where(
                    Settlement.task_id == failure.task_id,
                    Settlement.status != SettlementStatus.CONFIRMED,
                )
                .values(
                    status=SettlementStatus.SETTLEMENT_PENDING,
                    last_error=failure.reason,
                    updated_at=utcnow(),
                )
            )
            await session.execute(
                update(Task)
                .where(
                    Task.id == failure.task_id,
                    Task.settlement_status != TaskSettlementStatus.SETTLED,
                )
                .values(settlement_status=TaskSettlementStatus.SETTLEMENT_PENDING)
            )
