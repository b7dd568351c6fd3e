"""
Event ingestor - turns ledger logs into a linear, deduplicated, gap-free
stream of DomainEvents and feeds it to the reconciliation engine.

A producer task backfills from the checkpoint with fetch_logs, then
follows the adapter's subscription. Every range is sorted by
(block_number, log_index), deduplicated by (transaction_hash, log_index)
and checked against the canonical chain; a reorganisation becomes a
RollbackInstruction placed in stream order. A single consumer task applies
queue items one by one: engine changes and the checkpoint that certifies
them commit in the same transaction.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from ..core.config import TASK_REGISTRY, Settings
from ..core.database import Database
from ..core.exceptions import (
    CheckpointPersistenceError,
    ConfigurationError,
    DatabaseError,
    InvalidEventPayload,
    LedgerRevertError,
    ReorgDetected,
    TransientRPCError,
)
from ..core.logging import get_logger
from ..models.event import LedgerEvent
from ..models.task import Task
from ..services.checkpoint_tracker import CheckpointTracker
from ..services.event_parser import DomainEvent, EventParser
from ..services.ledger_client import LogBatch, RawLog
from .core.types import (
    EventBatch,
    IndexerStatus,
    IngestionStats,
    LedgerPosition,
    RollbackInstruction,
)
from .engine import ReconciliationEngine


QueueItem = Union[EventBatch, RollbackInstruction]
Sink = Callable[[QueueItem], Awaitable[None]]

_STOP = object()


class EventIngestor:
    """
    Ordered, reorg-aware event delivery into the reconciliation engine.
    """

    def __init__(
        self,
        adapter,
        parser: EventParser,
        engine: ReconciliationEngine,
        checkpoints: CheckpointTracker,
        database: Database,
        settings: Settings,
        settlements=None,
        logger=None,
    ):
        self.adapter = adapter
        self.parser = parser
        self.engine = engine
        self.checkpoints = checkpoints
        self.database = database
        self.settings = settings
        self.settlements = settlements
        self.chain_id = settings.chain_id
        self.logger = (logger or get_logger(__name__)).bind(service="event_ingestor", chain_id=self.chain_id)

        self.status = IndexerStatus.STOPPED
        self.stats = IngestionStats()

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=settings.ingest_queue_size)
        self._producer_task: Optional[asyncio.Task] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._stop_lock = asyncio.Lock()
        self._initialized = False
        self._fatal: Optional[BaseException] = None

        # Stream state
        self._next_block = settings.genesis_block
        self._applied_floor: Optional[LedgerPosition] = None
        self._high_water = LedgerPosition.end_of_block(settings.genesis_block - 1)
        self._block_hashes: Dict[int, str] = {}
        self._seen: Dict[Tuple[str, int], int] = {}

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # Lifecycle

    async def initialize(self) -> None:
        """Verify the chain and position the stream after the checkpoint."""
        chain_id = await self._with_retry("get_chain_id", self.adapter.get_chain_id)
        if chain_id != self.chain_id:
            raise ConfigurationError(
                f"Ledger reports chain id {chain_id}, configured {self.chain_id}",
                {"reported": chain_id, "configured": self.chain_id},
            )

        checkpoint = await self.checkpoints.load(self.chain_id)
        if checkpoint is None:
            self._next_block = self.settings.genesis_block
            self._high_water = LedgerPosition.end_of_block(self.settings.genesis_block - 1)
        else:
            self._next_block = checkpoint.resume_block
            self._high_water = checkpoint
        self._applied_floor = checkpoint

        await self._seed_block_hashes()
        self._initialized = True

        self.logger.info(
            "Event ingestor initialized",
            checkpoint=str(checkpoint) if checkpoint else None,
            next_block=self._next_block,
        )

    async def start(self) -> None:
        """Start the producer and consumer tasks."""
        if not self._initialized:
            await self.initialize()

        self._stopping = False
        self._fatal = None
        self.status = IndexerStatus.STARTING
        self._producer_task = asyncio.create_task(self._produce(), name="ingestor-producer")
        self._consumer_task = asyncio.create_task(self._consume(), name="ingestor-consumer")
        self.logger.info("Event ingestor started")

    async def run(self) -> None:
        """Run until stop() is called or a fatal error occurs."""
        await self.start()
        await asyncio.wait([self._consumer_task])
        await self.stop()
        if self._fatal is not None:
            raise self._fatal

    async def stop(self) -> None:
        """
        Cooperative shutdown: the producer is cancelled at its next await,
        the consumer finishes what is queued and exits. Concurrent callers
        wait for the first one.
        """
        async with self._stop_lock:
            if self._producer_task is None and self._consumer_task is None:
                return

            self._stopping = True
            if self.status != IndexerStatus.ERROR:
                self.status = IndexerStatus.STOPPING

            if self._producer_task is not None and not self._producer_task.done():
                self._producer_task.cancel()
                await asyncio.gather(self._producer_task, return_exceptions=True)

            if self._consumer_task is not None and not self._consumer_task.done():
                await self._queue.put(_STOP)
                await asyncio.gather(self._consumer_task, return_exceptions=True)

            self._producer_task = None
            self._consumer_task = None
            if self.status != IndexerStatus.ERROR:
                self.status = IndexerStatus.STOPPED
            self.logger.info("Event ingestor stopped", stats=self.stats.to_dict())

    async def sync_to_head(self) -> IngestionStats:
        """Ingest and apply everything up to the confirmed head, inline."""
        if not self._initialized:
            await self.initialize()

        self.status = IndexerStatus.BACKFILLING
        self._next_block = await self._backfill(self._next_block, self._apply_item)
        self.status = IndexerStatus.STOPPED
        return self.stats

    def get_status(self) -> dict:
        return {
            "status": self.status.value,
            "chain_id": self.chain_id,
            "next_block": self._next_block,
            "high_water": str(self._high_water),
            "queue_size": self._queue.qsize(),
            "stats": self.stats.to_dict(),
        }

    # Producer

    async def _produce(self) -> None:
        try:
            self.status = IndexerStatus.BACKFILLING
            next_block = await self._backfill(self._next_block, self._queue.put)

            self.status = IndexerStatus.LIVE
            self.logger.info("Backfill complete, following the ledger", next_block=next_block)

            while not self._stopping:
                subscription = self.adapter.subscribe(next_block)
                try:
                    async for batch in subscription:
                        resume = await self._deliver(batch, self._queue.put)
                        next_block = resume
                        self._next_block = resume
                        if resume != batch.to_block + 1:
                            break
                finally:
                    await subscription.aclose()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception("Event producer failed")
            self._fatal = e
            self.status = IndexerStatus.ERROR
            self.stats.last_error = str(e)
            await self._queue.put(_STOP)

    async def _backfill(self, next_block: int, sink: Sink) -> int:
        """Fetch and deliver closed ranges until the confirmed head."""
        while not self._stopping:
            head = await self._with_retry("get_block_number", self.adapter.get_block_number)
            safe_head = head - self.settings.confirmations
            if next_block > safe_head:
                break

            to_block = min(safe_head, next_block + self.settings.max_block_range - 1)
            logs = await self._with_retry(
                "fetch_logs",
                lambda: self.adapter.fetch_logs(next_block, to_block),
            )
            next_block = await self._deliver(LogBatch(next_block, to_block, logs), sink)
            self._next_block = next_block

        return next_block

    async def _deliver(self, batch: LogBatch, sink: Sink) -> int:
        """Prepare one range, hand its items to the sink, return the next block."""
        items, resume = await self._with_retry("prepare_range", lambda: self._prepare_range(batch))
        for item in items:
            await sink(item)
        self.stats.ranges_processed += 1
        return resume

    async def _prepare_range(self, batch: LogBatch) -> Tuple[List[QueueItem], int]:
        """
        Turn one block range into queue items.

        No stream state changes until every RPC call has succeeded, so a
        transient failure can retry the whole range.
        """
        try:
            await self._check_canonical()
        except ReorgDetected as reorg:
            self.logger.warning("Chain reorganisation detected", **reorg.details)
            ancestor = await self._find_common_ancestor(reorg.block_number - 1)
            return [self._begin_rollback(ancestor)], ancestor + 1

        events: List[DomainEvent] = []
        seen: Dict[Tuple[str, int], int] = {}
        hashes: Dict[int, str] = {}
        duplicates = 0

        for log in sorted(batch.logs, key=lambda entry: entry.sort_key):
            if log.removed:
                self.logger.warning("Removed log delivered", block_number=log.block_number, tx=log.transaction_hash)
                ancestor = await self._find_common_ancestor(log.block_number - 1)
                return [self._begin_rollback(ancestor)], ancestor + 1

            position = LedgerPosition(log.block_number, log.log_index)
            if self._applied_floor is not None and position <= self._applied_floor:
                continue

            key = log.dedup_key
            if key in self._seen or key in seen:
                duplicates += 1
                self.logger.debug("Duplicate log dropped", tx=log.transaction_hash, log_index=log.log_index)
                continue

            if position <= self._high_water:
                if log.block_number < self._window_floor():
                    self.logger.warning(
                        "Late log older than reorg window dropped",
                        block_number=log.block_number,
                        tx=log.transaction_hash,
                    )
                    continue
                self.logger.warning(
                    "Unseen log below high-water mark, rewinding",
                    block_number=log.block_number,
                    high_water=str(self._high_water),
                )
                return [self._begin_rollback(log.block_number - 1)], log.block_number

            known = hashes.get(log.block_number)
            if known is not None and known != log.block_hash:
                self.logger.warning("Inconsistent block hashes in range, refetching", block_number=log.block_number)
                return [], batch.from_block
            hashes[log.block_number] = log.block_hash
            seen[key] = log.block_number

            event = self._parse(log)
            if event is not None:
                events.append(event)

        to_hash = await self.adapter.get_block_hash(batch.to_block)
        if hashes.get(batch.to_block, to_hash) != to_hash:
            self.logger.warning("Range tip changed while fetching, refetching", block_number=batch.to_block)
            return [], batch.from_block
        hashes[batch.to_block] = to_hash

        # Commit stream state
        self._block_hashes.update(hashes)
        self._seen.update(seen)
        self._high_water = LedgerPosition.end_of_block(batch.to_block)
        self._prune(batch.to_block)
        self.stats.duplicates_dropped += duplicates
        self.stats.last_block = batch.to_block

        return self._pack(events, batch.to_block), batch.to_block + 1

    def _parse(self, log: RawLog):
        try:
            return self.parser.parse(log)
        except InvalidEventPayload as e:
            self.stats.invalid_payloads += 1
            self.logger.warning("Invalid event payload skipped", error=e.message, **e.details)
            return None

    def _pack(self, events: List[DomainEvent], to_block: int) -> List[EventBatch]:
        size = self.settings.batch_size
        if not events:
            return [EventBatch(events=[], certified=LedgerPosition.end_of_block(to_block))]

        batches = []
        for start in range(0, len(events), size):
            chunk = events[start:start + size]
            last = start + size >= len(events)
            certified = LedgerPosition.end_of_block(to_block) if last else chunk[-1].position
            batches.append(EventBatch(events=chunk, certified=certified))
        return batches

    # Reorg handling

    async def _check_canonical(self) -> None:
        """Raise ReorgDetected if the newest delivered block is gone."""
        if not self._block_hashes:
            return
        tip = max(self._block_hashes)
        expected = self._block_hashes[tip]
        actual = await self.adapter.get_block_hash(tip)
        if actual != expected:
            raise ReorgDetected(tip, expected_hash=expected, actual_hash=actual)

    async def _find_common_ancestor(self, start: int) -> int:
        """Highest remembered block at or below start that is still canonical."""
        candidates = sorted((b for b in self._block_hashes if b <= start), reverse=True)
        for block_number in candidates:
            if await self.adapter.get_block_hash(block_number) == self._block_hashes[block_number]:
                return block_number

        if candidates:
            ancestor = candidates[-1] - 1
            self.logger.error(
                "Reorg deeper than tracked window",
                alert="deep_reorg",
                oldest_tracked=candidates[-1],
                rollback_to=ancestor,
            )
        else:
            ancestor = start
        return max(ancestor, self.settings.genesis_block - 1)

    def _begin_rollback(self, ancestor: int) -> RollbackInstruction:
        self._block_hashes = {b: h for b, h in self._block_hashes.items() if b <= ancestor}
        self._seen = {k: b for k, b in self._seen.items() if b <= ancestor}
        self._high_water = LedgerPosition.end_of_block(ancestor)
        if self._applied_floor is not None and self._applied_floor > self._high_water:
            self._applied_floor = self._high_water
        self.stats.reorgs_handled += 1
        return RollbackInstruction(ancestor_block=ancestor)

    def _window_floor(self) -> int:
        return self._high_water.block_number - self.settings.reorg_window

    def _prune(self, tip: int) -> None:
        floor = tip - self.settings.reorg_window
        self._block_hashes = {b: h for b, h in self._block_hashes.items() if b >= floor}
        self._seen = {k: b for k, b in self._seen.items() if b >= floor}

    async def _seed_block_hashes(self) -> None:
        """Remember hashes of recently applied blocks so a reorg across a restart is seen."""
        floor = self._high_water.block_number - self.settings.reorg_window
        async with self.database.session() as session:
            result = await session.execute(
                select(LedgerEvent.block_number, LedgerEvent.block_hash)
                .where(LedgerEvent.block_number >= floor)
                .distinct()
            )
            self._block_hashes = {block_number: block_hash for block_number, block_hash in result.all()}

    # Consumer

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._apply_item(item)
            except CheckpointPersistenceError as e:
                self.logger.critical("Checkpoint persistence failed, stopping", error=e.message)
                self._fail(e)
                return
            except Exception as e:
                self.logger.exception("Event consumer failed, stopping")
                self._fail(e)
                return
            finally:
                self._queue.task_done()

    def _fail(self, error: BaseException) -> None:
        self._fatal = error
        self._stopping = True
        self.status = IndexerStatus.ERROR
        self.stats.last_error = str(error)
        if self._producer_task is not None:
            self._producer_task.cancel()

    async def _apply_item(self, item: QueueItem) -> None:
        if isinstance(item, RollbackInstruction):
            await self._apply_rollback(item)
        else:
            await self._apply_batch(item)

    async def _apply_batch(self, batch: EventBatch) -> None:
        attempt = 0
        while True:
            try:
                async with self.database.session() as session:
                    result = await self.engine.apply_batch(session, batch.events)
                    await self.checkpoints.store(session, self.chain_id, batch.certified)
                break
            except SQLAlchemyError as e:
                attempt += 1
                if self._stopping:
                    raise DatabaseError(f"Batch not applied before shutdown: {e}") from e
                delay = min(
                    self.settings.rpc_retry_base_delay * (2 ** (attempt - 1)),
                    self.settings.rpc_retry_max_delay,
                )
                self.logger.error(
                    "Database error applying batch, retrying",
                    error=str(e),
                    attempt=attempt,
                    retry_in=delay,
                    certified=str(batch.certified),
                )
                await asyncio.sleep(delay)

        self.stats.events_applied += result.applied
        self.stats.events_skipped += result.skipped + result.failed
        self.stats.duplicates_dropped += result.duplicates

        if batch.events:
            self.logger.info(
                "Batch applied",
                events=len(batch.events),
                applied=result.applied,
                skipped=result.skipped,
                duplicates=result.duplicates,
                checkpoint=str(batch.certified),
            )

        if self.settlements is not None:
            self.settlements.dispatch(result.settlements_to_dispatch)
        if self.settings.enrich_task_details and result.created_task_ids:
            await self._enrich_tasks(result.created_task_ids)

    async def _apply_rollback(self, instruction: RollbackInstruction) -> None:
        ancestor = instruction.ancestor_block
        async with self.database.session() as session:
            result = await self.engine.rollback(session, ancestor)
            await self.checkpoints.store(
                session,
                self.chain_id,
                LedgerPosition.end_of_block(ancestor),
                allow_rewind=True,
            )

        if self.settlements is not None:
            self.settlements.dispatch(result.settlements_to_dispatch)

    async def _enrich_tasks(self, task_ids: List[int]) -> None:
        """Best-effort: read task descriptions that events do not carry."""
        descriptions = {}
        for task_id in task_ids:
            try:
                task = await self.adapter.call(TASK_REGISTRY, "getTask", [task_id])
            except (TransientRPCError, LedgerRevertError, ConfigurationError) as e:
                self.logger.warning("Could not read task details", task_id=task_id, error=e.message)
                continue
            descriptions[task_id] = task[4]

        if not descriptions:
            return
        async with self.database.session() as session:
            for task_id, description in descriptions.items():
                await session.execute(
                    update(Task)
                    .where(Task.id == task_id, Task.description.is_(None))
                    .values(description=description)
                )

    # Helpers

    async def _with_retry(self, operation: str, call):
        """Retry transient ledger failures with capped exponential backoff."""
        failures = 0
        while True:
            try:
                return await call()
            except TransientRPCError as e:
                failures += 1
                if self._stopping:
                    raise
                delay = min(
                    self.settings.rpc_retry_base_delay * (2 ** (failures - 1)),
                    self.settings.rpc_retry_max_delay,
                )
                self.logger.warning(
                    "Ledger call failed, retrying",
                    operation=operation,
                    error=e.message,
                    attempt=failures,
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
