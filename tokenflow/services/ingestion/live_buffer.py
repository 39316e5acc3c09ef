import asyncio
from typing import Any

from tokenflow.core.config import LiveConfig
from tokenflow.core.enums import CheckpointPolicy
from tokenflow.core.models import FeedUpdate, TransferModel, extract_transfers
from tokenflow.core.protocols import CheckpointStore, TransferSink
from tokenflow.utils.batching import chunked
from tokenflow.utils.logger import LoggerSetup
from .universe import TokenUniverse


class LiveIngestionBuffer:
    """
    Staging buffer between the push feed and the transfer sink.

    Updates append tracked transfers to an in-memory list. A flush detaches
    the whole list and writes it; if the write fails the detached records go
    back to the front of the list for the next attempt. Only one flush runs at
    a time and a flush requested while another is in flight is skipped.

    The checkpoint is advanced once the slot has moved `checkpoint_interval`
    past the last checkpointed slot. With the ACCEPTED policy this happens on
    receipt, with FLUSHED after a successful flush.
    """

    def __init__(self,
                 sink: TransferSink,
                 checkpoints: CheckpointStore,
                 universe: TokenUniverse,
                 config: LiveConfig,
                 initial_checkpoint_slot: int,
                 max_batch_rows: int = 5000):
        self._sink = sink
        self._checkpoints = checkpoints
        self._universe = universe
        self._config = config
        self._max_batch_rows = max_batch_rows

        # Buffer state
        self._buffer: list[TransferModel] = []
        self._flush_lock = asyncio.Lock()
        self._flush_tasks: set[asyncio.Task] = set()
        self._timer_task: asyncio.Task | None = None

        # Checkpoint state
        self._watermark = initial_checkpoint_slot
        self._highest_slot: int | None = None

        # Counters
        self._updates = 0
        self._received = 0
        self._written = 0
        self._failed_flushes = 0
        self._checkpoint_failures = 0

        self.logger = LoggerSetup.setup(__class__.__name__)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def watermark(self) -> int:
        return self._watermark


    async def handle_update(self, update: FeedUpdate) -> None:
        """
        Accept one feed update.

        Tracked transfers are staged, a flush is scheduled once the buffer
        reaches `batch_size`, then the checkpoint step runs for the update's
        slot (ACCEPTED policy).
        """
        self._updates += 1
        records = extract_transfers(
            update.token_transfers,
            slot=update.slot,
            signature=update.signature,
            block_time=update.block_time,
            mints=self._universe.snapshot()
        )
        if records:
            self._buffer.extend(records)
            self._received += len(records)

        if self._highest_slot is None or update.slot > self._highest_slot:
            self._highest_slot = update.slot

        if len(self._buffer) >= self._config.batch_size:
            self._schedule_flush()

        if self._config.checkpoint_policy is CheckpointPolicy.ACCEPTED:
            await self._checkpoint(update.slot)


    def _schedule_flush(self) -> None:
        """Start a flush in the background unless one is already running"""
        if self._flush_lock.locked():
            return
        task = asyncio.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)


    async def flush(self) -> int:
        """
        Write everything staged so far.

        Returns:
            int: Records written, 0 if skipped or failed.
        """
        if self._flush_lock.locked():
            return 0

        async with self._flush_lock:
            batch, self._buffer = self._buffer, []
            slot_mark = self._highest_slot

            try:
                for chunk in chunked(batch, self._max_batch_rows):
                    await self._sink.write_batch(chunk)

            except Exception as e:
                self._buffer[:0] = batch
                self._failed_flushes += 1
                self.logger.error(
                    f"Flush of {len(batch)} transfers failed, re-buffered "
                    f"({len(self._buffer)} pending): {e}"
                )
                return 0

            self._written += len(batch)
            if batch:
                self.logger.debug(f"Flushed {len(batch)} transfers")

        if self._config.checkpoint_policy is CheckpointPolicy.FLUSHED and slot_mark is not None:
            await self._checkpoint(slot_mark)

        return len(batch)


    async def _checkpoint(self, slot: int) -> None:
        if slot - self._watermark < self._config.checkpoint_interval:
            return

        try:
            await self._checkpoints.advance(slot)
            self._watermark = slot
        except Exception as e:
            # Watermark stays put so the next qualifying slot tries again
            self._checkpoint_failures += 1
            self.logger.error(f"Checkpoint advance to slot {slot} failed: {e}")


    async def start(self) -> None:
        """Start the periodic flush timer"""
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._flush_timer())
            self.logger.info(
                f"Live buffer started (batch {self._config.batch_size}, "
                f"interval {self._config.flush_interval}s, checkpoint at slot {self._watermark})"
            )


    async def stop(self) -> None:
        """Stop the timer and wait for an in-flight flush; staged records are not flushed"""
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)

        if self._buffer:
            self.logger.warning(
                f"Live buffer stopped with {len(self._buffer)} unflushed transfers "
                f"(checkpoint at slot {self._watermark})"
            )
        else:
            self.logger.info("Live buffer stopped")


    async def _flush_timer(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._config.flush_interval)
                # Run as a separate task so cancelling the timer never interrupts a write
                self._schedule_flush()

        except asyncio.CancelledError:
            self.logger.debug("Flush timer cancelled")
            raise


    def get_status(self) -> dict[str, Any]:
        return {
            'buffered': len(self._buffer),
            'flushing': self._flush_lock.locked(),
            'updates': self._updates,
            'received': self._received,
            'written': self._written,
            'failed_flushes': self._failed_flushes,
            'checkpoint_slot': self._watermark,
            'checkpoint_failures': self._checkpoint_failures,
            'checkpoint_policy': self._config.checkpoint_policy.value,
            'highest_slot': self._highest_slot
        }
