import asyncio
from dataclasses import dataclass
from typing import Any
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)

from tokenflow.core.config import BackfillConfig
from tokenflow.core.enums import BackfillState
from tokenflow.core.exceptions import AdapterError, BackfillError, RepositoryError, ValidationError
from tokenflow.core.models import TransferModel, extract_transfers
from tokenflow.core.protocols import HistoryClient, TransferSink
from tokenflow.utils.batching import chunked
from tokenflow.utils.logger import LoggerSetup
from tokenflow.utils.progress import BackfillProgress
from tokenflow.utils.time import from_unix_seconds, lookback_cutoff
from .universe import TokenUniverse


@dataclass
class BackfillResult:
    """Outcome of one mint's backfill run"""
    mint: str
    state: BackfillState
    pages: int = 0
    transactions: int = 0
    transfers: int = 0
    error: str | None = None

    @classmethod
    def from_progress(cls, progress: BackfillProgress) -> 'BackfillResult':
        return cls(
            mint=progress.mint,
            state=progress.state,
            pages=progress.pages,
            transactions=progress.transactions,
            transfers=progress.transfers
        )


class BackfillEngine:
    """
    Walks each mint's transaction history backwards from now.

    A mint's run pages through the history with a `before` cursor and stops at
    the first empty page or the first transaction outside the lookback window.
    Only transfers of mints in the universe snapshot taken when the run starts
    are kept. Runs for different mints share a fixed-size worker pool.
    """

    def __init__(self,
                 history_client: HistoryClient,
                 sink: TransferSink,
                 universe: TokenUniverse,
                 config: BackfillConfig):
        self._history = history_client
        self._sink = sink
        self._universe = universe
        self._config = config

        self._active: dict[str, BackfillProgress] = {}
        self._completed: list[BackfillResult] = []
        self._failed: list[BackfillResult] = []
        self._backoff = wait_exponential(
            multiplier=config.retry_base_delay,
            max=config.retry_max_delay
        )

        self.logger = LoggerSetup.setup(__class__.__name__)


    def _retry_wait(self, retry_state: RetryCallState) -> float:
        """Exponential backoff, or the server's retry-after hint when given"""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, AdapterError) and error.retry_after:
            return min(error.retry_after, self._config.retry_max_delay)
        return self._backoff(retry_state)


    async def _fetch_page(self, mint: str, before: str | None) -> list[dict[str, Any]]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=self._retry_wait,
            retry=retry_if_exception_type(AdapterError),
            before_sleep=lambda state: self.logger.warning(
                f"History fetch for {mint} failed (attempt {state.attempt_number}): "
                f"{state.outcome.exception()}"
            ),
            reraise=True
        ):
            with attempt:
                return await self._history.fetch(mint, before=before, limit=self._config.page_size)


    async def _flush(self, transfers: list[TransferModel]) -> int:
        written = 0
        for chunk in chunked(transfers, self._config.batch_size):
            await self._sink.write_batch(chunk)
            written += len(chunk)
        return written


    async def backfill_mint(self, mint: str) -> BackfillResult:
        """
        Backfill one mint until its history is exhausted or too old.

        Args:
            mint (str): Token mint address.

        Returns:
            BackfillResult: Terminal state and counters of the run.

        Raises:
            BackfillError: If a page fetch exhausted its retries or a write failed or was rejected.
        """
        snapshot = self._universe.snapshot()
        cutoff = lookback_cutoff(self._config.lookback_days)
        progress = BackfillProgress(mint=mint)
        self._active[mint] = progress
        self.logger.info(f"Backfill started for {mint} ({len(snapshot)} tracked mints)")

        before: str | None = None
        pending: list[TransferModel] = []

        try:
            while progress.state is BackfillState.PAGING:
                page = await self._fetch_page(mint, before)
                if not page:
                    progress.finish(BackfillState.EXHAUSTED)
                    break

                transactions = 0
                written = 0
                for transaction in page:
                    timestamp = transaction.get('timestamp')
                    # Pages are newest first, so everything after this one is older too
                    if timestamp is None or timestamp < cutoff:
                        progress.finish(BackfillState.TOO_OLD)
                        break

                    transactions += 1
                    pending.extend(extract_transfers(
                        transaction.get('tokenTransfers') or [],
                        slot=transaction.get('slot'),
                        signature=transaction.get('signature'),
                        block_time=from_unix_seconds(timestamp),
                        mints=snapshot
                    ))
                    if len(pending) >= self._config.batch_size:
                        written += await self._flush(pending)
                        pending = []

                written += await self._flush(pending)
                pending = []

                progress.update(transactions, written)
                self.logger.info(progress)

                if progress.state is BackfillState.PAGING:
                    before = page[-1].get('signature')
                    if not before:
                        self.logger.warning(f"Page without cursor signature for {mint}, stopping")
                        progress.finish(BackfillState.EXHAUSTED)
                        break
                    await asyncio.sleep(self._config.page_delay)

        except (AdapterError, RepositoryError, ValidationError) as e:
            progress.finish(BackfillState.FAILED)
            raise BackfillError(mint, progress.pages, e) from e

        finally:
            self._active.pop(mint, None)

        self.logger.info(progress.get_completion_summary())
        return BackfillResult.from_progress(progress)


    async def _worker(self, worker_id: int, queue: asyncio.Queue, results: list[BackfillResult]) -> None:
        while True:
            try:
                mint = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                result = await self.backfill_mint(mint)
                self._completed.append(result)

            except BackfillError as e:
                self.logger.error(f"Worker {worker_id}: {e}")
                result = BackfillResult(mint=mint, state=BackfillState.FAILED, pages=e.pages, error=str(e))
                self._failed.append(result)

            except Exception as e:
                self.logger.error(f"Worker {worker_id}: unexpected error backfilling {mint}: {e}")
                result = BackfillResult(mint=mint, state=BackfillState.FAILED, error=str(e))
                self._failed.append(result)

            finally:
                queue.task_done()

            results.append(result)


    async def run(self, mints: list[str] | None = None) -> list[BackfillResult]:
        """
        Backfill mints with a pool of `concurrency` workers.

        Args:
            mints: Mints to process; defaults to the current universe in rank order.

        Returns:
            list[BackfillResult]: One result per unique mint, in completion order.
        """
        if mints is None:
            mints = list(self._universe.snapshot().mints)

        queue: asyncio.Queue[str] = asyncio.Queue()
        for mint in dict.fromkeys(mints):
            queue.put_nowait(mint)

        if queue.empty():
            self.logger.info("No mints to backfill")
            return []

        worker_count = min(self._config.concurrency, queue.qsize())
        self.logger.info(f"Backfilling {queue.qsize()} mints with {worker_count} workers")

        results: list[BackfillResult] = []
        workers = [
            asyncio.create_task(self._worker(i, queue, results))
            for i in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for worker in workers:
                worker.cancel()
            raise

        failed = sum(1 for r in results if r.state is BackfillState.FAILED)
        self.logger.info(f"Backfill pass finished: {len(results) - failed} complete, {failed} failed")
        return results


    def get_status(self) -> dict[str, Any]:
        return {
            'active': {mint: str(progress) for mint, progress in self._active.items()},
            'completed': len(self._completed),
            'failed': [r.mint for r in self._failed]
        }
