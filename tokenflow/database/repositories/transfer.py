from typing import Any
from sqlalchemy import select, func
from sqlalchemy.exc import InterfaceError, OperationalError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from tokenflow.core.exceptions import RepositoryError, ValidationError
from tokenflow.core.models import TransferModel
from tokenflow.database.connection import DatabaseConnection
from tokenflow.database.models import TokenTransfer
from tokenflow.utils.logger import LoggerSetup


class TransferRepository:
    """
    Durable sink for token transfers.

    Every write is a single multi-row insert that ignores conflicts on the
    natural key (signature, transfer_index), so re-sending an already stored
    record is a silent no-op and a failed batch can be retried wholesale.
    Batches are not split here; callers chunk to at most `max_batch_rows`.
    """

    CONFLICT_KEY = ['signature', 'transfer_index']

    def __init__(self, db: DatabaseConnection, max_batch_rows: int | None = None):
        self.db = db
        self.max_batch_rows = max_batch_rows or db.config.max_batch_rows
        self.logger = LoggerSetup.setup(__class__.__name__)


    async def write_batch(self, records: list[TransferModel]) -> int:
        """
        Insert transfers, ignoring rows whose natural key already exists.

        Args:
            records (list[TransferModel]): Transfers to store.

        Returns:
            int: Number of records submitted.

        Raises:
            ValidationError: If the batch exceeds `max_batch_rows`.
            RepositoryError: If the store rejects the write after retries.
        """
        if not records:
            return 0

        if len(records) > self.max_batch_rows:
            raise ValidationError(
                f"Batch of {len(records)} transfers exceeds the limit of {self.max_batch_rows} rows"
            )

        try:
            await self._insert([record.to_row() for record in records])
            self.logger.debug(f"Wrote batch of {len(records)} transfers")
            return len(records)

        except Exception as e:
            self.logger.error(f"Error inserting {len(records)} transfers: {e}")
            raise RepositoryError(f"Failed to insert transfers: {str(e)}")


    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type((OperationalError, InterfaceError, OSError)),
        reraise=True
    )
    async def _insert(self, rows: list[dict]) -> None:
        async with self.db.session() as session:
            await session.execute(self.build_insert(rows))


    def build_insert(self, rows: list[dict]) -> Any:
        """Multi-row insert that skips rows whose natural key already exists"""
        stmt = self.db.insert(TokenTransfer).values(rows)
        return stmt.on_conflict_do_nothing(index_elements=self.CONFLICT_KEY)


    async def count(self, mint: str | None = None) -> int:
        """
        Count stored transfers, optionally for a single mint.

        Raises:
            RepositoryError: If the query fails.
        """
        try:
            async with self.db.session() as session:
                stmt = select(func.count()).select_from(TokenTransfer)
                if mint is not None:
                    stmt = stmt.where(TokenTransfer.mint == mint)
                result = await session.execute(stmt)
                return result.scalar_one()

        except Exception as e:
            self.logger.error(f"Error counting transfers: {e}")
            raise RepositoryError(f"Failed to count transfers: {str(e)}")


    async def get_by_signature(self, signature: str) -> list[TransferModel]:
        """
        Get all stored transfers of one transaction ordered by transfer index.

        Raises:
            RepositoryError: If the query fails.
        """
        try:
            async with self.db.session() as session:
                stmt = (
                    select(TokenTransfer)
                    .where(TokenTransfer.signature == signature)
                    .order_by(TokenTransfer.transfer_index)
                )
                result = await session.execute(stmt)

                return [
                    TransferModel(
                        slot=row.slot,
                        signature=row.signature,
                        transfer_index=row.transfer_index,
                        mint=row.mint,
                        from_account=row.from_account,
                        to_account=row.to_account,
                        amount=row.amount,
                        decimals=row.decimals,
                        block_time=row.block_time
                    )
                    for row in result.scalars().all()
                ]

        except Exception as e:
            self.logger.error(f"Error getting transfers for {signature}: {e}")
            raise RepositoryError(f"Failed to get transfers: {str(e)}")
