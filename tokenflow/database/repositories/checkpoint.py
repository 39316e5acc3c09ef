from sqlalchemy import select, update

from tokenflow.core.exceptions import RepositoryError
from tokenflow.core.models import CheckpointModel
from tokenflow.database.connection import DatabaseConnection
from tokenflow.database.models import PipelineState, PIPELINE_STATE_ID
from tokenflow.utils.logger import LoggerSetup
from tokenflow.utils.time import get_current_datetime


class CheckpointRepository:
    """
    Single-row checkpoint store.

    `last_processed_slot` only moves forward: `advance` ignores any slot that
    is not strictly greater than the stored one. `streaming_start_slot` is
    written once and never overwritten.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.logger = LoggerSetup.setup(__class__.__name__)


    async def ensure(self, seed_slot: int) -> CheckpointModel:
        """
        Create the checkpoint row on first run, then return the stored state.

        Args:
            seed_slot (int): Starting slot used only if no row exists yet.
        """
        try:
            async with self.db.session() as session:
                stmt = self.db.insert(PipelineState).values(
                    id=PIPELINE_STATE_ID,
                    last_processed_slot=seed_slot,
                    streaming_start_slot=None,
                    last_updated=get_current_datetime()
                )
                stmt = stmt.on_conflict_do_nothing(index_elements=['id'])
                await session.execute(stmt)

        except Exception as e:
            self.logger.error(f"Error creating checkpoint row: {e}")
            raise RepositoryError(f"Failed to create checkpoint: {str(e)}")

        return await self.read()


    async def read(self) -> CheckpointModel:
        """
        Read the stored checkpoint.

        Raises:
            RepositoryError: If the row is missing or the query fails.
        """
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(PipelineState).where(PipelineState.id == PIPELINE_STATE_ID)
                )
                state = result.scalar_one_or_none()

        except Exception as e:
            self.logger.error(f"Error reading checkpoint: {e}")
            raise RepositoryError(f"Failed to read checkpoint: {str(e)}")

        if state is None:
            raise RepositoryError("Checkpoint row does not exist")

        return CheckpointModel(
            last_processed_slot=state.last_processed_slot,
            streaming_start_slot=state.streaming_start_slot,
            last_updated=state.last_updated
        )


    async def advance(self, slot: int) -> bool:
        """
        Move `last_processed_slot` forward to `slot`.

        Returns:
            bool: True if the checkpoint moved, False if `slot` was not ahead of it.
        """
        try:
            async with self.db.session() as session:
                stmt = (
                    update(PipelineState)
                    .where(
                        PipelineState.id == PIPELINE_STATE_ID,
                        PipelineState.last_processed_slot < slot
                    )
                    .values(last_processed_slot=slot, last_updated=get_current_datetime())
                )
                result = await session.execute(stmt)
                advanced = result.rowcount > 0

            if advanced:
                self.logger.debug(f"Checkpoint advanced to slot {slot}")
            return advanced

        except Exception as e:
            self.logger.error(f"Error advancing checkpoint to {slot}: {e}")
            raise RepositoryError(f"Failed to advance checkpoint: {str(e)}")


    async def seed_streaming_start(self, slot: int) -> bool:
        """
        Record the slot where live streaming first attached, if not yet set.

        Returns:
            bool: True if this call set the value.
        """
        try:
            async with self.db.session() as session:
                stmt = (
                    update(PipelineState)
                    .where(
                        PipelineState.id == PIPELINE_STATE_ID,
                        PipelineState.streaming_start_slot.is_(None)
                    )
                    .values(streaming_start_slot=slot, last_updated=get_current_datetime())
                )
                result = await session.execute(stmt)
                return result.rowcount > 0

        except Exception as e:
            self.logger.error(f"Error seeding streaming start slot: {e}")
            raise RepositoryError(f"Failed to seed streaming start slot: {str(e)}")
