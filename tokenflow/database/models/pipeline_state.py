from datetime import datetime
from sqlalchemy import BigInteger, Integer
from sqlalchemy.types import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from .base import IngestionBase

PIPELINE_STATE_ID = 1


class PipelineState(IngestionBase):
    """Singleton row holding the live ingestion checkpoint"""
    __tablename__ = 'pipeline_state'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_processed_slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    streaming_start_slot: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment='Slot at which live streaming first attached; set once'
    )
    last_updated: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"PipelineState(last_processed_slot={self.last_processed_slot}, "
            f"streaming_start_slot={self.streaming_start_slot})"
        )
