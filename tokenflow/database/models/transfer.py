from datetime import datetime
from decimal import Decimal
from sqlalchemy import Index, BigInteger, Integer, Numeric, PrimaryKeyConstraint, Text
from sqlalchemy.types import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from .base import IngestionBase


class TokenTransfer(IngestionBase):
    """
    Token transfer rows written by both the backfill and the live path.
    The natural key (signature, transfer_index) is the primary key and the
    conflict target of every insert.
    """
    __tablename__ = 'token_transfers'

    slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    signature: Mapped[str] = mapped_column(Text, nullable=False)
    transfer_index: Mapped[int] = mapped_column(Integer, nullable=False)
    mint: Mapped[str] = mapped_column(Text, nullable=False)
    from_account: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_account: Mapped[str | None] = mapped_column(Text, nullable=True)

    amount: Mapped[Decimal] = mapped_column(
        Numeric(asdecimal=True),
        nullable=False,
        comment='Transferred amount, arbitrary precision'
    )
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    block_time: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment='Block time in UTC, used for the backfill lookback only'
    )

    __table_args__ = (
        PrimaryKeyConstraint('signature', 'transfer_index'),
        Index('idx_token_transfers_mint_slot', 'mint', 'slot'),
        Index('idx_token_transfers_block_time', 'block_time'),
        {'comment': 'Token transfers of tracked mints'}
    )

    def __repr__(self) -> str:
        return (
            f"TokenTransfer(signature='{self.signature}', transfer_index={self.transfer_index}, "
            f"slot={self.slot}, mint='{self.mint}')"
        )
