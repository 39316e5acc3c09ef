from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Context, Decimal, InvalidOperation
from typing import Any, ClassVar, Iterable
from pydantic import (
    BaseModel,
    Field,
    ConfigDict,
    ValidationError,
    field_validator
)

from tokenflow.utils.logger import LoggerSetup
from tokenflow.utils.time import from_unix_seconds, get_current_datetime

logger = LoggerSetup.setup(__name__)


class TransferModel(BaseModel):
    """
    One token transfer inside one ledger transaction.

    `(signature, transfer_index)` is the natural key: a transaction may carry
    several transfers, and `transfer_index` is the position of this transfer in
    the transaction's full (unfiltered) transfer list.
    """

    model_config = ConfigDict(
        frozen=True,
        validate_assignment=True,
        json_schema_extra={
            "example": {
                "slot": 312000123,
                "signature": "5h6xBEauJ3PK6SWCZ1PGjBvj8vDdWG3KpwATGy1ARAXF...",
                "transfer_index": 0,
                "mint": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
                "from_account": "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM",
                "to_account": "2ojv9BAiHUrvsm9gxDe7fJSzbNZSJcxZvf8dqmWGHG8S",
                "amount": "1520.25",
                "decimals": 6,
                "block_time": "2025-01-15T12:00:00Z"
            }
        }
    )

    MAX_SLOT: ClassVar[int] = 2**64 - 1

    slot: int = Field(..., ge=0, le=MAX_SLOT, description="Ledger slot of the transaction")
    signature: str = Field(..., min_length=1, description="Transaction signature")
    transfer_index: int = Field(..., ge=0, description="Position in the transaction's transfer list")
    mint: str = Field(..., min_length=1, description="Token mint address")
    from_account: str | None = Field(None, description="Sending user account")
    to_account: str | None = Field(None, description="Receiving user account")
    amount: str = Field(..., description="Transferred amount as a plain decimal string")
    decimals: int = Field(0, ge=0, description="Scale of the amount")
    block_time: datetime = Field(..., description="Block wall-clock time (UTC)")

    @classmethod
    def _to_decimal_string(cls, value: Any) -> str:
        """Convert an upstream amount to a normalized plain decimal string"""
        if value is None or isinstance(value, bool):
            raise ValueError("Amount is required")
        try:
            # str() keeps the shortest repr of a float instead of its binary expansion
            number = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise ValueError(f"Cannot convert {value!r} to Decimal: {e}")
        if not number.is_finite():
            raise ValueError(f"Amount must be finite, got {value!r}")
        if number < 0:
            raise ValueError(f"Amount must be non-negative, got {value!r}")
        # Strip trailing zeros without rounding to the default 28-digit context
        precision = max(len(number.as_tuple().digits), 1)
        return format(number.normalize(Context(prec=precision)), 'f')

    @field_validator('amount', mode='before')
    @classmethod
    def validate_amount(cls, value: Any) -> str:
        return cls._to_decimal_string(value)

    @field_validator('from_account', 'to_account', mode='before')
    @classmethod
    def empty_account_to_none(cls, value: Any) -> str | None:
        return value or None

    @field_validator('block_time', mode='after')
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def natural_key(self) -> tuple[str, int]:
        return self.signature, self.transfer_index

    @property
    def decimal_amount(self) -> Decimal:
        return Decimal(self.amount)

    @classmethod
    def from_raw(cls,
                 raw: dict[str, Any],
                 *,
                 index: int,
                 slot: int,
                 signature: str,
                 block_time: datetime) -> 'TransferModel':
        """
        Build a record from an upstream token transfer entry.

        Args:
            raw: Transfer dict with `mint`, `fromUserAccount`, `toUserAccount`,
                `tokenAmount` and `tokenAmountDecimals`
            index: Position of the entry in the transaction's transfer list
            slot: Slot of the enclosing transaction
            signature: Signature of the enclosing transaction
            block_time: Block time of the enclosing transaction

        Raises:
            pydantic.ValidationError: If a required field is missing or invalid
        """
        return cls(
            slot=slot,
            signature=signature,
            transfer_index=index,
            mint=raw.get('mint'),
            from_account=raw.get('fromUserAccount'),
            to_account=raw.get('toUserAccount'),
            amount=raw.get('tokenAmount'),
            decimals=raw.get('tokenAmountDecimals') or 0,
            block_time=block_time
        )

    def to_row(self) -> dict[str, Any]:
        """Column mapping for bulk inserts"""
        return self.model_dump() | {"amount": self.decimal_amount}

    def __str__(self) -> str:
        return f"{self.signature}#{self.transfer_index} ({self.mint} {self.amount})"


class CheckpointModel(BaseModel):
    """Ingestion progress marker persisted as a single row"""

    model_config = ConfigDict(frozen=True)

    last_processed_slot: int = Field(..., ge=0)
    streaming_start_slot: int | None = Field(None, ge=0)
    last_updated: datetime | None = None


class TokenInfo(BaseModel):
    """Token descriptor returned by the discovery API"""

    model_config = ConfigDict(frozen=True)

    address: str = Field(..., min_length=1)
    symbol: str | None = None
    name: str | None = None
    liquidity: Decimal | None = None

    @field_validator('liquidity', mode='before')
    @classmethod
    def parse_liquidity(cls, value: Any) -> Decimal | None:
        if value in (None, ''):
            return None
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None


class FeedUpdate(BaseModel):
    """One confirmed transaction delivered by the push feed"""

    model_config = ConfigDict(frozen=True)

    slot: int = Field(..., ge=0)
    signature: str = Field(..., min_length=1)
    block_time: datetime
    token_transfers: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_message(cls, payload: dict[str, Any]) -> 'FeedUpdate':
        """
        Parse `{slot, transaction: {signature, blockTime, tokenTransfers}}`.

        A missing block time falls back to the receive time; it is never used
        for ordering.
        """
        transaction = payload.get('transaction') or {}
        block_time = transaction.get('blockTime')
        return cls(
            slot=payload.get('slot'),
            signature=transaction.get('signature'),
            block_time=from_unix_seconds(block_time) if block_time is not None else get_current_datetime(),
            token_transfers=transaction.get('tokenTransfers') or []
        )


@dataclass(frozen=True)
class UniverseSnapshot:
    """Immutable view of the tracked mints, replaced as a whole on refresh"""

    mints: tuple[str, ...] = ()
    refreshed_at: datetime | None = None
    members: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'members', frozenset(self.mints))

    def __contains__(self, mint: object) -> bool:
        return mint in self.members

    def __len__(self) -> int:
        return len(self.mints)


def extract_transfers(raw_transfers: Iterable[dict[str, Any]],
                      *,
                      slot: int,
                      signature: str,
                      block_time: datetime,
                      mints: UniverseSnapshot | frozenset[str] | set[str]) -> list[TransferModel]:
    """
    Turn a transaction's raw transfer list into records for tracked mints.

    Indices are taken from the unfiltered list so the natural key is the same
    no matter which mints are tracked. Malformed entries are dropped and logged.
    """
    transfers: list[TransferModel] = []
    for index, raw in enumerate(raw_transfers):
        if not isinstance(raw, dict) or raw.get('mint') not in mints:
            continue
        try:
            transfers.append(TransferModel.from_raw(
                raw,
                index=index,
                slot=slot,
                signature=signature,
                block_time=block_time
            ))
        except ValidationError as e:
            logger.warning(
                f"Dropping malformed transfer {signature}#{index}: "
                f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}"
            )
    return transfers
