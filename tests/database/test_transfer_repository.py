from datetime import datetime, timezone

import pytest
from sqlalchemy.dialects import postgresql

from tokenflow.core.config import DatabaseConfig
from tokenflow.core.exceptions import ValidationError
from tokenflow.core.models import TransferModel
from tokenflow.database.connection import DatabaseConnection
from tokenflow.database.repositories import TransferRepository

BLOCK_TIME = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def transfer(signature: str, index: int, mint: str = "MINT_A", amount: str = "1.5") -> TransferModel:
    return TransferModel(
        slot=1000 + index,
        signature=signature,
        transfer_index=index,
        mint=mint,
        from_account="sender",
        to_account="receiver",
        amount=amount,
        decimals=6,
        block_time=BLOCK_TIME
    )


@pytest.fixture
def repository(db):
    return TransferRepository(db)


async def test_overlapping_writes_are_idempotent(repository):
    first = [transfer("sig1", 0), transfer("sig1", 1), transfer("sig2", 0)]
    second = [transfer("sig2", 0), transfer("sig3", 0), transfer("sig1", 1)]

    assert await repository.write_batch(first) == 3
    assert await repository.write_batch(second) == 3
    await repository.write_batch(first)

    assert await repository.count() == 4


async def test_duplicates_inside_one_batch(repository):
    await repository.write_batch([transfer("sig1", 0), transfer("sig1", 0, amount="9")])

    stored = await repository.get_by_signature("sig1")
    assert len(stored) == 1
    assert stored[0].amount == "1.5"


async def test_empty_batch_is_noop(repository):
    assert await repository.write_batch([]) == 0
    assert await repository.count() == 0


async def test_oversize_batch_rejected(db):
    repository = TransferRepository(db, max_batch_rows=2)

    with pytest.raises(ValidationError):
        await repository.write_batch([transfer("sig1", i) for i in range(3)])

    assert await repository.count() == 0


async def test_get_by_signature_orders_by_index(repository):
    await repository.write_batch([transfer("sig1", 2, amount="3"), transfer("sig1", 0, amount="0.25")])

    stored = await repository.get_by_signature("sig1")

    assert [t.transfer_index for t in stored] == [0, 2]
    assert [t.amount for t in stored] == ["0.25", "3"]
    assert stored[0].mint == "MINT_A"


async def test_count_by_mint(repository):
    await repository.write_batch([transfer("sig1", 0, mint="A"), transfer("sig1", 1, mint="B")])

    assert await repository.count("A") == 1
    assert await repository.count("C") == 0


def test_postgres_insert_ignores_conflicts_on_natural_key():
    repository = TransferRepository(DatabaseConnection(DatabaseConfig()))

    stmt = repository.build_insert([transfer("sig1", 0).to_row()])
    sql = str(stmt.compile(dialect=postgresql.dialect()))

    assert "INSERT INTO token_transfers" in sql
    assert "ON CONFLICT (signature, transfer_index) DO NOTHING" in sql
