import pytest

from tokenflow.core.exceptions import RepositoryError
from tokenflow.database.repositories import CheckpointRepository


@pytest.fixture
def repository(db):
    return CheckpointRepository(db)


async def test_ensure_seeds_first_run_only(repository):
    first = await repository.ensure(seed_slot=1000)
    second = await repository.ensure(seed_slot=5000)

    assert first.last_processed_slot == 1000
    assert first.streaming_start_slot is None
    assert second.last_processed_slot == 1000


async def test_read_without_row(repository):
    with pytest.raises(RepositoryError):
        await repository.read()


async def test_advance_is_monotonic(repository):
    await repository.ensure(seed_slot=1000)

    assert await repository.advance(1100) is True
    assert await repository.advance(1050) is False
    assert await repository.advance(1100) is False

    checkpoint = await repository.read()
    assert checkpoint.last_processed_slot == 1100
    assert checkpoint.last_updated is not None


async def test_streaming_start_set_once(repository):
    await repository.ensure(seed_slot=1000)

    assert await repository.seed_streaming_start(1000) is True
    assert await repository.seed_streaming_start(2000) is False

    checkpoint = await repository.read()
    assert checkpoint.streaming_start_slot == 1000
