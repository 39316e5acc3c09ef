import pytest

from tokenflow.core.config import BackfillConfig
from tokenflow.core.enums import BackfillState
from tokenflow.core.exceptions import BackfillError, ValidationError
from tokenflow.services.ingestion.backfill import BackfillEngine
from conftest import DAY, FakeHistoryClient, make_universe, now_seconds, raw_transfer, transaction

MINT = "MINT_A"


def config(**overrides) -> BackfillConfig:
    values = dict(page_delay=0, retry_base_delay=0, retry_max_delay=0, max_retries=3)
    values.update(overrides)
    return BackfillConfig(**values)


def page(prefix: str, count: int, timestamp: int, slot: int = 5000, mint: str = MINT) -> list[dict]:
    return [
        transaction(f"{prefix}{i}", slot - i, timestamp - i, [raw_transfer(mint)])
        for i in range(count)
    ]


def engine_for(history, sink, mints=(MINT,), **overrides) -> BackfillEngine:
    return BackfillEngine(history, sink, make_universe(list(mints)), config(**overrides))


async def test_exhausts_on_empty_page(sink):
    recent = now_seconds() - 60
    history = FakeHistoryClient({MINT: [page("a", 2, recent), page("b", 2, recent - 100)]})

    result = await engine_for(history, sink).backfill_mint(MINT)

    assert result.state is BackfillState.EXHAUSTED
    assert result.pages == 2
    assert result.transactions == 4
    assert result.transfers == 4
    assert history.calls == [(MINT, None), (MINT, "a1"), (MINT, "b1")]
    assert len(sink.stored) == 4


async def test_age_boundary_mid_page(sink):
    now = now_seconds()
    history = FakeHistoryClient({MINT: [[
        transaction("new1", 10, now - 60, [raw_transfer(MINT)]),
        transaction("new2", 9, now - 120, [raw_transfer(MINT), raw_transfer(MINT)]),
        transaction("old1", 8, now - 31 * DAY, [raw_transfer(MINT)]),
        transaction("new3", 7, now - 180, [raw_transfer(MINT)]),
    ]]})

    result = await engine_for(history, sink).backfill_mint(MINT)

    assert result.state is BackfillState.TOO_OLD
    assert result.transactions == 2
    assert sorted(sink.stored) == [("new1", 0), ("new2", 0), ("new2", 1)]
    assert len(history.calls) == 1


async def test_three_pages_end_to_end(sink):
    now = now_seconds()
    history = FakeHistoryClient({MINT: [
        [transaction("p1a", 30, now - 10, [raw_transfer(MINT)]),
         transaction("p1b", 29, now - 20, [raw_transfer(MINT)])],
        [transaction("p2a", 28, now - 30, [raw_transfer(MINT)]),
         transaction("p2b", 27, now - 40, [raw_transfer(MINT)])],
        [transaction("p3a", 26, now - 31 * DAY, [raw_transfer(MINT)]),
         transaction("p3b", 25, now - 32 * DAY, [raw_transfer(MINT)])],
    ]})

    result = await engine_for(history, sink, page_size=2).backfill_mint(MINT)

    assert result.state is BackfillState.TOO_OLD
    assert len(history.calls) == 3
    assert {signature for signature, _ in sink.stored} == {"p1a", "p1b", "p2a", "p2b"}


async def test_missing_timestamp_ends_run(sink):
    now = now_seconds()
    history = FakeHistoryClient({MINT: [[
        transaction("new1", 10, now - 60, [raw_transfer(MINT)]),
        transaction("nots", 9, None, [raw_transfer(MINT)]),
    ]]})

    result = await engine_for(history, sink).backfill_mint(MINT)

    assert result.state is BackfillState.TOO_OLD
    assert list(sink.stored) == [("new1", 0)]


async def test_untracked_mints_never_reach_sink(sink):
    now = now_seconds()
    history = FakeHistoryClient({MINT: [[
        transaction("sig1", 10, now - 60, [raw_transfer("OTHER"), raw_transfer(MINT)]),
    ]]})

    await engine_for(history, sink).backfill_mint(MINT)

    written = [record for call in sink.calls for record in call]
    assert [(r.mint, r.transfer_index) for r in written] == [(MINT, 1)]


async def test_flushes_in_batch_size_slices(sink):
    history = FakeHistoryClient({MINT: [page("a", 5, now_seconds() - 60)]})

    result = await engine_for(history, sink, batch_size=2).backfill_mint(MINT)

    assert [len(call) for call in sink.calls] == [2, 2, 1]
    assert result.transfers == 5


async def test_retries_then_succeeds(sink):
    history = FakeHistoryClient({MINT: [page("a", 1, now_seconds() - 60)]})
    history.failures[MINT] = 2

    result = await engine_for(history, sink, max_retries=3).backfill_mint(MINT)

    assert result.state is BackfillState.EXHAUSTED
    assert len(history.calls) == 4
    assert len(sink.stored) == 1


async def test_retry_exhaustion_raises(sink):
    history = FakeHistoryClient({MINT: [page("a", 1, now_seconds() - 60)]})
    history.failures[MINT] = 10

    with pytest.raises(BackfillError) as exc_info:
        await engine_for(history, sink, max_retries=3).backfill_mint(MINT)

    assert exc_info.value.mint == MINT
    assert exc_info.value.pages == 0
    assert len(history.calls) == 3


async def test_sink_failure_aborts_mint(sink):
    history = FakeHistoryClient({MINT: [page("a", 1, now_seconds() - 60)]})
    sink.failures = 1

    with pytest.raises(BackfillError):
        await engine_for(history, sink).backfill_mint(MINT)


async def test_pool_contains_failures(sink):
    recent = now_seconds() - 60
    history = FakeHistoryClient({
        "A": [page("a", 1, recent, mint="A")],
        "B": [page("b", 1, recent, mint="B")],
        "C": [page("c", 1, recent, mint="C")],
    })
    history.failures["B"] = 10
    engine = engine_for(history, sink, mints=("A", "B", "C"), concurrency=2, max_retries=2)

    results = await engine.run()

    states = {result.mint: result.state for result in results}
    assert states == {
        "A": BackfillState.EXHAUSTED,
        "B": BackfillState.FAILED,
        "C": BackfillState.EXHAUSTED,
    }
    assert {record.mint for record in sink.stored.values()} == {"A", "C"}
    assert engine.get_status()["failed"] == ["B"]


async def test_pool_processes_each_mint_once(sink):
    mints = [f"M{i}" for i in range(10)]
    recent = now_seconds() - 60
    history = FakeHistoryClient({mint: [page(mint, 1, recent, mint=mint)] for mint in mints})
    engine = engine_for(history, sink, mints=mints, concurrency=3)

    results = await engine.run(mints + mints[:4])

    assert sorted(result.mint for result in results) == sorted(mints)
    for mint in mints:
        assert history.calls.count((mint, None)) == 1


async def test_run_without_mints(sink):
    engine = engine_for(FakeHistoryClient(), sink, mints=())
    assert await engine.run() == []


class RejectingSink:
    """Accepts the first `accepted` batches, then rejects like an oversize write"""

    def __init__(self, accepted: int):
        self.accepted = accepted
        self.calls = 0

    async def write_batch(self, records) -> int:
        self.calls += 1
        if self.calls > self.accepted:
            raise ValidationError(f"Batch of {len(records)} transfers exceeds the limit")
        return len(records)


async def test_rejected_write_fails_mint_with_page_count():
    recent = now_seconds() - 60
    history = FakeHistoryClient({MINT: [page("a", 1, recent), page("b", 3, recent - 10)]})
    engine = BackfillEngine(history, RejectingSink(accepted=1), make_universe([MINT]), config())

    results = await engine.run()

    assert len(results) == 1
    assert results[0].state is BackfillState.FAILED
    assert results[0].pages == 1
    assert MINT in results[0].error
