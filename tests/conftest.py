import asyncio
import sys
import time
from pathlib import Path
from typing import Any

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tokenflow.core.config import DatabaseConfig, UniverseConfig
from tokenflow.core.exceptions import AdapterError, RepositoryError
from tokenflow.core.models import CheckpointModel, TokenInfo, TransferModel
from tokenflow.database.connection import DatabaseConnection
from tokenflow.services.ingestion.universe import TokenUniverse

DAY = 24 * 60 * 60


def now_seconds() -> int:
    return int(time.time())


def raw_transfer(mint: str, amount: Any = "1.5", decimals: int | None = 6,
                 source: str = "sender", destination: str = "receiver") -> dict[str, Any]:
    """Token transfer entry as returned by the history API and the push feed"""
    return {
        "mint": mint,
        "fromUserAccount": source,
        "toUserAccount": destination,
        "tokenAmount": amount,
        "tokenAmountDecimals": decimals
    }


def transaction(signature: str, slot: int, timestamp: int | None,
                transfers: list[dict[str, Any]]) -> dict[str, Any]:
    """History API transaction"""
    return {
        "signature": signature,
        "slot": slot,
        "timestamp": timestamp,
        "tokenTransfers": transfers
    }


class FakeSink:
    """In-memory transfer sink keyed by natural key, with failure injection"""

    def __init__(self):
        self.stored: dict[tuple[str, int], TransferModel] = {}
        self.calls: list[list[TransferModel]] = []
        self.failures = 0
        self.gate: asyncio.Event | None = None

    async def write_batch(self, records: list[TransferModel]) -> int:
        self.calls.append(list(records))
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise RepositoryError("store unavailable")
        for record in records:
            self.stored.setdefault(record.natural_key, record)
        return len(records)


class FakeCheckpointStore:
    """Forward-only checkpoint held in memory"""

    def __init__(self, slot: int = 0, streaming_start_slot: int | None = None):
        self.slot = slot
        self.streaming_start_slot = streaming_start_slot
        self.advance_calls: list[int] = []
        self.failures = 0

    async def ensure(self, seed_slot: int) -> CheckpointModel:
        return await self.read()

    async def read(self) -> CheckpointModel:
        return CheckpointModel(
            last_processed_slot=self.slot,
            streaming_start_slot=self.streaming_start_slot
        )

    async def advance(self, slot: int) -> bool:
        self.advance_calls.append(slot)
        if self.failures > 0:
            self.failures -= 1
            raise RepositoryError("checkpoint write failed")
        if slot > self.slot:
            self.slot = slot
            return True
        return False

    async def seed_streaming_start(self, slot: int) -> bool:
        if self.streaming_start_slot is None:
            self.streaming_start_slot = slot
            return True
        return False


class FakeHistoryClient:
    """Serves pre-built pages per mint and checks the `before` cursor"""

    def __init__(self, pages: dict[str, list[list[dict[str, Any]]]] | None = None):
        self.pages = pages or {}
        self.calls: list[tuple[str, str | None]] = []
        self.failures: dict[str, int] = {}
        self.retry_after: float | None = None
        self.closed = False

    async def fetch(self, mint: str, before: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        self.calls.append((mint, before))

        if self.failures.get(mint, 0) > 0:
            self.failures[mint] -= 1
            raise AdapterError("upstream unavailable", status=503, retry_after=self.retry_after)

        pages = self.pages.get(mint, [])
        if before is None:
            index = 0
        else:
            index = next(
                i + 1 for i, page in enumerate(pages)
                if page and page[-1]["signature"] == before
            )
        # Yield to the loop like a real network call
        await asyncio.sleep(0)
        return pages[index][:limit] if index < len(pages) else []

    async def cleanup(self) -> None:
        self.closed = True


class FakeDiscoveryClient:
    """Returns a fixed token ranking or raises"""

    def __init__(self, addresses: list[str] | None = None, error: Exception | None = None):
        self.addresses = addresses or []
        self.error = error
        self.calls = 0
        self.closed = False

    async def list_tokens(self) -> list[TokenInfo]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [TokenInfo(address=address) for address in self.addresses]

    async def cleanup(self) -> None:
        self.closed = True


def make_universe(mints: list[str]) -> TokenUniverse:
    """Universe already loaded with `mints`"""
    universe = TokenUniverse(FakeDiscoveryClient(mints), UniverseConfig(initial_retry_delay=0))
    universe._replace(tuple(mints))
    return universe


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def checkpoints():
    return FakeCheckpointStore(slot=1000)


@pytest.fixture
async def db():
    """In-memory SQLite store with the ingestion tables created"""
    connection = DatabaseConnection(DatabaseConfig(
        dialect="sqlite",
        driver="aiosqlite",
        database=":memory:"
    ))
    await connection.initialize()
    await connection.create_tables()
    yield connection
    await connection.close()
