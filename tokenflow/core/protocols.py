from typing import Any, Protocol
import aiohttp
import asyncio

from .models import CheckpointModel, TokenInfo, TransferModel


class Service(Protocol):
    """
    Base protocol for long-running services.

    Features:
    - Service lifecycle (start/stop)
    - Status reporting
    """
    async def start(self) -> None:
        """
        Start the service.

        Each service must implement its startup logic:
        - Initialize resources
        - Start background tasks
        """
        ...

    async def stop(self) -> None:
        """
        Stop the service.

        Each service must implement its cleanup logic:
        - Close connections
        - Cancel background tasks
        - Release resources
        """
        ...

    def get_service_status(self) -> str:
        """
        Generate detailed service status report.

        Returns:
            str: Multi-line status report
        """
        ...


class TransferSink(Protocol):
    """Append-only, duplicate-safe batch writer for transfer records"""

    async def write_batch(self, records: list[TransferModel]) -> int:
        ...


class CheckpointStore(Protocol):
    """Single-row ingestion checkpoint with a forward-only slot"""

    async def read(self) -> CheckpointModel:
        ...

    async def advance(self, slot: int) -> bool:
        ...

    async def seed_streaming_start(self, slot: int) -> bool:
        ...


class HistoryClient(Protocol):
    """Paginated transaction history for one address, newest first"""

    async def fetch(self, mint: str, before: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        ...


class TokenDiscoveryClient(Protocol):
    """Ranked list of token descriptors"""

    async def list_tokens(self) -> list[TokenInfo]:
        ...


class APIAdapter:
    """
    Base class for HTTP API adapters providing common functionality

    Features:
    - Lazy session management
    - Cleanup
    """

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self._session is None:
            async with self._session_lock:
                if self._session is None:
                    self._session = await self._create_session()
        return self._session

    async def _create_session(self) -> aiohttp.ClientSession:
        """Create new session with adapter-specific configuration"""
        raise NotImplementedError

    async def cleanup(self) -> None:
        """Cleanup resources"""
        if self._session:
            async with self._session_lock:
                await self._session.close()
                self._session = None
