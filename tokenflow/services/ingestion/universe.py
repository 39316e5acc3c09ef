import asyncio
from typing import Any
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from tokenflow.core.config import UniverseConfig
from tokenflow.core.exceptions import AdapterError
from tokenflow.core.models import UniverseSnapshot
from tokenflow.core.protocols import TokenDiscoveryClient
from tokenflow.utils.logger import LoggerSetup
from tokenflow.utils.time import get_current_datetime


class TokenUniverse:
    """
    Owns the set of tracked mints.

    Readers call `snapshot()` and keep the returned object for as long as they
    need a consistent view; a refresh builds a new snapshot and swaps the
    reference. A failed or empty refresh leaves the previous snapshot in place.
    """

    def __init__(self, discovery_client: TokenDiscoveryClient, config: UniverseConfig):
        self._client = discovery_client
        self._config = config
        self._snapshot = UniverseSnapshot()
        self._refresh_task: asyncio.Task | None = None
        self._refresh_count = 0
        self._last_error: Exception | None = None

        self.logger = LoggerSetup.setup(__class__.__name__)


    def snapshot(self) -> UniverseSnapshot:
        return self._snapshot


    async def _fetch(self) -> tuple[str, ...]:
        """Fetch ranked tokens and keep the first `top_n` unique addresses"""
        tokens = await self._client.list_tokens()
        mints = tuple(dict.fromkeys(token.address for token in tokens))[:self._config.top_n]
        if not mints:
            raise AdapterError("Token discovery returned no tokens")
        return mints


    def _replace(self, mints: tuple[str, ...]) -> None:
        previous = self._snapshot
        self._snapshot = UniverseSnapshot(mints=mints, refreshed_at=get_current_datetime())
        self._refresh_count += 1

        added = self._snapshot.members - previous.members
        removed = previous.members - self._snapshot.members
        self.logger.info(
            f"Token universe refreshed: {len(mints)} mints "
            f"(+{len(added)} / -{len(removed)})"
        )


    async def refresh(self) -> bool:
        """
        Replace the snapshot with the current top tokens.

        Returns:
            bool: False if the fetch failed or was empty and the previous
                snapshot was kept.
        """
        try:
            mints = await self._fetch()
        except Exception as e:
            self._last_error = e
            self.logger.error(
                f"Token universe refresh failed, keeping {len(self._snapshot)} mints: {e}"
            )
            return False

        self._replace(mints)
        return True


    async def load_initial(self) -> bool:
        """
        First load, retried with exponential backoff.

        Returns:
            bool: False if every attempt failed and the universe is still empty.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._config.initial_attempts),
                wait=wait_exponential(multiplier=self._config.initial_retry_delay),
                retry=retry_if_exception_type(Exception),
                reraise=True
            ):
                with attempt:
                    mints = await self._fetch()

        except Exception as e:
            self._last_error = e
            self.logger.error(
                f"Initial token universe load failed after "
                f"{self._config.initial_attempts} attempts: {e}"
            )
            return False

        self._replace(mints)
        return True


    async def start(self) -> None:
        """Start the periodic refresh loop"""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())


    async def stop(self) -> None:
        """Stop the periodic refresh loop"""
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None


    async def _refresh_loop(self) -> None:
        try:
            while True:
                # Retry sooner while nothing is tracked
                interval = self._config.refresh_interval if len(self._snapshot) else self._config.retry_interval
                await asyncio.sleep(interval)
                await self.refresh()

        except asyncio.CancelledError:
            self.logger.info("Token universe refresh cancelled")
            raise


    def get_status(self) -> dict[str, Any]:
        snapshot = self._snapshot
        return {
            'mints': len(snapshot),
            'refreshed_at': snapshot.refreshed_at.isoformat() if snapshot.refreshed_at else None,
            'refreshes': self._refresh_count,
            'last_error': str(self._last_error) if self._last_error else None
        }
