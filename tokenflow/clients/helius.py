from decimal import Decimal
from functools import partial
from typing import Any
import aiohttp
import asyncio
import json

from tokenflow.core.config import HeliusConfig
from tokenflow.core.exceptions import AdapterError
from tokenflow.core.protocols import APIAdapter
from tokenflow.utils.logger import LoggerSetup
from tokenflow.utils.rate_limit import RateLimiter

# Amounts must keep their exact digits, so JSON floats are parsed as Decimal
decimal_loads = partial(json.loads, parse_float=Decimal)


class HeliusHistoryClient(APIAdapter):
    """
    Paginated transaction history for a token mint.

    Pages are returned newest first. The signature of the last entry of a page
    is the cursor for the next (older) page, and an empty page means the
    history is exhausted. Retries are left to the caller.
    """

    def __init__(self, config: HeliusConfig):
        super().__init__()
        self._config = config
        self._rate_limiter = RateLimiter(
            calls_per_window=config.rate_limit,
            window_size=config.rate_limit_window
        )
        self.logger = LoggerSetup.setup(__class__.__name__)


    async def _create_session(self) -> aiohttp.ClientSession:
        """Create new session with Helius configuration"""
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
            headers={'Accept': 'application/json'}
        )


    async def fetch(self,
                    mint: str,
                    before: str | None = None,
                    limit: int = 100) -> list[dict[str, Any]]:
        """
        Fetch one page of transfer transactions touching `mint`.

        Args:
            mint: Token mint address
            before: Signature cursor; only older transactions are returned
            limit: Page size (1..100)

        Returns:
            list[dict]: Raw transactions, newest first

        Raises:
            AdapterError: On transport failure, non-2xx status or malformed body
        """
        params: dict[str, Any] = {
            'api-key': self._config.api_key,
            'type': self._config.transaction_type,
            'limit': limit
        }
        if before:
            params['before'] = before

        url = f"{self._config.history_url.rstrip('/')}/{mint}/transactions"
        session = await self._get_session()
        await self._rate_limiter.acquire()

        try:
            async with session.get(url, params=params) as response:
                if response.status == 429:
                    retry_after = response.headers.get('retry-after')
                    self.logger.warning(f"Helius rate limit exceeded for {mint}")
                    raise AdapterError(
                        "Helius rate limit exceeded",
                        status=429,
                        retry_after=float(retry_after) if retry_after else None
                    )
                response.raise_for_status()
                payload = await response.json(loads=decimal_loads, content_type=None)

        except AdapterError:
            raise
        except aiohttp.ClientResponseError as e:
            raise AdapterError(f"Helius history request failed: {e.message}", status=e.status)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AdapterError(f"Helius history request failed: {e}")

        if not isinstance(payload, list):
            raise AdapterError(f"Unexpected history payload for {mint}: {type(payload).__name__}")

        return payload
