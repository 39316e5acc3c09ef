from typing import Any
import aiohttp
import asyncio

from tokenflow.core.config import BirdeyeConfig
from tokenflow.core.exceptions import AdapterError
from tokenflow.core.models import TokenInfo
from tokenflow.core.protocols import APIAdapter
from tokenflow.utils.logger import LoggerSetup


class BirdeyeTokenClient(APIAdapter):
    """Token discovery through the Birdeye token list, ranked by liquidity"""

    def __init__(self, config: BirdeyeConfig):
        super().__init__()
        self._config = config
        self.logger = LoggerSetup.setup(__class__.__name__)


    async def _create_session(self) -> aiohttp.ClientSession:
        """Create new session with Birdeye configuration"""
        headers = {
            'accept': 'application/json',
            'x-chain': self._config.chain
        }
        if self._config.api_key:
            headers['X-API-KEY'] = self._config.api_key

        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=30),
            headers=headers
        )


    async def list_tokens(self, limit: int | None = None) -> list[TokenInfo]:
        """
        Get tokens sorted by liquidity, highest first.

        Raises:
            AdapterError: If the request fails or the API reports no success
        """
        params = {
            'sort_by': 'liquidity',
            'sort_type': 'desc',
            'limit': limit or self._config.list_limit
        }
        session = await self._get_session()

        try:
            async with session.get(self._config.url, params=params) as response:
                response.raise_for_status()
                payload: dict[str, Any] = await response.json(content_type=None)

        except aiohttp.ClientResponseError as e:
            raise AdapterError(f"Birdeye token list request failed: {e.message}", status=e.status)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AdapterError(f"Birdeye token list request failed: {e}")

        if not isinstance(payload, dict) or not payload.get('success'):
            raise AdapterError(f"Birdeye token list unsuccessful: {str(payload)[:200]}")

        tokens = []
        for item in (payload.get('data') or {}).get('items') or []:
            if isinstance(item, dict) and item.get('address'):
                tokens.append(TokenInfo(
                    address=item['address'],
                    symbol=item.get('symbol'),
                    name=item.get('name'),
                    liquidity=item.get('liquidity')
                ))

        self.logger.debug(f"Fetched {len(tokens)} tokens from Birdeye")
        return tokens
