from typing import Any
import aiohttp
import asyncio
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from tokenflow.core.config import HeliusConfig
from tokenflow.core.enums import Commitment
from tokenflow.core.exceptions import AdapterError
from tokenflow.core.protocols import APIAdapter
from tokenflow.utils.logger import LoggerSetup


class SolanaRpcClient(APIAdapter):
    """Minimal JSON-RPC client for ledger slot queries"""

    def __init__(self, config: HeliusConfig):
        super().__init__()
        self._config = config
        self._request_id = 0
        self.logger = LoggerSetup.setup(__class__.__name__)


    async def _create_session(self) -> aiohttp.ClientSession:
        """Create new session with RPC configuration"""
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
            headers={'Content-Type': 'application/json'}
        )


    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True
    )
    async def _call(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request and return its `result`"""
        session = await self._get_session()
        self._request_id += 1
        body = {
            'jsonrpc': '2.0',
            'id': self._request_id,
            'method': method,
            'params': params
        }

        async with session.post(
            self._config.rpc_url,
            params={'api-key': self._config.api_key},
            json=body
        ) as response:
            response.raise_for_status()
            payload = await response.json(content_type=None)

        if 'error' in payload:
            raise AdapterError(f"RPC {method} failed: {payload['error']}")
        return payload.get('result')


    async def get_slot(self, commitment: Commitment | str = Commitment.CONFIRMED) -> int:
        """
        Get the current slot at the given commitment level.

        Raises:
            AdapterError: If the node cannot be reached or returns an error
        """
        commitment = Commitment(commitment)
        try:
            slot = await self._call('getSlot', [{'commitment': commitment.value}])
        except AdapterError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AdapterError(f"RPC getSlot failed: {e}")

        if not isinstance(slot, int):
            raise AdapterError(f"RPC getSlot returned unexpected result: {slot!r}")

        self.logger.debug(f"Current {commitment.value} slot: {slot}")
        return slot
