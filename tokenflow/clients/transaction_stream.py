from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Iterator
import asyncio
import json
from pydantic import ValidationError
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type
from websockets.asyncio.client import connect, ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from tokenflow.core.config import StreamConfig
from tokenflow.core.exceptions import StreamError
from tokenflow.core.models import FeedUpdate
from tokenflow.utils.logger import LoggerSetup
from tokenflow.utils.time import from_unix_seconds, get_current_datetime
from .helius import decimal_loads

UpdateHandler = Callable[[FeedUpdate], Awaitable[None]]
ErrorHandler = Callable[[Exception], None]

# Errors that end one connection but may succeed on reconnect
CONNECTION_ERRORS = (WebSocketException, OSError, asyncio.TimeoutError, StreamError)

TOKEN_PROGRAMS = ('spl-token', 'spl-token-2022')
TRANSFER_INSTRUCTIONS = ('transfer', 'transferChecked')


def _token_accounts(message: dict[str, Any], meta: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Map token account address to its mint, owner and decimals from the balance snapshots"""
    keys = [
        key.get('pubkey') if isinstance(key, dict) else key
        for key in message.get('accountKeys') or []
    ]
    accounts: dict[str, dict[str, Any]] = {}
    for balance in (meta.get('preTokenBalances') or []) + (meta.get('postTokenBalances') or []):
        index = balance.get('accountIndex')
        if not isinstance(index, int) or not 0 <= index < len(keys):
            continue
        accounts[keys[index]] = {
            'mint': balance.get('mint'),
            'owner': balance.get('owner'),
            'decimals': (balance.get('uiTokenAmount') or {}).get('decimals')
        }
    return accounts


def _instructions(message: dict[str, Any], meta: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Outer instructions in order, each followed by its inner instructions"""
    inner = {
        group.get('index'): group.get('instructions') or []
        for group in meta.get('innerInstructions') or []
    }
    for position, instruction in enumerate(message.get('instructions') or []):
        yield instruction
        yield from inner.get(position, [])


def _scaled_amount(amount: Any, decimals: int | None) -> Any:
    try:
        return Decimal(amount).scaleb(-(decimals or 0))
    except (InvalidOperation, TypeError, ValueError):
        # Left as-is for model validation to reject
        return amount


def parse_token_transfers(transaction: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Extract token transfers from a jsonParsed transaction with its meta.

    Every SPL token `transfer` and `transferChecked` instruction, outer or
    inner, becomes one entry in execution order, shaped like the history API's
    `tokenTransfers`: user accounts are the owners of the source and
    destination token accounts, and the amount is scaled by the mint decimals.
    A plain `transfer` carries no mint, so mint and decimals come from the
    token balance snapshots.
    """
    message = (transaction.get('transaction') or {}).get('message') or {}
    meta = transaction.get('meta') or {}
    accounts = _token_accounts(message, meta)

    transfers: list[dict[str, Any]] = []
    for instruction in _instructions(message, meta):
        if not isinstance(instruction, dict):
            continue
        parsed = instruction.get('parsed')
        if (instruction.get('program') not in TOKEN_PROGRAMS
                or not isinstance(parsed, dict)
                or parsed.get('type') not in TRANSFER_INSTRUCTIONS):
            continue

        info = parsed.get('info') or {}
        source = accounts.get(info.get('source'), {})
        destination = accounts.get(info.get('destination'), {})
        token_amount = info.get('tokenAmount') or {}

        decimals = token_amount.get('decimals')
        if decimals is None:
            decimals = source.get('decimals')
        if decimals is None:
            decimals = destination.get('decimals')

        transfers.append({
            'mint': info.get('mint') or source.get('mint') or destination.get('mint'),
            'fromUserAccount': source.get('owner') or info.get('authority'),
            'toUserAccount': destination.get('owner'),
            'tokenAmount': _scaled_amount(token_amount.get('amount', info.get('amount')), decimals),
            'tokenAmountDecimals': decimals
        })
    return transfers


def parse_notification(result: Any) -> FeedUpdate:
    """
    Build a `FeedUpdate` from a `transactionNotification` result.

    The native result is `{signature, slot, transaction: {transaction, meta}}`
    and its transfers are read from the parsed instructions. A result that
    already carries `transaction.tokenTransfers` is taken as is.
    """
    if not isinstance(result, dict):
        raise TypeError(f"Notification result must be an object, got {type(result).__name__}")
    transaction = result.get('transaction') or {}
    if 'tokenTransfers' in transaction:
        return FeedUpdate.from_message(result)

    block_time = transaction.get('blockTime') or result.get('blockTime')
    return FeedUpdate(
        slot=result.get('slot'),
        signature=result.get('signature'),
        block_time=from_unix_seconds(block_time) if block_time is not None else get_current_datetime(),
        token_transfers=parse_token_transfers(transaction)
    )


class TransactionStream:
    """
    Push feed of confirmed transactions touching the token program.

    `subscribe` opens the first connection and waits for the subscription
    acknowledgement; failing to subscribe is raised to the caller. After that
    a runner task dispatches notifications and reconnects with exponential
    backoff, resubscribing from the last slot it saw.
    """

    NOTIFICATION_METHOD = "transactionNotification"

    def __init__(self, config: StreamConfig, connector: Callable[..., Any] = connect):
        self._config = config
        self._connect = connector
        self._ws: ClientConnection | None = None
        self._runner: asyncio.Task | None = None
        self._on_update: UpdateHandler | None = None
        self._on_error: ErrorHandler | None = None
        self._request_id = 0
        self._subscription_id: int | None = None
        self._last_slot: int | None = None
        self._reconnects = 0
        self._closing = False

        self.logger = LoggerSetup.setup(__class__.__name__)

    @property
    def url(self) -> str:
        endpoint = self._config.endpoint.rstrip('/')
        if self._config.api_key:
            return f"{endpoint}/?api-key={self._config.api_key}"
        return endpoint

    @property
    def last_slot(self) -> int | None:
        return self._last_slot

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def build_subscribe_request(self, from_slot: int | None = None) -> dict[str, Any]:
        """JSON-RPC `transactionSubscribe` request for the configured filter"""
        self._request_id += 1
        options: dict[str, Any] = {
            'commitment': self._config.commitment.value,
            'encoding': 'jsonParsed',
            'transactionDetails': 'full',
            'maxSupportedTransactionVersion': 0
        }
        if from_slot is not None:
            options['fromSlot'] = from_slot

        return {
            'jsonrpc': '2.0',
            'id': self._request_id,
            'method': 'transactionSubscribe',
            'params': [
                {
                    'accountInclude': list(self._config.account_include),
                    'vote': False,
                    'failed': False
                },
                options
            ]
        }

    async def subscribe(self,
                        on_update: UpdateHandler,
                        on_error: ErrorHandler,
                        from_slot: int | None = None) -> None:
        """
        Subscribe to the feed and start dispatching updates.

        Args:
            on_update: Awaited for every transaction notification
            on_error: Called with per-message and connection errors
            from_slot: Replay start slot, if the feed should resume

        Raises:
            StreamError: If the connection or subscription cannot be established
        """
        if self._runner and not self._runner.done():
            raise StreamError("Stream is already subscribed")

        self._on_update = on_update
        self._on_error = on_error
        self._closing = False
        self._last_slot = from_slot

        try:
            self._ws = await self._open(from_slot)
        except StreamError:
            raise
        except CONNECTION_ERRORS as e:
            raise StreamError(f"Failed to subscribe to {self._config.endpoint}: {e}")

        self._runner = asyncio.create_task(self._run())

    async def cancel(self) -> None:
        """Stop the runner and close the connection"""
        self._closing = True
        if self._runner:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        self._runner = None
        await self._close()

    async def _close(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except Exception as e:
                self.logger.debug(f"Error closing websocket: {e}")

    async def _open(self, from_slot: int | None) -> ClientConnection:
        """Connect, send the subscribe request and wait for its acknowledgement"""
        websocket = await self._connect(
            self.url,
            ping_interval=self._config.ping_interval,
            ping_timeout=self._config.ping_interval,
            close_timeout=10,
            max_size=2**24
        )

        try:
            request = self.build_subscribe_request(from_slot)
            await websocket.send(json.dumps(request))
            async with asyncio.timeout(self._config.subscribe_timeout):
                while True:
                    try:
                        data = decimal_loads(await websocket.recv())
                    except ValueError as e:
                        raise StreamError(f"Undecodable message while subscribing: {e}")
                    if isinstance(data, dict) and data.get('id') == request['id']:
                        if 'error' in data:
                            raise StreamError(f"Subscription rejected: {data['error']}")
                        self._subscription_id = data.get('result')
                        break
                    # Notifications can race ahead of the acknowledgement
                    await self._dispatch(data)

        except BaseException:
            await websocket.close()
            raise

        self.logger.info(
            f"Subscribed to {self._config.endpoint} "
            f"(subscription {self._subscription_id}, from slot {from_slot})"
        )
        return websocket

    async def _run(self) -> None:
        """Dispatch messages until cancelled or reconnects are exhausted"""
        while not self._closing:
            try:
                async for message in self._ws:
                    await self._handle_message(message)
                self.logger.info("Stream ended, reconnecting...")
            except ConnectionClosed as e:
                self.logger.info(f"Connection closed ({e}), reconnecting...")
            except CONNECTION_ERRORS as e:
                self.logger.error(f"Websocket error: {e}")

            await self._close()
            if self._closing:
                break

            try:
                self._ws = await self._reconnect()
            except CONNECTION_ERRORS as e:
                error = StreamError(
                    f"Gave up after {self._config.max_reconnect_attempts} reconnect attempts: {e}"
                )
                self.logger.error(str(error))
                self._report(error)
                return

    async def _reconnect(self) -> ClientConnection:
        """Reopen the feed from the last seen slot with exponential backoff"""
        if self._config.max_reconnect_attempts == 0:
            raise StreamError("Reconnects are disabled")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._config.max_reconnect_attempts),
            wait=wait_exponential(
                multiplier=self._config.reconnect_base_delay,
                max=self._config.reconnect_max_delay
            ),
            retry=retry_if_exception_type(CONNECTION_ERRORS),
            reraise=True
        ):
            with attempt:
                self._reconnects += 1
                self.logger.info(
                    f"Reconnect attempt {attempt.retry_state.attempt_number} "
                    f"from slot {self._last_slot}"
                )
                return await self._open(self._last_slot)

    async def _handle_message(self, message: str | bytes) -> None:
        try:
            data = decimal_loads(message)
        except ValueError as e:
            self.logger.warning(f"Undecodable stream message: {e}")
            self._report(e)
            return
        await self._dispatch(data)

    async def _dispatch(self, data: dict[str, Any]) -> None:
        """Parse a notification and hand it to the update handler"""
        if not isinstance(data, dict) or data.get('method') != self.NOTIFICATION_METHOD:
            return

        try:
            result = data['params']['result']
            update = parse_notification(result)
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            self.logger.warning(f"Malformed transaction notification: {e}")
            self._report(e)
            return

        if self._last_slot is None or update.slot > self._last_slot:
            self._last_slot = update.slot

        try:
            await self._on_update(update)
        except Exception as e:
            self.logger.error(f"Error handling update {update.signature}: {e}")
            self._report(e)

    def _report(self, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as e:
            self.logger.error(f"Stream error handler failed: {e}")

    def get_status(self) -> dict[str, Any]:
        return {
            'connected': self.is_connected,
            'subscription_id': self._subscription_id,
            'last_slot': self._last_slot,
            'reconnects': self._reconnects
        }
