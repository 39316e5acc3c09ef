import asyncio
import json
from decimal import Decimal

import pytest

from tokenflow.clients.transaction_stream import TransactionStream, parse_notification, parse_token_transfers
from tokenflow.core.config import SPL_TOKEN_PROGRAM_ID, StreamConfig
from tokenflow.core.exceptions import StreamError
from tokenflow.core.models import extract_transfers


class FakeWebSocket:
    """Scripted connection; `None` in the script ends the stream"""

    def __init__(self, *messages):
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self.push(message)

    def push(self, message) -> None:
        self._incoming.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        return await self._incoming.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    def __init__(self, *sockets: FakeWebSocket):
        self.sockets = list(sockets)
        self.urls: list[str] = []

    async def __call__(self, url: str, **kwargs) -> FakeWebSocket:
        self.urls.append(url)
        if not self.sockets:
            raise OSError("connection refused")
        return self.sockets.pop(0)


def ack(request_id: int = 1, subscription: int = 42) -> dict:
    return {"jsonrpc": "2.0", "result": subscription, "id": request_id}


def notification(slot: int, signature: str = "sig1", transfers: str = "[]") -> str:
    # Raw text so float amounts reach the decoder unchanged
    return (
        '{"jsonrpc": "2.0", "method": "transactionNotification", "params": {"subscription": 42, '
        f'"result": {{"slot": {slot}, "transaction": {{"signature": "{signature}", '
        f'"blockTime": 1736942400, "tokenTransfers": {transfers}}}}}}}}}'
    )


def make_stream(connector, **overrides) -> TransactionStream:
    values = dict(
        endpoint="wss://feed.example",
        api_key="key",
        max_reconnect_attempts=0,
        reconnect_base_delay=0,
        subscribe_timeout=1
    )
    values.update(overrides)
    return TransactionStream(StreamConfig(**values), connector=connector)


async def wait_for(condition, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(0.01)


def test_subscribe_request_shape():
    stream = make_stream(FakeConnector())

    request = stream.build_subscribe_request(from_slot=1000)

    assert request["method"] == "transactionSubscribe"
    assert request["params"][0] == {
        "accountInclude": [SPL_TOKEN_PROGRAM_ID],
        "vote": False,
        "failed": False
    }
    options = request["params"][1]
    assert options["commitment"] == "confirmed"
    assert options["encoding"] == "jsonParsed"
    assert options["fromSlot"] == 1000
    assert "fromSlot" not in stream.build_subscribe_request()["params"][1]
    assert stream.url == "wss://feed.example/?api-key=key"


async def test_dispatches_notifications():
    transfers = '[{"mint": "A", "fromUserAccount": "x", "toUserAccount": "y", "tokenAmount": 1.000000001, "tokenAmountDecimals": 9}]'
    socket = FakeWebSocket(ack(), notification(1105, transfers=transfers))
    updates, errors = [], []

    async def on_update(update):
        updates.append(update)

    stream = make_stream(FakeConnector(socket))
    await stream.subscribe(on_update, errors.append, from_slot=1000)
    await wait_for(lambda: updates)

    update = updates[0]
    assert update.slot == 1105
    assert update.signature == "sig1"
    assert update.token_transfers[0]["tokenAmount"] == Decimal("1.000000001")
    assert stream.last_slot == 1105
    assert socket.sent[0]["params"][1]["fromSlot"] == 1000

    await stream.cancel()
    assert socket.closed


async def test_rejected_subscription_raises():
    socket = FakeWebSocket({"jsonrpc": "2.0", "error": {"code": -32602, "message": "bad filter"}, "id": 1})
    stream = make_stream(FakeConnector(socket))

    with pytest.raises(StreamError):
        await stream.subscribe(lambda update: None, lambda error: None)

    assert socket.closed


async def test_connection_failure_raises():
    stream = make_stream(FakeConnector())

    with pytest.raises(StreamError):
        await stream.subscribe(lambda update: None, lambda error: None)


async def test_missing_ack_times_out():
    stream = make_stream(FakeConnector(FakeWebSocket()), subscribe_timeout=0.05)

    with pytest.raises(StreamError):
        await stream.subscribe(lambda update: None, lambda error: None)


async def test_malformed_message_reported_and_skipped():
    socket = FakeWebSocket(ack(), "not json", {"method": "transactionNotification", "params": {}}, notification(7))
    updates, errors = [], []

    async def on_update(update):
        updates.append(update)

    stream = make_stream(FakeConnector(socket))
    await stream.subscribe(on_update, errors.append)
    await wait_for(lambda: updates)

    assert len(errors) == 2
    assert updates[0].slot == 7
    await stream.cancel()


async def test_reconnect_resumes_from_last_slot():
    first = FakeWebSocket(ack(), notification(777), None)
    second = FakeWebSocket(ack(request_id=2))
    updates, errors = [], []

    async def on_update(update):
        updates.append(update)

    stream = make_stream(FakeConnector(first, second), max_reconnect_attempts=2)
    await stream.subscribe(on_update, errors.append, from_slot=700)
    await wait_for(lambda: second.sent)

    assert second.sent[0]["params"][1]["fromSlot"] == 777
    assert stream.get_status()["reconnects"] == 1
    assert errors == []
    await stream.cancel()


async def test_gives_up_after_max_reconnects():
    first = FakeWebSocket(ack(), None)
    errors = []

    async def on_update(update):
        pass

    stream = make_stream(FakeConnector(first), max_reconnect_attempts=2)
    await stream.subscribe(on_update, errors.append)
    await wait_for(lambda: errors)

    assert isinstance(errors[0], StreamError)
    assert not stream.is_connected
    await stream.cancel()


def parsed_transaction() -> dict:
    """jsonParsed transaction with meta: a checked transfer of A, then a plain transfer of B inside a program call"""
    return {
        "transaction": {
            "signatures": ["sigH"],
            "message": {
                "accountKeys": [
                    {"pubkey": "alice", "signer": True, "writable": True},
                    {"pubkey": "ataA1", "signer": False, "writable": True},
                    {"pubkey": "ataA2", "signer": False, "writable": True},
                    {"pubkey": "ataB1", "signer": False, "writable": True},
                    {"pubkey": "ataB2", "signer": False, "writable": True},
                ],
                "instructions": [
                    {
                        "program": "spl-token",
                        "programId": SPL_TOKEN_PROGRAM_ID,
                        "parsed": {"type": "transferChecked", "info": {
                            "source": "ataA1", "destination": "ataA2", "authority": "alice", "mint": "A",
                            "tokenAmount": {"amount": "1500000", "decimals": 6, "uiAmountString": "1.5"}
                        }}
                    },
                    {"programId": "SwapProgram", "accounts": ["alice"], "data": "3Bxs"},
                    {
                        "program": "system",
                        "programId": "11111111111111111111111111111111",
                        "parsed": {"type": "transfer", "info": {"source": "alice", "destination": "ataB2", "lamports": 5000}}
                    },
                ],
            },
        },
        "meta": {
            "err": None,
            "innerInstructions": [{"index": 1, "instructions": [
                {
                    "program": "spl-token",
                    "programId": SPL_TOKEN_PROGRAM_ID,
                    "parsed": {"type": "transfer", "info": {
                        "source": "ataB1", "destination": "ataB2", "authority": "alice", "amount": "25"
                    }}
                },
            ]}],
            "preTokenBalances": [
                {"accountIndex": 1, "mint": "A", "owner": "alice", "uiTokenAmount": {"amount": "9000000", "decimals": 6}},
                {"accountIndex": 3, "mint": "B", "owner": "alice", "uiTokenAmount": {"amount": "100", "decimals": 2}},
            ],
            "postTokenBalances": [
                {"accountIndex": 2, "mint": "A", "owner": "bob", "uiTokenAmount": {"amount": "1500000", "decimals": 6}},
                {"accountIndex": 4, "mint": "B", "owner": "carol", "uiTokenAmount": {"amount": "25", "decimals": 2}},
            ],
        },
    }


def native_notification(slot: int, signature: str = "sigH") -> dict:
    return {
        "jsonrpc": "2.0",
        "method": "transactionNotification",
        "params": {"subscription": 42, "result": {
            "transaction": parsed_transaction(),
            "signature": signature,
            "slot": slot
        }}
    }


def test_token_transfers_from_parsed_instructions():
    transfers = parse_token_transfers(parsed_transaction())

    assert transfers == [
        {
            "mint": "A",
            "fromUserAccount": "alice",
            "toUserAccount": "bob",
            "tokenAmount": Decimal("1.5"),
            "tokenAmountDecimals": 6
        },
        {
            "mint": "B",
            "fromUserAccount": "alice",
            "toUserAccount": "carol",
            "tokenAmount": Decimal("0.25"),
            "tokenAmountDecimals": 2
        },
    ]


def test_native_notification_keeps_source_order_indices():
    update = parse_notification(native_notification(1105)["params"]["result"])

    records = extract_transfers(
        update.token_transfers,
        slot=update.slot,
        signature=update.signature,
        block_time=update.block_time,
        mints={"B"}
    )

    assert update.signature == "sigH"
    assert [(record.mint, record.transfer_index, record.amount) for record in records] == [("B", 1, "0.25")]


def test_notification_without_transfers():
    transaction = parsed_transaction()
    transaction["transaction"]["message"]["instructions"] = []
    transaction["meta"]["innerInstructions"] = []

    update = parse_notification({"transaction": transaction, "signature": "sigE", "slot": 9})

    assert update.token_transfers == []


async def test_dispatches_native_notifications():
    socket = FakeWebSocket(ack(), native_notification(1105))
    updates, errors = [], []

    async def on_update(update):
        updates.append(update)

    stream = make_stream(FakeConnector(socket))
    await stream.subscribe(on_update, errors.append, from_slot=1000)
    await wait_for(lambda: updates)

    update = updates[0]
    assert errors == []
    assert update.slot == 1105
    assert update.signature == "sigH"
    assert [transfer["mint"] for transfer in update.token_transfers] == ["A", "B"]
    assert stream.last_slot == 1105
    await stream.cancel()
