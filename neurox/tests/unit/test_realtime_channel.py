from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from neurox.domain.events import EventKind
from neurox.domain.state import ChannelState
from neurox.persistence.storage import MemoryStorage
from neurox.services.auth.token_store import TokenStore
from neurox.services.notifications import NotificationLevel, Notifier
from neurox.services.realtime.channel import RealtimeChannel, Subscription
from neurox.services.resilience import ReconnectPolicy
from neurox.services.telemetry import get_counter
from neurox.tests.utils.realtime import FakeConnector, fast_sleep, wait_until
from neurox.tests.utils.tokens import make_settings, make_token


def _store(with_token: bool = True) -> TokenStore:
    store = TokenStore(MemoryStorage(), refresh_threshold_s=300)
    if with_token:
        store.set_tokens(make_token(exp_in=3600), make_token(exp_in=86400))
    return store


def _channel(
    store: TokenStore,
    connector: FakeConnector,
    *,
    policy: ReconnectPolicy | None = None,
    notifier: Notifier | None = None,
    sleep=fast_sleep,
    **settings: Any,
) -> RealtimeChannel:
    return RealtimeChannel(
        store,
        settings=make_settings(backend_url="https://crm.example.com", **settings),
        policy=policy or ReconnectPolicy(base_delay_s=1, max_delay_s=3, max_attempts=10),
        connect=connector,
        sleep=sleep,
        notifier=notifier or Notifier(),
    )


@pytest.mark.asyncio
async def test_open_without_valid_token_is_noop() -> None:
    connector = FakeConnector()
    channel = _channel(_store(with_token=False), connector)

    assert await channel.open(Subscription(company_id=3)) is False
    assert channel.state == ChannelState.IDLE
    assert connector.urls == []


@pytest.mark.asyncio
async def test_open_connects_and_sends_subscribe_directive() -> None:
    store = _store()
    connector = FakeConnector()
    channel = _channel(store, connector)

    assert await channel.open(Subscription(company_id=3)) is True
    await wait_until(lambda: channel.state == ChannelState.OPEN)

    assert connector.urls[0].startswith("wss://crm.example.com/api/v1/ws/crm/?access_token=")
    assert connector.sockets[0].sent == [
        {
            "type": "subscribe",
            "data": {"company_id": 3, "event_types": ["new_appeal", "appeal_update", "new_message"]},
        }
    ]
    await channel.close()
    assert channel.state == ChannelState.IDLE
    assert connector.sockets[0].closed is True


@pytest.mark.asyncio
async def test_cmd_subscribe_format() -> None:
    connector = FakeConnector()
    channel = _channel(_store(), connector, ws_subscribe_format="cmd")

    await channel.open(Subscription(company_id=5, event_types=("new_message",)))
    await wait_until(lambda: channel.state == ChannelState.OPEN)

    assert connector.sockets[0].sent == [
        {"cmd": "subscribe", "channel": {"company_id": 5, "event_types": ["new_message"]}}
    ]
    await channel.close()


@pytest.mark.asyncio
async def test_frames_dispatch_in_order_and_bad_frames_are_dropped() -> None:
    connector = FakeConnector()
    channel = _channel(_store(), connector)
    received: list[tuple[str, Any]] = []

    def broken(payload: dict[str, Any]) -> None:
        raise RuntimeError("handler bug")

    async def on_message(payload: dict[str, Any]) -> None:
        received.append(("message", payload["n"]))

    def on_update(payload: dict[str, Any]) -> None:
        received.append(("update", payload["id"]))

    channel.on(EventKind.NEW_MESSAGE, broken)
    channel.on(EventKind.NEW_MESSAGE, on_message)
    channel.on(EventKind.APPEAL_UPDATE, on_update)

    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.state == ChannelState.OPEN)
    socket = connector.sockets[0]
    socket.feed("not json")
    socket.feed({"type": "mystery", "data": {}})
    socket.feed({"type": "NEW_MESSAGE", "data": {"n": 1}})
    socket.feed(json.dumps([1, 2]))
    socket.feed({"type": "new_message", "payload": {"n": 2}})
    socket.feed({"type": "UPDATE_APPEAL", "data": {"id": 5}})
    socket.feed({"type": "appeal_update", "data": {"id": 6}})

    await wait_until(lambda: len(received) == 4)

    assert received == [("message", 1), ("message", 2), ("update", 5), ("update", 6)]
    assert get_counter("realtime_frames_dropped_total") == 3
    assert channel.state == ChannelState.OPEN
    await channel.close()


@pytest.mark.asyncio
async def test_off_removes_handler() -> None:
    connector = FakeConnector()
    channel = _channel(_store(), connector)
    received: list[Any] = []
    seen_errors: list[Any] = []

    def handler(payload: dict[str, Any]) -> None:
        received.append(payload)

    channel.on(EventKind.TYPING, handler)
    channel.off(EventKind.TYPING, handler)
    channel.on(EventKind.ERROR, seen_errors.append)

    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.state == ChannelState.OPEN)
    connector.sockets[0].feed({"type": "typing", "data": {"appeal_id": 1}})
    connector.sockets[0].feed({"type": "error", "data": {"detail": "boom"}})
    await wait_until(lambda: len(seen_errors) == 1)

    assert received == []
    await channel.close()


@pytest.mark.asyncio
async def test_backoff_grows_monotonically_and_resets_after_open() -> None:
    connector = FakeConnector(failures=4)
    channel = _channel(_store(), connector)

    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.state == ChannelState.OPEN)

    assert channel.scheduler.delays == [1, 2, 3, 3]
    assert channel.attempts == 0

    connector.sockets[0].drop()
    await wait_until(lambda: len(connector.sockets) == 2 and channel.state == ChannelState.OPEN)

    assert channel.scheduler.delays == [1, 2, 3, 3, 1]
    assert connector.sockets[1].sent[0]["type"] == "subscribe"
    await channel.close()


@pytest.mark.asyncio
async def test_reconnect_gives_up_then_manual_reconnect() -> None:
    notifier = Notifier()
    connector = FakeConnector(failures=100)
    channel = _channel(
        _store(),
        connector,
        policy=ReconnectPolicy(base_delay_s=1, max_delay_s=30, max_attempts=2),
        notifier=notifier,
    )

    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.gave_up)

    assert channel.state == ChannelState.CLOSED
    assert channel.scheduler.delays == [1, 2]
    assert channel.scheduler.pending is False
    assert len(connector.urls) == 3
    assert notifier.active[-1].level == NotificationLevel.ERROR

    connector.failures = 0
    assert await channel.reconnect() is True
    await wait_until(lambda: channel.state == ChannelState.OPEN)
    assert channel.gave_up is False
    await channel.close()


@pytest.mark.asyncio
async def test_close_cancels_pending_reconnect() -> None:
    async def never_wakes(delay: float) -> None:
        await asyncio.Event().wait()

    connector = FakeConnector(failures=1)
    channel = _channel(_store(), connector, sleep=never_wakes)

    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.state == ChannelState.CLOSED and channel.scheduler.pending)

    await channel.close()

    assert channel.state == ChannelState.IDLE
    assert channel.scheduler.pending is False
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_open_is_idempotent_and_topic_change_replaces_connection() -> None:
    connector = FakeConnector()
    channel = _channel(_store(), connector)

    await channel.open(Subscription(company_id=3))
    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.state == ChannelState.OPEN)
    assert len(connector.urls) == 1

    await channel.open(Subscription(company_id=4))
    await wait_until(lambda: len(connector.sockets) == 2 and channel.state == ChannelState.OPEN)

    assert connector.sockets[0].closed is True
    assert connector.sockets[1].sent[0]["data"]["company_id"] == 4
    assert channel.scheduler.delays == []
    await channel.close()


@pytest.mark.asyncio
async def test_send_only_while_open() -> None:
    connector = FakeConnector()
    channel = _channel(_store(), connector)

    assert await channel.send({"type": "ping"}) is False

    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.state == ChannelState.OPEN)
    assert await channel.send({"type": "ping"}) is True
    assert connector.sockets[0].sent[-1] == {"type": "ping"}

    await channel.close()
    assert await channel.send({"type": "ping"}) is False


@pytest.mark.asyncio
async def test_reconnect_without_token_gives_up_until_manual_reconnect() -> None:
    store = _store()
    notifier = Notifier()
    connector = FakeConnector()
    channel = _channel(store, connector, notifier=notifier)

    await channel.open(Subscription(company_id=3))
    await wait_until(lambda: channel.state == ChannelState.OPEN)

    store.clear_tokens()
    connector.sockets[0].drop()
    await wait_until(lambda: channel.state == ChannelState.IDLE)

    assert len(connector.urls) == 1
    assert channel.gave_up is True
    assert channel.subscription == Subscription(company_id=3)
    assert notifier.active[-1].title == "Realtime connection lost"
    assert notifier.active[-1].level == NotificationLevel.ERROR

    store.set_tokens(make_token(exp_in=3600), make_token(exp_in=86400))
    assert await channel.reconnect() is True
    await wait_until(lambda: channel.state == ChannelState.OPEN)

    assert len(connector.urls) == 2
    assert channel.gave_up is False
    await channel.close()
