from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import websockets

from neurox.core.config import Settings, get_settings
from neurox.core.errors import InvalidTransitionError
from neurox.domain.events import EventKind, SubscribeData, frame_payload, resolve_event_kind
from neurox.domain.state import CHANNEL_TRANSITIONS, ChannelState
from neurox.services.api.endpoints import websocket_url
from neurox.services.auth.token_store import TokenStore
from neurox.services.notifications import Notifier
from neurox.services.resilience import ReconnectPolicy, ReconnectScheduler, Sleep, default_reconnect_policy
from neurox.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CONNECTION_LOST_MESSAGE = "Realtime connection lost"


class WebSocketLike(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[WebSocketLike]]
EventHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


@dataclass(frozen=True)
class Subscription:
    company_id: int
    event_types: tuple[str, ...] = field(default=("new_appeal", "appeal_update", "new_message"))

    def directive(self, style: str = "type") -> dict[str, Any]:
        body: SubscribeData = {"company_id": self.company_id, "event_types": list(self.event_types)}
        if style == "cmd":
            return {"cmd": "subscribe", "channel": body}
        return {"type": "subscribe", "data": body}


class RealtimeChannel:
    """Tenant-scoped WebSocket with automatic reconnection.

    States move idle -> connecting -> open -> closed -> connecting ... and back
    to idle on ``close()``. Connection failures never propagate to callers:
    they move the channel to ``closed`` and schedule a reconnect through a
    single-handle scheduler. Inbound frames are dispatched by their ``type``
    tag, one at a time, in arrival order.
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        settings: Settings | None = None,
        policy: ReconnectPolicy | None = None,
        connect: Connector | None = None,
        sleep: Sleep | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = token_store
        self._policy = policy or default_reconnect_policy(self._settings)
        self._connect = connect or self._default_connect
        self._notifier = notifier or Notifier()
        self._scheduler = ReconnectScheduler(sleep=sleep, name="realtime_reconnect")
        self._handlers: dict[EventKind, list[EventHandler]] = defaultdict(list)
        self._state = ChannelState.IDLE
        self._subscription: Subscription | None = None
        self._ws: WebSocketLike | None = None
        self._listener: asyncio.Task[None] | None = None
        self._attempts = 0
        self._gave_up = False
        # Bumped on every teardown so a superseded listener never reports a close.
        self._generation = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    @property
    def scheduler(self) -> ReconnectScheduler:
        return self._scheduler

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    async def _default_connect(self, url: str) -> WebSocketLike:
        return await websockets.connect(url, open_timeout=self._settings.ws_open_timeout_s)

    def on(self, kind: EventKind, handler: EventHandler) -> Callable[[], None]:
        self._handlers[kind].append(handler)

        def _remove() -> None:
            self.off(kind, handler)

        return _remove

    def off(self, kind: EventKind, handler: EventHandler) -> None:
        handlers = self._handlers.get(kind)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _transition(self, target: ChannelState) -> None:
        if target == self._state:
            return
        if target not in CHANNEL_TRANSITIONS[self._state]:
            raise InvalidTransitionError("realtime_channel", self._state.value, target.value)
        logger.debug("realtime_state from=%s to=%s", self._state.value, target.value)
        self._state = target

    async def open(self, subscription: Subscription) -> bool:
        # Same topic while connecting/open is a no-op; a different topic replaces the connection.
        if subscription == self._subscription and self._state in (ChannelState.CONNECTING, ChannelState.OPEN):
            return True
        if self._state != ChannelState.IDLE or self._listener is not None or self._scheduler.pending:
            await self._teardown()
        self._subscription = subscription
        self._attempts = 0
        self._gave_up = False
        return self._start()

    async def close(self) -> None:
        await self._teardown()
        self._subscription = None
        self._attempts = 0
        self._gave_up = False

    async def reconnect(self) -> bool:
        # Manual reconnect after the policy gave up; also resets the backoff.
        if self._subscription is None:
            return False
        if self._state in (ChannelState.CONNECTING, ChannelState.OPEN):
            return True
        self._scheduler.cancel()
        self._attempts = 0
        self._gave_up = False
        return self._start()

    async def send(self, directive: dict[str, Any]) -> bool:
        ws = self._ws
        if self._state != ChannelState.OPEN or ws is None:
            return False
        try:
            await ws.send(json.dumps(directive, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001 - the listener reports the broken connection
            logger.warning("realtime_send_failed reason=%s", exc)
            return False
        return True

    def _start(self) -> bool:
        token = self._store.get_access_token()
        if not token or self._store.is_token_expired(token):
            logger.info("realtime_open_skipped reason=no_valid_token")
            if self._state == ChannelState.CLOSED:
                self._transition(ChannelState.IDLE)
            return False
        self._transition(ChannelState.CONNECTING)
        url = websocket_url(self._settings.backend_url, token)
        self._listener = asyncio.get_running_loop().create_task(self._run(url, self._generation))
        return True

    async def _run(self, url: str, generation: int) -> None:
        try:
            ws = await self._connect(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - any handshake failure is an unplanned close
            logger.warning("realtime_connect_failed attempt=%s reason=%s", self._attempts + 1, exc)
            if generation == self._generation:
                self._on_unplanned_close()
            return
        if generation != self._generation:
            await self._safe_close(ws)
            return
        self._ws = ws
        self._transition(ChannelState.OPEN)
        try:
            if self._subscription is not None:
                await ws.send(json.dumps(self._subscription.directive(self._settings.ws_subscribe_format)))
            self._attempts = 0
            self._gave_up = False
            logger.info("realtime_open company_id=%s", getattr(self._subscription, "company_id", None))
            async for raw in ws:
                await self._dispatch(raw)
                if generation != self._generation:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - errors and abnormal closes both trigger reconnect
            logger.warning("realtime_connection_error reason=%s", exc)
        if generation != self._generation:
            return
        self._ws = None
        await self._safe_close(ws)
        self._on_unplanned_close()

    def _on_unplanned_close(self) -> None:
        self._listener = None
        if self._state in (ChannelState.CONNECTING, ChannelState.OPEN):
            self._transition(ChannelState.CLOSED)
        self._attempts += 1
        increment_counter("realtime_unplanned_close_total")
        if self._policy.exhausted(self._attempts):
            logger.warning("realtime_reconnect_gave_up attempts=%s", self._attempts - 1)
            self._give_up()
            return
        delay = self._policy.delay_for(self._attempts)
        self._scheduler.schedule(delay, self._reconnect_due)

    def _reconnect_due(self) -> None:
        if self._subscription is None or self._state != ChannelState.CLOSED:
            return
        if not self._start():
            # The session ended while waiting; nothing will reopen the channel on its own.
            logger.warning("realtime_reconnect_gave_up reason=no_valid_token")
            self._give_up()

    def _give_up(self) -> None:
        self._gave_up = True
        self._notifier.error(CONNECTION_LOST_MESSAGE, "Reconnect to resume live updates")

    async def _dispatch(self, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8", errors="replace")
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            increment_counter("realtime_frames_dropped_total")
            logger.warning("realtime_frame_dropped reason=malformed_json")
            return
        if not isinstance(frame, dict):
            increment_counter("realtime_frames_dropped_total")
            logger.warning("realtime_frame_dropped reason=not_an_object")
            return
        kind = resolve_event_kind(frame.get("type"))
        if kind is None:
            increment_counter("realtime_frames_dropped_total")
            logger.debug("realtime_frame_dropped reason=unknown_type type=%s", frame.get("type"))
            return
        payload = frame_payload(frame)
        for handler in list(self._handlers.get(kind, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - one failing subscriber must not stop the stream
                logger.exception("realtime_handler_failed kind=%s", kind.value)

    async def _teardown(self) -> None:
        self._generation += 1
        self._scheduler.cancel()
        listener, self._listener = self._listener, None
        ws, self._ws = self._ws, None
        if listener is not None and listener is not asyncio.current_task() and not listener.done():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await self._safe_close(ws)
        if self._state != ChannelState.IDLE:
            self._transition(ChannelState.IDLE)

    async def _safe_close(self, ws: WebSocketLike) -> None:
        try:
            await ws.close()
        except Exception as exc:  # noqa: BLE001 - closing a dead socket is best effort
            logger.debug("realtime_close_failed reason=%s", exc)
