from __future__ import annotations

from enum import Enum


class AuthState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CHECKING = "checking"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


# Only these edges exist; anything else is a programming error.
AUTH_TRANSITIONS: dict[AuthState, frozenset[AuthState]] = {
    AuthState.UNINITIALIZED: frozenset({AuthState.CHECKING}),
    AuthState.CHECKING: frozenset({AuthState.AUTHENTICATED, AuthState.UNAUTHENTICATED}),
    AuthState.AUTHENTICATED: frozenset({AuthState.UNAUTHENTICATED}),
    AuthState.UNAUTHENTICATED: frozenset({AuthState.AUTHENTICATED, AuthState.CHECKING}),
}


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


CHANNEL_TRANSITIONS: dict[ChannelState, frozenset[ChannelState]] = {
    ChannelState.IDLE: frozenset({ChannelState.CONNECTING}),
    ChannelState.CONNECTING: frozenset({ChannelState.OPEN, ChannelState.CLOSED, ChannelState.IDLE}),
    ChannelState.OPEN: frozenset({ChannelState.CLOSED, ChannelState.IDLE}),
    ChannelState.CLOSED: frozenset({ChannelState.CONNECTING, ChannelState.IDLE}),
}


class DeliveryStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    ERROR = "error"


class SenderKind(str, Enum):
    END_USER = "end_user"
    BOT = "bot"
    OPERATOR = "operator"
