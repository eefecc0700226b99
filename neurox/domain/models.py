from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from neurox.domain.state import DeliveryStatus, SenderKind


T = TypeVar("T")


def utc_now() -> datetime:
    # Keep locally created timestamps comparable with server ISO timestamps.
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    # Servers add fields over time; keep them instead of failing validation.
    model_config = ConfigDict(extra="allow")


class User(WireModel):
    id: int
    email: str
    name: str = ""
    phone: str | None = None
    company_name: str | None = None
    company_id: int | None = None
    role: str | None = None
    subscription_plan: str | None = None
    botcoins: float = 0
    subscription_end_date: str | None = None
    is_active: bool = True
    is_verified: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    last_login_at: str | None = None


class LoginData(BaseModel):
    email: str
    password: str


class RegisterData(BaseModel):
    email: str
    phone: str
    password: str
    password_confirmation: str
    name: str
    company_id: int | None = None


class TokenPair(WireModel):
    access_token: str
    refresh_token: str


class AuthResponse(TokenPair):
    expires_in: int | None = None
    user: User


class Page(BaseModel, Generic[T]):
    results: list[T] = Field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0


class Sender(WireModel):
    id: str | None = None
    type: str = "user"
    name: str | None = None
    username: str | None = None
    avatar: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_id(cls, data: Any) -> Any:
        # Sender ids arrive as ints from some channels and strings from others.
        if isinstance(data, dict) and data.get("id") is not None:
            data = {**data, "id": str(data["id"])}
        return data


class Message(WireModel):
    id: int
    appeal_id: int | None = None
    sender: Sender = Field(default_factory=Sender)
    text: str = ""
    type: str = "text"
    attachments: list[Any] = Field(default_factory=list)
    created_at: str | None = None
    local_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        # Older message records carry the body under "message" and the type under "message_type".
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("text") and isinstance(data.get("message"), str):
            data["text"] = data["message"]
        if "type" not in data and data.get("message_type"):
            data["type"] = data["message_type"]
        if data.get("local_id") is None and data.get("correlation_id"):
            data["local_id"] = data["correlation_id"]
        return data


class Appeal(WireModel):
    id: int
    company_id: int | None = None
    info_flow_id: int | None = None
    chat_id: int | None = None
    operator_id: int | None = None
    status: str = "new"
    created_at: str | None = None
    updated_at: str | None = None


class Chat(WireModel):
    id: int
    info_flow_id: int | None = None
    messenger_chat_id: str | None = None
    type: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class AppealView(Appeal):
    # Client-side enrichment shown in the dialog list.
    client_name: str = "Client"
    client_avatar: str | None = None
    last_message: str = "No messages"
    last_message_time: str | None = None
    unread_count: int = 0
    is_typing: bool = False


@dataclass(frozen=True)
class TokenPayload:
    sub: str
    exp: float
    iat: float | None = None
    jti: str | None = None
    company_id: int | None = None
    role: str | None = None


@dataclass(frozen=True)
class MessageSender:
    kind: SenderKind
    name: str | None = None
    avatar: str | None = None
    id: str | None = None


def sender_kind_for(sender_type: str | None) -> SenderKind:
    # Map backend sender types onto the three roles a dialog distinguishes.
    value = (sender_type or "").lower()
    if value == "bot":
        return SenderKind.BOT
    if value in {"service", "operator", "company", "manager"}:
        return SenderKind.OPERATOR
    return SenderKind.END_USER


@dataclass
class DialogMessage:
    local_id: str
    appeal_id: int | None
    sender: MessageSender
    text: str
    created_at: str
    status: DeliveryStatus
    id: int | None = None
    type: str = "text"

    @property
    def is_final(self) -> bool:
        return self.status == DeliveryStatus.SENT

    @classmethod
    def from_server(cls, message: Message, *, local_id: str | None = None) -> "DialogMessage":
        sender = MessageSender(
            kind=sender_kind_for(message.sender.type),
            name=message.sender.name or message.sender.username,
            avatar=message.sender.avatar,
            id=message.sender.id,
        )
        return cls(
            local_id=local_id or message.local_id or f"server-{message.id}",
            appeal_id=message.appeal_id,
            sender=sender,
            text=message.text,
            created_at=message.created_at or utc_now().isoformat(),
            status=DeliveryStatus.SENT,
            id=message.id,
            type=message.type,
        )
