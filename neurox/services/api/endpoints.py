from __future__ import annotations

from urllib.parse import urlencode


AUTH_REGISTER = "/api/v1/auth/register"
AUTH_LOGIN = "/api/v1/auth/login"
AUTH_REFRESH = "/api/v1/auth/refresh"
AUTH_LOGOUT = "/api/v1/auth/logout"
AUTH_ME = "/api/v1/auth/me"

APPEAL_LIST = "/api/v1/appeal/"
MESSAGE_SEND = "/api/v1/message/"
WS_CRM = "/api/v1/ws/crm/"


def appeal_detail(appeal_id: int) -> str:
    return f"/api/v1/appeal/{appeal_id}"


def appeal_assign(appeal_id: int) -> str:
    return f"/api/v1/appeal/{appeal_id}/assign/"


def appeal_close(appeal_id: int) -> str:
    return f"/api/v1/appeal/{appeal_id}/close/"


def message_list(appeal_id: int) -> str:
    return f"/api/v1/message/{appeal_id}/list/"


def message_mark_read(appeal_id: int) -> str:
    return f"/api/v1/message/{appeal_id}/messages/mark_as_read"


def chat_detail(chat_id: int) -> str:
    return f"/api/v1/chat/{chat_id}"


def websocket_url(backend_url: str, access_token: str, endpoint: str = WS_CRM) -> str:
    # http -> ws and https -> wss; the token travels as a query parameter.
    base = backend_url.rstrip("/")
    if base.startswith("http"):
        base = "ws" + base[len("http"):]
    return f"{base}{endpoint}?{urlencode({'access_token': access_token})}"
