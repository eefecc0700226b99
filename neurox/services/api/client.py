from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Literal, Mapping

import httpx
from pydantic import ValidationError

from neurox.core.config import Settings, get_settings
from neurox.core.errors import (
    ApiError,
    AuthenticationError,
    ClientRequestError,
    NetworkError,
    ServerError,
    SessionExpiredError,
)
from neurox.domain.models import TokenPair
from neurox.services.api.endpoints import AUTH_REFRESH
from neurox.services.auth.token_store import TokenStore
from neurox.services.notifications import Notifier
from neurox.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


Service = Literal["auth", "backend"]
SessionExpiredHook = Callable[[], Awaitable[None] | None]

GENERIC_ERROR_MESSAGE = "Something went wrong"


def extract_error_message(payload: Any, fallback: str = GENERIC_ERROR_MESSAGE) -> str:
    # Servers answer with detail, message or error; FastAPI validation errors are lists.
    if isinstance(payload, Mapping):
        for key in ("detail", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value
            if isinstance(value, Mapping) and isinstance(value.get("message"), str):
                return value["message"]
            if isinstance(value, list) and value:
                parts = [str(item.get("msg")) for item in value if isinstance(item, Mapping) and item.get("msg")]
                if parts:
                    return "; ".join(parts)
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return fallback


def _response_payload(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class ApiClient:
    """HTTP transport shared by the auth and backend APIs.

    Authenticated requests carry the stored bearer token. A 401 triggers one
    token refresh shared by every request that hit it (single flight) and the
    original request is retried once with the new token. When the refresh
    itself fails the store is cleared, ``on_session_expired`` runs and
    ``SessionExpiredError`` is raised.
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_session_expired: SessionExpiredHook | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = token_store
        self._notifier = notifier or Notifier()
        self.on_session_expired = on_session_expired
        timeout = httpx.Timeout(self._settings.http_timeout_s)
        headers = {"Content-Type": "application/json"}
        self._clients: dict[Service, httpx.AsyncClient] = {
            "auth": httpx.AsyncClient(
                base_url=self._settings.auth_service_url,
                timeout=timeout,
                headers=headers,
                transport=transport,
            ),
            "backend": httpx.AsyncClient(
                base_url=self._settings.backend_url,
                timeout=timeout,
                headers=headers,
                transport=transport,
            ),
        }
        self._refresh_task: asyncio.Task[str] | None = None

    @property
    def token_store(self) -> TokenStore:
        return self._store

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    @property
    def settings(self) -> Settings:
        return self._settings

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def set_service_key(self, service_key: str | None) -> None:
        # Multi-tenant list endpoints expect the tenant service key as x-authorization.
        headers = self._clients["backend"].headers
        if service_key:
            headers["x-authorization"] = service_key
        else:
            headers.pop("x-authorization", None)

    async def request(
        self,
        service: Service,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        authenticated: bool = True,
        notify: bool = True,
    ) -> Any:
        client = self._clients[service]
        clean_params = {key: value for key, value in (params or {}).items() if value is not None}
        token = self._store.get_access_token() if authenticated else None
        response = await self._send(client, method, url, token, json, clean_params, headers, notify)
        if authenticated and response.status_code == 401:
            fresh_token = await self._token_after_unauthorized(token)
            response = await self._send(client, method, url, fresh_token, json, clean_params, headers, notify)
        return self._handle_response(response, notify)

    async def refresh_session(self) -> str:
        # Single flight: concurrent callers await the same refresh task.
        task = self._refresh_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._refresh())
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        else:
            logger.debug("token_refresh_joined")
        return await asyncio.shield(task)

    def _refresh_finished(self, task: asyncio.Task[str]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _token_after_unauthorized(self, used_token: str | None) -> str:
        current = self._store.get_access_token()
        if current and current != used_token and not self._store.is_token_expired(current):
            # Another request refreshed while this one was in flight.
            return current
        return await self.refresh_session()

    async def _refresh(self) -> str:
        refresh_token = self._store.get_refresh_token()
        try:
            if not refresh_token:
                raise SessionExpiredError("No refresh token", status_code=401)
            response = await self._send(
                self._clients["auth"],
                "POST",
                AUTH_REFRESH,
                None,
                {"refresh_token": refresh_token},
                {},
                None,
                False,
            )
            if response.status_code >= 400:
                message = extract_error_message(_response_payload(response), "Session expired")
                raise SessionExpiredError(message, status_code=response.status_code)
            pair = TokenPair.model_validate(response.json())
        except (ApiError, ValueError, ValidationError) as exc:
            increment_counter("auth_refresh_failed_total")
            logger.warning("token_refresh_failed reason=%s", exc)
            self._store.clear_tokens()
            await self._emit_session_expired()
            if isinstance(exc, SessionExpiredError):
                raise
            raise SessionExpiredError("Session expired", status_code=401) from exc
        self._store.set_tokens(pair.access_token, pair.refresh_token)
        increment_counter("auth_refresh_total")
        logger.info("token_refresh_succeeded")
        return pair.access_token

    async def _emit_session_expired(self) -> None:
        hook = self.on_session_expired
        if hook is None:
            return
        try:
            result = hook()
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001 - the caller still needs SessionExpiredError
            logger.exception("session_expired_hook_failed")

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        token: str | None,
        json: Any,
        params: Mapping[str, Any],
        headers: Mapping[str, str] | None,
        notify: bool,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        try:
            return await client.request(
                method,
                url,
                json=json,
                params=params or None,
                headers=request_headers,
            )
        except httpx.TransportError as exc:
            logger.warning("api_network_error method=%s url=%s reason=%s", method, url, exc)
            if notify:
                self._notifier.error("Network unreachable", "Check your internet connection")
            raise NetworkError("Network unreachable") from exc

    def _handle_response(self, response: httpx.Response, notify: bool) -> Any:
        payload = _response_payload(response)
        status = response.status_code
        if status < 400:
            return payload
        if status >= 500:
            message = extract_error_message(payload, "Server error")
            if notify:
                self._notifier.error("Server error", message)
            raise ServerError(message, status_code=status, payload=payload)
        message = extract_error_message(payload)
        if notify:
            self._notifier.error(message)
        if status == 401:
            raise AuthenticationError(message, status_code=status, payload=payload)
        raise ClientRequestError(message, status_code=status, payload=payload)
