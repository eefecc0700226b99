from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from neurox.core.config import Settings, get_settings
from neurox.core.errors import ApiError, InvalidTransitionError, LoginError, NeuroxError, RegistrationError
from neurox.domain.models import LoginData, RegisterData, User
from neurox.domain.state import AUTH_TRANSITIONS, AuthState
from neurox.services.api.auth import AuthApi
from neurox.services.api.client import extract_error_message
from neurox.services.auth.routes import (
    DEFAULT_ROUTE,
    LANDING_ROUTE,
    LOGIN_ROUTE,
    Navigator,
    is_public_route,
    resolve_redirect,
)
from neurox.services.auth.token_store import TokenStore
from neurox.services.notifications import Notifier
from neurox.services.resilience import Sleep
from neurox.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

LOGIN_FAILED_MESSAGE = "Login failed. Check your email and password."
REGISTRATION_FAILED_MESSAGE = "Registration failed. Try again later."

SignOutHook = Callable[[], Awaitable[None] | None]


def _flow_error_message(exc: Exception, fallback: str) -> str:
    # Prefer the server's own explanation; transport failures get the fallback.
    if isinstance(exc, ApiError) and exc.payload is not None:
        return extract_error_message(exc.payload, fallback)
    return fallback


class AuthOrchestrator:
    """Owns the authentication lifecycle of the console.

    Startup validation, login/register/logout, the route guard and the
    periodic background check all go through here. State changes are
    validated against ``AUTH_TRANSITIONS``; everything else observes
    ``state`` and ``user``.
    """

    def __init__(
        self,
        token_store: TokenStore,
        auth_api: AuthApi,
        *,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        navigator: Navigator | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = token_store
        self._auth_api = auth_api
        self._notifier = notifier or Notifier()
        self._navigator = navigator or Navigator()
        self._sleep = sleep or asyncio.sleep
        self._state = AuthState.UNINITIALIZED
        self._user: User | None = None
        self._check_task: asyncio.Task[None] | None = None
        self._sign_out_hooks: list[SignOutHook] = []

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._state == AuthState.AUTHENTICATED

    @property
    def is_loading(self) -> bool:
        return self._state in (AuthState.UNINITIALIZED, AuthState.CHECKING)

    @property
    def navigator(self) -> Navigator:
        return self._navigator

    @property
    def background_check_running(self) -> bool:
        return self._check_task is not None and not self._check_task.done()

    def add_sign_out_hook(self, hook: SignOutHook) -> None:
        self._sign_out_hooks.append(hook)

    def _transition(self, target: AuthState) -> None:
        if target == self._state:
            return
        if target not in AUTH_TRANSITIONS[self._state]:
            raise InvalidTransitionError("auth", self._state.value, target.value)
        logger.info("auth_state from=%s to=%s", self._state.value, target.value)
        self._state = target

    async def start(self, path: str | None = None) -> str:
        # Startup validation, then the guard decides where the console lands.
        if self._state == AuthState.AUTHENTICATED:
            return self.navigate(path or self._navigator.current or LANDING_ROUTE)
        self._transition(AuthState.CHECKING)
        valid = await self.check_auth()
        self._transition(AuthState.AUTHENTICATED if valid else AuthState.UNAUTHENTICATED)
        if valid:
            self.start_background_checks()
        return self.navigate(path or self._navigator.current or LANDING_ROUTE)

    async def check_auth(self) -> bool:
        if not self._store.has_valid_session():
            self._store.clear_tokens()
            self._user = None
            return False
        cached = self._store.get_user()
        if cached is not None and self._store.is_authenticated() and not self._store.should_refresh_token():
            self._user = cached
            return True
        try:
            if self._store.should_refresh_token() or not self._store.is_authenticated():
                await self._auth_api.refresh()
            user = await self._auth_api.me()
        except NeuroxError as exc:
            logger.warning("auth_check_failed reason=%s", exc)
            self._store.clear_tokens()
            self._user = None
            return False
        self._store.set_user(user)
        self._user = user
        return True

    async def login(self, credentials: LoginData) -> User:
        try:
            response = await self._auth_api.login(credentials)
        except (ApiError, ValidationError) as exc:
            increment_counter("auth_login_failed_total")
            logger.warning("auth_login_failed reason=%s", exc)
            raise LoginError(_flow_error_message(exc, LOGIN_FAILED_MESSAGE)) from exc
        self._store.set_tokens(response.access_token, response.refresh_token)
        self._store.set_user(response.user)
        self._user = response.user
        if self._state == AuthState.UNINITIALIZED:
            self._transition(AuthState.CHECKING)
        self._transition(AuthState.AUTHENTICATED)
        increment_counter("auth_login_total")
        self._notifier.success("Signed in", f"Welcome, {response.user.name or response.user.email}")
        self._navigator.push(DEFAULT_ROUTE)
        self.start_background_checks()
        return response.user

    async def register(self, data: RegisterData) -> User:
        try:
            await self._auth_api.register(data)
        except (ApiError, ValidationError) as exc:
            logger.warning("auth_register_failed reason=%s", exc)
            raise RegistrationError(_flow_error_message(exc, REGISTRATION_FAILED_MESSAGE)) from exc
        self._notifier.success("Registration complete", "Signing you in")
        return await self.login(LoginData(email=data.email, password=data.password))

    async def logout(self) -> None:
        if self._store.get_access_token():
            try:
                await self._auth_api.logout()
            except Exception as exc:  # noqa: BLE001 - local logout proceeds regardless
                logger.warning("auth_remote_logout_failed reason=%s", exc)
        await self._end_session()
        self._notifier.info("Signed out")
        self._navigator.push(LOGIN_ROUTE)

    async def refresh_user(self) -> User | None:
        try:
            user = await self._auth_api.me()
        except NeuroxError as exc:
            logger.warning("auth_refresh_user_failed reason=%s", exc)
            await self.logout()
            return None
        self._store.set_user(user)
        self._user = user
        return user

    async def handle_session_expired(self) -> None:
        # Silent: the user simply lands on the login page.
        increment_counter("auth_session_expired_total")
        logger.info("auth_session_expired route=%s", self._navigator.current)
        await self._end_session()
        if not is_public_route(self._navigator.current):
            self._navigator.push(LOGIN_ROUTE)

    def navigate(self, path: str) -> str:
        # While the startup check runs the guard cannot decide yet.
        if self.is_loading:
            return self._navigator.push(path)
        redirect = resolve_redirect(path, self.is_authenticated)
        if redirect is not None:
            logger.info("route_guard_redirect path=%s to=%s", path, redirect)
        return self._navigator.push(redirect or path)

    def require_role(self, *roles: str) -> bool:
        if not self.is_authenticated:
            self._navigator.push(LOGIN_ROUTE)
            return False
        user = self._user or self._store.get_user()
        role = user.role if user is not None and user.role else self._store.get_user_role()
        if role in roles:
            return True
        logger.info("route_guard_role_denied role=%s required=%s", role, ",".join(roles))
        self._notifier.error("Access denied", "You do not have permission to open this page")
        self._navigator.push(DEFAULT_ROUTE)
        return False

    def start_background_checks(self) -> None:
        if self.background_check_running:
            return
        self._check_task = asyncio.get_running_loop().create_task(self._background_loop())

    async def stop(self) -> None:
        task = self._check_task
        self._check_task = None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_background_check(self) -> bool:
        if self._state != AuthState.AUTHENTICATED:
            return False
        if not self._store.should_refresh_token():
            return True
        valid = await self.check_auth()
        if not valid and self._state == AuthState.AUTHENTICATED:
            await self.handle_session_expired()
        return valid

    async def _background_loop(self) -> None:
        interval = self._settings.auth_check_interval_s
        while self._state == AuthState.AUTHENTICATED:
            await self._sleep(interval)
            try:
                await self.run_background_check()
            except Exception:  # noqa: BLE001 - the next tick retries
                logger.exception("auth_background_check_failed")

    async def _end_session(self) -> None:
        await self.stop()
        self._store.clear_tokens()
        self._user = None
        if self._state in (AuthState.AUTHENTICATED, AuthState.CHECKING):
            self._transition(AuthState.UNAUTHENTICATED)
        for hook in list(self._sign_out_hooks):
            try:
                result: Any = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - one hook must not keep the session alive
                logger.exception("auth_sign_out_hook_failed")
