from __future__ import annotations

import logging
from typing import Callable


logger = logging.getLogger(__name__)

LOGIN_ROUTE = "/login"
LANDING_ROUTE = "/"
DEFAULT_ROUTE = "/agents"

# Routes reachable without a session.
PUBLIC_ROUTES = frozenset(
    {
        "/login",
        "/register",
        "/",
        "/reset-password",
        "/terms",
        "/privacy",
        "/404",
        "/not-found",
    }
)


def normalize_path(path: str | None) -> str:
    # Strip query/fragment and trailing slashes so "/login/?next=x" matches "/login".
    if not path:
        return LANDING_ROUTE
    path = path.split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = f"/{path}"
    if len(path) > 1:
        path = path.rstrip("/") or LANDING_ROUTE
    return path


def is_public_route(path: str | None) -> bool:
    return normalize_path(path) in PUBLIC_ROUTES


def resolve_redirect(path: str | None, authenticated: bool) -> str | None:
    """Return the route the guard sends ``path`` to, or None to stay."""
    normalized = normalize_path(path)
    public = normalized in PUBLIC_ROUTES
    if not authenticated and not public:
        return LOGIN_ROUTE
    if authenticated and public and normalized != LANDING_ROUTE:
        return DEFAULT_ROUTE
    return None


RouteListener = Callable[[str], None]


class Navigator:
    # Records where the console is; a headless stand-in for the browser router.
    def __init__(self, initial: str | None = None) -> None:
        self._current: str | None = normalize_path(initial) if initial else None
        self._history: list[str] = [self._current] if self._current else []
        self._listeners: list[RouteListener] = []

    @property
    def current(self) -> str | None:
        return self._current

    @property
    def history(self) -> list[str]:
        return list(self._history)

    def subscribe(self, listener: RouteListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def push(self, path: str) -> str:
        path = normalize_path(path)
        if path == self._current:
            return path
        logger.info("route_change from=%s to=%s", self._current, path)
        self._current = path
        self._history.append(path)
        for listener in list(self._listeners):
            listener(path)
        return path
