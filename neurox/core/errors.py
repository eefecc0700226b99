from __future__ import annotations

from typing import Any


class NeuroxError(Exception):
    """Base error for the console client."""


class StorageUnavailableError(NeuroxError):
    """Persistent client storage cannot be read or written."""


class InvalidTransitionError(NeuroxError):
    """A state machine was asked to move along an edge it does not have."""

    def __init__(self, machine: str, current: str, target: str) -> None:
        super().__init__(f"{machine}: illegal transition {current} -> {target}")
        self.machine = machine
        self.current = current
        self.target = target


class ApiError(NeuroxError):
    """Remote call failed; carries the user-facing message."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class NetworkError(ApiError):
    """No response was received from the remote service."""


class AuthenticationError(ApiError):
    """Remote service rejected the credentials (401)."""


class ClientRequestError(ApiError):
    """Validation or business failure (4xx with an error body)."""


class ServerError(ApiError):
    """Remote service failed (5xx)."""


class SessionExpiredError(ApiError):
    """Token refresh failed; the local session has been cleared."""


class AuthFlowError(NeuroxError):
    """Interactive auth flow failed; message is safe to show inline."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class LoginError(AuthFlowError):
    """Login was rejected or could not be completed."""


class RegistrationError(AuthFlowError):
    """Registration was rejected or could not be completed."""
