from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import jwt
from pydantic import ValidationError

from neurox.core.config import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY, get_settings
from neurox.core.errors import StorageUnavailableError
from neurox.domain.models import TokenPayload, User
from neurox.persistence.storage import KeyValueStorage, MemoryStorage


logger = logging.getLogger(__name__)


class TokenStore:
    """Session tokens and the cached user profile.

    Every operation is synchronous and never raises for ordinary storage
    unavailability: reads come back as ``None`` and writes become no-ops.
    Token decoding fails closed, so anything that is not a well-formed token
    with an ``exp`` claim counts as expired.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        *,
        refresh_threshold_s: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self._refresh_threshold_s = (
            refresh_threshold_s if refresh_threshold_s is not None else get_settings().refresh_threshold_s
        )
        self._time = time_source or time.time

    def _get(self, key: str) -> str | None:
        try:
            return self._storage.get(key)
        except StorageUnavailableError as exc:
            logger.debug("token_store_read_unavailable key=%s reason=%s", key, exc)
            return None

    def set_tokens(self, access_token: str, refresh_token: str) -> None:
        # One storage write so no reader sees a new access token next to an old refresh token.
        try:
            self._storage.set_many({ACCESS_TOKEN_KEY: access_token, REFRESH_TOKEN_KEY: refresh_token})
        except StorageUnavailableError as exc:
            logger.warning("token_store_write_unavailable reason=%s", exc)

    def get_access_token(self) -> str | None:
        return self._get(ACCESS_TOKEN_KEY)

    def get_refresh_token(self) -> str | None:
        return self._get(REFRESH_TOKEN_KEY)

    def clear_tokens(self) -> None:
        try:
            self._storage.remove_many([ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY])
        except StorageUnavailableError as exc:
            logger.warning("token_store_clear_unavailable reason=%s", exc)

    def set_user(self, user: User | dict[str, Any]) -> None:
        data = user.model_dump(mode="json") if isinstance(user, User) else user
        try:
            self._storage.set_many({USER_KEY: json.dumps(data, ensure_ascii=False)})
        except (StorageUnavailableError, TypeError, ValueError) as exc:
            logger.warning("token_store_user_write_failed reason=%s", exc)

    def get_user(self) -> User | None:
        raw = self._get(USER_KEY)
        if not raw:
            return None
        try:
            return User.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            # json.JSONDecodeError is a ValueError; a stale or foreign profile is treated as absent.
            logger.debug("token_store_user_decode_failed")
            return None

    def _decode(self, token: Any) -> dict[str, Any] | None:
        if not isinstance(token, str) or not token:
            return None
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except (jwt.PyJWTError, ValueError, TypeError):
            return None
        return claims if isinstance(claims, dict) else None

    def _expiry(self, token: Any) -> float | None:
        claims = self._decode(token)
        if claims is None:
            return None
        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        return float(exp)

    def is_token_expired(self, token: Any) -> bool:
        exp = self._expiry(token)
        if exp is None:
            return True
        return exp < self._time()

    def is_authenticated(self) -> bool:
        access_token = self.get_access_token()
        if not access_token:
            return False
        return not self.is_token_expired(access_token)

    def has_valid_session(self) -> bool:
        access_token = self.get_access_token()
        refresh_token = self.get_refresh_token()
        if not access_token or not refresh_token:
            return False
        if self.is_token_expired(refresh_token):
            # Lazy cleanup: an expired refresh token can never revive the session.
            logger.info("session_refresh_token_expired action=clear")
            self.clear_tokens()
            return False
        return True

    def get_token_payload(self, token: str | None = None) -> TokenPayload | None:
        target = token or self.get_access_token()
        claims = self._decode(target)
        if claims is None:
            return None
        company_id = claims.get("company_id")
        return TokenPayload(
            sub=str(claims.get("sub", "")),
            exp=self._expiry(target) or 0.0,
            iat=claims.get("iat"),
            jti=claims.get("jti"),
            company_id=company_id if isinstance(company_id, int) else None,
            role=claims.get("role"),
        )

    def get_token_expiry_time(self) -> float | None:
        # Seconds until the access token expires, floored at zero.
        exp = self._expiry(self.get_access_token())
        if exp is None:
            return None
        return max(0.0, exp - self._time())

    def should_refresh_token(self) -> bool:
        remaining = self.get_token_expiry_time()
        if remaining is None:
            return False
        return remaining < self._refresh_threshold_s

    def get_user_role(self) -> str | None:
        user = self.get_user()
        return user.role if user is not None and user.role else None

    def get_company_id(self) -> int | None:
        user = self.get_user()
        return user.company_id if user is not None and user.company_id else None

    def is_admin(self) -> bool:
        return self.get_user_role() == "admin"

    def is_operator(self) -> bool:
        return self.get_user_role() == "operator"

    def is_viewer(self) -> bool:
        return self.get_user_role() == "viewer"
