from __future__ import annotations

from neurox.domain.models import AuthResponse, LoginData, RegisterData, User
from neurox.services.api import endpoints
from neurox.services.api.client import ApiClient


class AuthApi:
    # Auth service calls; errors are raised to the orchestrator rather than notified.
    def __init__(self, client: ApiClient) -> None:
        self._client = client

    @property
    def client(self) -> ApiClient:
        return self._client

    async def register(self, data: RegisterData) -> User | None:
        payload = await self._client.request(
            "auth",
            "POST",
            endpoints.AUTH_REGISTER,
            json=data.model_dump(exclude_none=True),
            authenticated=False,
            notify=False,
        )
        # Some deployments answer registration with a bare 201 and no body.
        if isinstance(payload, dict) and "id" in payload:
            return User.model_validate(payload)
        return None

    async def login(self, data: LoginData) -> AuthResponse:
        payload = await self._client.request(
            "auth",
            "POST",
            endpoints.AUTH_LOGIN,
            json=data.model_dump(),
            authenticated=False,
            notify=False,
        )
        return AuthResponse.model_validate(payload)

    async def refresh(self) -> str:
        # Shares the client's single-flight refresh with the 401 retry path.
        return await self._client.refresh_session()

    async def logout(self) -> None:
        await self._client.request("auth", "POST", endpoints.AUTH_LOGOUT, json={}, notify=False)

    async def me(self) -> User:
        payload = await self._client.request("auth", "GET", endpoints.AUTH_ME, notify=False)
        return User.model_validate(payload)
