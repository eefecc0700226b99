from __future__ import annotations

from typing import Any

from neurox.domain.models import Appeal, Chat, Message, Page
from neurox.services.api import endpoints
from neurox.services.api.client import ApiClient


class BackendApi:
    """Core backend endpoints consumed by the dialog views."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    @property
    def client(self) -> ApiClient:
        return self._client

    def set_service_key(self, service_key: str | None) -> None:
        self._client.set_service_key(service_key)

    async def list_appeals(
        self,
        *,
        company_id: int | None = None,
        status: str | None = None,
        info_flow_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Page[Appeal]:
        payload = await self._client.request(
            "backend",
            "GET",
            endpoints.APPEAL_LIST,
            params={
                "company_id": company_id,
                "status": status,
                "info_flow_id": info_flow_id,
                "limit": limit,
                "offset": offset,
            },
        )
        return Page[Appeal].model_validate(payload or {})

    async def get_appeal(self, appeal_id: int) -> Appeal:
        payload = await self._client.request("backend", "GET", endpoints.appeal_detail(appeal_id))
        return Appeal.model_validate(payload)

    async def update_appeal(self, appeal_id: int, changes: dict[str, Any]) -> Appeal:
        payload = await self._client.request("backend", "PATCH", endpoints.appeal_detail(appeal_id), json=changes)
        return Appeal.model_validate(payload)

    async def assign_appeal(self, appeal_id: int, operator_id: int) -> Appeal:
        # Assigning an operator takes the dialog away from the bot.
        payload = await self._client.request(
            "backend",
            "PATCH",
            endpoints.appeal_assign(appeal_id),
            json={"operator": operator_id, "is_ruled_by_bot": False},
        )
        return Appeal.model_validate(payload)

    async def close_appeal(self, appeal_id: int) -> Appeal:
        payload = await self._client.request("backend", "POST", endpoints.appeal_close(appeal_id))
        return Appeal.model_validate(payload)

    async def list_messages(self, appeal_id: int, *, limit: int = 100, offset: int = 0) -> Page[Message]:
        payload = await self._client.request(
            "backend",
            "GET",
            endpoints.message_list(appeal_id),
            params={"limit": limit, "offset": offset},
        )
        return Page[Message].model_validate(payload or {})

    async def send_message(self, appeal_id: int, text: str, message_type: str = "text") -> Message:
        payload = await self._client.request(
            "backend",
            "POST",
            endpoints.MESSAGE_SEND,
            json={"appeal_id": appeal_id, "text": text, "type": message_type},
            notify=False,
        )
        return Message.model_validate(payload)

    async def mark_messages_read(self, appeal_id: int, last_message_id: int) -> None:
        await self._client.request(
            "backend",
            "PATCH",
            endpoints.message_mark_read(appeal_id),
            params={"last_message_id": last_message_id},
        )

    async def get_chat(self, chat_id: int) -> Chat:
        payload = await self._client.request("backend", "GET", endpoints.chat_detail(chat_id))
        return Chat.model_validate(payload)
