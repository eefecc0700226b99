from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from neurox.core.config import Settings, get_settings
from neurox.core.errors import ApiError
from neurox.domain.events import EventKind
from neurox.domain.models import Appeal, AppealView, DialogMessage, Message, MessageSender, sender_kind_for, utc_now
from neurox.domain.state import DeliveryStatus, SenderKind
from neurox.services.api.backend import BackendApi
from neurox.services.api.client import extract_error_message
from neurox.services.auth.token_store import TokenStore
from neurox.services.notifications import Notifier
from neurox.services.realtime.channel import RealtimeChannel
from neurox.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SEND_FAILED_MESSAGE = "Message not sent"
NEW_MESSAGE_TITLE = "New message"
_PENDING = (DeliveryStatus.SENDING, DeliveryStatus.ERROR)


def _parse_time(value: str | None) -> float:
    # Sort key for ISO timestamps; unparseable or missing values sort last.
    if not value:
        return 0.0
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class MessageLedger:
    """Messages of one dialog keyed by correlation id.

    Optimistic entries are created by ``begin_send`` and finalized by whichever
    of the HTTP response (``confirm``) or the realtime push (``apply_push``)
    arrives first; the second one only refreshes the same entry. A finalized
    entry is never demoted back to ``sending`` or ``error``.
    """

    def __init__(self) -> None:
        self._entries: dict[str, DialogMessage] = {}
        self._server_ids: dict[int, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, local_id: str) -> DialogMessage | None:
        return self._entries.get(local_id)

    def messages(self) -> list[DialogMessage]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()
        self._server_ids.clear()

    def begin_send(
        self,
        appeal_id: int,
        text: str,
        sender: MessageSender,
        *,
        local_id: str | None = None,
    ) -> DialogMessage:
        entry = DialogMessage(
            local_id=local_id or f"local-{uuid.uuid4().hex}",
            appeal_id=appeal_id,
            sender=sender,
            text=text,
            created_at=utc_now().isoformat(),
            status=DeliveryStatus.SENDING,
        )
        self._entries[entry.local_id] = entry
        return entry

    def confirm(self, local_id: str, message: Message) -> DialogMessage:
        # A push may already have stored the server copy under another key.
        duplicate = self._server_ids.get(message.id)
        if duplicate is not None and duplicate != local_id:
            stored = self._entries.get(duplicate)
            if stored is not None and stored.id == message.id:
                if local_id not in self._entries:
                    return self._finalize(duplicate, message)
                self._entries.pop(duplicate)
        return self._finalize(local_id, message)

    def fail(self, local_id: str) -> DialogMessage | None:
        entry = self._entries.get(local_id)
        if entry is None or entry.is_final:
            return entry
        entry.status = DeliveryStatus.ERROR
        return entry

    def apply_push(self, message: Message) -> DialogMessage:
        key = self._match(message)
        if key is None:
            key = message.local_id or f"server-{message.id}"
        return self._finalize(key, message)

    def load_history(self, history: Iterable[Message]) -> None:
        # History replaces what the server already knows; entries it does not cover stay after it.
        ordered = sorted(history, key=lambda item: (_parse_time(item.created_at), item.id))
        previous = self._entries
        self._entries = {}
        self._server_ids = {}
        for message in ordered:
            self._finalize(message.local_id or f"server-{message.id}", message)
        for key, entry in previous.items():
            if entry.id is not None and entry.id in self._server_ids:
                continue
            if key not in self._entries:
                self._entries[key] = entry
                if entry.id is not None:
                    self._server_ids[entry.id] = key

    def _match(self, message: Message) -> str | None:
        if message.local_id and message.local_id in self._entries:
            return message.local_id
        if message.id in self._server_ids:
            return self._server_ids[message.id]
        kind = sender_kind_for(message.sender.type)
        for key, entry in self._entries.items():
            if (
                entry.status in _PENDING
                and entry.appeal_id == message.appeal_id
                and entry.text == message.text
                and entry.sender.kind == kind
            ):
                return key
        return None

    def _finalize(self, key: str, message: Message) -> DialogMessage:
        existing = self._entries.get(key)
        if existing is not None and existing.id is not None and existing.id != message.id:
            # The entry was matched to another server message before; forget that id.
            if self._server_ids.get(existing.id) == key:
                del self._server_ids[existing.id]
        entry = DialogMessage.from_server(message, local_id=key)
        if existing is not None and existing.appeal_id is not None and entry.appeal_id is None:
            entry.appeal_id = existing.appeal_id
        self._entries[key] = entry
        self._server_ids[message.id] = key
        return entry


class DialogBoard:
    """Appeal list and open dialog kept in sync with REST calls and realtime pushes.

    Results that arrive after ``detach()`` or after the selection moved to a
    different appeal are dropped.
    """

    def __init__(
        self,
        backend: BackendApi,
        token_store: TokenStore,
        *,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        company_id: int | None = None,
        operator: MessageSender | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._backend = backend
        self._store = token_store
        self._notifier = notifier or Notifier()
        self._company_id = company_id
        self._operator = operator
        self._appeals: list[AppealView] = []
        self._selected_id: int | None = None
        self._ledger = MessageLedger()
        self._search = ""
        self._status_filter: str | None = None
        # Bumped by detach() and by every selection change.
        self._epoch = 0
        self._selection = 0
        self._typing_handles: dict[int, asyncio.TimerHandle] = {}
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def ledger(self) -> MessageLedger:
        return self._ledger

    @property
    def selected_id(self) -> int | None:
        return self._selected_id

    @property
    def selected(self) -> AppealView | None:
        return self.find_appeal(self._selected_id) if self._selected_id is not None else None

    @property
    def company_id(self) -> int | None:
        return self._company_id or self._store.get_company_id()

    @property
    def all_appeals(self) -> list[AppealView]:
        return list(self._appeals)

    @property
    def appeals(self) -> list[AppealView]:
        query = self._search.strip().lower()
        if not query:
            return list(self._appeals)
        return [
            view
            for view in self._appeals
            if query in view.client_name.lower() or query in view.last_message.lower()
        ]

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribers)

    def set_search(self, query: str) -> list[AppealView]:
        self._search = query or ""
        return self.appeals

    def find_appeal(self, appeal_id: int | None) -> AppealView | None:
        for view in self._appeals:
            if view.id == appeal_id:
                return view
        return None

    def _replace(self, view: AppealView) -> None:
        for index, current in enumerate(self._appeals):
            if current.id == view.id:
                self._appeals[index] = view
                return

    def _update(self, appeal_id: int | None, **changes: Any) -> AppealView | None:
        view = self.find_appeal(appeal_id)
        if view is None:
            return None
        updated = view.model_copy(update=changes)
        self._replace(updated)
        return updated

    def _sort(self) -> None:
        self._appeals.sort(key=lambda view: _parse_time(view.last_message_time), reverse=True)

    async def load_appeals(self, status: str | None = None) -> list[AppealView]:
        company_id = self.company_id
        if company_id is None:
            logger.info("dialogs_load_skipped reason=no_company")
            return []
        if status is not None:
            self._status_filter = None if status == "all" else status
        epoch = self._epoch
        try:
            page = await self._backend.list_appeals(
                company_id=company_id,
                status=self._status_filter,
                limit=self._settings.default_page_size,
                offset=0,
            )
        except ApiError as exc:
            logger.warning("dialogs_load_failed company_id=%s reason=%s", company_id, exc)
            return self.appeals
        views = await asyncio.gather(*(self._enrich(appeal) for appeal in page.results))
        if epoch != self._epoch:
            logger.debug("dialogs_load_dropped reason=stale")
            return self.appeals
        previous = {view.id: view for view in self._appeals}
        self._appeals = []
        for view in views:
            old = previous.get(view.id)
            if old is not None:
                view = view.model_copy(update={"unread_count": old.unread_count, "is_typing": old.is_typing})
            self._appeals.append(view)
        self._sort()
        logger.info("dialogs_loaded company_id=%s count=%s", company_id, len(self._appeals))
        visible = self.appeals
        if self._selected_id is None and visible:
            await self.select_appeal(visible[0].id)
        return self.appeals

    async def _enrich(self, appeal: Appeal) -> AppealView:
        base = appeal.model_dump()
        try:
            client_name, client_avatar = "Client", None
            if appeal.chat_id is not None:
                chat = await self._backend.get_chat(appeal.chat_id)
                client_name = chat.meta.get("name") or client_name
                client_avatar = chat.meta.get("avatar")
            latest = await self._backend.list_messages(appeal.id, limit=1, offset=0)
        except (ApiError, ValidationError) as exc:
            logger.warning("dialogs_enrich_failed appeal_id=%s reason=%s", appeal.id, exc)
            return AppealView.model_validate({**base, "last_message_time": appeal.created_at})
        last = latest.results[0] if latest.results else None
        return AppealView.model_validate(
            {
                **base,
                "client_name": client_name,
                "client_avatar": client_avatar,
                "last_message": (last.text if last is not None and last.text else "No messages"),
                "last_message_time": (last.created_at if last is not None and last.created_at else appeal.created_at),
            }
        )

    async def select_appeal(self, appeal_id: int) -> list[DialogMessage]:
        if appeal_id != self._selected_id:
            self._ledger.clear()
        self._selected_id = appeal_id
        self._selection += 1
        selection, epoch = self._selection, self._epoch
        try:
            page = await self._backend.list_messages(
                appeal_id, limit=self._settings.default_page_size, offset=0
            )
        except ApiError as exc:
            logger.warning("dialogs_history_failed appeal_id=%s reason=%s", appeal_id, exc)
            return self._ledger.messages()
        if selection != self._selection or epoch != self._epoch:
            logger.debug("dialogs_history_dropped appeal_id=%s reason=stale", appeal_id)
            return []
        self._ledger.load_history(page.results)
        view = self.find_appeal(appeal_id)
        if view is not None and view.unread_count > 0:
            self._update(appeal_id, unread_count=0)
            last_ids = [message.id for message in page.results]
            if last_ids:
                try:
                    await self._backend.mark_messages_read(appeal_id, max(last_ids))
                except ApiError as exc:
                    logger.warning("dialogs_mark_read_failed appeal_id=%s reason=%s", appeal_id, exc)
        return self._ledger.messages()

    async def send_message(self, text: str) -> DialogMessage | None:
        text = (text or "").strip()
        appeal_id = self._selected_id
        if not text or appeal_id is None:
            return None
        entry = self._ledger.begin_send(appeal_id, text, self._sender())
        selection, epoch = self._selection, self._epoch
        try:
            message = await self._backend.send_message(appeal_id, text)
        except (ApiError, ValidationError) as exc:
            increment_counter("dialogs_send_failed_total")
            logger.warning("dialogs_send_failed appeal_id=%s local_id=%s reason=%s", appeal_id, entry.local_id, exc)
            if selection != self._selection or epoch != self._epoch:
                return None
            failed = self._ledger.fail(entry.local_id)
            payload = exc.payload if isinstance(exc, ApiError) else None
            self._notifier.error(SEND_FAILED_MESSAGE, extract_error_message(payload, "Try sending it again"))
            return failed
        if selection != self._selection or epoch != self._epoch:
            logger.debug("dialogs_send_result_dropped local_id=%s", entry.local_id)
            return None
        if message.appeal_id is None:
            message = message.model_copy(update={"appeal_id": appeal_id})
        confirmed = self._ledger.confirm(entry.local_id, message)
        self._update(appeal_id, last_message=text, last_message_time=message.created_at or confirmed.created_at)
        self._sort()
        return confirmed

    def _sender(self) -> MessageSender:
        # Resolved per send so a sign-in after construction still names the operator.
        if self._operator is not None:
            return self._operator
        user = self._store.get_user()
        if user is None:
            return MessageSender(kind=SenderKind.OPERATOR)
        return MessageSender(kind=SenderKind.OPERATOR, name=user.name or None, id=str(user.id))

    async def change_status(self, appeal_id: int, status: str) -> AppealView | None:
        epoch = self._epoch
        try:
            await self._backend.update_appeal(appeal_id, {"status": status})
        except (ApiError, ValidationError) as exc:
            logger.warning("dialogs_status_failed appeal_id=%s reason=%s", appeal_id, exc)
            return None
        if epoch != self._epoch:
            return None
        self._notifier.success("Status updated")
        return self._update(appeal_id, status=status)

    async def on_new_message(self, payload: dict[str, Any]) -> None:
        try:
            message = Message.model_validate(payload)
        except ValidationError:
            logger.warning("dialogs_push_dropped kind=new_message reason=invalid")
            return
        if sender_kind_for(message.sender.type) != SenderKind.OPERATOR:
            self._notifier.info(NEW_MESSAGE_TITLE, message.text or None)
        if message.appeal_id == self._selected_id:
            self._ledger.apply_push(message)
        view = self.find_appeal(message.appeal_id)
        if view is None:
            return
        unread = 0 if message.appeal_id == self._selected_id else view.unread_count + 1
        self._update(
            message.appeal_id,
            last_message=message.text or view.last_message,
            last_message_time=message.created_at or view.last_message_time,
            unread_count=unread,
            is_typing=False,
        )
        self._sort()

    async def on_appeal_update(self, payload: dict[str, Any]) -> None:
        view = self.find_appeal(payload.get("id"))
        if view is None:
            return
        try:
            updated = AppealView.model_validate({**view.model_dump(), **payload})
        except ValidationError:
            logger.warning("dialogs_push_dropped kind=appeal_update appeal_id=%s", view.id)
            return
        self._replace(updated)

    async def on_typing(self, payload: dict[str, Any]) -> None:
        appeal_id = payload.get("appeal_id")
        if self.find_appeal(appeal_id) is None:
            return
        typing = bool(payload.get("is_typing", True))
        self._update(appeal_id, is_typing=typing)
        handle = self._typing_handles.pop(appeal_id, None)
        if handle is not None:
            handle.cancel()
        if typing:
            loop = asyncio.get_running_loop()
            self._typing_handles[appeal_id] = loop.call_later(
                self._settings.typing_timeout_s, self._clear_typing, appeal_id
            )

    def _clear_typing(self, appeal_id: int) -> None:
        self._typing_handles.pop(appeal_id, None)
        self._update(appeal_id, is_typing=False)

    async def on_error(self, payload: dict[str, Any]) -> None:
        message = extract_error_message(payload, "Realtime channel error")
        logger.warning("dialogs_realtime_error message=%s", message)
        self._notifier.error("Realtime error", message)

    async def on_new_appeal(self, payload: dict[str, Any]) -> None:
        logger.info("dialogs_new_appeal appeal_id=%s", payload.get("id"))
        await self.load_appeals()

    def attach(self, channel: RealtimeChannel) -> None:
        if self._unsubscribers:
            self.detach()
        self._unsubscribers = [
            channel.on(EventKind.NEW_MESSAGE, self.on_new_message),
            channel.on(EventKind.APPEAL_UPDATE, self.on_appeal_update),
            channel.on(EventKind.TYPING, self.on_typing),
            channel.on(EventKind.ERROR, self.on_error),
            channel.on(EventKind.NEW_APPEAL, self.on_new_appeal),
        ]

    def detach(self) -> None:
        self._epoch += 1
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        for handle in self._typing_handles.values():
            handle.cancel()
        self._typing_handles.clear()
