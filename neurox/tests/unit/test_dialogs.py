from __future__ import annotations

import asyncio
from typing import Any

import pytest

from neurox.core.errors import ClientRequestError, ServerError
from neurox.domain.models import Appeal, Chat, Message, MessageSender, Page, User
from neurox.domain.state import DeliveryStatus, SenderKind
from neurox.persistence.storage import MemoryStorage
from neurox.services.auth.token_store import TokenStore
from neurox.services.dialogs import DialogBoard, MessageLedger
from neurox.services.notifications import NotificationLevel, Notifier
from neurox.services.realtime.channel import RealtimeChannel
from neurox.tests.utils.tokens import make_settings


OPERATOR = MessageSender(kind=SenderKind.OPERATOR, name="Operator")


def _message(message_id: int, appeal_id: int, text: str, created_at: str, sender_type: str = "user") -> Message:
    return Message.model_validate(
        {
            "id": message_id,
            "appeal_id": appeal_id,
            "text": text,
            "created_at": created_at,
            "sender": {"id": message_id, "type": sender_type},
        }
    )


class FakeBackend:
    def __init__(self) -> None:
        self.appeals = [
            Appeal(id=1, company_id=3, chat_id=10, status="open", created_at="2024-01-01T09:00:00Z"),
            Appeal(id=2, company_id=3, chat_id=20, status="new", created_at="2024-01-01T09:30:00Z"),
        ]
        self.chats = {
            10: Chat(id=10, meta={"name": "Alice", "avatar": "alice.png"}),
            20: Chat(id=20, meta={"name": "Bob"}),
        }
        self.messages = {
            1: [
                _message(101, 1, "hi", "2024-01-01T10:00:00Z"),
                _message(102, 1, "hello from bot", "2024-01-01T10:01:00Z", "bot"),
            ],
            2: [_message(201, 2, "need help", "2024-01-01T11:00:00Z")],
        }
        self.send_error: Exception | None = None
        self.send_gate: asyncio.Event | None = None
        self.sent: list[tuple[int, str]] = []
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self.read_marks: list[tuple[int, int]] = []
        self.next_id = 300

    async def list_appeals(self, *, company_id=None, status=None, info_flow_id=None, limit=100, offset=0) -> Page[Appeal]:
        results = [appeal for appeal in self.appeals if status is None or appeal.status == status]
        return Page[Appeal](results=results, total=len(results), limit=limit, offset=offset)

    async def get_chat(self, chat_id: int) -> Chat:
        if chat_id not in self.chats:
            raise ClientRequestError("Chat not found", status_code=404)
        return self.chats[chat_id]

    async def list_messages(self, appeal_id: int, *, limit: int = 100, offset: int = 0) -> Page[Message]:
        # Newest first, like the backend.
        items = sorted(self.messages.get(appeal_id, []), key=lambda item: item.created_at or "", reverse=True)
        return Page[Message](results=items[offset : offset + limit], total=len(items), limit=limit, offset=offset)

    async def send_message(self, appeal_id: int, text: str, message_type: str = "text") -> Message:
        self.sent.append((appeal_id, text))
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error
        self.next_id += 1
        return _message(self.next_id, appeal_id, text, "2024-01-01T12:00:00Z", "operator")

    async def update_appeal(self, appeal_id: int, changes: dict[str, Any]) -> Appeal:
        self.updates.append((appeal_id, changes))
        return Appeal(id=appeal_id, status=changes.get("status", "open"))

    async def mark_messages_read(self, appeal_id: int, last_message_id: int) -> None:
        self.read_marks.append((appeal_id, last_message_id))


def _board(backend: FakeBackend, notifier: Notifier | None = None, **settings: Any) -> DialogBoard:
    return DialogBoard(
        backend,  # type: ignore[arg-type]
        TokenStore(MemoryStorage(), refresh_threshold_s=300),
        settings=make_settings(**settings),
        notifier=notifier or Notifier(),
        company_id=3,
        operator=OPERATOR,
    )


def test_ledger_reconciliation_is_order_independent() -> None:
    server_copy = _message(500, 7, "on my way", "2024-01-01T12:00:00Z", "operator")

    response_first = MessageLedger()
    response_first.begin_send(7, "on my way", OPERATOR, local_id="local-1")
    response_first.confirm("local-1", server_copy)
    response_first.apply_push(server_copy)

    push_first = MessageLedger()
    push_first.begin_send(7, "on my way", OPERATOR, local_id="local-1")
    push_first.apply_push(server_copy)
    push_first.confirm("local-1", server_copy)

    assert len(response_first) == 1
    assert response_first.messages() == push_first.messages()
    entry = response_first.get("local-1")
    assert entry is not None
    assert entry.status == DeliveryStatus.SENT
    assert entry.id == 500


def test_ledger_never_demotes_a_finalized_entry() -> None:
    ledger = MessageLedger()
    ledger.begin_send(7, "ping", OPERATOR, local_id="local-1")
    ledger.apply_push(_message(501, 7, "ping", "2024-01-01T12:00:00Z", "operator"))

    failed = ledger.fail("local-1")

    assert failed is not None
    assert failed.status == DeliveryStatus.SENT


def test_ledger_failed_entry_is_recovered_by_push() -> None:
    ledger = MessageLedger()
    ledger.begin_send(7, "ping", OPERATOR, local_id="local-1")
    assert ledger.fail("local-1").status == DeliveryStatus.ERROR

    ledger.apply_push(_message(502, 7, "ping", "2024-01-01T12:00:00Z", "operator"))

    assert [entry.status for entry in ledger.messages()] == [DeliveryStatus.SENT]


def test_ledger_push_from_end_user_does_not_match_operator_echo() -> None:
    ledger = MessageLedger()
    ledger.begin_send(7, "ok", OPERATOR, local_id="local-1")

    ledger.apply_push(_message(503, 7, "ok", "2024-01-01T12:00:00Z", "user"))

    assert len(ledger) == 2
    assert ledger.get("local-1").status == DeliveryStatus.SENDING


def test_ledger_history_is_oldest_first_and_keeps_pending() -> None:
    ledger = MessageLedger()
    pending = ledger.begin_send(7, "draft", OPERATOR)
    ledger.load_history(
        [
            _message(2, 7, "second", "2024-01-01T10:01:00Z"),
            _message(1, 7, "first", "2024-01-01T10:00:00Z"),
        ]
    )

    texts = [entry.text for entry in ledger.messages()]
    assert texts == ["first", "second", "draft"]
    assert ledger.get(pending.local_id).status == DeliveryStatus.SENDING


@pytest.mark.asyncio
async def test_load_appeals_enriches_sorts_and_selects_first() -> None:
    backend = FakeBackend()
    backend.appeals.append(Appeal(id=3, company_id=3, chat_id=99, created_at="2024-01-01T08:00:00Z"))
    board = _board(backend)

    views = await board.load_appeals()

    assert [view.id for view in views] == [2, 1, 3]
    assert views[0].client_name == "Bob"
    assert views[0].last_message == "need help"
    assert views[1].client_avatar == "alice.png"
    assert views[1].last_message == "hello from bot"
    assert views[2].client_name == "Client"
    assert views[2].last_message == "No messages"
    assert views[2].last_message_time == "2024-01-01T08:00:00Z"
    assert board.selected_id == 2
    assert [entry.text for entry in board.ledger.messages()] == ["need help"]


@pytest.mark.asyncio
async def test_search_filters_by_client_name_and_last_message() -> None:
    board = _board(FakeBackend())
    await board.load_appeals()

    assert [view.id for view in board.set_search("ALICE")] == [1]
    assert [view.id for view in board.set_search("help")] == [2]
    assert len(board.set_search("")) == 2


@pytest.mark.asyncio
async def test_select_appeal_loads_history_oldest_first_and_clears_unread() -> None:
    backend = FakeBackend()
    board = _board(backend)
    await board.load_appeals()
    await board.on_new_message(
        {"id": 103, "appeal_id": 1, "text": "anyone?", "created_at": "2024-01-01T13:00:00Z", "sender": {"type": "user"}}
    )
    assert board.find_appeal(1).unread_count == 1

    backend.messages[1].append(_message(103, 1, "anyone?", "2024-01-01T13:00:00Z"))
    messages = await board.select_appeal(1)

    assert [entry.text for entry in messages] == ["hi", "hello from bot", "anyone?"]
    assert messages[1].sender.kind == SenderKind.BOT
    assert board.find_appeal(1).unread_count == 0
    assert backend.read_marks == [(1, 103)]



def test_ledger_keeps_both_duplicate_texts_when_pushes_arrive_out_of_order() -> None:
    ledger = MessageLedger()
    ledger.begin_send(7, "ok", OPERATOR, local_id="local-1")
    ledger.begin_send(7, "ok", OPERATOR, local_id="local-2")

    # The push for the second send lands first and is matched to the first pending entry.
    ledger.apply_push(_message(6, 7, "ok", "2024-01-01T12:00:01Z", "operator"))
    ledger.confirm("local-1", _message(5, 7, "ok", "2024-01-01T12:00:00Z", "operator"))
    ledger.confirm("local-2", _message(6, 7, "ok", "2024-01-01T12:00:01Z", "operator"))

    assert sorted(entry.id for entry in ledger.messages()) == [5, 6]
    assert all(entry.status == DeliveryStatus.SENT for entry in ledger.messages())

    ledger.apply_push(_message(5, 7, "ok", "2024-01-01T12:00:00Z", "operator"))
    assert len(ledger) == 2

@pytest.mark.asyncio
async def test_send_message_confirms_and_dedupes_push() -> None:
    backend = FakeBackend()
    board = _board(backend)
    await board.load_appeals()

    confirmed = await board.send_message("  on it  ")
    await board.on_new_message(
        {
            "id": confirmed.id,
            "appeal_id": 2,
            "text": "on it",
            "created_at": "2024-01-01T12:00:00Z",
            "sender": {"type": "operator"},
        }
    )

    assert backend.sent == [(2, "on it")]
    assert confirmed.status == DeliveryStatus.SENT
    assert [entry.text for entry in board.ledger.messages()] == ["need help", "on it"]
    assert board.find_appeal(2).last_message == "on it"
    assert board.find_appeal(2).unread_count == 0


@pytest.mark.asyncio
async def test_send_message_failure_marks_error_and_notifies() -> None:
    backend = FakeBackend()
    backend.send_error = ServerError("Server error", status_code=500, payload={"detail": "Queue down"})
    notifier = Notifier()
    board = _board(backend, notifier)
    await board.load_appeals()

    failed = await board.send_message("hello?")

    assert failed is not None
    assert failed.status == DeliveryStatus.ERROR
    assert notifier.active[-1].level == NotificationLevel.ERROR
    assert notifier.active[-1].description == "Queue down"


@pytest.mark.asyncio
async def test_send_result_after_detach_is_dropped() -> None:
    backend = FakeBackend()
    backend.send_gate = asyncio.Event()
    board = _board(backend)
    await board.load_appeals()

    task = asyncio.create_task(board.send_message("late"))
    while not backend.sent:
        await asyncio.sleep(0)
    board.detach()
    backend.send_gate.set()

    assert await task is None
    assert [entry.status for entry in board.ledger.messages()][-1] == DeliveryStatus.SENDING


@pytest.mark.asyncio
async def test_new_message_for_other_appeal_bumps_unread_and_resorts() -> None:
    board = _board(FakeBackend())
    await board.load_appeals()

    await board.on_new_message(
        {"id": 104, "appeal_id": 1, "text": "new!", "created_at": "2024-01-01T14:00:00Z", "sender": {"type": "user"}}
    )

    assert [view.id for view in board.appeals] == [1, 2]
    assert board.find_appeal(1).unread_count == 1
    assert board.find_appeal(1).last_message == "new!"
    assert [entry.text for entry in board.ledger.messages()] == ["need help"]


@pytest.mark.asyncio
async def test_appeal_update_merges_fields() -> None:
    board = _board(FakeBackend())
    await board.load_appeals()

    await board.on_appeal_update({"id": 1, "status": "closed", "operator_id": 9})

    view = board.find_appeal(1)
    assert view.status == "closed"
    assert view.operator_id == 9
    assert view.client_name == "Alice"


@pytest.mark.asyncio
async def test_typing_indicator_clears_itself() -> None:
    board = _board(FakeBackend(), typing_timeout_s=0.01)
    await board.load_appeals()

    await board.on_typing({"appeal_id": 1})
    assert board.find_appeal(1).is_typing is True

    await asyncio.sleep(0.05)
    assert board.find_appeal(1).is_typing is False


@pytest.mark.asyncio
async def test_change_status_updates_view() -> None:
    backend = FakeBackend()
    notifier = Notifier()
    board = _board(backend, notifier)
    await board.load_appeals()

    view = await board.change_status(2, "closed")

    assert backend.updates == [(2, {"status": "closed"})]
    assert view is not None and view.status == "closed"
    assert notifier.active[-1].level == NotificationLevel.SUCCESS


@pytest.mark.asyncio
async def test_new_appeal_event_reloads_list() -> None:
    backend = FakeBackend()
    board = _board(backend)
    await board.load_appeals()
    backend.appeals.append(Appeal(id=4, company_id=3, chat_id=20, created_at="2024-01-02T00:00:00Z"))

    await board.on_new_appeal({"id": 4})

    assert {view.id for view in board.appeals} == {1, 2, 4}


@pytest.mark.asyncio
async def test_attach_and_detach_register_handlers() -> None:
    store = TokenStore(MemoryStorage(), refresh_threshold_s=300)
    channel = RealtimeChannel(store, settings=make_settings())
    board = _board(FakeBackend())

    board.attach(channel)
    assert board.attached is True

    board.detach()
    assert board.attached is False


@pytest.mark.asyncio
async def test_inbound_message_notifies_but_operator_echo_does_not() -> None:
    notifier = Notifier()
    board = _board(FakeBackend(), notifier)
    await board.load_appeals()

    await board.on_new_message(
        {"id": 401, "appeal_id": 2, "text": "on it", "created_at": "2024-01-01T13:00:00Z", "sender": {"type": "operator"}}
    )
    assert notifier.active == []

    await board.on_new_message(
        {"id": 402, "appeal_id": 1, "text": "anyone?", "created_at": "2024-01-01T13:01:00Z", "sender": {"type": "user"}}
    )

    assert notifier.active[-1].level == NotificationLevel.INFO
    assert notifier.active[-1].title == "New message"
    assert notifier.active[-1].description == "anyone?"


@pytest.mark.asyncio
async def test_send_names_the_operator_signed_in_after_construction() -> None:
    store = TokenStore(MemoryStorage(), refresh_threshold_s=300)
    backend = FakeBackend()
    backend.send_gate = asyncio.Event()
    board = DialogBoard(
        backend,  # type: ignore[arg-type]
        store,
        settings=make_settings(),
        notifier=Notifier(),
        company_id=3,
    )
    await board.load_appeals()
    store.set_user(User(id=7, email="op@example.com", name="Dana", company_id=3, role="operator"))

    task = asyncio.create_task(board.send_message("hello"))
    await asyncio.sleep(0)
    pending = [entry for entry in board.ledger.messages() if entry.status == DeliveryStatus.SENDING]
    backend.send_gate.set()
    await task

    assert len(pending) == 1
    assert pending[0].sender.kind == SenderKind.OPERATOR
    assert pending[0].sender.name == "Dana"
    assert pending[0].sender.id == "7"
