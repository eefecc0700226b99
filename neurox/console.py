from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from neurox.core.config import Settings, get_settings
from neurox.domain.state import AuthState
from neurox.persistence.storage import KeyValueStorage, storage_from_settings
from neurox.services.api import ApiClient, AuthApi, BackendApi
from neurox.services.auth.orchestrator import AuthOrchestrator
from neurox.services.auth.routes import Navigator
from neurox.services.auth.token_store import TokenStore
from neurox.services.dialogs import DialogBoard
from neurox.services.notifications import Notifier
from neurox.services.realtime.channel import Connector, RealtimeChannel, Subscription
from neurox.services.resilience import Sleep


logger = logging.getLogger(__name__)


@dataclass
class Console:
    """Wired-up console session: auth, API, realtime channel and dialog state."""

    settings: Settings
    token_store: TokenStore
    notifier: Notifier
    navigator: Navigator
    api_client: ApiClient
    auth_api: AuthApi
    backend_api: BackendApi
    auth: AuthOrchestrator
    channel: RealtimeChannel
    dialogs: DialogBoard

    async def start(self, path: str | None = None) -> str:
        route = await self.auth.start(path)
        if self.auth.state == AuthState.AUTHENTICATED:
            await self.open_realtime()
        return route

    async def open_realtime(self) -> bool:
        company_id = self.token_store.get_company_id()
        if company_id is None:
            logger.info("console_realtime_skipped reason=no_company")
            return False
        self.dialogs.attach(self.channel)
        subscription = Subscription(company_id=company_id, event_types=tuple(self.settings.ws_event_types))
        opened = await self.channel.open(subscription)
        await self.dialogs.load_appeals()
        return opened

    async def close_realtime(self) -> None:
        self.dialogs.detach()
        await self.channel.close()

    async def aclose(self) -> None:
        await self.auth.stop()
        await self.close_realtime()
        await self.api_client.aclose()


def build_console(
    settings: Settings | None = None,
    *,
    storage: KeyValueStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    connect: Connector | None = None,
    sleep: Sleep | None = None,
) -> Console:
    settings = settings or get_settings()
    notifier = Notifier()
    navigator = Navigator()
    token_store = TokenStore(
        storage if storage is not None else storage_from_settings(settings.session_file),
        refresh_threshold_s=settings.refresh_threshold_s,
    )
    api_client = ApiClient(token_store, settings=settings, notifier=notifier, transport=transport)
    auth_api = AuthApi(api_client)
    backend_api = BackendApi(api_client)
    if settings.main_service_api_key:
        backend_api.set_service_key(settings.main_service_api_key)
    orchestrator = AuthOrchestrator(
        token_store,
        auth_api,
        settings=settings,
        notifier=notifier,
        navigator=navigator,
    )
    api_client.on_session_expired = orchestrator.handle_session_expired
    channel = RealtimeChannel(
        token_store,
        settings=settings,
        connect=connect,
        sleep=sleep,
        notifier=notifier,
    )
    dialogs = DialogBoard(backend_api, token_store, settings=settings, notifier=notifier)
    console = Console(
        settings=settings,
        token_store=token_store,
        notifier=notifier,
        navigator=navigator,
        api_client=api_client,
        auth_api=auth_api,
        backend_api=backend_api,
        auth=orchestrator,
        channel=channel,
        dialogs=dialogs,
    )
    orchestrator.add_sign_out_hook(console.close_realtime)
    return console
