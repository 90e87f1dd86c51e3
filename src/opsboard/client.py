"""Assemble the components of one board session."""

from __future__ import annotations

from typing import Optional

import httpx

from .accounts import AccountAdminController
from .api import BoardApi
from .board import BoardViewModel
from .config import Settings
from .credentials import CredentialStore
from .gateway import RequestGateway
from .lifecycle import TaskLifecycleEngine
from .profile import ProfileService
from .session import AuthService, SessionContext


class OpsBoardClient:
    """Everything a session needs, wired once.

    Parameters
    ----------
    settings:
        Resolved settings (base URL, state dir, debounce window, ...).
    transport:
        Optional ``httpx`` transport, e.g. ``ASGITransport`` around the dev backend.
    persist_credentials:
        Store the token pair under ``settings.state_dir`` when true.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        persist_credentials: bool = True,
    ) -> None:
        self.settings = settings
        self.credentials = CredentialStore(settings.state_dir if persist_credentials else None)
        self.gateway = RequestGateway(
            self.credentials,
            settings.base_url,
            transport=transport,
            timeout=settings.timeout_seconds,
        )
        self.api = BoardApi(self.gateway)
        self.context = SessionContext()
        self.auth = AuthService(self.api, self.credentials, self.context)
        self.board = BoardViewModel(
            self.api,
            self.context,
            search_debounce=settings.search_debounce_seconds,
            page_size=settings.page_size,
            discard_stale_fetches=settings.discard_stale_fetches,
        )
        self.engine = TaskLifecycleEngine(self.api, self.board)
        self.accounts = AccountAdminController(self.api, self.board)
        self.profile = ProfileService(self.api, self.context)

    async def __aenter__(self) -> "OpsBoardClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.board.aclose()
        await self.gateway.aclose()
