"""Signed-in user context and login/logout."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable

from loguru import logger

from .api import BoardApi
from .credentials import CredentialPair, CredentialStore
from .errors import AuthenticationError, BoardError
from .models import CurrentUser, Role
from .repository import map_current_user

RoleListener = Callable[[CurrentUser, CurrentUser], None]


class SessionContext:
    """Holds the one :class:`CurrentUser` record of a session.

    Built once at session start and handed to every component that needs to
    know who is acting. ``hydrate``, ``reset`` and ``set_role`` each swap in
    a complete new record.
    """

    def __init__(self, user: CurrentUser | None = None) -> None:
        self._user = user or CurrentUser()
        self._listeners: list[RoleListener] = []

    @property
    def user(self) -> CurrentUser:
        return self._user

    @property
    def role(self) -> Role:
        return self._user.role

    @property
    def is_admin(self) -> bool:
        return self._user.is_admin

    def subscribe(self, listener: RoleListener) -> None:
        """Call *listener(previous, current)* whenever the record is replaced."""
        self._listeners.append(listener)

    def _swap(self, user: CurrentUser) -> None:
        previous, self._user = self._user, user
        for listener in list(self._listeners):
            listener(previous, user)

    def hydrate(self, raw: Any) -> CurrentUser:
        self._swap(map_current_user(raw))
        return self._user

    def reset(self) -> None:
        self._swap(CurrentUser())

    def set_role(self, role: Role) -> None:
        roles = tuple(r for r in self._user.roles if r not in (Role.ADMIN.value, Role.MEMBER.value))
        self._swap(replace(self._user, role=role, roles=roles + (role.value,)))


class AuthService:
    """Exchange credentials for a token pair and tear the session down again."""

    def __init__(self, api: BoardApi, credentials: CredentialStore, context: SessionContext) -> None:
        self.api = api
        self.credentials = credentials
        self.context = context

    async def login(self, username: str, password: str) -> CurrentUser:
        data = await self.api.login(username, password)
        pair = CredentialPair.from_payload(data)
        if not pair.complete:
            self.credentials.clear()
            raise AuthenticationError("Login response did not include a token pair")
        self.credentials.set(pair)
        user = data.get("user") if isinstance(data, dict) else None
        if user is not None:
            self.context.hydrate(user)
        logger.info("Signed in as {}", username)
        return self.context.user

    async def logout(self) -> None:
        """Best-effort server logout; local credentials are always cleared."""
        refresh_token = self.credentials.refresh_token
        try:
            if refresh_token:
                await self.api.logout(refresh_token)
        except BoardError as exc:
            logger.debug("Ignoring logout failure: {}", exc.message)
        finally:
            self.credentials.clear()
            self.context.reset()
