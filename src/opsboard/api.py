"""Typed wrappers for the ``/api/v1`` endpoints.

Each method is a single gateway call. Results are returned as raw payloads;
mapping onto the domain model is left to :mod:`opsboard.repository`.
"""

from __future__ import annotations

from typing import Any, Optional

from .gateway import RequestGateway
from .models import TaskDraft


class BoardApi:
    def __init__(self, gateway: RequestGateway) -> None:
        self.gateway = gateway

    # -- auth ---------------------------------------------------------------

    async def login(self, username: str, password: str) -> Any:
        return await self.gateway.call(
            "/auth/login",
            "POST",
            {"username": username, "password": password},
            requires_auth=False,
        )

    async def logout(self, refresh_token: str) -> Any:
        return await self.gateway.call(
            "/auth/logout",
            "POST",
            {"refreshToken": refresh_token},
            requires_auth=False,
        )

    # -- users --------------------------------------------------------------

    async def fetch_current_user(self) -> Any:
        return await self.gateway.call("/users/me")

    async def update_profile(self, display_name: str, headline: str = "", bio: str = "") -> Any:
        return await self.gateway.call(
            "/users/me/profile",
            "PATCH",
            {"displayName": display_name, "headline": headline, "bio": bio},
        )

    async def change_password(self, current_password: str, new_password: str) -> Any:
        return await self.gateway.call(
            "/users/me/password",
            "PATCH",
            {"currentPassword": current_password, "newPassword": new_password},
        )

    async def list_accounts(
        self,
        *,
        keyword: str = "",
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Any:
        return await self.gateway.call(
            "/users",
            params={"keyword": keyword, "page": page, "pageSize": page_size},
        )

    async def toggle_admin(self, account_id: str, grant: bool) -> Any:
        return await self.gateway.call(f"/users/{account_id}/toggle-admin", "POST", {"grant": grant})

    # -- tasks --------------------------------------------------------------

    async def fetch_tasks(
        self,
        *,
        keyword: str = "",
        sort: str = "",
        status: str = "",
        assignee: str = "",
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Any:
        return await self.gateway.call(
            "/tasks",
            params={
                "keyword": keyword,
                "sort": sort,
                "status": status,
                "assignee": assignee,
                "page": page,
                "pageSize": page_size,
            },
        )

    async def create_task(self, draft: TaskDraft, *, publish: bool = True) -> Any:
        payload = draft.to_payload()
        payload["publish"] = publish
        return await self.gateway.call("/tasks", "POST", payload)

    async def update_task(self, task_id: str, changes: dict[str, Any]) -> Any:
        return await self.gateway.call(f"/tasks/{task_id}", "PATCH", changes)

    async def delete_task(self, task_id: str) -> Any:
        return await self.gateway.call(f"/tasks/{task_id}", "DELETE")

    async def task_action(self, task_id: str, action: str) -> Any:
        """POST one of ``claim``, ``release``, ``submit-progress``, ``verify``
        or ``reject``."""
        return await self.gateway.call(f"/tasks/{task_id}/{action}", "POST")

    async def publish_task(self, task_id: str) -> Any:
        return await self.gateway.call(f"/tasks/{task_id}/publish", "POST")
