"""FastAPI application serving the ``/api/v1`` surface from a :class:`DevBackend`.

Used by the test suite through ``httpx.ASGITransport`` and by
``opsboard serve-dev`` for local work against a throwaway backend.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..constants import API_PREFIX
from .store import DevApiError, DevBackend, DevUser


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_CamelModel):
    username: str
    password: str


class RefreshRequest(_CamelModel):
    refresh_token: str = Field("", alias="refreshToken")


class ToggleAdminRequest(_CamelModel):
    grant: bool


class ProfileRequest(_CamelModel):
    display_name: str = Field("", alias="displayName")
    headline: str = ""
    bio: str = ""


class PasswordRequest(_CamelModel):
    current_password: str = Field("", alias="currentPassword")
    new_password: str = Field("", alias="newPassword")


class CreateTaskRequest(_CamelModel):
    title: str
    description_html: str = Field("", alias="descriptionHtml")
    bounty: int = 0
    priority: str = "medium"
    deadline: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    publish: bool = False


class UpdateTaskRequest(_CamelModel):
    title: Optional[str] = None
    description_html: Optional[str] = Field(None, alias="descriptionHtml")
    bounty: Optional[int] = None
    priority: Optional[str] = None
    deadline: Optional[datetime] = None
    tags: Optional[list[str]] = None


def envelope(data: Any) -> dict[str, Any]:
    return {"data": data}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(backend: Optional[DevBackend] = None) -> FastAPI:
    """Create the development backend app.

    Args:
        backend: State to serve; a freshly seeded one when omitted.

    Returns:
        Configured FastAPI app with ``app.state.backend`` set.
    """
    backend = backend or DevBackend()
    app = FastAPI(
        title="opsboard dev backend",
        description="In-memory task board backend for local development and tests",
        version="1.0.0",
    )
    app.state.backend = backend

    @app.exception_handler(DevApiError)
    async def _dev_error(_: Request, exc: DevApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status,
            content={"error": {"code": exc.code, "message": exc.message}},
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": {"code": "validation_error", "message": str(exc.errors()[:1])}},
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return envelope({"status": "ok"})

    app.include_router(_auth_router(backend))
    app.include_router(_user_router(backend))
    app.include_router(_task_router(backend))
    return app


def _current_user_dependency(backend: DevBackend):
    async def current_user(authorization: str = Header("")) -> DevUser:
        scheme, _, token = authorization.partition(" ")
        user = backend.user_for_access(token.strip()) if scheme.lower() == "bearer" else None
        if user is None:
            raise DevApiError(401, "unauthorized", "Missing or expired access token")
        return user

    return current_user


def _require_admin(user: DevUser) -> None:
    if not user.is_admin:
        raise DevApiError(403, "forbidden", "Admin role required")


def _auth_router(backend: DevBackend) -> APIRouter:
    router = APIRouter(prefix=f"{API_PREFIX}/auth", tags=["auth"])

    @router.post("/login")
    async def login(body: LoginRequest) -> dict[str, Any]:
        payload = backend.login(body.username, body.password)
        logger.debug("dev backend: {} signed in", body.username)
        return envelope(payload)

    @router.post("/refresh")
    async def refresh(body: RefreshRequest) -> dict[str, Any]:
        backend.refresh_calls += 1
        if backend.refresh_delay:
            await asyncio.sleep(backend.refresh_delay)
        return envelope(backend.rotate(body.refresh_token))

    @router.post("/logout")
    async def logout(body: RefreshRequest) -> dict[str, Any]:
        backend.revoke(body.refresh_token)
        return envelope({"ok": True})

    return router


def _user_router(backend: DevBackend) -> APIRouter:
    router = APIRouter(prefix=f"{API_PREFIX}/users", tags=["users"])
    current_user = _current_user_dependency(backend)

    @router.get("/me")
    async def me(user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(user.to_dict())

    @router.patch("/me/profile")
    async def update_profile(body: ProfileRequest, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(backend.update_profile(user, body.display_name, body.headline, body.bio).to_dict())

    @router.patch("/me/password")
    async def change_password(body: PasswordRequest, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        backend.change_password(user, body.current_password, body.new_password)
        return envelope({"message": "Password updated"})

    @router.get("")
    async def list_users(
        keyword: str = Query(""),
        page: int = Query(1),
        page_size: int = Query(20, alias="pageSize"),
        user: DevUser = Depends(current_user),
    ) -> dict[str, Any]:
        _require_admin(user)
        return envelope(backend.list_users(keyword, page, page_size))

    @router.post("/{user_id}/toggle-admin")
    async def toggle_admin(
        user_id: str,
        body: ToggleAdminRequest,
        user: DevUser = Depends(current_user),
    ) -> dict[str, Any]:
        _require_admin(user)
        return envelope(backend.toggle_admin(user_id, body.grant).to_dict())

    return router


def _task_router(backend: DevBackend) -> APIRouter:
    router = APIRouter(prefix=f"{API_PREFIX}/tasks", tags=["tasks"])
    current_user = _current_user_dependency(backend)

    @router.get("")
    async def list_tasks(
        keyword: str = Query(""),
        sort: str = Query(""),
        status: str = Query(""),
        assignee: str = Query(""),
        page: int = Query(1),
        page_size: int = Query(20, alias="pageSize"),
        user: DevUser = Depends(current_user),
    ) -> dict[str, Any]:
        return envelope(
            backend.list_tasks(
                user,
                keyword=keyword,
                sort=sort,
                status=status,
                assignee=assignee,
                page=page,
                page_size=page_size,
            )
        )

    @router.post("", status_code=201)
    async def create_task(body: CreateTaskRequest, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        _require_admin(user)
        task = backend.create_task(
            user,
            title=body.title,
            description_html=body.description_html,
            bounty=body.bounty,
            priority=body.priority,
            deadline=body.deadline,
            tags=body.tags,
            publish=body.publish,
        )
        return envelope(task.to_dict())

    @router.get("/{task_id}")
    async def get_task(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(backend.get_task(task_id).to_dict())

    @router.patch("/{task_id}")
    async def update_task(
        task_id: str,
        body: UpdateTaskRequest,
        user: DevUser = Depends(current_user),
    ) -> dict[str, Any]:
        _require_admin(user)
        changes = body.model_dump(exclude_unset=True)
        return envelope(backend.update_task(task_id, changes).to_dict())

    @router.delete("/{task_id}")
    async def delete_task(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        _require_admin(user)
        backend.delete_task(task_id)
        return envelope({"deleted": task_id})

    @router.post("/{task_id}/publish")
    async def publish(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        _require_admin(user)
        return envelope(backend.publish(task_id, user).to_dict())

    @router.post("/{task_id}/claim")
    async def claim(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(backend.claim(task_id, user).to_dict())

    @router.post("/{task_id}/release")
    async def release(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(backend.release(task_id, user).to_dict())

    @router.post("/{task_id}/submit-progress")
    async def submit(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(backend.submit(task_id, user).to_dict())

    @router.post("/{task_id}/verify")
    async def verify(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(backend.verify(task_id, user).to_dict())

    @router.post("/{task_id}/reject")
    async def reject(task_id: str, user: DevUser = Depends(current_user)) -> dict[str, Any]:
        return envelope(backend.reject(task_id, user).to_dict())

    return router
