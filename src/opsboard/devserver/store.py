"""In-memory state behind the development backend.

Holds users, tasks and issued tokens, and enforces the same transition and
role rules a production backend applies. Nothing is persisted.
"""

from __future__ import annotations

import html
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


class DevApiError(Exception):
    """Raised by the store; rendered as an ``{error: {code, message}}`` envelope."""

    def __init__(self, status: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message


PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}

_TAG_RE = re.compile(r"<[^>]*>")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _fmt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _plain(rich: str) -> str:
    return html.unescape(" ".join(_TAG_RE.sub(" ", rich).split()))


def _clean_tags(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            out.append(tag)
    return out


@dataclass
class DevUser:
    id: str
    username: str
    password: str
    display_name: str = ""
    email: str = ""
    roles: list[str] = field(default_factory=lambda: ["member"])
    teams: list[str] = field(default_factory=list)
    headline: str = ""
    bio: str = ""

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "name": self.display_name,
            "email": self.email,
            "roles": list(self.roles),
            "teams": list(self.teams),
            "headline": self.headline,
            "bio": self.bio,
        }


@dataclass
class DevAssignment:
    id: int
    user_id: str
    username: str
    status: str
    assigned_at: datetime
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "username": self.username,
            "status": self.status,
            "assignedAt": _fmt(self.assigned_at),
        }
        if self.completed_at is not None:
            data["completedAt"] = _fmt(self.completed_at)
        return data


@dataclass
class DevTask:
    id: str
    title: str
    description_html: str
    bounty: int
    priority: str
    status: str
    created_by: str
    deadline: Optional[datetime] = None
    published_by: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    assignment: Optional[DevAssignment] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "descriptionHtml": self.description_html,
            "descriptionPlain": _plain(self.description_html),
            "bounty": self.bounty,
            "priority": self.priority,
            "status": self.status,
            "createdBy": self.created_by,
            "createdAt": _fmt(self.created_at),
            "updatedAt": _fmt(self.updated_at),
            "tags": list(self.tags),
        }
        if self.deadline is not None:
            data["deadline"] = _fmt(self.deadline)
        if self.published_by:
            data["publishedBy"] = self.published_by
        if self.assignment is not None:
            data["currentAssignee"] = self.assignment.to_dict()
        return data


class DevBackend:
    """All mutable state of the development backend.

    Attributes:
        refresh_calls: Number of ``/auth/refresh`` requests received.
        refresh_delay: Seconds the refresh endpoint waits before answering.
        fail_refresh: When set, every refresh is rejected.
    """

    def __init__(self, *, seed: bool = True) -> None:
        self.users: dict[str, DevUser] = {}
        self.tasks: dict[str, DevTask] = {}
        self.access_tokens: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.fail_refresh = False
        self._assignment_seq = 0
        if seed:
            self.add_user("admin", "admin", display_name="Admin", roles=["admin"], teams=["ops"])
            self.add_user("alice", "alice", display_name="Alice", teams=["ops"])
            self.add_user("bob", "bob", display_name="Bob")

    # ------------------------------------------------------------------
    # Users and tokens
    # ------------------------------------------------------------------

    def add_user(
        self,
        username: str,
        password: str,
        *,
        display_name: str = "",
        email: str = "",
        roles: Optional[list[str]] = None,
        teams: Optional[list[str]] = None,
        user_id: Optional[str] = None,
    ) -> DevUser:
        user = DevUser(
            id=user_id or str(uuid.uuid4()),
            username=username,
            password=password,
            display_name=display_name or username,
            email=email or f"{username}@example.test",
            roles=list(roles or ["member"]),
            teams=list(teams or []),
        )
        self.users[user.id] = user
        return user

    def user_by_name(self, username: str) -> Optional[DevUser]:
        return next((u for u in self.users.values() if u.username == username), None)

    def get_user(self, user_id: str) -> DevUser:
        user = self.users.get(user_id)
        if user is None:
            raise DevApiError(404, "not_found", "User not found")
        return user

    def issue_tokens(self, user: DevUser) -> dict[str, str]:
        access = secrets.token_urlsafe(24)
        refresh = secrets.token_urlsafe(32)
        self.access_tokens[access] = user.id
        self.refresh_tokens[refresh] = user.id
        return {"accessToken": access, "refreshToken": refresh}

    def login(self, username: str, password: str) -> dict[str, Any]:
        user = self.user_by_name(username)
        if user is None or not secrets.compare_digest(user.password, password):
            raise DevApiError(401, "invalid_credentials", "Invalid username or password")
        payload: dict[str, Any] = dict(self.issue_tokens(user))
        payload["user"] = user.to_dict()
        return payload

    def rotate(self, refresh_token: str) -> dict[str, str]:
        user_id = self.refresh_tokens.pop(refresh_token, None)
        if user_id is None or self.fail_refresh or user_id not in self.users:
            raise DevApiError(401, "invalid_refresh_token", "Refresh token is invalid or expired")
        return self.issue_tokens(self.users[user_id])

    def revoke(self, refresh_token: str) -> None:
        self.refresh_tokens.pop(refresh_token, None)

    def user_for_access(self, token: str) -> Optional[DevUser]:
        user_id = self.access_tokens.get(token)
        return self.users.get(user_id) if user_id else None

    def expire_access_tokens(self) -> None:
        """Invalidate every access token issued so far."""
        self.access_tokens.clear()

    def list_users(self, keyword: str, page: int, page_size: int) -> dict[str, Any]:
        term = keyword.strip().lower()
        users = [
            u for u in self.users.values()
            if not term or term in f"{u.username} {u.display_name} {u.email}".lower()
        ]
        return _page([u.to_dict() for u in users], page, page_size)

    def update_profile(self, user: DevUser, display_name: str, headline: str, bio: str) -> DevUser:
        display_name, headline, bio = display_name.strip(), headline.strip(), bio.strip()
        if not display_name:
            raise DevApiError(422, "validation_error", "display name required")
        if len(display_name) > 40:
            raise DevApiError(422, "validation_error", "display name too long")
        if len(headline) > 80:
            raise DevApiError(422, "validation_error", "headline too long")
        if len(bio) > 400:
            raise DevApiError(422, "validation_error", "bio too long")
        user.display_name, user.headline, user.bio = display_name, headline, bio
        return user

    def change_password(self, user: DevUser, current: str, new: str) -> None:
        if not current.strip() or not new.strip():
            raise DevApiError(422, "validation_error", "password required")
        if len(new) < 8:
            raise DevApiError(422, "validation_error", "password too short")
        # 422 rather than 401: a 401 here would read as an expired access token.
        if not secrets.compare_digest(user.password, current):
            raise DevApiError(422, "invalid_credentials", "Current password is incorrect")
        user.password = new

    def toggle_admin(self, user_id: str, grant: bool) -> DevUser:
        user = self.get_user(user_id)
        roles = [r for r in user.roles if r != "admin"]
        if grant:
            roles.append("admin")
        user.roles = roles or ["member"]
        return user

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> DevTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise DevApiError(404, "not_found", "Task not found")
        return task

    def list_tasks(
        self,
        actor: DevUser,
        *,
        keyword: str = "",
        sort: str = "",
        status: str = "",
        assignee: str = "",
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        term = keyword.strip().lower()
        assignee_id = actor.id if assignee == "me" else assignee
        tasks = []
        for task in self.tasks.values():
            if task.status == "draft" and not actor.is_admin:
                continue
            if status and task.status != status:
                continue
            if assignee_id and (task.assignment is None or task.assignment.user_id != assignee_id):
                continue
            if term and term not in f"{task.id} {task.title} {_plain(task.description_html)}".lower():
                continue
            tasks.append(task)
        tasks.sort(key=_sort_key(sort))
        return _page([t.to_dict() for t in tasks], page, page_size)

    def create_task(
        self,
        actor: DevUser,
        *,
        title: str,
        description_html: str,
        bounty: int = 0,
        priority: str = "medium",
        deadline: Optional[datetime] = None,
        tags: Optional[list[str]] = None,
        publish: bool = False,
        task_id: Optional[str] = None,
    ) -> DevTask:
        title = title.strip()
        if not title:
            raise DevApiError(422, "validation_error", "title required")
        if len(title) > 120:
            raise DevApiError(422, "validation_error", "title too long")
        if bounty < 0:
            raise DevApiError(422, "validation_error", "bounty must be non-negative")
        if not _plain(description_html):
            raise DevApiError(422, "validation_error", "description required")
        if priority not in PRIORITY_ORDER:
            raise DevApiError(422, "validation_error", "unknown priority")
        task = DevTask(
            id=task_id or str(uuid.uuid4()),
            title=title,
            description_html=description_html,
            bounty=bounty,
            priority=priority,
            status="available" if publish else "draft",
            created_by=actor.id,
            published_by=actor.id if publish else None,
            deadline=deadline,
            tags=_clean_tags(tags or []),
        )
        self.tasks[task.id] = task
        return task

    def update_task(self, task_id: str, changes: dict[str, Any]) -> DevTask:
        task = self.get_task(task_id)
        if task.status == "completed":
            raise DevApiError(409, "conflict", "Completed tasks cannot be edited")
        if "title" in changes:
            title = str(changes["title"] or "").strip()
            if not title:
                raise DevApiError(422, "validation_error", "title required")
            task.title = title
        if "description_html" in changes:
            if not _plain(changes["description_html"] or ""):
                raise DevApiError(422, "validation_error", "description required")
            task.description_html = changes["description_html"]
        if "bounty" in changes and changes["bounty"] is not None:
            if changes["bounty"] < 0:
                raise DevApiError(422, "validation_error", "bounty negative")
            task.bounty = changes["bounty"]
        if "priority" in changes and changes["priority"]:
            task.priority = changes["priority"]
        if "deadline" in changes:
            task.deadline = changes["deadline"]
        if "tags" in changes and changes["tags"] is not None:
            task.tags = _clean_tags(changes["tags"])
        task.touch()
        return task

    def delete_task(self, task_id: str) -> None:
        task = self.get_task(task_id)
        if task.status == "completed":
            raise DevApiError(409, "conflict", "Completed tasks cannot be deleted")
        del self.tasks[task_id]

    def publish(self, task_id: str, actor: DevUser) -> DevTask:
        task = self.get_task(task_id)
        if task.status != "draft":
            raise DevApiError(409, "conflict", "Only drafts can be published")
        task.status = "available"
        task.published_by = actor.id
        task.touch()
        return task

    def claim(self, task_id: str, actor: DevUser) -> DevTask:
        task = self.get_task(task_id)
        if task.status != "available":
            raise DevApiError(409, "conflict", "Task is not available")
        self._assignment_seq += 1
        task.assignment = DevAssignment(
            id=self._assignment_seq,
            user_id=actor.id,
            username=actor.display_name,
            status="claimed",
            assigned_at=_now(),
        )
        task.status = "claimed"
        task.touch()
        return task

    def release(self, task_id: str, actor: DevUser) -> DevTask:
        task = self._assigned(task_id, actor, "claimed")
        task.assignment = None
        task.status = "available"
        task.touch()
        return task

    def submit(self, task_id: str, actor: DevUser) -> DevTask:
        task = self._assigned(task_id, actor, "claimed")
        task.status = "submitted"
        if task.assignment is not None:
            task.assignment.status = "submitted"
        task.touch()
        return task

    def verify(self, task_id: str, actor: DevUser) -> DevTask:
        task = self._reviewable(task_id, actor)
        now = _now()
        task.status = "completed"
        if task.assignment is not None:
            task.assignment.status = "completed"
            task.assignment.completed_at = now
        task.updated_at = now
        return task

    def reject(self, task_id: str, actor: DevUser) -> DevTask:
        task = self._reviewable(task_id, actor)
        task.status = "claimed"
        if task.assignment is not None:
            task.assignment.status = "claimed"
        task.touch()
        return task

    def _assigned(self, task_id: str, actor: DevUser, status: str) -> DevTask:
        task = self.get_task(task_id)
        if task.status != status:
            raise DevApiError(409, "conflict", f"Task is {task.status}, expected {status}")
        if task.assignment is None or task.assignment.user_id != actor.id:
            raise DevApiError(403, "forbidden", "Only the assignee may do this")
        return task

    def _reviewable(self, task_id: str, actor: DevUser) -> DevTask:
        task = self.get_task(task_id)
        if task.status != "submitted":
            raise DevApiError(409, "conflict", "Task has not been submitted")
        owner = task.published_by or task.created_by
        if not actor.is_admin and actor.id != owner:
            raise DevApiError(403, "forbidden", "Only an admin or the task owner may review")
        return task


def _sort_key(sort: str):
    if sort == "deadline":
        return lambda t: (t.deadline is None, t.deadline.timestamp() if t.deadline else 0.0)
    if sort == "reward":
        return lambda t: -t.bounty
    if sort == "updated":
        return lambda t: -t.updated_at.timestamp()
    return lambda t: (PRIORITY_ORDER.get(t.priority, 2), -t.updated_at.timestamp())


def _page(items: list[dict[str, Any]], page: int, page_size: int) -> dict[str, Any]:
    if page_size <= 0 or page_size > 100:
        page_size = 20
    page = max(page, 1)
    start = (page - 1) * page_size
    return {
        "items": items[start:start + page_size],
        "total": len(items),
        "page": page,
        "pageSize": page_size,
    }
