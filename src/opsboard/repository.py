"""Map backend payloads onto the domain model.

This is the only place that knows the wire shape. Every field gets its
default here, once, so the rest of the package works with fully-specified
dataclasses. No I/O happens in this module.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from .models import Account, Assignee, CurrentUser, Draft, Role, Task, TaskPriority, TaskStatus

# Backend statuses that mean something different on the board.
_STATUS_ALIASES = {"published": TaskStatus.AVAILABLE}


def _str(raw: Any) -> str:
    if raw is None:
        return ""
    return raw if isinstance(raw, str) else str(raw)


def _int(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    try:
        return max(int(raw or 0), 0)
    except (TypeError, ValueError):
        return 0


def _strings(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(_str(item) for item in raw if item is not None)


def _unique_tags(raw: Any) -> tuple[str, ...]:
    seen: set[str] = set()
    tags: list[str] = []
    for tag in _strings(raw):
        tag = tag.strip()
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        tags.append(tag)
    return tuple(tags)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp; anything unparseable becomes ``None``."""
    if isinstance(raw, datetime):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def map_status(raw: Any) -> Optional[TaskStatus]:
    """Normalize a backend status; ``None`` for statuses the board does not show."""
    value = _str(raw).strip().lower()
    if value in _STATUS_ALIASES:
        return _STATUS_ALIASES[value]
    try:
        return TaskStatus(value)
    except ValueError:
        return None


def map_priority(raw: Any) -> TaskPriority:
    try:
        return TaskPriority(_str(raw).strip().lower())
    except ValueError:
        return TaskPriority.MEDIUM


def map_task(raw: Mapping[str, Any]) -> Task:
    """Translate one backend task into a :class:`Task`.

    Raises:
        ValueError: the status is not one the board tracks (draft, archived).
    """
    status = map_status(raw.get("status"))
    if status is None:
        raise ValueError(f"Task {raw.get('id')!r} has untracked status {raw.get('status')!r}")

    current = raw.get("currentAssignee")
    assignee: Optional[Assignee] = None
    completed_at: Optional[datetime] = None
    if status.has_assignee and isinstance(current, Mapping):
        assignee = Assignee(
            id=_str(current.get("userId")),
            name=_str(current.get("username")),
            execution_state=_str(current.get("status")),
        )
        completed_at = parse_timestamp(current.get("completedAt"))
    elif status.has_assignee:
        assignee = Assignee()

    return Task(
        id=_str(raw.get("id")),
        title=_str(raw.get("title")),
        summary=_str(raw.get("descriptionPlain")),
        description_rich=_str(raw.get("descriptionHtml")),
        reward=_int(raw.get("bounty")),
        deadline=parse_timestamp(raw.get("deadline")),
        priority=map_priority(raw.get("priority")),
        tags=_unique_tags(raw.get("tags")),
        status=status,
        assignee=assignee,
        created_by=_str(raw.get("createdBy")),
        published_by=_str(raw.get("publishedBy")),
        created_at=parse_timestamp(raw.get("createdAt")),
        updated_at=parse_timestamp(raw.get("updatedAt")),
        completed_at=completed_at if status is TaskStatus.COMPLETED else None,
    )


def map_tasks(items: Iterable[Any]) -> list[Task]:
    """Map a list of backend tasks, dropping ones the board does not track."""
    tasks: list[Task] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        try:
            tasks.append(map_task(item))
        except ValueError as exc:
            logger.debug("Skipping task: {}", exc)
    return tasks


def map_drafts(items: Iterable[Any]) -> list[Draft]:
    """Map the backend tasks still in ``draft`` status; everything else is skipped."""
    drafts: list[Draft] = []
    for raw in items:
        if not isinstance(raw, Mapping) or _str(raw.get("status")).strip().lower() != "draft":
            continue
        drafts.append(
            Draft(
                id=_str(raw.get("id")),
                title=_str(raw.get("title")),
                summary=_str(raw.get("descriptionPlain")),
                reward=_int(raw.get("bounty")),
                priority=map_priority(raw.get("priority")),
                deadline=parse_timestamp(raw.get("deadline")),
                tags=_unique_tags(raw.get("tags")),
                created_by=_str(raw.get("createdBy")),
                updated_at=parse_timestamp(raw.get("updatedAt")),
            )
        )
    return drafts


def _role(raw: Mapping[str, Any]) -> Role:
    roles = _strings(raw.get("roles"))
    if "admin" in roles or _str(raw.get("role")) == Role.ADMIN.value:
        return Role.ADMIN
    return Role.MEMBER


def map_account(raw: Mapping[str, Any]) -> Account:
    return Account(
        id=_str(raw.get("id")),
        display_name=_str(raw.get("displayName") or raw.get("name") or raw.get("username")),
        role=_role(raw),
        email=_str(raw.get("email")),
        teams=_strings(raw.get("teams")),
    )


def map_accounts(items: Iterable[Any]) -> list[Account]:
    return [map_account(item) for item in items if isinstance(item, Mapping)]


def map_current_user(raw: Any) -> CurrentUser:
    if not isinstance(raw, Mapping):
        return CurrentUser()
    return CurrentUser(
        id=_str(raw.get("id")),
        username=_str(raw.get("username")),
        display_name=_str(raw.get("displayName") or raw.get("name")),
        email=_str(raw.get("email")),
        roles=_strings(raw.get("roles")),
        role=_role(raw),
        teams=_strings(raw.get("teams")),
        headline=_str(raw.get("headline")),
        bio=_str(raw.get("bio")),
    )


def map_page(raw: Any) -> tuple[list[Any], int]:
    """Split a ``{items, total}`` page; ``total`` falls back to the item count."""
    if not isinstance(raw, Mapping):
        return [], 0
    items = raw.get("items")
    items = list(items) if isinstance(items, list) else []
    total = raw.get("total")
    if isinstance(total, bool) or not isinstance(total, int):
        total = len(items)
    return items, total
