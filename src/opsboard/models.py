"""Domain model for the task board: tasks, accounts and the signed-in user.

Everything here is fully specified once it leaves the repository layer;
consumers never see ``None`` where a string or collection is expected.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Board-level status of a task."""

    AVAILABLE = "available"
    CLAIMED = "claimed"
    SUBMITTED = "submitted"
    COMPLETED = "completed"

    @property
    def has_assignee(self) -> bool:
        return self is not TaskStatus.AVAILABLE


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"

    def inverse(self) -> "Role":
        return Role.MEMBER if self is Role.ADMIN else Role.ADMIN


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assignee:
    """The member currently holding a task."""

    id: str = ""
    name: str = ""
    execution_state: str = ""


@dataclass(frozen=True)
class Task:
    """A work item as the board sees it.

    Instances are immutable snapshots; a transition is observed by
    re-fetching, never by mutating a local copy.
    """

    id: str
    title: str = ""
    summary: str = ""
    description_rich: str = ""
    reward: int = 0
    deadline: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    tags: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.AVAILABLE
    assignee: Optional[Assignee] = None
    created_by: str = ""
    published_by: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def owner_id(self) -> str:
        """Who reviews submissions: the publisher, else the creator."""
        return self.published_by or self.created_by

    @property
    def assignee_id(self) -> str:
        return self.assignee.id if self.assignee is not None else ""

    @property
    def is_completed(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON output."""
        return {k: _plain(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class TaskDraft:
    """Fields an admin supplies when publishing or editing a task."""

    title: str
    description_rich: str
    reward: int = 0
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: Optional[datetime] = None
    tags: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "title": self.title.strip(),
            "descriptionHtml": self.description_rich,
            "bounty": self.reward,
            "priority": self.priority.value,
            "deadline": _iso(self.deadline),
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class Draft:
    """A saved but unpublished task, visible to admins only."""

    id: str
    title: str = ""
    summary: str = ""
    reward: int = 0
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: Optional[datetime] = None
    tags: tuple[str, ...] = ()
    created_by: str = ""
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Account:
    """A row of the admin account list."""

    id: str
    display_name: str = ""
    role: Role = Role.MEMBER
    email: str = ""
    teams: tuple[str, ...] = ()

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def to_dict(self) -> dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class CurrentUser:
    """The signed-in account. Replaced wholesale, never patched field by field."""

    id: str = ""
    username: str = ""
    display_name: str = ""
    email: str = ""
    roles: tuple[str, ...] = ()
    role: Role = Role.MEMBER
    teams: tuple[str, ...] = field(default_factory=tuple)
    headline: str = ""
    bio: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def signed_in(self) -> bool:
        return bool(self.id)

    def to_dict(self) -> dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}
