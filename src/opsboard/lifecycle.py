"""Task lifecycle engine: role-gated transitions over the board's tasks.

States move ``available → claimed → submitted → completed``. A reviewer can
send a submission back (``submitted → claimed``, assignee kept) and an
assignee can hand a claimed task back (``claimed → available``). Admins may
also save a task as a draft and publish it later; drafts stay off the task
collections until then.

Every transition is a single backend call. Preconditions are checked locally
first; after a successful call the board re-fetches instead of applying the
change itself, so server-side effects (reward settlement, timestamps) are
picked up. A failed call leaves local state untouched.
"""

from __future__ import annotations

import html
import re
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from loguru import logger

from .api import BoardApi
from .board import BoardViewModel
from .constants import TITLE_MAX_LENGTH
from .errors import BoardError, LifecycleError, Result
from .models import CurrentUser, Draft, Task, TaskDraft, TaskPriority, TaskStatus
from .repository import map_drafts, map_task


class Transition(str, Enum):
    PUBLISH = "publish"
    CLAIM = "claim"
    RELEASE = "release"
    SUBMIT = "submit"
    VERIFY = "verify"
    REJECT = "reject"
    UPDATE = "update"
    DELETE = "delete"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

_OPEN_STATUSES = frozenset({TaskStatus.AVAILABLE, TaskStatus.CLAIMED, TaskStatus.SUBMITTED})

_REQUIRED_STATUS: dict[Transition, frozenset[TaskStatus]] = {
    Transition.CLAIM: frozenset({TaskStatus.AVAILABLE}),
    Transition.RELEASE: frozenset({TaskStatus.CLAIMED}),
    Transition.SUBMIT: frozenset({TaskStatus.CLAIMED}),
    Transition.VERIFY: frozenset({TaskStatus.SUBMITTED}),
    Transition.REJECT: frozenset({TaskStatus.SUBMITTED}),
    Transition.UPDATE: _OPEN_STATUSES,
    Transition.DELETE: _OPEN_STATUSES,
}

RESULTING_STATUS: dict[Transition, TaskStatus] = {
    Transition.PUBLISH: TaskStatus.AVAILABLE,
    Transition.CLAIM: TaskStatus.CLAIMED,
    Transition.RELEASE: TaskStatus.AVAILABLE,
    Transition.SUBMIT: TaskStatus.SUBMITTED,
    Transition.VERIFY: TaskStatus.COMPLETED,
    Transition.REJECT: TaskStatus.CLAIMED,
}

_ENDPOINT_ACTIONS: dict[Transition, str] = {
    Transition.CLAIM: "claim",
    Transition.RELEASE: "release",
    Transition.SUBMIT: "submit-progress",
    Transition.VERIFY: "verify",
    Transition.REJECT: "reject",
}

_TASK_TRANSITIONS = (
    Transition.CLAIM,
    Transition.RELEASE,
    Transition.SUBMIT,
    Transition.VERIFY,
    Transition.REJECT,
    Transition.UPDATE,
    Transition.DELETE,
)

_TAG_RE = re.compile(r"<[^>]*>")


def plain_text(rich: str) -> str:
    """Strip markup and collapse whitespace."""
    return html.unescape(" ".join(_TAG_RE.sub(" ", rich).split()))


def normalize_tags(tags: Any) -> tuple[str, ...]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for tag in tags or ():
        tag = str(tag).strip()
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        cleaned.append(tag)
    return tuple(cleaned)


def actor_allowed(transition: Transition, task: Optional[Task], user: CurrentUser) -> bool:
    if not user.signed_in:
        return False
    if transition in (Transition.PUBLISH, Transition.UPDATE, Transition.DELETE):
        return user.is_admin
    if task is None:
        return False
    if transition is Transition.CLAIM:
        return True
    if transition in (Transition.RELEASE, Transition.SUBMIT):
        return bool(task.assignee_id) and task.assignee_id == user.id
    if transition in (Transition.VERIFY, Transition.REJECT):
        return user.is_admin or task.owner_id == user.id
    return False


def check_transition(transition: Transition, task: Optional[Task], user: CurrentUser) -> Optional[LifecycleError]:
    """Return the reason *user* may not apply *transition* to *task*, if any."""
    if not user.signed_in:
        return LifecycleError("Sign in before changing tasks", 401)
    if transition is not Transition.PUBLISH:
        if task is None:
            return LifecycleError("Task not found", 404)
        required = _REQUIRED_STATUS[transition]
        if task.status not in required:
            return LifecycleError(
                f"Cannot {transition.value} task {task.id} while it is {task.status.value}",
                409,
            )
    if not actor_allowed(transition, task, user):
        return LifecycleError(f"Not allowed to {transition.value} this task", 403)
    return None


def available_transitions(task: Task, user: CurrentUser) -> list[Transition]:
    return [t for t in _TASK_TRANSITIONS if check_transition(t, task, user) is None]


def validate_draft(draft: TaskDraft) -> Optional[LifecycleError]:
    title = draft.title.strip()
    if not title:
        return LifecycleError("Title is required", 422)
    if len(title) > TITLE_MAX_LENGTH:
        return LifecycleError("Title is too long", 422)
    if not plain_text(draft.description_rich):
        return LifecycleError("Description is required", 422)
    if draft.reward < 0:
        return LifecycleError("Reward must be non-negative", 422)
    return None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TaskLifecycleEngine:
    """Apply lifecycle transitions on behalf of the session's user.

    Parameters
    ----------
    api:
        Endpoint wrappers; every transition is one call.
    board:
        Source of the current task collection and target of re-fetches.
    """

    def __init__(self, api: BoardApi, board: BoardViewModel) -> None:
        self.api = api
        self.board = board

    @property
    def user(self) -> CurrentUser:
        return self.board.user

    # -- member transitions -------------------------------------------------

    async def claim(self, task_id: str) -> Result[Task]:
        return await self._act(Transition.CLAIM, task_id)

    async def release(self, task_id: str) -> Result[Task]:
        return await self._act(Transition.RELEASE, task_id)

    async def submit(self, task_id: str) -> Result[Task]:
        return await self._act(Transition.SUBMIT, task_id)

    # -- review -------------------------------------------------------------

    async def verify(self, task_id: str) -> Result[Task]:
        return await self._act(Transition.VERIFY, task_id)

    async def reject(self, task_id: str) -> Result[Task]:
        return await self._act(Transition.REJECT, task_id)

    # -- admin --------------------------------------------------------------

    async def publish(self, draft: TaskDraft) -> Result[Task]:
        error = check_transition(Transition.PUBLISH, None, self.user)
        if error is None:
            draft = replace(draft, title=draft.title.strip(), tags=normalize_tags(draft.tags))
            error = validate_draft(draft)
        if error is not None:
            return self._refuse(Transition.PUBLISH, "new", error)

        try:
            data = await self.api.create_task(draft, publish=True)
        except BoardError as exc:
            return self._refuse(Transition.PUBLISH, "new", exc)

        await self.board.reload()
        created: Optional[Task] = None
        if isinstance(data, dict):
            try:
                created = map_task(data)
            except ValueError:
                created = None
        logger.info("Published task {}", created.id if created else draft.title)
        return Result.success(created)

    async def save_draft(self, draft: TaskDraft) -> Result[Draft]:
        """Store *draft* unpublished; it shows up in ``board.drafts`` only."""
        error = check_transition(Transition.PUBLISH, None, self.user)
        if error is None:
            draft = replace(draft, title=draft.title.strip(), tags=normalize_tags(draft.tags))
            error = validate_draft(draft)
        if error is not None:
            return self._refuse(Transition.PUBLISH, "draft", error)

        try:
            data = await self.api.create_task(draft, publish=False)
        except BoardError as exc:
            return self._refuse(Transition.PUBLISH, "draft", exc)

        await self.board.load_drafts()
        saved = next(iter(map_drafts([data])), None)
        logger.info("Saved draft {}", saved.id if saved else draft.title)
        return Result.success(saved)

    async def publish_draft(self, draft_id: str) -> Result[Task]:
        """Make a saved draft available on the board."""
        error = check_transition(Transition.PUBLISH, None, self.user)
        if error is None and self.board.find_draft(draft_id) is None:
            error = LifecycleError("Draft not found", 404)
        if error is not None:
            return self._refuse(Transition.PUBLISH, draft_id, error)

        try:
            await self.api.publish_task(draft_id)
        except BoardError as exc:
            return self._refuse(Transition.PUBLISH, draft_id, exc)

        await self.board.reload(drafts=True)
        logger.info("Published draft {}", draft_id)
        return Result.success(self.board.find_task(draft_id))

    async def update(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description_rich: Optional[str] = None,
        reward: Optional[int] = None,
        priority: Optional[TaskPriority] = None,
        deadline: Optional[datetime] = None,
        tags: Optional[list[str]] = None,
    ) -> Result[Task]:
        """Overwrite the given fields of an open task."""
        task = self.board.find_task(task_id)
        error = check_transition(Transition.UPDATE, task, self.user)
        if error is None:
            error = self._validate_changes(title, description_rich, reward)
        if error is not None:
            return self._refuse(Transition.UPDATE, task_id, error)

        changes: dict[str, Any] = {}
        if title is not None:
            changes["title"] = title.strip()
        if description_rich is not None:
            changes["descriptionHtml"] = description_rich
        if reward is not None:
            changes["bounty"] = reward
        if priority is not None:
            changes["priority"] = priority.value
        if deadline is not None:
            changes["deadline"] = deadline.isoformat()
        if tags is not None:
            changes["tags"] = list(normalize_tags(tags))

        try:
            await self.api.update_task(task_id, changes)
        except BoardError as exc:
            return self._refuse(Transition.UPDATE, task_id, exc)

        if self.board.editing_task_id == task_id:
            self.board.cancel_edit()
        await self.board.reload()
        return Result.success(self.board.find_task(task_id))

    async def delete(self, task_id: str) -> Result[None]:
        task = self.board.find_task(task_id)
        error = check_transition(Transition.DELETE, task, self.user)
        if error is not None:
            return self._refuse(Transition.DELETE, task_id, error)
        try:
            await self.api.delete_task(task_id)
        except BoardError as exc:
            return self._refuse(Transition.DELETE, task_id, exc)

        if self.board.editing_task_id == task_id:
            self.board.cancel_edit()
        await self.board.reload(completed=True)
        logger.info("Deleted task {}", task_id)
        return Result.success(None)

    # -- internals ----------------------------------------------------------

    async def _act(self, transition: Transition, task_id: str) -> Result[Task]:
        task = self.board.find_task(task_id)
        error = check_transition(transition, task, self.user)
        if error is not None:
            return self._refuse(transition, task_id, error)
        try:
            await self.api.task_action(task_id, _ENDPOINT_ACTIONS[transition])
        except BoardError as exc:
            return self._refuse(transition, task_id, exc)

        await self.board.reload(completed=transition is Transition.VERIFY)
        logger.debug("{} {} -> {}", transition.value, task_id, RESULTING_STATUS[transition].value)
        return Result.success(self.board.find_task(task_id))

    @staticmethod
    def _validate_changes(
        title: Optional[str],
        description_rich: Optional[str],
        reward: Optional[int],
    ) -> Optional[LifecycleError]:
        if title is not None and not title.strip():
            return LifecycleError("Title is required", 422)
        if title is not None and len(title.strip()) > TITLE_MAX_LENGTH:
            return LifecycleError("Title is too long", 422)
        if description_rich is not None and not plain_text(description_rich):
            return LifecycleError("Description is required", 422)
        if reward is not None and reward < 0:
            return LifecycleError("Reward must be non-negative", 422)
        return None

    @staticmethod
    def _refuse(transition: Transition, task_id: str, error: BoardError) -> Result[Any]:
        logger.warning(
            "{} {} failed: {} (status {})",
            transition.value,
            task_id,
            error.message,
            error.status,
        )
        return Result.failure(error)
