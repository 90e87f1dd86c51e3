"""Board view model: the collections a session looks at and the views derived from them.

The board owns the task, completed-task, account and draft collections, the search
keyword and sort key, and the debounce timer for keyword search. Derived
views are computed on access from :mod:`opsboard.views`.

Overlapping fetches of one collection are applied in the order they resolve
(last resolved wins). Passing ``discard_stale_fetches=True`` tags each fetch
with a sequence number and drops responses older than the newest applied
one instead.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Optional

from loguru import logger

from . import views
from .api import BoardApi
from .constants import COMPLETED_PAGE_SIZE, DEFAULT_PAGE_SIZE, DEFAULT_SEARCH_DEBOUNCE_MS, DEFAULT_SORT_KEY
from .errors import BoardError
from .models import Account, CurrentUser, Draft, Task
from .repository import map_accounts, map_drafts, map_page, map_tasks
from .session import SessionContext
from .timers import DebounceTimer


class BoardViewModel:
    """State holder for one signed-in session.

    Parameters
    ----------
    api:
        Endpoint wrappers used for every fetch.
    context:
        The session's current-user context.
    search_debounce:
        Quiet period in seconds before a keyword edit triggers a fetch.
    """

    def __init__(
        self,
        api: BoardApi,
        context: SessionContext,
        *,
        search_debounce: float = DEFAULT_SEARCH_DEBOUNCE_MS / 1000.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        discard_stale_fetches: bool = False,
    ) -> None:
        self.api = api
        self.context = context
        self.page_size = page_size
        self.discard_stale_fetches = discard_stale_fetches

        self.tasks: list[Task] = []
        self.total_tasks = 0
        self.completed_tasks: list[Task] = []
        self.accounts: list[Account] = []
        self.drafts: list[Draft] = []

        self.keyword = ""
        self.sort_key = DEFAULT_SORT_KEY
        self.editing_task_id = ""

        self.loading_tasks = False
        self.loading_user = False
        self.loading_accounts = False
        self.last_error: Optional[BoardError] = None

        self._search = DebounceTimer(search_debounce)
        self._issued: dict[str, int] = defaultdict(int)
        self._applied: dict[str, int] = defaultdict(int)
        self._account_load: Optional[asyncio.Task[None]] = None

        context.subscribe(self._on_user_replaced)

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def user(self) -> CurrentUser:
        return self.context.user

    @property
    def is_admin(self) -> bool:
        return self.context.is_admin

    @property
    def filtered(self) -> list[Task]:
        return views.filter_tasks(self.tasks, self.keyword)

    @property
    def available(self) -> list[Task]:
        return views.available_tasks(self.tasks)

    @property
    def my_pending(self) -> list[views.PendingItem]:
        return views.pending_tasks(self.tasks, self.user)

    @property
    def my_completed(self) -> list[Task]:
        return views.completed_tasks((self.completed_tasks, self.tasks), self.user)

    @property
    def earned_total(self) -> int:
        return views.earned_total(self.my_completed)

    @property
    def admin_count(self) -> int:
        return views.admin_count(self.accounts)

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        for task in self.completed_tasks:
            if task.id == task_id:
                return task
        return None

    def find_draft(self, draft_id: str) -> Optional[Draft]:
        return next((d for d in self.drafts if d.id == draft_id), None)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await asyncio.gather(self.load_current_user(), self.load_tasks())
        await asyncio.gather(self.sync_accounts(), self.load_completed_tasks(), self.load_drafts())

    async def load_current_user(self) -> None:
        self.loading_user = True
        try:
            data = await self.api.fetch_current_user()
            self.context.hydrate(data or {})
        except BoardError as exc:
            self._failed("current user", exc)
        finally:
            self.loading_user = False

    async def load_tasks(self) -> None:
        seq = self._next_seq("tasks")
        self.loading_tasks = True
        try:
            data = await self.api.fetch_tasks(
                keyword=self.keyword.strip(),
                sort=self.sort_key,
                page_size=self.page_size,
            )
            items, total = map_page(data)
            if self._accept("tasks", seq):
                self.tasks = map_tasks(items)
                self.total_tasks = total
        except BoardError as exc:
            self._failed("tasks", exc)
        finally:
            self.loading_tasks = False

    async def load_completed_tasks(self) -> None:
        if not self.user.id:
            self.completed_tasks = []
            return
        seq = self._next_seq("completed")
        try:
            data = await self.api.fetch_tasks(status="completed", assignee="me", page_size=COMPLETED_PAGE_SIZE)
            items, _ = map_page(data)
            if self._accept("completed", seq):
                self.completed_tasks = map_tasks(items)
        except BoardError as exc:
            self._failed("completed tasks", exc)

    async def load_accounts(self) -> None:
        if not self.is_admin:
            self.accounts = []
            return
        seq = self._next_seq("accounts")
        self.loading_accounts = True
        try:
            data = await self.api.list_accounts(page=1, page_size=self.page_size)
            items, _ = map_page(data)
            if self._accept("accounts", seq):
                self.accounts = map_accounts(items)
        except BoardError as exc:
            self._failed("accounts", exc)
        finally:
            self.loading_accounts = False

    async def load_drafts(self) -> None:
        """Admin-only list of saved, unpublished tasks."""
        if not self.is_admin:
            self.drafts = []
            return
        seq = self._next_seq("drafts")
        try:
            data = await self.api.fetch_tasks(status="draft", sort="updated", page_size=self.page_size)
            items, _ = map_page(data)
            if self._accept("drafts", seq):
                self.drafts = map_drafts(items)
        except BoardError as exc:
            self._failed("drafts", exc)

    async def sync_accounts(self) -> None:
        """Load accounts, joining a load the admin-status listener already started."""
        pending = self._account_load
        if pending is not None and not pending.done():
            await asyncio.shield(pending)
            return
        await self.load_accounts()

    async def reload(self, *, completed: bool = False, drafts: bool = False) -> None:
        loads = [self.load_tasks()]
        if completed:
            loads.append(self.load_completed_tasks())
        if drafts:
            loads.append(self.load_drafts())
        await asyncio.gather(*loads)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def set_keyword(self, keyword: str) -> None:
        """Record *keyword* and (re)arm the search debounce."""
        self.keyword = keyword
        self._search.schedule(self.load_tasks)

    @property
    def search_pending(self) -> bool:
        return self._search.pending

    async def flush_search(self) -> None:
        await self._search.flush()

    async def set_sort_key(self, sort_key: str) -> None:
        if sort_key == self.sort_key:
            return
        self.sort_key = sort_key
        await self.load_tasks()

    def start_edit(self, task: Task) -> bool:
        if not self.is_admin or task.is_completed:
            logger.warning("Task {} cannot be edited", task.id)
            return False
        self.editing_task_id = task.id
        return True

    def cancel_edit(self) -> None:
        self.editing_task_id = ""

    async def aclose(self) -> None:
        """Stop pending and in-flight background loads before the transport closes."""
        await self._search.aclose()
        pending = self._account_load
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait([pending])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_user_replaced(self, previous: CurrentUser, current: CurrentUser) -> None:
        if previous.is_admin == current.is_admin:
            return
        if not current.is_admin:
            self.accounts = []
            self.drafts = []
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: the next initialize() loads accounts.
            return
        self._account_load = asyncio.ensure_future(self.load_accounts())

    def _next_seq(self, collection: str) -> int:
        self._issued[collection] += 1
        return self._issued[collection]

    def _accept(self, collection: str, seq: int) -> bool:
        if self.discard_stale_fetches and seq < self._applied[collection]:
            logger.debug("Dropping stale {} response #{} (applied #{})", collection, seq, self._applied[collection])
            return False
        self._applied[collection] = max(seq, self._applied[collection])
        return True

    def _failed(self, what: str, exc: BoardError) -> None:
        self.last_error = exc
        logger.error("Failed to load {}: {} (status {})", what, exc.message, exc.status)
