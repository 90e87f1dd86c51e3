from __future__ import annotations

from dataclasses import replace

from loguru import logger

from .api import BoardApi
from .board import BoardViewModel
from .errors import BoardError
from .models import Role


class AccountAdminController:
    """Grant or revoke the admin role from the account list."""

    def __init__(self, api: BoardApi, board: BoardViewModel) -> None:
        self.api = api
        self.board = board

    async def toggle_admin(self, account_id: str) -> Role:
        """Flip *account_id* between member and admin; return its resulting role.

        An unknown id is a no-op that returns the caller's own role. The
        account list is re-fetched afterwards whatever the outcome.
        """
        account = next((a for a in self.board.accounts if a.id == account_id), None)
        if account is None:
            return self.board.context.role

        target = account.role.inverse()
        try:
            await self.api.toggle_admin(account_id, target is Role.ADMIN)
        except BoardError as exc:
            logger.warning("Toggling admin for {} failed: {} (status {})", account_id, exc.message, exc.status)
            await self.board.load_accounts()
            return account.role

        self.board.accounts = [
            replace(a, role=target) if a.id == account_id else a for a in self.board.accounts
        ]
        if self.board.user.id == account_id:
            self.board.context.set_role(target)
        logger.debug("Account {} is now {}; reconciling account list", account_id, target.value)
        await self.board.load_accounts()
        return target
