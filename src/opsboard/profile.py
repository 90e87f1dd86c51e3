"""Self-service profile edits and password changes for the signed-in account."""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from .api import BoardApi
from .constants import BIO_MAX_LENGTH, DISPLAY_NAME_MAX_LENGTH, HEADLINE_MAX_LENGTH, PASSWORD_MIN_LENGTH
from .errors import BoardError, Result, ValidationError
from .models import CurrentUser
from .session import SessionContext


def validate_profile(display_name: str, headline: str, bio: str) -> Optional[ValidationError]:
    if not display_name:
        return ValidationError("Display name is required")
    if len(display_name) > DISPLAY_NAME_MAX_LENGTH:
        return ValidationError("Display name is too long")
    if len(headline) > HEADLINE_MAX_LENGTH:
        return ValidationError("Headline is too long")
    if len(bio) > BIO_MAX_LENGTH:
        return ValidationError("Bio is too long")
    return None


def validate_password_change(current: str, new: str) -> Optional[ValidationError]:
    if not current.strip() or not new.strip():
        return ValidationError("Both passwords are required")
    if len(new) < PASSWORD_MIN_LENGTH:
        return ValidationError(f"New password must be at least {PASSWORD_MIN_LENGTH} characters")
    return None


class ProfileService:
    """Edit the signed-in account's own record.

    A successful profile update replaces the session's :class:`CurrentUser`
    with the server's copy, so role listeners see a consistent record.
    """

    def __init__(self, api: BoardApi, context: SessionContext) -> None:
        self.api = api
        self.context = context

    async def update_profile(self, display_name: str, headline: str = "", bio: str = "") -> Result[CurrentUser]:
        display_name, headline, bio = display_name.strip(), headline.strip(), bio.strip()
        error = self._signed_in() or validate_profile(display_name, headline, bio)
        if error is not None:
            return self._refuse("profile update", error)
        try:
            data = await self.api.update_profile(display_name, headline, bio)
        except BoardError as exc:
            return self._refuse("profile update", exc)
        user = self.context.hydrate(data or {})
        logger.info("Updated profile of {}", user.username)
        return Result.success(user)

    async def change_password(self, current_password: str, new_password: str) -> Result[None]:
        error = self._signed_in() or validate_password_change(current_password, new_password)
        if error is not None:
            return self._refuse("password change", error)
        try:
            await self.api.change_password(current_password, new_password)
        except BoardError as exc:
            return self._refuse("password change", exc)
        logger.info("Changed password of {}", self.context.user.username)
        return Result.success(None)

    def _signed_in(self) -> Optional[BoardError]:
        if not self.context.user.signed_in:
            return ValidationError("Sign in before editing your profile", 401)
        return None

    @staticmethod
    def _refuse(what: str, error: BoardError) -> Result[Any]:
        logger.warning("{} failed: {} (status {})", what, error.message, error.status)
        return Result.failure(error)
