"""In-memory development backend for the opsboard REST surface."""

from __future__ import annotations

from .app import create_app
from .store import DevApiError, DevBackend

__all__ = ["create_app", "DevApiError", "DevBackend"]
