"""Provide the public `opsboard` package exports."""

from __future__ import annotations

from .client import OpsBoardClient
from .config import Settings, load_settings

__all__ = ["OpsBoardClient", "Settings", "load_settings"]
