"""Durable access/refresh token pair.

The pair is read once when the store is constructed; afterwards ``get`` is a
pure in-memory read. ``set`` and ``clear`` write through to disk before
returning.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .constants import CREDENTIALS_FILE
from .io_utils import _atomic_write_json, _load_data_with_error, _remove_file


@dataclass(frozen=True)
class CredentialPair:
    access_token: str = ""
    refresh_token: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "CredentialPair":
        """Build a pair from a login/refresh response (camelCase keys)."""
        if not isinstance(payload, Mapping):
            return cls()
        access = payload.get("accessToken")
        refresh = payload.get("refreshToken")
        return cls(
            access_token=access if isinstance(access, str) else "",
            refresh_token=refresh if isinstance(refresh, str) else "",
        )


class CredentialStore:
    """Process-wide holder of the token pair, persisted as a JSON record.

    Parameters
    ----------
    state_dir:
        Directory that holds ``credentials.json``. ``None`` keeps the pair in
        memory only.
    """

    def __init__(self, state_dir: Optional[Path] = None) -> None:
        self._path = state_dir / CREDENTIALS_FILE if state_dir is not None else None
        self._pair = self._load()

    def _load(self) -> CredentialPair:
        if self._path is None:
            return CredentialPair()
        data, err = _load_data_with_error(self._path, {})
        if err:
            logger.warning("Discarding malformed credentials record: {}", err)
            return CredentialPair()
        access = data.get("accessToken")
        refresh = data.get("refreshToken")
        if not isinstance(access, str) or not isinstance(refresh, str):
            if data:
                logger.warning("Discarding credentials record with unexpected shape")
            return CredentialPair()
        pair = CredentialPair(access, refresh)
        return pair if pair.complete else CredentialPair()

    def _persist(self) -> None:
        if self._path is None:
            return
        if not self._pair.complete:
            _remove_file(self._path)
            return
        _atomic_write_json(
            self._path,
            {"accessToken": self._pair.access_token, "refreshToken": self._pair.refresh_token},
        )

    def set(self, pair: CredentialPair) -> None:
        """Store *pair*; an incomplete pair clears both tokens."""
        self._pair = pair if pair.complete else CredentialPair()
        self._persist()

    def clear(self) -> None:
        self._pair = CredentialPair()
        self._persist()

    def get(self) -> CredentialPair:
        return self._pair

    def is_authenticated(self) -> bool:
        return self._pair.complete

    @property
    def access_token(self) -> str:
        return self._pair.access_token

    @property
    def refresh_token(self) -> str:
        return self._pair.refresh_token
