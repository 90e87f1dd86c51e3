"""Load opsboard settings from defaults, ``<state_dir>/config.yaml`` and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_BASE_URL,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SEARCH_DEBOUNCE_MS,
    DEFAULT_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error

ENV_PREFIX = "OPSBOARD"


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_float(raw: Any, default: float) -> float:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _as_int(raw: Any, default: int) -> int:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _as_bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def check_base_url(raw: Any) -> str:
    url = str(raw).strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        raise ConfigError(f"base_url must be an http(s) URL, got {url!r}")
    return url


def default_state_dir() -> Path:
    raw = os.getenv(_k("STATE_DIR"))
    if raw and raw.strip():
        return Path(raw).expanduser()
    return Path.home() / STATE_DIR_NAME


@dataclass(frozen=True)
class Settings:
    base_url: str = DEFAULT_BASE_URL
    state_dir: Path = Path(STATE_DIR_NAME)
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    search_debounce_ms: int = DEFAULT_SEARCH_DEBOUNCE_MS
    discard_stale_fetches: bool = False
    page_size: int = DEFAULT_PAGE_SIZE
    log_level: str = "INFO"
    log_to_file: bool = False

    @property
    def search_debounce_seconds(self) -> float:
        return max(self.search_debounce_ms, 0) / 1000.0

    def with_overrides(self, **changes: Any) -> "Settings":
        """Return a copy with every non-``None`` override applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def load_config_file(state_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        state_dir: Directory holding ``config.yaml``.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    return _load_data_with_error(state_dir / CONFIG_FILE, {})


def load_settings(state_dir: Optional[Path] = None) -> Settings:
    """Resolve settings: defaults < config.yaml < environment.

    A file that cannot be parsed is logged and ignored. A ``base_url`` that
    is not an http(s) URL raises :class:`ConfigError`.
    """
    state_dir = (state_dir or default_state_dir()).expanduser()
    data, err = load_config_file(state_dir)
    if err:
        logger.warning("Ignoring unreadable config {}: {}", state_dir / CONFIG_FILE, err)
        data = {}

    base = Settings(state_dir=state_dir)
    base_url = _get_nested(data, "api", "base_url") or base.base_url
    timeout = _as_float(_get_nested(data, "api", "timeout_seconds"), base.timeout_seconds)
    debounce = _as_int(_get_nested(data, "board", "search_debounce_ms"), base.search_debounce_ms)
    discard_stale = _as_bool(_get_nested(data, "board", "discard_stale_fetches"), base.discard_stale_fetches)
    page_size = _as_int(_get_nested(data, "board", "page_size"), base.page_size)
    log_level = _get_nested(data, "logging", "level") or base.log_level
    log_to_file = _as_bool(_get_nested(data, "logging", "file"), base.log_to_file)

    base_url = os.getenv(_k("BASE_URL")) or base_url
    timeout = _as_float(os.getenv(_k("TIMEOUT")), timeout)
    debounce = _as_int(os.getenv(_k("SEARCH_DEBOUNCE_MS")), debounce)
    log_level = os.getenv(_k("LOG_LEVEL")) or log_level

    return Settings(
        base_url=check_base_url(base_url),
        state_dir=state_dir,
        timeout_seconds=timeout,
        search_debounce_ms=debounce,
        discard_stale_fetches=discard_stale,
        page_size=page_size if page_size > 0 else base.page_size,
        log_level=str(log_level).upper(),
        log_to_file=log_to_file,
    )
