"""
JobLedger Settings

Environment-driven configuration for:
- Record store location (SQLite path or Postgres DSN)
- Edit lock time-to-live
- Undo window
- Change-order cost code marker
- Who may unlock invoices in locked statuses
"""

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def _env_list(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    return frozenset(value.strip() for value in raw.split(",") if value.strip())


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings.

    lock_ttl_seconds is a policy knob, not a correctness guarantee: the
    version check on save is what prevents lost updates.
    """
    db_path: str = "jobledger.db"
    database_url: Optional[str] = None
    lock_ttl_seconds: int = 300
    undo_window_seconds: int = 30
    co_cost_code_suffix: str = "C"
    unlock_users: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be positive")
        if self.undo_window_seconds < 0:
            raise ValueError("undo_window_seconds cannot be negative")
        if not self.co_cost_code_suffix:
            raise ValueError("co_cost_code_suffix cannot be empty")

    def can_unlock(self, user: str) -> bool:
        if not self.unlock_users:
            return True
        return user in self.unlock_users


def load_settings() -> Settings:
    return Settings(
        db_path=os.getenv("JOBLEDGER_DB_PATH", "jobledger.db"),
        database_url=os.getenv("DATABASE_URL") or None,
        lock_ttl_seconds=_env_int("JOBLEDGER_LOCK_TTL_SECONDS", 300),
        undo_window_seconds=_env_int("JOBLEDGER_UNDO_WINDOW_SECONDS", 30),
        co_cost_code_suffix=os.getenv("JOBLEDGER_CO_COST_CODE_SUFFIX", "C").strip() or "C",
        unlock_users=_env_list("JOBLEDGER_UNLOCK_USERS"),
    )


_SETTINGS: Optional[Settings] = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = load_settings()
    return _SETTINGS


def reset_settings() -> None:
    global _SETTINGS
    _SETTINGS = None
