"""Environment-driven settings for the marketplace store."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_DB_PATH = BASE_DIR / "market.db"
DEFAULT_STORAGE_KEY = "SUE_AHHAHN_DB"
DEFAULT_SENSITIVE_KEY_FILE = BASE_DIR / "sensitive_key.txt"
DEFAULT_BCRYPT_ROUNDS = 12
DEFAULT_RATING = 0.0


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a whole number.") from exc


@dataclass(frozen=True)
class StoreSettings:
    """Everything needed to open a :class:`store.MarketStore`."""

    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    storage_key: str = DEFAULT_STORAGE_KEY
    sensitive_key_file: Optional[Path] = DEFAULT_SENSITIVE_KEY_FILE
    bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS
    default_rating: float = DEFAULT_RATING

    @classmethod
    def from_env(cls) -> "StoreSettings":
        key_file = os.getenv("MARKET_SENSITIVE_KEY_FILE")
        return cls(
            database_url=os.getenv("MARKET_DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}",
            storage_key=os.getenv("MARKET_STORAGE_KEY") or DEFAULT_STORAGE_KEY,
            sensitive_key_file=Path(key_file) if key_file else DEFAULT_SENSITIVE_KEY_FILE,
            bcrypt_rounds=_env_int("MARKET_BCRYPT_ROUNDS", DEFAULT_BCRYPT_ROUNDS),
        )
