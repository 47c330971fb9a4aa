"""Helper utilities for hashing credentials and encrypting stored order details."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from werkzeug.security import check_password_hash

from config import DEFAULT_BCRYPT_ROUNDS

SENSITIVE_KEY_ENV = "MARKET_SENSITIVE_KEY"
COMMON_PASSWORDS = {"password", "password1", "letmein", "1234", "12345", "123456", "qwerty"}

logger = logging.getLogger(__name__)


def hash_password(password: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Hash the provided password using bcrypt with a per-password salt."""

    if not isinstance(password, str):
        raise TypeError("Password must be a string.")
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, stored_hash: str | bytes | None) -> bool:
    """Validate a plaintext password against a stored bcrypt hash."""

    if not password or not stored_hash:
        return False

    stored_hash_str = stored_hash.decode("utf-8") if isinstance(stored_hash, bytes) else str(stored_hash)

    if stored_hash_str.startswith("scrypt:") or stored_hash_str.startswith("pbkdf2:"):
        return check_password_hash(stored_hash_str, password)

    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash_str.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def validate_password(username: str, password: str) -> str | None:
    """Return an error message if the password fails validation, otherwise None."""

    lowered = password.lower()
    username_lower = username.lower()

    if len(password) < 8:
        return "Password must be at least eight characters."
    if lowered in COMMON_PASSWORDS:
        return "Please choose a less common password."
    if lowered == username_lower:
        return "Password cannot match the username."
    if lowered in {f"{username_lower}{d}" for d in ("123", "1", "01")}:
        return "Password is too closely related to the username."
    if lowered.isdigit():
        return "Password must include letters in addition to numbers."
    if lowered.isalpha():
        return "Password must include at least one number or symbol."
    if re.search(r"(.)\1{2,}", lowered):
        return "Password cannot contain the same character repeated three or more times consecutively."

    return None


def load_sensitive_key(key_file: Optional[Path]) -> bytes:
    """Fetch or lazily generate the symmetric key used for sensitive order fields."""

    env_key = os.getenv(SENSITIVE_KEY_ENV)
    if env_key:
        return env_key.strip().encode("utf-8")
    if key_file is None:
        logger.warning("No key file configured; encrypted order details will not survive a restart.")
        return Fernet.generate_key()
    if key_file.exists():
        return key_file.read_bytes().strip()

    key_bytes = Fernet.generate_key()
    key_file.write_bytes(key_bytes)
    logger.info("Generated a new sensitive data key at %s", key_file)
    return key_bytes


def build_cipher(key: bytes) -> Fernet:
    return Fernet(key)


def encrypt_sensitive_value(cipher: Fernet, value: Optional[str]) -> str:
    """Encrypt a sensitive string using the store's symmetric key."""

    if value is None:
        value = ""
    token = cipher.encrypt(value.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_sensitive_value(cipher: Fernet, value: Optional[str]) -> str:
    """Decrypt a stored sensitive value, returning the plain text."""

    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    if not value:
        return ""

    try:
        return cipher.decrypt(value.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError, TypeError):
        # Snapshots written before encryption hold plaintext; surface them as-is.
        return value
