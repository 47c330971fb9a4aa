"""Persistence codec: the snapshot as one JSON text blob.

Blob layout (version 1)::

    {"version": 1, "users": [...], "products": [...], "orders": [...],
     "chats": [...], "reviews": [...], "notifications": [...]}

Untagged blobs are version 0, the shape the browser app wrote before hashing and
encryption existed. They are upgraded on load by the steps in ``MIGRATIONS``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict

import pydantic
from cryptography.fernet import Fernet

from config import DEFAULT_BCRYPT_ROUNDS
from errors import CorruptSnapshotError
from schemas import EntityKind, Snapshot, is_allowed_image
from security import decrypt_sensitive_value, encrypt_sensitive_value, hash_password

SCHEMA_VERSION = 1
COLLECTION_KEYS = tuple(kind.value for kind in EntityKind)
SENSITIVE_ORDER_FIELDS = ("buyerName", "pickupLocation", "note")
UNAVAILABLE_PHOTO_TEXT = "[Photo no longer available]"

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]


class SnapshotCodec:
    """Serialize and deserialize :class:`schemas.Snapshot` blobs."""

    def __init__(self, cipher: Fernet, *, bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
        self._cipher = cipher
        self._bcrypt_rounds = bcrypt_rounds

    def encode(self, snapshot: Snapshot) -> str:
        payload: Payload = {"version": SCHEMA_VERSION}
        payload.update(snapshot.model_dump(mode="json", by_alias=True))
        for order in payload["orders"]:
            for field in SENSITIVE_ORDER_FIELDS:
                order[field] = encrypt_sensitive_value(self._cipher, order.get(field))
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))

    def decode(self, blob: str) -> tuple[Snapshot, int]:
        """Return the snapshot and the schema version the blob was written with."""

        try:
            payload = json.loads(blob)
        except json.JSONDecodeError as exc:
            raise CorruptSnapshotError(f"Stored snapshot is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise CorruptSnapshotError("Stored snapshot must be a JSON object.")

        source_version = payload.get("version", 0)
        if not isinstance(source_version, int) or source_version < 0:
            raise CorruptSnapshotError(f"Unrecognised snapshot version {source_version!r}.")
        if source_version > SCHEMA_VERSION:
            raise CorruptSnapshotError(
                f"Snapshot version {source_version} is newer than supported version {SCHEMA_VERSION}."
            )

        _check_rows(payload, source_version)

        for version in range(source_version, SCHEMA_VERSION):
            payload = MIGRATIONS[version](payload, self)
            logger.info("Upgraded snapshot from version %s to %s", version, version + 1)

        for order in payload.get("orders") or []:
            for field in SENSITIVE_ORDER_FIELDS:
                if field in order:
                    order[field] = decrypt_sensitive_value(self._cipher, order[field])

        try:
            snapshot = Snapshot.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise CorruptSnapshotError(f"Stored snapshot failed validation: {exc}") from exc
        return snapshot, source_version

    def hash_legacy_password(self, password: str) -> str:
        return hash_password(password, rounds=self._bcrypt_rounds)


def _check_rows(payload: Payload, source_version: int) -> None:
    """Every collection must be a list of objects; version 0 may also omit or null them."""

    for key in COLLECTION_KEYS:
        rows = payload.get(key)
        if isinstance(rows, list):
            for index, row in enumerate(rows):
                if not isinstance(row, dict):
                    raise CorruptSnapshotError(f"Entry {key}[{index}] must be a JSON object.")
        elif rows is not None and source_version >= 1:
            raise CorruptSnapshotError(f"Collection {key!r} must be a JSON array.")


# --------------------------------------------------------------------------------------
# Migrations
# --------------------------------------------------------------------------------------


def _upgrade_v0(payload: Payload, codec: SnapshotCodec) -> Payload:
    """Hash passwords, fill absent collections, clamp stock and clear unsupported images."""

    for key in COLLECTION_KEYS:
        if not isinstance(payload.get(key), list):
            payload[key] = []

    for user in payload["users"]:
        plaintext = user.pop("password", None)
        if "passwordHash" not in user:
            user["passwordHash"] = codec.hash_legacy_password(str(plaintext)) if plaintext else ""
        user.setdefault("friends", [])
        user.setdefault("following", [])
        _drop_legacy_image(user, "profilePic", "User", user.get("uid"))

    for product in payload["products"]:
        stock = product.get("stock")
        if isinstance(stock, (int, float)) and stock < 0:
            logger.warning("Product %s had negative stock %s; reset to 0", product.get("id"), stock)
            product["stock"] = 0
        _drop_legacy_image(product, "image", "Product", product.get("id"))

    for message in payload["chats"]:
        dropped = _drop_legacy_image(message, "image", "Message", message.get("id"))
        if dropped and not message.get("text"):
            message["text"] = UNAVAILABLE_PHOTO_TEXT

    payload["version"] = 1
    return payload


def _drop_legacy_image(row: Payload, field: str, label: str, row_id: Any) -> bool:
    if field not in row or is_allowed_image(row[field]):
        return False
    logger.warning("%s %s had an unsupported image; cleared", label, row_id)
    row[field] = ""
    return True


MIGRATIONS: Dict[int, Callable[[Payload, SnapshotCodec], Payload]] = {
    0: _upgrade_v0,
}
