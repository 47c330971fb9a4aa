"""Exceptions raised by the marketplace store."""

from __future__ import annotations


class MarketError(Exception):
    """Base class for every failure the store surfaces to callers."""


class ValidationError(MarketError, ValueError):
    """Input was missing or malformed; nothing was written."""


class NotFoundError(MarketError, LookupError):
    """The referenced entity does not exist."""


class ConflictError(MarketError):
    """The write collides with existing data (duplicate id, username or review)."""


class InvalidTransition(MarketError):
    """An order status change that the order state machine does not allow."""


class PermissionDenied(MarketError):
    """The acting user is not allowed to perform the change."""


class AuthenticationError(MarketError):
    """No signed-in user, or the credentials did not match."""


class CorruptSnapshotError(MarketError):
    """The stored snapshot could not be decoded."""
