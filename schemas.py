"""Entity shapes stored in the marketplace snapshot.

Each model below maps to one collection of the snapshot (see :class:`EntityKind`).
Attributes are snake_case in Python and camelCase in the persisted blob, matching
the keys the browser app has always written (``sellerUid``, ``isHidden`` ...).
Entities reference each other by id only; nothing here resolves those ids.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from errors import ValidationError

ALLOWED_IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/jpg"})
_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[^;,]+)(?:;[^,]*)?,")

ModelT = TypeVar("ModelT", bound=BaseModel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Return a collection-unique identifier such as ``ord-3f2a...``."""

    return f"{prefix}-{uuid4().hex}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_image_reference(value: Optional[str]) -> Optional[str]:
    """Accept PNG/JPEG data URLs or plain links; reject every other payload."""

    if not value:
        return value
    match = _DATA_URL_PATTERN.match(value)
    if match:
        if match.group("mime").lower() not in ALLOWED_IMAGE_TYPES:
            raise ValueError("Please upload a PNG or JPG image.")
        return value
    if value.startswith(("http://", "https://", "/")):
        return value
    raise ValueError("Images must be an uploaded PNG/JPG or a link.")


def is_allowed_image(value: object) -> bool:
    if not isinstance(value, str):
        return value is None
    try:
        _check_image_reference(value)
    except ValueError:
        return False
    return True


class EntityKind(str, Enum):
    """The six snapshot collections; values double as the blob's top-level keys."""

    USER = "users"
    PRODUCT = "products"
    ORDER = "orders"
    CHAT = "chats"
    REVIEW = "reviews"
    NOTIFICATION = "notifications"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    DELIVERING = "DELIVERING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    @property
    def next_status(self) -> Optional["OrderStatus"]:
        """The single forward step from this status, if any."""

        return _FORWARD_STEPS.get(self)

    def can_transition_to(self, target: "OrderStatus") -> bool:
        if self.is_terminal:
            return False
        return target is OrderStatus.CANCELLED or target is self.next_status


_FORWARD_STEPS = {
    OrderStatus.PENDING: OrderStatus.ACCEPTED,
    OrderStatus.ACCEPTED: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.DELIVERING,
    OrderStatus.DELIVERING: OrderStatus.COMPLETED,
}


class NotificationType(str, Enum):
    ORDER = "ORDER"
    CHAT = "CHAT"
    SYSTEM = "SYSTEM"


class Entity(BaseModel):
    """Base for every stored record."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    key_field: ClassVar[str] = "id"

    @property
    def key(self) -> str:
        return getattr(self, self.key_field)


class User(Entity):
    key_field: ClassVar[str] = "uid"

    uid: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password_hash: str = ""
    display_name: str = ""
    profile_pic: str = ""
    bio: str = ""
    friends: List[str] = Field(default_factory=list)
    following: List[str] = Field(default_factory=list)
    rating: float = Field(0.0, ge=0, le=5)
    review_count: int = Field(0, ge=0)

    @field_validator("profile_pic")
    @classmethod
    def check_profile_pic(cls, value: str) -> str:
        return _check_image_reference(value) or ""


class Product(Entity):
    id: str = Field(..., min_length=1)
    seller_uid: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0, allow_inf_nan=False)
    image: str = ""
    stock: int = Field(0, ge=0)
    is_hidden: bool = False

    @field_validator("image")
    @classmethod
    def check_image(cls, value: str) -> str:
        return _check_image_reference(value) or ""


class Order(Entity):
    id: str = Field(..., min_length=1)
    buyer_uid: str = Field(..., min_length=1)
    seller_uid: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    product_name: str = ""
    quantity: int = Field(..., ge=1)
    total_price: float = Field(..., ge=0, allow_inf_nan=False)
    note: str = ""
    buyer_name: str = ""
    pickup_location: str = ""
    pickup_time: datetime = Field(default_factory=utcnow)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    has_reviewed: bool = False

    @field_validator("pickup_time", "created_at")
    @classmethod
    def coerce_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ChatMessage(Entity):
    id: str = Field(..., min_length=1)
    sender_uid: str = Field(..., min_length=1)
    receiver_uid: str = Field(..., min_length=1)
    text: Optional[str] = None
    image: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("text")
    @classmethod
    def blank_text_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @field_validator("image")
    @classmethod
    def check_image(cls, value: Optional[str]) -> Optional[str]:
        return _check_image_reference(value) or None

    @field_validator("timestamp")
    @classmethod
    def coerce_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def require_content(self) -> "ChatMessage":
        if not self.text and not self.image:
            raise ValueError("A message needs text or an image.")
        return self


class Review(Entity):
    id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
    seller_uid: str = Field(..., min_length=1)
    buyer_uid: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    reply: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def coerce_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class AppNotification(Entity):
    id: str = Field(..., min_length=1)
    user_uid: str = Field(..., min_length=1)
    title: str
    message: str = ""
    type: NotificationType = NotificationType.SYSTEM
    is_read: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def coerce_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


ENTITY_MODELS: dict[EntityKind, Type[Entity]] = {
    EntityKind.USER: User,
    EntityKind.PRODUCT: Product,
    EntityKind.ORDER: Order,
    EntityKind.CHAT: ChatMessage,
    EntityKind.REVIEW: Review,
    EntityKind.NOTIFICATION: AppNotification,
}


class Snapshot(BaseModel):
    """The full aggregate: all six collections at one point in time."""

    model_config = ConfigDict(extra="ignore")

    users: List[User] = Field(default_factory=list)
    products: List[Product] = Field(default_factory=list)
    orders: List[Order] = Field(default_factory=list)
    chats: List[ChatMessage] = Field(default_factory=list)
    reviews: List[Review] = Field(default_factory=list)
    notifications: List[AppNotification] = Field(default_factory=list)

    def collection(self, kind: EntityKind) -> list[Entity]:
        return getattr(self, kind.value)


def _describe_errors(exc: pydantic.ValidationError) -> str:
    details = exc.errors()
    if not details:
        return "Invalid value."
    first = details[0]
    message = str(first.get("msg") or "Invalid value.")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {message}" if location else message


def parse_entity(model: Type[ModelT], data: Mapping[str, Any]) -> ModelT:
    """Validate ``data`` into ``model``, raising the store's ValidationError."""

    try:
        return model.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        raise ValidationError(_describe_errors(exc)) from exc
