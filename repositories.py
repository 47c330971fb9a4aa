"""CRUD accessors over the six snapshot collections.

Reads hand back deep copies, so callers can never mutate stored records in place.
Writes go through :meth:`store.MarketStore.transaction`, which persists the
snapshot and publishes change events once the outermost write completes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, ClassVar, Generic, Iterable, Optional, Type, TypeVar

from errors import ConflictError, NotFoundError, ValidationError
from events import ChangeAction
from schemas import (
    AppNotification,
    ChatMessage,
    Entity,
    EntityKind,
    Order,
    Product,
    Review,
    User,
    parse_entity,
)

if TYPE_CHECKING:
    from store import MarketStore

EntityT = TypeVar("EntityT", bound=Entity)


def _newest_first(rows: Iterable[EntityT], attribute: str) -> list[EntityT]:
    return sorted(rows, key=lambda row: getattr(row, attribute), reverse=True)


class Repository(Generic[EntityT]):
    """Shared create/read/update behaviour for one collection."""

    kind: ClassVar[EntityKind]
    model: ClassVar[Type[Entity]]
    editable_fields: ClassVar[frozenset[str]] = frozenset()
    label: ClassVar[str] = "Record"

    def __init__(self, store: "MarketStore") -> None:
        self._store = store

    @property
    def _rows(self) -> dict[str, EntityT]:
        return self._store.collection(self.kind)  # type: ignore[return-value]

    def _select(self, predicate: Callable[[EntityT], bool]) -> list[EntityT]:
        with self._store.transaction(readonly=True):
            return [row.model_copy(deep=True) for row in self._rows.values() if predicate(row)]

    def list(self) -> list[EntityT]:
        return self._select(lambda row: True)

    def get(self, entity_id: str) -> Optional[EntityT]:
        with self._store.transaction(readonly=True):
            row = self._rows.get(entity_id)
            return row.model_copy(deep=True) if row is not None else None

    def require(self, entity_id: str) -> EntityT:
        row = self.get(entity_id)
        if row is None:
            raise NotFoundError(f"{self.label} {entity_id} was not found.")
        return row

    def count(self) -> int:
        with self._store.transaction(readonly=True):
            return len(self._rows)

    def create(self, entity: EntityT) -> EntityT:
        if not isinstance(entity, self.model):
            raise TypeError(f"Expected {self.model.__name__}, got {type(entity).__name__}.")
        with self._store.transaction():
            if entity.key in self._rows:
                raise ConflictError(f"{self.label} {entity.key} already exists.")
            self._check_create(entity)
            self._rows[entity.key] = entity.model_copy(deep=True)
            self._store.record(self.kind, entity.key, ChangeAction.CREATED)
        return entity.model_copy(deep=True)

    def update(self, entity_id: str, **fields: Any) -> EntityT:
        """Apply a partial update limited to the collection's editable fields."""

        locked = sorted(set(fields) - self.editable_fields)
        if locked:
            raise ValidationError(f"{', '.join(locked)} cannot be edited directly.")
        return self._patch(entity_id, **fields)

    def _patch(self, entity_id: str, **fields: Any) -> EntityT:
        """Write any fields, including derived ones; reserved for cross-entity rules."""

        with self._store.transaction():
            current = self._rows.get(entity_id)
            if current is None:
                raise NotFoundError(f"{self.label} {entity_id} was not found.")
            updated = parse_entity(self.model, {**current.model_dump(), **fields})
            if updated.key != entity_id:
                raise ValidationError(f"{self.label} ids cannot be changed.")
            self._rows[entity_id] = updated  # type: ignore[assignment]
            self._store.record(self.kind, entity_id, ChangeAction.UPDATED)
            return updated.model_copy(deep=True)  # type: ignore[return-value]

    def _check_create(self, entity: EntityT) -> None:
        """Hook for collection-local invariants checked before insertion."""


class DeletableRepository(Repository[EntityT]):
    def delete(self, entity_id: str) -> None:
        with self._store.transaction():
            if entity_id not in self._rows:
                raise NotFoundError(f"{self.label} {entity_id} was not found.")
            del self._rows[entity_id]
            self._store.record(self.kind, entity_id, ChangeAction.DELETED)


class UserRepository(Repository[User]):
    kind = EntityKind.USER
    model = User
    editable_fields = frozenset({"display_name", "bio", "profile_pic"})
    label = "User"

    def _check_create(self, entity: User) -> None:
        if self._find_username(entity.username) is not None:
            raise ConflictError("That username is already taken.")

    def _find_username(self, username: str) -> Optional[User]:
        for row in self._rows.values():
            if row.username == username:
                return row
        return None

    def find_by_username(self, username: str) -> Optional[User]:
        with self._store.transaction(readonly=True):
            row = self._find_username(username.strip())
            return row.model_copy(deep=True) if row is not None else None

    def followers_of(self, uid: str) -> list[User]:
        return self._select(lambda row: uid in row.following)

    def follower_count(self, uid: str) -> int:
        # Scans every user; there is no follower cache.
        with self._store.transaction(readonly=True):
            return sum(1 for row in self._rows.values() if uid in row.following)

    def search(self, term: str = "", *, exclude_uid: Optional[str] = None) -> list[User]:
        needle = term.strip().lower()
        return self._select(
            lambda row: row.uid != exclude_uid and needle in (row.display_name or row.username).lower()
        )


class ProductRepository(DeletableRepository[Product]):
    kind = EntityKind.PRODUCT
    model = Product
    editable_fields = frozenset({"name", "description", "price", "image", "stock", "is_hidden"})
    label = "Product"

    def visible(self) -> list[Product]:
        return self._select(lambda row: not row.is_hidden)

    def search(self, term: str = "") -> list[Product]:
        needle = term.strip().lower()
        return self._select(lambda row: not row.is_hidden and needle in row.name.lower())

    def for_seller(self, seller_uid: str, *, include_hidden: bool = True) -> list[Product]:
        return self._select(lambda row: row.seller_uid == seller_uid and (include_hidden or not row.is_hidden))

    def toggle_hidden(self, product_id: str) -> Product:
        with self._store.transaction():
            product = self.require(product_id)
            return self._patch(product_id, is_hidden=not product.is_hidden)


class OrderRepository(Repository[Order]):
    kind = EntityKind.ORDER
    model = Order
    editable_fields = frozenset({"note", "pickup_location", "pickup_time"})
    label = "Order"

    def for_buyer(self, buyer_uid: str) -> list[Order]:
        return _newest_first(self._select(lambda row: row.buyer_uid == buyer_uid), "created_at")

    def for_seller(self, seller_uid: str) -> list[Order]:
        return _newest_first(self._select(lambda row: row.seller_uid == seller_uid), "created_at")


class ChatRepository(DeletableRepository[ChatMessage]):
    kind = EntityKind.CHAT
    model = ChatMessage
    label = "Message"

    def conversation(self, first_uid: str, second_uid: str) -> list[ChatMessage]:
        """Messages exchanged between two users, oldest first."""

        pair = {first_uid, second_uid}
        rows = self._select(lambda row: {row.sender_uid, row.receiver_uid} == pair and row.sender_uid != row.receiver_uid)
        return sorted(rows, key=lambda row: row.timestamp)


class ReviewRepository(Repository[Review]):
    kind = EntityKind.REVIEW
    model = Review
    label = "Review"

    def for_seller(self, seller_uid: str) -> list[Review]:
        return _newest_first(self._select(lambda row: row.seller_uid == seller_uid), "timestamp")

    def for_order(self, order_id: str) -> list[Review]:
        return self._select(lambda row: row.order_id == order_id)


class NotificationRepository(Repository[AppNotification]):
    kind = EntityKind.NOTIFICATION
    model = AppNotification
    editable_fields = frozenset({"is_read"})
    label = "Notification"

    def for_user(self, user_uid: str) -> list[AppNotification]:
        return _newest_first(self._select(lambda row: row.user_uid == user_uid), "timestamp")

    def unread_count(self, user_uid: str) -> int:
        with self._store.transaction(readonly=True):
            return sum(1 for row in self._rows.values() if row.user_uid == user_uid and not row.is_read)

    def mark_read(self, notification_id: str) -> AppNotification:
        return self._patch(notification_id, is_read=True)

    def mark_all_read(self, user_uid: str) -> int:
        with self._store.transaction():
            unread = [row.id for row in self._rows.values() if row.user_uid == user_uid and not row.is_read]
            for notification_id in unread:
                self._patch(notification_id, is_read=True)
        return len(unread)
