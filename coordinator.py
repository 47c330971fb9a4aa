"""Rules that touch more than one collection.

Each public method here is a single atomic store mutation: the primary write, its
side effects on other collections (stock, ratings, follow lists) and the
notification addressed to the counterparty either all land or none do.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Union

from errors import ConflictError, InvalidTransition, NotFoundError, PermissionDenied, ValidationError
from schemas import (
    AppNotification,
    ChatMessage,
    NotificationType,
    Order,
    OrderStatus,
    Product,
    Review,
    User,
    new_id,
    parse_entity,
    utcnow,
)
from security import hash_password, validate_password, verify_password
from store import MarketStore

DEFAULT_BIO = "Hi! I'm new to Sue AhHahn."
CHAT_PREVIEW_LENGTH = 30

STATUS_LABELS = {
    OrderStatus.ACCEPTED: "Order accepted",
    OrderStatus.PREPARING: "Preparing your food",
    OrderStatus.DELIVERING: "Out for delivery",
    OrderStatus.COMPLETED: "Delivered",
    OrderStatus.CANCELLED: "Order cancelled",
}

logger = logging.getLogger(__name__)


def _as_status(value: Union[OrderStatus, str]) -> OrderStatus:
    try:
        return OrderStatus(str(value.value if isinstance(value, OrderStatus) else value).upper())
    except ValueError as exc:
        raise ValidationError(f"Unknown order status {value!r}.") from exc


class MarketCoordinator:
    def __init__(self, store: MarketStore) -> None:
        self.store = store

    # ----------------------------------------------------------------------------------
    # Accounts
    # ----------------------------------------------------------------------------------

    def register_user(
        self,
        username: str,
        password: str,
        *,
        display_name: str = "",
        profile_pic: str = "",
        bio: str = "",
    ) -> User:
        """Create an account with a bcrypt-hashed password."""

        username = (username or "").strip()
        password = password or ""
        if not username or not password:
            raise ValidationError("Username and password are required.")
        if self.store.users.find_by_username(username):
            raise ConflictError("That username is already taken.")
        password_error = validate_password(username, password)
        if password_error:
            raise ValidationError(password_error)

        user = parse_entity(
            User,
            {
                "uid": new_id("u"),
                "username": username,
                "password_hash": hash_password(password, rounds=self.store.settings.bcrypt_rounds),
                "display_name": (display_name or "").strip() or username,
                "profile_pic": profile_pic or "",
                "bio": (bio or "").strip() or DEFAULT_BIO,
                "rating": self.store.settings.default_rating,
            },
        )
        # UserRepository.create re-checks the username under the store lock.
        created = self.store.users.create(user)
        logger.info("Registered user %s", created.uid)
        return created

    def authenticate(self, username: str, password: str) -> Optional[User]:
        user = self.store.users.find_by_username(username or "") if username else None
        if not user or not verify_password(password, user.password_hash):
            return None
        return user

    def update_profile(self, uid: str, **fields: Any) -> User:
        return self.store.users.update(uid, **fields)

    def toggle_follow(self, follower_uid: str, target_uid: str) -> bool:
        """Follow or unfollow ``target_uid``; returns True when now following."""

        if follower_uid == target_uid:
            raise ValidationError("You cannot follow yourself.")
        with self.store.transaction():
            follower = self.store.users.require(follower_uid)
            self.store.users.require(target_uid)
            following = list(follower.following)
            now_following = target_uid not in following
            if now_following:
                following.append(target_uid)
            else:
                following = [uid for uid in following if uid != target_uid]
            self.store.users._patch(follower_uid, following=following)
            if now_following:
                self._notify(
                    target_uid,
                    "New follower",
                    f"{follower.display_name or follower.username} started following you.",
                    NotificationType.SYSTEM,
                )
        return now_following

    # ----------------------------------------------------------------------------------
    # Products
    # ----------------------------------------------------------------------------------

    def list_product(
        self,
        seller_uid: str,
        *,
        name: str,
        price: float,
        stock: int,
        image: str,
        description: str = "",
    ) -> Product:
        if not image:
            raise ValidationError("Please add a photo of the dish.")
        with self.store.transaction():
            self.store.users.require(seller_uid)
            product = parse_entity(
                Product,
                {
                    "id": new_id("prod"),
                    "seller_uid": seller_uid,
                    "name": name,
                    "description": description,
                    "price": price,
                    "image": image,
                    "stock": stock,
                    "is_hidden": False,
                },
            )
            return self.store.products.create(product)

    def delete_product(self, product_id: str, actor_uid: Optional[str] = None) -> None:
        """Remove a listing. Orders that reference it keep their snapshotted name."""

        with self.store.transaction():
            product = self.store.products.require(product_id)
            if actor_uid is not None and actor_uid != product.seller_uid:
                raise PermissionDenied("You can only manage products that belong to you.")
            self.store.products.delete(product_id)

    # ----------------------------------------------------------------------------------
    # Orders
    # ----------------------------------------------------------------------------------

    def place_order(
        self,
        buyer_uid: str,
        product_id: str,
        quantity: int,
        *,
        note: str = "",
        buyer_name: str = "",
        pickup_location: str = "",
        pickup_time: Optional[Union[datetime, str]] = None,
    ) -> Order:
        """Create a PENDING order, take its quantity out of stock and tell the seller."""

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Please choose a valid quantity.")

        with self.store.transaction():
            buyer = self.store.users.require(buyer_uid)
            product = self.store.products.require(product_id)
            if product.is_hidden:
                raise ValidationError("This item is not available right now.")
            if product.stock <= 0:
                raise ValidationError("This item is currently sold out.")
            if quantity > product.stock:
                raise ValidationError(f"Only {product.stock} left in stock.")

            now = utcnow()
            order = parse_entity(
                Order,
                {
                    "id": new_id("ord"),
                    "buyer_uid": buyer.uid,
                    "seller_uid": product.seller_uid,
                    "product_id": product.id,
                    "product_name": product.name,
                    "quantity": quantity,
                    "total_price": product.price * quantity,
                    "note": note or "",
                    "buyer_name": (buyer_name or "").strip() or buyer.display_name or buyer.username,
                    "pickup_location": pickup_location or "",
                    "pickup_time": pickup_time or now,
                    "status": OrderStatus.PENDING,
                    "created_at": now,
                    "has_reviewed": False,
                },
            )
            created = self.store.orders.create(order)
            self.store.products._patch(product.id, stock=product.stock - quantity)
            self._notify(
                product.seller_uid,
                "New order!",
                f"{created.buyer_name} ordered {product.name} x {quantity}",
                NotificationType.ORDER,
            )
        return created

    def advance_order(
        self,
        order_id: str,
        status: Union[OrderStatus, str],
        actor_uid: Optional[str] = None,
    ) -> Order:
        """Move an order one step forward, or cancel it.

        Forward steps belong to the seller. Cancellation is open to the seller from
        any non-terminal status and to the buyer while the order is still PENDING;
        a cancelled order's quantity goes back into stock.
        """

        target = _as_status(status)
        with self.store.transaction():
            order = self.store.orders.require(order_id)
            if not order.status.can_transition_to(target):
                raise InvalidTransition(f"Cannot move an order from {order.status.value} to {target.value}.")
            if actor_uid is not None:
                self._check_status_actor(order, target, actor_uid)

            updated = self.store.orders._patch(order_id, status=target)
            if target is OrderStatus.CANCELLED:
                self._restock(order)

            label = STATUS_LABELS[target]
            self._notify(
                order.buyer_uid,
                f"Order update: {label}",
                f"Your order of {order.product_name} is now at: {label.lower()}.",
                NotificationType.ORDER,
            )
        return updated

    def cancel_order(self, order_id: str, actor_uid: Optional[str] = None) -> Order:
        return self.advance_order(order_id, OrderStatus.CANCELLED, actor_uid)

    def _check_status_actor(self, order: Order, target: OrderStatus, actor_uid: str) -> None:
        if actor_uid == order.seller_uid:
            return
        if target is OrderStatus.CANCELLED and actor_uid == order.buyer_uid:
            if order.status is not OrderStatus.PENDING:
                raise PermissionDenied("Only pending orders can be cancelled by the buyer.")
            return
        raise PermissionDenied("Only the seller can update this order.")

    def _restock(self, order: Order) -> None:
        product = self.store.products.get(order.product_id)
        if product is None:
            logger.info("Order %s cancelled after product %s was removed", order.id, order.product_id)
            return
        self.store.products._patch(product.id, stock=product.stock + order.quantity)

    # ----------------------------------------------------------------------------------
    # Reviews
    # ----------------------------------------------------------------------------------

    def submit_review(self, order_id: str, buyer_uid: str, rating: int, comment: str = "") -> Review:
        """Review a completed order once and refresh the seller's average rating."""

        with self.store.transaction():
            order = self.store.orders.require(order_id)
            if order.buyer_uid != buyer_uid:
                raise PermissionDenied("Only the buyer can review this order.")
            if order.status is not OrderStatus.COMPLETED:
                raise ValidationError("Orders can be reviewed once they are completed.")
            if order.has_reviewed or self.store.reviews.for_order(order_id):
                raise ConflictError("This order has already been reviewed.")

            review = parse_entity(
                Review,
                {
                    "id": new_id("rev"),
                    "order_id": order.id,
                    "seller_uid": order.seller_uid,
                    "buyer_uid": buyer_uid,
                    "rating": rating,
                    "comment": comment or "",
                    "timestamp": utcnow(),
                },
            )
            created = self.store.reviews.create(review)
            self.refresh_seller_rating(order.seller_uid)
            self.store.orders._patch(order.id, has_reviewed=True)
        return created

    def refresh_seller_rating(self, seller_uid: str) -> Optional[User]:
        """Recompute the derived rating and review count from the seller's reviews."""

        with self.store.transaction():
            if self.store.users.get(seller_uid) is None:
                logger.warning("Skipping rating refresh for missing seller %s", seller_uid)
                return None
            ratings = [review.rating for review in self.store.reviews.for_seller(seller_uid)]
            rating = sum(ratings) / len(ratings) if ratings else self.store.settings.default_rating
            return self.store.users._patch(seller_uid, rating=rating, review_count=len(ratings))

    def reply_to_review(self, review_id: str, seller_uid: str, reply: str) -> Review:
        reply = (reply or "").strip()
        if not reply:
            raise ValidationError("Reply cannot be empty.")
        with self.store.transaction():
            review = self.store.reviews.require(review_id)
            if review.seller_uid != seller_uid:
                raise PermissionDenied("Only the seller can reply to this review.")
            return self.store.reviews._patch(review_id, reply=reply)

    # ----------------------------------------------------------------------------------
    # Chat
    # ----------------------------------------------------------------------------------

    def send_chat(
        self,
        sender_uid: str,
        receiver_uid: str,
        *,
        text: Optional[str] = None,
        image: Optional[str] = None,
    ) -> ChatMessage:
        if sender_uid == receiver_uid:
            raise ValidationError("You cannot message yourself.")
        with self.store.transaction():
            sender = self.store.users.require(sender_uid)
            self.store.users.require(receiver_uid)
            message = parse_entity(
                ChatMessage,
                {
                    "id": new_id("msg"),
                    "sender_uid": sender_uid,
                    "receiver_uid": receiver_uid,
                    "text": text,
                    "image": image,
                    "timestamp": utcnow(),
                },
            )
            created = self.store.chats.create(message)
            preview = "Sent you a photo" if created.image else (created.text or "")[:CHAT_PREVIEW_LENGTH]
            self._notify(
                receiver_uid,
                f"New message from {sender.display_name or sender.username}",
                preview,
                NotificationType.CHAT,
            )
        return created

    def delete_chat(self, message_id: str, actor_uid: str) -> None:
        with self.store.transaction():
            message = self.store.chats.get(message_id)
            if message is None:
                raise NotFoundError(f"Message {message_id} was not found.")
            if message.sender_uid != actor_uid:
                raise PermissionDenied("You can only delete your own messages.")
            self.store.chats.delete(message_id)

    # ----------------------------------------------------------------------------------
    # Notifications
    # ----------------------------------------------------------------------------------

    def _notify(self, user_uid: str, title: str, message: str, kind: NotificationType) -> AppNotification:
        notification = parse_entity(
            AppNotification,
            {
                "id": new_id("notif"),
                "user_uid": user_uid,
                "title": title,
                "message": message,
                "type": kind,
                "is_read": False,
                "timestamp": utcnow(),
            },
        )
        return self.store.notifications.create(notification)

    def mark_notification_read(self, notification_id: str, user_uid: str) -> AppNotification:
        with self.store.transaction():
            notification = self.store.notifications.require(notification_id)
            if notification.user_uid != user_uid:
                raise PermissionDenied("That notification belongs to someone else.")
            return self.store.notifications.mark_read(notification_id)
