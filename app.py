"""JSON API that lets the marketplace's web views read and change the store."""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional, cast

from flask import Blueprint, Flask, current_app, jsonify, request, session
from werkzeug.wrappers import Response

from config import StoreSettings
from coordinator import MarketCoordinator
from errors import (
    AuthenticationError,
    ConflictError,
    CorruptSnapshotError,
    InvalidTransition,
    MarketError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from events import ChangeFeed
from schemas import Entity, Product, User
from store import MarketStore

ERROR_STATUS = (
    (AuthenticationError, 401),
    (PermissionDenied, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidTransition, 409),
    (ValidationError, 400),
    (CorruptSnapshotError, 500),
)
PROFILE_FIELDS = {"displayName": "display_name", "bio": "bio", "profilePic": "profile_pic"}
PRODUCT_FIELDS = {
    "name": "name",
    "description": "description",
    "price": "price",
    "image": "image",
    "stock": "stock",
    "isHidden": "is_hidden",
}
ORDER_ROLES = ("buy", "sell")

api = Blueprint("api", __name__, url_prefix="/api")


def create_app(store: Optional[MarketStore] = None, settings: Optional[StoreSettings] = None) -> Flask:
    """Build the Flask app around an explicit store instance."""

    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-key-change-me")

    if store is None:
        store = MarketStore.open(settings or StoreSettings.from_env())
    feed = ChangeFeed(start_revision=store.revision)
    store.notifier.subscribe(feed)

    app.extensions["market_store"] = store
    app.extensions["market_coordinator"] = MarketCoordinator(store)
    app.extensions["market_changes"] = feed
    app.register_blueprint(api)
    app.register_error_handler(MarketError, _handle_market_error)
    return app


# --------------------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------------------


def _store() -> MarketStore:
    return cast(MarketStore, current_app.extensions["market_store"])


def _coordinator() -> MarketCoordinator:
    return cast(MarketCoordinator, current_app.extensions["market_coordinator"])


def _handle_market_error(exc: MarketError) -> tuple[Response, int]:
    status = next((code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)), 400)
    if status >= 500:
        current_app.logger.error("Store failure on %s %s: %s", request.method, request.path, exc)
    else:
        current_app.logger.info("Rejected %s %s: %s", request.method, request.path, exc)
    return jsonify({"success": False, "error": str(exc)}), status


def _success(status: int = 200, **body: Any) -> tuple[Response, int]:
    return jsonify({"success": True, **body}), status


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _text(data: Mapping[str, Any], key: str, default: str = "") -> str:
    """Trim whitespace from submitted values while providing a default."""
    raw_value = data.get(key)
    if raw_value is None:
        return default
    return str(raw_value).strip()


def _as_int(value: object, field_label: str) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_label} must be a whole number.") from exc


def _as_float(value: object, field_label: str) -> float:
    try:
        return float(str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_label} must be a number.") from exc


def _serialize(entity: Entity) -> dict[str, Any]:
    if isinstance(entity, User):
        return entity.model_dump(mode="json", by_alias=True, exclude={"password_hash"})
    return entity.model_dump(mode="json", by_alias=True)


def _current_user() -> Optional[User]:
    """Return the signed-in user, clearing stale sessions if needed."""
    uid = session.get("uid")
    if not uid:
        return None
    user = _store().users.get(str(uid))
    if user is None:
        session.pop("uid", None)
    return user


def _require_user() -> User:
    user = _current_user()
    if user is None:
        raise AuthenticationError("Sign in to continue.")
    return user


def _owned_product(product_id: str, user: User) -> Product:
    product = _store().products.require(product_id)
    if product.seller_uid != user.uid:
        raise PermissionDenied("You can only manage products that belong to you.")
    return product


# --------------------------------------------------------------------------------------
# Accounts
# --------------------------------------------------------------------------------------


@api.post("/auth/register")
def register():
    """Register a new user account and sign it in."""
    data = _payload()
    user = _coordinator().register_user(
        _text(data, "username"),
        str(data.get("password") or ""),
        display_name=_text(data, "displayName"),
        profile_pic=_text(data, "profilePic"),
        bio=_text(data, "bio"),
    )
    session["uid"] = user.uid
    return _success(201, user=_serialize(user))


@api.post("/auth/login")
def login():
    """Authenticate an existing user."""
    data = _payload()
    user = _coordinator().authenticate(_text(data, "username"), str(data.get("password") or ""))
    if user is None:
        raise AuthenticationError("Invalid username or password.")
    session["uid"] = user.uid
    return _success(user=_serialize(user))


@api.post("/auth/logout")
def logout():
    session.pop("uid", None)
    return _success()


@api.get("/me")
def me():
    user = _require_user()
    return _success(user=_serialize(user), unreadNotifications=_store().notifications.unread_count(user.uid))


@api.patch("/me")
def update_me():
    """Edit the signed-in user's display name, bio or picture."""
    user = _require_user()
    data = _payload()
    fields = {attribute: _text(data, key) for key, attribute in PROFILE_FIELDS.items() if key in data}
    updated = _coordinator().update_profile(user.uid, **fields) if fields else user
    return _success(user=_serialize(updated))


@api.get("/users")
def list_users():
    """People to chat with, filtered by display name."""
    user = _require_user()
    matches = _store().users.search(request.args.get("q", ""), exclude_uid=user.uid)
    return _success(users=[_serialize(match) for match in matches])


@api.get("/users/<uid>")
def user_profile(uid: str):
    viewer = _require_user()
    store = _store()
    profile = store.users.require(uid)
    is_me = viewer.uid == uid
    return _success(
        user=_serialize(profile),
        products=[_serialize(product) for product in store.products.for_seller(uid, include_hidden=is_me)],
        reviews=[_serialize(review) for review in store.reviews.for_seller(uid)],
        followerCount=store.users.follower_count(uid),
        followingCount=len(profile.following),
        isFollowing=uid in viewer.following,
    )


@api.post("/users/<uid>/follow")
def toggle_follow(uid: str):
    viewer = _require_user()
    following = _coordinator().toggle_follow(viewer.uid, uid)
    return _success(following=following, followerCount=_store().users.follower_count(uid))


# --------------------------------------------------------------------------------------
# Products
# --------------------------------------------------------------------------------------


@api.get("/products")
def list_products():
    """Visible menu items, optionally filtered by name or seller."""
    store = _store()
    seller_uid = request.args.get("seller")
    products = store.products.search(request.args.get("q", ""))
    if seller_uid:
        products = [product for product in products if product.seller_uid == seller_uid]
    limit = request.args.get("limit")
    if limit:
        products = products[: max(0, _as_int(limit, "Limit"))]
    return _success(products=[_serialize(product) for product in products], total=store.products.count())


@api.post("/products")
def create_product():
    seller = _require_user()
    data = _payload()
    product = _coordinator().list_product(
        seller.uid,
        name=_text(data, "name"),
        price=_as_float(data.get("price"), "Price"),
        stock=_as_int(data.get("stock", 0), "Stock"),
        image=_text(data, "image"),
        description=_text(data, "description"),
    )
    return _success(201, product=_serialize(product))


@api.patch("/products/<product_id>")
def update_product(product_id: str):
    user = _require_user()
    _owned_product(product_id, user)
    data = _payload()
    fields = {attribute: data[key] for key, attribute in PRODUCT_FIELDS.items() if key in data}
    if not fields:
        raise ValidationError("Nothing to update.")
    product = _store().products.update(product_id, **fields)
    return _success(product=_serialize(product))


@api.post("/products/<product_id>/visibility")
def toggle_product_visibility(product_id: str):
    user = _require_user()
    _owned_product(product_id, user)
    product = _store().products.toggle_hidden(product_id)
    return _success(product=_serialize(product))


@api.delete("/products/<product_id>")
def delete_product(product_id: str):
    user = _require_user()
    _coordinator().delete_product(product_id, actor_uid=user.uid)
    return _success()


# --------------------------------------------------------------------------------------
# Orders and reviews
# --------------------------------------------------------------------------------------


@api.get("/orders")
def list_orders():
    """Orders the signed-in user placed (``role=buy``) or received (``role=sell``)."""
    user = _require_user()
    role = request.args.get("role", "buy")
    if role not in ORDER_ROLES:
        raise ValidationError("Role must be 'buy' or 'sell'.")
    store = _store()
    orders = store.orders.for_buyer(user.uid) if role == "buy" else store.orders.for_seller(user.uid)
    return _success(orders=[_serialize(order) for order in orders])


@api.post("/orders")
def place_order():
    buyer = _require_user()
    data = _payload()
    order = _coordinator().place_order(
        buyer.uid,
        _text(data, "productId"),
        _as_int(data.get("quantity", 1), "Quantity"),
        note=_text(data, "note"),
        buyer_name=_text(data, "buyerName"),
        pickup_location=_text(data, "pickupLocation"),
        pickup_time=_text(data, "pickupTime") or None,
    )
    return _success(201, order=_serialize(order))


@api.post("/orders/<order_id>/status")
def update_order_status(order_id: str):
    user = _require_user()
    status = _text(_payload(), "status")
    if not status:
        raise ValidationError("Choose a status for the order.")
    order = _coordinator().advance_order(order_id, status, actor_uid=user.uid)
    return _success(order=_serialize(order))


@api.post("/orders/<order_id>/review")
def review_order(order_id: str):
    buyer = _require_user()
    data = _payload()
    review = _coordinator().submit_review(
        order_id,
        buyer.uid,
        _as_int(data.get("rating", 5), "Rating"),
        _text(data, "comment"),
    )
    return _success(201, review=_serialize(review))


@api.post("/reviews/<review_id>/reply")
def reply_to_review(review_id: str):
    seller = _require_user()
    review = _coordinator().reply_to_review(review_id, seller.uid, _text(_payload(), "reply"))
    return _success(review=_serialize(review))


# --------------------------------------------------------------------------------------
# Chat
# --------------------------------------------------------------------------------------


@api.get("/chats/<uid>")
def conversation(uid: str):
    user = _require_user()
    partner = _store().users.require(uid)
    messages = _store().chats.conversation(user.uid, uid)
    return _success(partner=_serialize(partner), messages=[_serialize(message) for message in messages])


@api.post("/chats/<uid>")
def send_message(uid: str):
    sender = _require_user()
    data = _payload()
    message = _coordinator().send_chat(
        sender.uid,
        uid,
        text=_text(data, "text") or None,
        image=_text(data, "image") or None,
    )
    return _success(201, message=_serialize(message))


@api.delete("/chats/messages/<message_id>")
def delete_message(message_id: str):
    user = _require_user()
    _coordinator().delete_chat(message_id, user.uid)
    return _success()


# --------------------------------------------------------------------------------------
# Notifications and change feed
# --------------------------------------------------------------------------------------


@api.get("/notifications")
def list_notifications():
    user = _require_user()
    store = _store()
    notifications = store.notifications.for_user(user.uid)
    return _success(
        notifications=[_serialize(notification) for notification in notifications],
        unreadCount=store.notifications.unread_count(user.uid),
    )


@api.post("/notifications/<notification_id>/read")
def read_notification(notification_id: str):
    user = _require_user()
    notification = _coordinator().mark_notification_read(notification_id, user.uid)
    return _success(notification=_serialize(notification))


@api.post("/notifications/read-all")
def read_all_notifications():
    user = _require_user()
    return _success(marked=_store().notifications.mark_all_read(user.uid))


@api.get("/changes")
def changes():
    """Events after ``since``; ``reload`` means the client fell too far behind to catch up."""
    since = _as_int(request.args.get("since", 0), "since")
    store = _store()
    feed = cast(ChangeFeed, current_app.extensions["market_changes"])
    events = feed.since(since)
    reload_needed = since > store.revision or not feed.is_complete_since(since)
    return _success(revision=store.revision, changes=[event.to_dict() for event in events], reload=reload_needed)


if __name__ == "__main__":
    create_app().run(debug=True)
