import pytest

from conftest import PASSWORD, PNG_DATA_URL


def _login(client, username, password=PASSWORD):
    return client.post("/api/auth/login", json={"username": username, "password": password})


@pytest.fixture
def seller_client(app, seller):
    client = app.test_client()
    assert _login(client, "somchai").status_code == 200
    return client


@pytest.fixture
def buyer_client(app, buyer):
    client = app.test_client()
    assert _login(client, "pim").status_code == 200
    return client


def test_register_signs_in(client):
    response = client.post(
        "/api/auth/register",
        json={"username": "noi", "password": PASSWORD, "displayName": "Noi"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["success"] is True
    assert body["user"]["displayName"] == "Noi"
    assert "passwordHash" not in body["user"]

    me = client.get("/api/me").get_json()
    assert me["user"]["username"] == "noi"
    assert me["unreadNotifications"] == 0


def test_duplicate_registration_is_a_conflict(client, buyer):
    response = client.post("/api/auth/register", json={"username": "pim", "password": PASSWORD})

    assert response.status_code == 409
    assert response.get_json() == {"success": False, "error": "That username is already taken."}


def test_weak_password_is_rejected(client):
    response = client.post("/api/auth/register", json={"username": "noi", "password": "short"})
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_login_failures_and_logout(client, buyer):
    assert _login(client, "pim", "wrong-pass1").status_code == 401
    assert client.get("/api/me").status_code == 401

    assert _login(client, "pim").status_code == 200
    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/me").status_code == 401


def test_update_profile(buyer_client):
    response = buyer_client.patch("/api/me", json={"bio": "Night market regular", "rating": 5})

    assert response.status_code == 200
    user = response.get_json()["user"]
    assert user["bio"] == "Night market regular"
    assert user["rating"] == 0.0


def test_product_listing_and_search(seller_client, client):
    created = seller_client.post(
        "/api/products",
        json={"name": "Mango Sticky Rice", "price": "45", "stock": 2, "image": PNG_DATA_URL},
    )
    assert created.status_code == 201
    product_id = created.get_json()["product"]["id"]

    found = client.get("/api/products", query_string={"q": "mango"}).get_json()["products"]
    assert [product["id"] for product in found] == [product_id]

    seller_client.post(f"/api/products/{product_id}/visibility")
    assert client.get("/api/products", query_string={"q": "mango"}).get_json()["products"] == []


def test_product_requires_photo(seller_client):
    response = seller_client.post("/api/products", json={"name": "Larb", "price": 30, "stock": 1})
    assert response.status_code == 400
    assert "photo" in response.get_json()["error"]


def test_cannot_manage_another_users_product(buyer_client, product):
    assert buyer_client.patch(f"/api/products/{product.id}", json={"price": 1}).status_code == 403
    assert buyer_client.delete(f"/api/products/{product.id}").status_code == 403
    assert buyer_client.post(f"/api/products/{product.id}/visibility").status_code == 403


def test_order_flow_with_review(seller_client, buyer_client, store, product, seller):
    placed = buyer_client.post(
        "/api/orders",
        json={"productId": product.id, "quantity": 2, "pickupLocation": "Gate 3"},
    )
    assert placed.status_code == 201
    order = placed.get_json()["order"]
    assert order["totalPrice"] == 120.0
    assert order["pickupLocation"] == "Gate 3"

    sales = seller_client.get("/api/orders", query_string={"role": "sell"}).get_json()["orders"]
    assert [sale["id"] for sale in sales] == [order["id"]]

    for status in ("ACCEPTED", "PREPARING", "DELIVERING", "COMPLETED"):
        response = seller_client.post(f"/api/orders/{order['id']}/status", json={"status": status})
        assert response.status_code == 200

    review = buyer_client.post(f"/api/orders/{order['id']}/review", json={"rating": 4, "comment": "Good"})
    assert review.status_code == 201
    review_id = review.get_json()["review"]["id"]

    reply = seller_client.post(f"/api/reviews/{review_id}/reply", json={"reply": "Thanks!"})
    assert reply.get_json()["review"]["reply"] == "Thanks!"

    profile = buyer_client.get(f"/api/users/{seller.uid}").get_json()
    assert profile["user"]["rating"] == 4.0
    assert profile["user"]["reviewCount"] == 1
    assert store.products.require(product.id).stock == 3


def test_invalid_transition_is_a_conflict(seller_client, buyer_client, product):
    order = buyer_client.post("/api/orders", json={"productId": product.id}).get_json()["order"]

    response = seller_client.post(f"/api/orders/{order['id']}/status", json={"status": "COMPLETED"})

    assert response.status_code == 409
    assert response.get_json()["success"] is False


def test_oversell_is_rejected(buyer_client, product):
    response = buyer_client.post("/api/orders", json={"productId": product.id, "quantity": 10})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Only 5 left in stock."


def test_chat_notifies_receiver(seller_client, buyer_client, seller, buyer):
    sent = buyer_client.post(f"/api/chats/{seller.uid}", json={"text": "Still open?"})
    assert sent.status_code == 201

    messages = seller_client.get(f"/api/chats/{buyer.uid}").get_json()["messages"]
    assert [message["text"] for message in messages] == ["Still open?"]

    inbox = seller_client.get("/api/notifications").get_json()
    assert inbox["unreadCount"] == 1
    assert inbox["notifications"][0]["type"] == "CHAT"
    assert inbox["notifications"][0]["title"] == "New message from Pim"

    marked = seller_client.post("/api/notifications/read-all").get_json()
    assert marked["marked"] == 1


def test_notification_belongs_to_owner(seller_client, buyer_client, seller):
    buyer_client.post(f"/api/chats/{seller.uid}", json={"text": "hi"})
    notification_id = seller_client.get("/api/notifications").get_json()["notifications"][0]["id"]

    assert buyer_client.post(f"/api/notifications/{notification_id}/read").status_code == 403
    response = seller_client.post(f"/api/notifications/{notification_id}/read")
    assert response.get_json()["notification"]["isRead"] is True


def test_follow_toggle(buyer_client, seller):
    first = buyer_client.post(f"/api/users/{seller.uid}/follow").get_json()
    second = buyer_client.post(f"/api/users/{seller.uid}/follow").get_json()

    assert (first["following"], first["followerCount"]) == (True, 1)
    assert (second["following"], second["followerCount"]) == (False, 0)


def test_changes_feed(client, buyer_client, store, seller):
    start = store.revision
    buyer_client.post(f"/api/chats/{seller.uid}", json={"text": "hello"})

    body = client.get("/api/changes", query_string={"since": start}).get_json()

    assert body["revision"] == start + 1
    assert body["reload"] is False
    assert {(change["kind"], change["action"]) for change in body["changes"]} == {
        ("chats", "created"),
        ("notifications", "created"),
    }
    assert client.get("/api/changes", query_string={"since": body["revision"]}).get_json()["changes"] == []


def test_unknown_entities_are_not_found(buyer_client):
    assert buyer_client.get("/api/users/u-missing").status_code == 404
    assert buyer_client.post("/api/orders/ord-missing/status", json={"status": "ACCEPTED"}).status_code == 404


def test_changes_feed_asks_for_reload_before_app_start(store, coordinator):
    from app import create_app

    coordinator.register_user("noi", PASSWORD)
    client = create_app(store=store).test_client()

    stale = client.get("/api/changes", query_string={"since": 0}).get_json()
    current = client.get("/api/changes", query_string={"since": store.revision}).get_json()

    assert stale["reload"] is True
    assert current["reload"] is False
    assert client.get("/api/changes", query_string={"since": store.revision + 1}).get_json()["reload"] is True
