from decimal import Decimal

from canteen import crud, models

from conftest import auth_headers, in_hours, token_for


def add_notification(db, **fields):
    note = models.Notification(**fields)
    db.add(note)
    db.commit()
    return note


def place_order(client, user, menu):
    dosa, thali = menu
    return client.post(
        "/api/orders",
        json={
            "items": [
                {"menu_item_id": dosa.id, "quantity": 2, "price": 60},
                {"menu_item_id": thali.id, "quantity": 1, "price": 70},
            ],
            "special_instructions": "no onion",
        },
        headers=auth_headers(user),
    )


def test_register_login_and_whoami(client):
    response = client.post(
        "/api/register",
        json={
            "username": "meera",
            "password": "hunter22",
            "name": "Meera",
            "email": "meera@example.com",
        },
    )
    assert response.status_code == 201
    assert response.json()["role"] == "student"

    duplicate = client.post(
        "/api/register",
        json={
            "username": "meera",
            "password": "hunter22",
            "name": "Meera",
            "email": "meera@example.com",
        },
    )
    assert duplicate.status_code == 400

    bad = client.post("/api/login", data={"username": "meera", "password": "nope123"})
    assert bad.status_code == 401

    login = client.post("/api/login", data={"username": "meera", "password": "hunter22"})
    assert login.status_code == 200
    token = login.json()["access_token"]
    me = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["username"] == "meera"
    assert me.json()["loyalty_points"] == 0


def test_requests_without_token_are_unauthorized(client):
    assert client.get("/api/orders").status_code == 401
    assert (
        client.get("/api/orders", headers={"Authorization": "Bearer junk"}).status_code
        == 401
    )


def test_only_admin_creates_staff(client, admin, student):
    body = {
        "username": "cook2",
        "password": "secret123",
        "name": "Second Cook",
        "email": "cook2@example.com",
        "role": "kitchen",
    }
    assert (
        client.post("/api/admin/users", json=body, headers=auth_headers(student)).status_code
        == 403
    )
    created = client.post("/api/admin/users", json=body, headers=auth_headers(admin))
    assert created.status_code == 201
    assert created.json()["role"] == "kitchen"


def test_menu_crud_is_admin_only(client, admin, student, menu):
    dosa, _ = menu
    listing = client.get("/api/menu-items").json()
    assert [item["name"] for item in listing] == ["Masala Dosa", "Veg Thali"]

    body = {"name": "Samosa", "price": "15.00", "category_id": dosa.category_id}
    assert (
        client.post("/api/menu-items", json=body, headers=auth_headers(student)).status_code
        == 403
    )
    created = client.post("/api/menu-items", json=body, headers=auth_headers(admin))
    assert created.status_code == 201
    item_id = created.json()["id"]

    patched = client.patch(
        f"/api/menu-items/{item_id}",
        json={"is_available": False},
        headers=auth_headers(admin),
    )
    assert patched.json()["is_available"] is False
    assert patched.json()["name"] == "Samosa"

    deleted = client.delete(f"/api/menu-items/{item_id}", headers=auth_headers(admin))
    assert deleted.status_code == 204
    assert client.get(f"/api/menu-items/{item_id}").status_code == 404


def test_menu_item_with_orders_cannot_be_deleted(client, admin, student, menu):
    place_order(client, student, menu)
    response = client.delete(f"/api/menu-items/{menu[0].id}", headers=auth_headers(admin))
    assert response.status_code == 409


def test_menu_item_needs_an_existing_category(client, admin, menu):
    dosa, _ = menu
    body = {"name": "Samosa", "price": "15.00", "category_id": 999}
    created = client.post("/api/menu-items", json=body, headers=auth_headers(admin))
    assert created.status_code == 404
    assert created.json()["detail"] == "Category not found"

    moved = client.patch(
        f"/api/menu-items/{dosa.id}",
        json={"category_id": 999},
        headers=auth_headers(admin),
    )
    assert moved.status_code == 404
    assert client.get(f"/api/menu-items/{dosa.id}").json()["category_id"] == dosa.category_id
    assert len(client.get("/api/menu-items").json()) == 2


def test_reviews_update_item_rating(client, student, other_student, menu):
    dosa, _ = menu
    for user, rating in [(student, 5), (other_student, 4)]:
        response = client.post(
            "/api/reviews",
            json={"menu_item_id": dosa.id, "rating": rating, "comment": "tasty"},
            headers=auth_headers(user),
        )
        assert response.status_code == 201

    item = client.get(f"/api/menu-items/{dosa.id}").json()
    assert Decimal(item["rating"]) == Decimal("4.5")
    assert item["review_count"] == 2
    assert len(client.get(f"/api/menu-items/{dosa.id}/reviews").json()) == 2
    invalid = client.post(
        "/api/reviews",
        json={"menu_item_id": dosa.id, "rating": 6},
        headers=auth_headers(student),
    )
    assert invalid.status_code == 422


def test_place_order(client, student, menu):
    response = place_order(client, student, menu)

    assert response.status_code == 201
    body = response.json()
    assert Decimal(body["total_amount"]) == Decimal("190")
    assert body["status"] == "placed"
    assert body["payment_status"] == "unpaid"
    assert [(i["name"], i["quantity"]) for i in body["items"]] == [
        ("Masala Dosa", 2),
        ("Veg Thali", 1),
    ]


def test_empty_order_is_a_bad_request(client, student):
    response = client.post("/api/orders", json={"items": []}, headers=auth_headers(student))
    assert response.status_code == 400
    assert response.json()["detail"] == "Order is empty"


def test_order_lifecycle_over_http(client, student, kitchen, menu):
    order_id = place_order(client, student, menu).json()["id"]

    forbidden = client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "preparing"},
        headers=auth_headers(student),
    )
    assert forbidden.status_code == 403

    invalid = client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "teleported"},
        headers=auth_headers(kitchen),
    )
    assert invalid.status_code == 400

    skip = client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "completed"},
        headers=auth_headers(kitchen),
    )
    assert skip.status_code == 409

    preparing = client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "preparing"},
        headers=auth_headers(kitchen),
    )
    assert preparing.json()["status"] == "preparing"

    edit = client.patch(
        f"/api/orders/{order_id}",
        json={"items": [{"menu_item_id": menu[0].id, "quantity": 1}]},
        headers=auth_headers(student),
    )
    assert edit.status_code == 409
    unchanged = client.get(f"/api/orders/{order_id}", headers=auth_headers(student)).json()
    assert len(unchanged["items"]) == 2
    assert Decimal(unchanged["total_amount"]) == Decimal("190")

    cancel = client.post(f"/api/orders/{order_id}/cancel", headers=auth_headers(student))
    assert cancel.status_code == 409

    missing = client.patch(
        "/api/orders/999/status",
        json={"status": "preparing"},
        headers=auth_headers(kitchen),
    )
    assert missing.status_code == 404


def test_edit_and_cancel_while_placed(client, student, menu):
    order_id = place_order(client, student, menu).json()["id"]

    edited = client.patch(
        f"/api/orders/{order_id}",
        json={"items": [{"menu_item_id": menu[1].id, "quantity": 2, "price": 70}]},
        headers=auth_headers(student),
    )
    assert edited.status_code == 200
    assert Decimal(edited.json()["total_amount"]) == Decimal("140")
    assert edited.json()["special_instructions"] == "no onion"

    cancelled = client.post(f"/api/orders/{order_id}/cancel", headers=auth_headers(student))
    assert cancelled.json()["status"] == "cancelled"


def test_order_visibility(client, student, other_student, kitchen, menu):
    order_id = place_order(client, student, menu).json()["id"]

    assert client.get(f"/api/orders/{order_id}", headers=auth_headers(other_student)).status_code == 403
    assert client.get("/api/orders", headers=auth_headers(other_student)).json() == []
    assert len(client.get("/api/orders", headers=auth_headers(kitchen)).json()) == 1


def test_payment_verification_awards_points_once(client, student, menu):
    dosa, _ = menu
    order = client.post(
        "/api/orders",
        json={"items": [{"menu_item_id": dosa.id, "quantity": 1, "price": 199}]},
        headers=auth_headers(student),
    ).json()

    created = client.post(
        "/api/payments/create", json={"order_id": order["id"]}, headers=auth_headers(student)
    )
    assert created.status_code == 200
    transaction_id = created.json()["transaction_id"]

    first = client.post(
        "/api/payments/verify",
        json={"transaction_id": transaction_id},
        headers=auth_headers(student),
    )
    assert first.json()["points_awarded"] == 19
    assert first.json()["payment_status"] == "paid"

    second = client.post(
        "/api/payments/verify",
        json={"transaction_id": transaction_id},
        headers=auth_headers(student),
    )
    assert second.json()["points_awarded"] == 0
    assert second.json()["loyalty_points"] == 19

    points = client.get("/api/loyalty/points", headers=auth_headers(student))
    assert points.json() == {"points": 19}

    again = client.post(
        "/api/payments/create", json={"order_id": order["id"]}, headers=auth_headers(student)
    )
    assert again.status_code == 409


def test_payment_callback_redirects(client, student, menu):
    order_id = place_order(client, student, menu).json()["id"]

    ok = client.get(
        "/api/payments/callback",
        params={"transactionId": f"order_{order_id}_123"},
        follow_redirects=False,
    )
    assert ok.status_code == 303
    assert ok.headers["location"] == "/payment-success"

    bad = client.get(
        "/api/payments/callback",
        params={"transactionId": "garbage"},
        follow_redirects=False,
    )
    assert bad.headers["location"] == "/payment-failed"
    missing = client.get("/api/payments/callback", follow_redirects=False)
    assert missing.headers["location"] == "/payment-failed"


def test_anonymous_callback_does_not_mark_order_paid(client, student, menu):
    dosa, _ = menu
    order = client.post(
        "/api/orders",
        json={"items": [{"menu_item_id": dosa.id, "quantity": 1, "price": 200}]},
        headers=auth_headers(student),
    ).json()

    client.get(
        "/api/payments/callback",
        params={"transactionId": f"order_{order['id']}_1"},
        follow_redirects=False,
    )

    after = client.get(f"/api/orders/{order['id']}", headers=auth_headers(student)).json()
    assert after["payment_status"] == "unpaid"
    points = client.get("/api/loyalty/points", headers=auth_headers(student)).json()
    assert points == {"points": 0}


def test_verify_requires_the_order_owner(client, student, other_student, menu):
    order_id = place_order(client, student, menu).json()["id"]

    response = client.post(
        "/api/payments/verify",
        json={"transaction_id": f"order_{order_id}_1"},
        headers=auth_headers(other_student),
    )
    assert response.status_code == 403
    assert client.post(
        "/api/payments/verify", json={"transaction_id": f"order_{order_id}_1"}
    ).status_code == 401


def test_redeem_over_http(client, db, student, kitchen):
    reward = crud.create_reward(
        db,
        {
            "name": "Free Chai",
            "points_required": 75,
            "reward_type": models.RewardType.free_item,
            "reward_value": "Masala Chai",
        },
    )
    crud.add_points(db, student.id, 50)

    rejected = client.post(
        "/api/loyalty/redeem", json={"reward_id": reward.id}, headers=auth_headers(student)
    )
    assert rejected.status_code == 409
    assert rejected.json()["available"] == 50

    crud.add_points(db, student.id, 50)
    accepted = client.post(
        "/api/loyalty/redeem", json={"reward_id": reward.id}, headers=auth_headers(student)
    )
    assert accepted.status_code == 201
    assert accepted.json()["remaining_points"] == 25
    assert accepted.json()["redemption"]["status"] == "pending"

    history = client.get("/api/loyalty/redemptions", headers=auth_headers(student))
    assert len(history.json()) == 1
    assert client.get("/api/loyalty/points", headers=auth_headers(kitchen)).status_code == 403


def test_reward_catalogue_admin(client, admin):
    created = client.post(
        "/api/admin/loyalty/rewards",
        json={
            "name": "10% off",
            "points_required": 100,
            "reward_type": "discount",
            "reward_value": "10",
        },
        headers=auth_headers(admin),
    )
    assert created.status_code == 201
    reward_id = created.json()["id"]

    client.patch(
        f"/api/admin/loyalty/rewards/{reward_id}",
        json={"is_active": False},
        headers=auth_headers(admin),
    )
    assert client.get("/api/loyalty/rewards").json() == []
    assert client.get(f"/api/loyalty/rewards/{reward_id}").json()["is_active"] is False
    assert client.get("/api/loyalty/rewards/999").status_code == 404


def test_surplus_and_donation_flow(client, admin, kitchen, student, menu):
    dosa, _ = menu
    ngo = client.post(
        "/api/ngo-partners",
        json={
            "name": "Food For All",
            "contact_name": "Priya",
            "contact_email": "priya@foodforall.org",
            "contact_phone": "+910000000000",
            "address": "12 Market Road",
        },
        headers=auth_headers(admin),
    ).json()

    marked = client.post(
        f"/api/menu-items/{dosa.id}/surplus",
        json={
            "surplus_price": 30,
            "surplus_expiry_time": in_hours(1).isoformat(),
            "surplus_quantity": 3,
        },
        headers=auth_headers(kitchen),
    )
    assert marked.status_code == 200
    assert marked.json()["is_surplus"] is True
    assert [i["id"] for i in client.get("/api/surplus-items").json()] == [dosa.id]

    notes = client.get("/api/notifications", headers=auth_headers(student)).json()
    assert [n["type"] for n in notes] == ["surplus"]

    too_many = client.post(
        "/api/surplus-donations",
        json={"ngo_id": ngo["id"], "menu_item_id": dosa.id, "quantity": 4},
        headers=auth_headers(kitchen),
    )
    assert too_many.status_code == 409

    donation = client.post(
        "/api/surplus-donations",
        json={"ngo_id": ngo["id"], "menu_item_id": dosa.id, "quantity": 3},
        headers=auth_headers(kitchen),
    )
    assert donation.status_code == 201
    assert donation.json()["status"] == "scheduled"
    assert client.get("/api/surplus-items").json() == []

    moved = client.patch(
        f"/api/surplus-donations/{donation.json()['id']}/status",
        json={"status": "in_progress"},
        headers=auth_headers(admin),
    )
    assert moved.json()["status"] == "in_progress"
    listed = client.get(
        f"/api/surplus-donations/ngo/{ngo['id']}", headers=auth_headers(admin)
    ).json()
    assert [d["quantity"] for d in listed] == [3]


def test_mark_surplus_in_the_past_is_rejected(client, kitchen, menu):
    response = client.post(
        f"/api/menu-items/{menu[0].id}/surplus",
        json={
            "surplus_price": 30,
            "surplus_expiry_time": in_hours(-1).isoformat(),
            "surplus_quantity": 3,
        },
        headers=auth_headers(kitchen),
    )
    assert response.status_code == 400


def test_notifications_read_and_ownership(client, db, student, other_student):
    note = add_notification(db, user_id=student.id, title="Hi", message="Welcome")
    add_notification(
        db,
        user_id=student.id,
        title="Old",
        message="Expired offer",
        expires_at=in_hours(-1),
    )

    listed = client.get("/api/notifications", headers=auth_headers(student)).json()
    assert [n["title"] for n in listed] == ["Hi"]

    assert (
        client.patch(
            f"/api/notifications/{note.id}/read", headers=auth_headers(other_student)
        ).status_code
        == 403
    )
    read = client.patch(f"/api/notifications/{note.id}/read", headers=auth_headers(student))
    assert read.json()["is_read"] is True
    assert client.patch("/api/notifications/999/read", headers=auth_headers(student)).status_code == 404

    assert crud.delete_expired_notifications(db, models.utcnow()) == 1


def test_admin_stats(client, admin, student, menu):
    place_order(client, student, menu)
    stats = client.get("/api/admin/stats", headers=auth_headers(admin)).json()
    assert stats["today_orders"] == 1
    assert Decimal(stats["today_revenue"]) == Decimal("190")
    assert stats["active_orders"] == 1
    assert stats["total_customers"] == 1
    assert stats["total_items"] == 2
    assert client.get("/api/admin/stats", headers=auth_headers(student)).status_code == 403


def test_websocket_push_flow(client, student, kitchen, menu):
    with client.websocket_connect("/ws") as chef, client.websocket_connect("/ws") as diner:
        chef.send_json({"type": "AUTH", "token": "bogus"})
        assert chef.receive_json() == {"type": "AUTH_FAILED"}

        chef.send_json({"type": "AUTH", "token": token_for(kitchen)})
        assert chef.receive_json() == {"type": "AUTH_SUCCESS", "userId": kitchen.id}
        diner.send_json({"type": "AUTH", "token": token_for(student)})
        assert diner.receive_json()["type"] == "AUTH_SUCCESS"

        order_id = place_order(client, student, menu).json()["id"]
        new_order = chef.receive_json()
        assert new_order["type"] == "NEW_ORDER"
        assert new_order["order"]["id"] == order_id
        assert new_order["order"]["customerName"] == student.name

        client.patch(
            f"/api/orders/{order_id}/status",
            json={"status": "preparing"},
            headers=auth_headers(kitchen),
        )
        update = diner.receive_json()
        assert update["type"] == "ORDER_UPDATE"
        assert update["order"]["status"] == "preparing"

        diner.send_text("not json")
        assert diner.receive_json()["type"] == "ERROR"
        diner.send_json({"type": "PING"})
        assert diner.receive_json() == {"type": "PONG"}
