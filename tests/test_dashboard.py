from decimal import Decimal

from storefront import admin, models


def test_dashboard_empty_store(db_session, admin_user):
    data = admin.dashboard(db_session)
    assert data["stats"] == {"total_users": 1, "total_orders": 0, "total_products": 0, "total_revenue": Decimal("0")}
    assert data["recent_orders"] == []
    assert [a["action"] for a in data["recent_activities"]] == ["register"]


def test_dashboard_snapshot(client, admin_headers, make_user, auth_for, make_product, shipping):
    product = make_product(price="5.00", stock=100)
    buyers = [make_user() for _ in range(3)]
    for buyer in buyers:
        for _ in range(2):
            client.post("/api/cart", json={"product_id": product.id, "quantity": 2}, headers=auth_for(buyer))
            r = client.post("/api/orders", json={"shipping_address": shipping, "payment_method": "paypal"}, headers=auth_for(buyer))
            assert r.status_code == 201

    r = client.get("/api/admin/dashboard", headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["stats"]["total_users"] == 4
    assert body["stats"]["total_orders"] == 6
    assert body["stats"]["total_products"] == 1
    assert Decimal(body["stats"]["total_revenue"]) == Decimal("60.00")

    assert len(body["recent_orders"]) == 5
    # newest first, each with its purchaser
    assert body["recent_orders"][0]["user"]["id"] == buyers[-1].id
    assert len(body["recent_activities"]) == 10
    assert body["recent_activities"][0]["action"] == "create_order"
    assert body["recent_activities"][0]["user"]["id"] == buyers[-1].id


def test_activity_log_filters(client, db_session, admin_headers, user, user_headers, make_product):
    product = make_product()
    client.post("/api/cart", json={"product_id": product.id}, headers=user_headers)
    client.get("/api/cart", headers=user_headers)

    r = client.get("/api/admin/logs", params={"user_id": user.id}, headers=admin_headers)
    assert [log["action"] for log in r.json()["logs"]] == ["add_to_cart", "register"]

    r = client.get("/api/admin/logs", params={"action": "add_to_cart"}, headers=admin_headers)
    body = r.json()
    assert body["pagination"]["total"] == 1
    assert body["logs"][0]["user"]["username"] == user.username
    assert body["logs"][0]["details"] == {"product_id": product.id, "quantity": 1}
    assert db_session.query(models.ActivityLog).count() == 3
