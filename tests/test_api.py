"""HTTP tests for the order core API."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import WEBHOOK_SECRET, add_product, address, stock_of, token_for
from main import app
from payments import signature_header


@pytest.fixture
def client(services):
    app.state.services = services
    try:
        yield TestClient(app)
    finally:
        del app.state.services


def auth(user_id):
    return {"Authorization": f"Bearer {token_for(user_id)}"}


def place(client, user_id, product_id, quantity=1, **extra):
    body = {
        "items": [{"product_id": product_id, "quantity": quantity}],
        "shipping_address": address(),
        "payment_method": "stripe",
    }
    body.update(extra)
    return client.post("/orders", json=body, headers=auth(user_id))


class TestHealth:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "Order Core API running"}

    def test_database_status(self, client):
        assert client.get("/test").json()["connection_status"] == "Connected"


class TestAuth:
    def test_invalid_token(self, client):
        response = client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_unknown_user(self, client, unknown_order_id):
        response = client.get("/orders", headers=auth(unknown_order_id))
        assert response.status_code == 401


class TestOrders:
    def test_create(self, db, client, customer_id):
        pid = add_product(db, "A", 10, 5)
        response = place(client, customer_id, pid, 2)
        assert response.status_code == 201
        order = response.json()["order"]
        assert order["customer_id"] == customer_id
        assert order["total"] == 27.0
        assert order["order_status"] == "pending"
        assert stock_of(db, "A") == 3

    def test_idempotency_key_header(self, db, client, customer_id):
        pid = add_product(db, "A", 10, 5)
        body = {"items": [{"product_id": pid, "quantity": 1}], "shipping_address": address(), "payment_method": "cod"}
        headers = {**auth(customer_id), "Idempotency-Key": "cart-42"}
        first = client.post("/orders", json=body, headers=headers).json()["order"]
        second = client.post("/orders", json=body, headers=headers).json()["order"]
        assert first["id"] == second["id"]
        assert stock_of(db, "A") == 4

    def test_out_of_stock(self, db, client, customer_id):
        pid = add_product(db, "A", 10, 1)
        response = place(client, customer_id, pid, 2)
        assert response.status_code == 409
        assert response.json()["error_type"] == "OutOfStock"

    def test_invalid_address(self, db, client, customer_id):
        pid = add_product(db, "A", 10, 5)
        response = place(client, customer_id, pid, shipping_address=address(city=""))
        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidAddress"

    def test_empty_cart_is_rejected(self, client, customer_id):
        body = {"items": [], "shipping_address": address(), "payment_method": "stripe"}
        assert client.post("/orders", json=body, headers=auth(customer_id)).status_code == 422

    def test_customers_only_see_their_orders(self, db, client, customer_id, other_customer_id, admin_id):
        pid = add_product(db, "A", 10, 5)
        mine = place(client, customer_id, pid).json()["order"]
        place(client, other_customer_id, pid)

        listed = client.get("/orders", headers=auth(customer_id)).json()
        assert listed["total"] == 1
        assert listed["items"][0]["id"] == mine["id"]

        assert client.get("/orders", headers=auth(admin_id)).json()["total"] == 2
        assert client.get(f"/orders/{mine['id']}", headers=auth(customer_id)).status_code == 200
        assert client.get(f"/orders/{mine['id']}", headers=auth(other_customer_id)).status_code == 404

    def test_customer_cancel(self, db, client, customer_id):
        pid = add_product(db, "A", 10, 5)
        order = place(client, customer_id, pid).json()["order"]
        response = client.post(f"/orders/{order['id']}/cancel", json={"reason": "too slow"}, headers=auth(customer_id))
        assert response.status_code == 200
        assert response.json()["order"]["order_status"] == "cancelled"
        assert stock_of(db, "A") == 5

        again = client.post(f"/orders/{order['id']}/cancel", json={}, headers=auth(customer_id))
        assert again.status_code == 400
        assert again.json()["error_type"] == "CancellationNotAllowed"

    def test_cannot_cancel_someone_elses_order(self, db, client, customer_id, other_customer_id):
        pid = add_product(db, "A", 10, 5)
        order = place(client, customer_id, pid).json()["order"]
        response = client.post(f"/orders/{order['id']}/cancel", json={}, headers=auth(other_customer_id))
        assert response.status_code == 404


class TestAdminOrders:
    def test_status_requires_admin(self, db, client, customer_id):
        pid = add_product(db, "A", 10, 5)
        order = place(client, customer_id, pid).json()["order"]
        response = client.patch(f"/orders/{order['id']}/status", json={"status": "confirmed"}, headers=auth(customer_id))
        assert response.status_code == 403

    def test_status_transitions(self, db, client, customer_id, admin_id):
        pid = add_product(db, "A", 10, 5)
        order = place(client, customer_id, pid).json()["order"]
        url = f"/orders/{order['id']}/status"

        bad = client.patch(url, json={"status": "delivered"}, headers=auth(admin_id))
        assert bad.status_code == 400
        assert bad.json()["error_type"] == "InvalidTransition"

        ok = client.patch(url, json={"status": "confirmed"}, headers=auth(admin_id))
        assert ok.json()["order"]["order_status"] == "confirmed"

    def test_tracking_notes_and_refund(self, db, client, services, customer_id, admin_id):
        pid = add_product(db, "A", 10, 5)
        order = place(client, customer_id, pid).json()["order"]
        services.lifecycle.confirm_payment(order["id"], "pi_1")

        shipped = client.post(f"/orders/{order['id']}/tracking",
                              json={"tracking_number": "1Z9", "courier_name": "UPS"}, headers=auth(admin_id))
        assert shipped.json()["order"]["order_status"] == "shipped"

        noted = client.post(f"/orders/{order['id']}/notes", json={"note": "fragile"}, headers=auth(admin_id))
        assert noted.json()["order"]["admin_notes"] == "fragile"

        sub_cent = client.post(f"/orders/{order['id']}/refund",
                               json={"amount": 0.004, "reason": "test"}, headers=auth(admin_id))
        assert sub_cent.status_code == 422

        too_much = client.post(f"/orders/{order['id']}/refund",
                               json={"amount": 1000, "reason": "test"}, headers=auth(admin_id))
        assert too_much.status_code == 400
        assert too_much.json()["error_type"] == "RefundExceedsTotal"

        partial = client.post(f"/orders/{order['id']}/refund",
                              json={"amount": 4, "reason": "scratch"}, headers=auth(admin_id))
        assert partial.json()["order"]["payment_status"] == "partially_refunded"

    def test_unknown_order(self, client, admin_id, unknown_order_id):
        response = client.patch(f"/orders/{unknown_order_id}/status", json={"status": "confirmed"}, headers=auth(admin_id))
        assert response.status_code == 404


class TestCoupons:
    def coupon_body(self, **overrides):
        now = datetime.now(timezone.utc)
        body = {
            "code": "welcome",
            "discount_type": "percentage",
            "discount_value": 10,
            "valid_from": (now - timedelta(days=1)).isoformat(),
            "valid_until": (now + timedelta(days=7)).isoformat(),
        }
        body.update(overrides)
        return body

    def test_create_and_validate(self, client, admin_id, customer_id):
        created = client.post("/coupons", json=self.coupon_body(), headers=auth(admin_id))
        assert created.status_code == 201
        assert created.json()["coupon"]["code"] == "WELCOME"

        duplicate = client.post("/coupons", json=self.coupon_body(), headers=auth(admin_id))
        assert duplicate.status_code == 400

        checked = client.post("/coupons/validate", json={"code": "Welcome", "subtotal": 40}, headers=auth(customer_id))
        assert checked.json() == {"code": "WELCOME", "accepted": True, "discount": 4.0, "reason": None}

    def test_bad_window(self, client, admin_id):
        now = datetime.now(timezone.utc).isoformat()
        response = client.post("/coupons", json=self.coupon_body(valid_from=now, valid_until=now), headers=auth(admin_id))
        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidCoupon"

    def test_percentage_over_100(self, client, admin_id):
        response = client.post("/coupons", json=self.coupon_body(code="HALFOFF", discount_value=150), headers=auth(admin_id))
        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidCoupon"

    def test_customer_cannot_create(self, client, customer_id):
        assert client.post("/coupons", json=self.coupon_body(), headers=auth(customer_id)).status_code == 403

    def test_unknown_code(self, client, customer_id):
        response = client.post("/coupons/validate", json={"code": "NOPE", "subtotal": 40}, headers=auth(customer_id))
        assert response.status_code == 404


class TestInventory:
    def test_low_stock_report(self, db, client, admin_id):
        add_product(db, "A", 10, 2)
        add_product(db, "B", 10, 40)
        everything = client.get("/inventory", headers=auth(admin_id)).json()
        assert everything["count"] == 2
        low = client.get("/inventory", params={"low_stock": "true"}, headers=auth(admin_id)).json()
        assert [item["sku"] for item in low["items"]] == ["A"]
        assert low["items"][0]["is_low_stock"] is True


class TestWebhook:
    def test_signed_event(self, db, client, customer_id):
        pid = add_product(db, "A", 10, 5)
        order = place(client, customer_id, pid).json()["order"]
        payload = json.dumps({
            "id": "evt_1",
            "type": "payment_succeeded",
            "data": {"order_id": order["id"], "payment_id": "pi_1"},
        }).encode()
        response = client.post("/webhooks/payments", content=payload,
                               headers={"Payment-Signature": signature_header(WEBHOOK_SECRET, payload),
                                        "Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": True}

        mine = client.get(f"/orders/{order['id']}", headers=auth(customer_id)).json()["order"]
        assert mine["payment_status"] == "paid"

    def test_stripe_signature_header(self, client):
        payload = b'{"id": "evt_9", "type": "customer.created", "data": {}}'
        response = client.post("/webhooks/payments", content=payload,
                               headers={"Stripe-Signature": signature_header(WEBHOOK_SECRET, payload)})
        assert response.status_code == 200

    def test_bad_signature(self, client):
        response = client.post("/webhooks/payments", content=b"{}", headers={"Payment-Signature": "t=1,v1=00"})
        assert response.status_code == 400
        assert response.json()["error_type"] == "SignatureVerificationError"
