from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import text

from order_service import orders
from order_service.main import app
from order_service.models import Coupon, Order, OrderStatus, UserRole


def checkout(client, headers, *lines, coupon=None, payment="cod"):
    body = {
        "items": [{"productId": pid, "quantity": qty} for pid, qty in lines],
        "shippingAddress": "12 Nguyen Hue, District 1",
        "paymentMethod": payment,
    }
    if coupon is not None:
        body["couponCode"] = coupon
    return client.post("/orders", json=body, headers=headers)


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Order service is running"}
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["capabilities"]["status_history"] is True


class TestCreateOrderEndpoint:
    def test_created_order_detail(self, client, store, customer_headers, publisher):
        user_id, headers = customer_headers
        phone = store.product("Phone", price=100000, stock=5)

        resp = checkout(client, headers, (phone, 3))

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "PENDING"
        assert body["paymentMethod"] == "COD"
        assert body["paymentStatus"] == "PENDING"
        assert Decimal(body["subtotal"]) == 300000
        assert Decimal(body["shippingFee"]) == 50000
        assert Decimal(body["discountTotal"]) == 0
        assert Decimal(body["total"]) == 350000
        assert isinstance(body["total"], str)
        assert body["customerName"] == "Alice"
        (line,) = body["items"]
        assert (line["productId"], line["productName"], line["quantity"]) == (phone, "Phone", 3)
        assert Decimal(line["unitPrice"]) == 100000
        assert Decimal(line["lineTotal"]) == 300000
        assert [h["toStatus"] for h in body["statusHistory"]] == ["PENDING"]
        assert store.stock(phone) == 2

        assert publisher.events == [
            ("order.created", {
                "order_id": body["id"],
                "user_id": user_id,
                "total": 350000,
                "items": [{"product_id": phone, "quantity": 3}],
            })
        ]

    def test_coupon_discount(self, client, store, customer_headers):
        _, headers = customer_headers
        phone = store.product("Phone", price=100000, stock=5)
        store.coupon("SALE10", value=10, max_discount=20000, min_order=100000)

        body = checkout(client, headers, (phone, 3), coupon="sale10").json()

        assert Decimal(body["discountTotal"]) == 20000
        assert Decimal(body["total"]) == 330000

    def test_unreadable_coupon_places_order_without_discount(self, client, store,
                                                            customer_headers):
        _, headers = customer_headers
        phone = store.product("Phone", price=100000, stock=5)
        with store.session_factory() as session:
            session.execute(text(
                "INSERT INTO coupon (code, type, value, min_order, used_count, status) "
                "VALUES ('SHIP', 'SHIPPING', 10, 0, 0, 'ACTIVE')"
            ))
            session.commit()

        resp = checkout(client, headers, (phone, 1), coupon="SHIP")

        assert resp.status_code == 201
        assert Decimal(resp.json()["discountTotal"]) == 0
        assert Decimal(resp.json()["total"]) == 150000

    def test_requires_authentication(self, client, store):
        phone = store.product()
        resp = checkout(client, {}, (phone, 1))
        assert resp.status_code == 401
        assert "message" in resp.json()

    def test_rejects_forged_token(self, client, store):
        phone = store.product()
        resp = checkout(client, {"Authorization": "Bearer not-a-jwt"}, (phone, 1))
        assert resp.status_code == 401

    def test_disabled_account_is_forbidden(self, client, store, auth):
        user_id = store.user("Mallory", role=UserRole.DISABLED)
        phone = store.product()
        resp = checkout(client, auth(user_id, "DISABLED"), (phone, 1))
        assert resp.status_code == 403

    def test_empty_cart(self, client, customer_headers, store):
        _, headers = customer_headers
        resp = checkout(client, headers)
        assert resp.status_code == 400
        assert resp.json() == {"message": "order must contain at least one item"}
        assert store.count(Order) == 0

    def test_insufficient_stock(self, client, store, customer_headers, publisher):
        _, headers = customer_headers
        phone = store.product("Phone", stock=5)

        resp = checkout(client, headers, (phone, 10))

        assert resp.status_code == 400
        assert resp.json() == {"message": "insufficient stock for Phone"}
        assert store.stock(phone) == 5
        assert publisher.events == []

    def test_unknown_product_is_a_bad_request(self, client, customer_headers):
        _, headers = customer_headers
        resp = checkout(client, headers, (424242, 1))
        assert resp.status_code == 400
        assert resp.json() == {"message": "product not found"}

    def test_malformed_body_is_a_bad_request(self, client, customer_headers, store):
        _, headers = customer_headers
        phone = store.product()

        zero_qty = checkout(client, headers, (phone, 0))
        bad_method = checkout(client, headers, (phone, 1), payment="crypto")

        assert zero_qty.status_code == 400
        assert "quantity" in zero_qty.json()["message"]
        assert bad_method.status_code == 400
        assert "paymentMethod" in bad_method.json()["message"]


class TestReadEndpoints:
    def test_owner_can_read_order_and_history(self, client, store, customer_headers):
        _, headers = customer_headers
        phone = store.product()
        order_id = checkout(client, headers, (phone, 1)).json()["id"]

        detail = client.get(f"/orders/{order_id}", headers=headers)
        mine = client.get("/orders/me", headers=headers)

        assert detail.status_code == 200
        assert detail.json()["id"] == order_id
        assert [o["id"] for o in mine.json()] == [order_id]
        assert mine.json()[0]["itemCount"] == 1

    def test_other_customers_order_looks_missing(self, client, store, customer_headers, auth):
        _, headers = customer_headers
        phone = store.product()
        order_id = checkout(client, headers, (phone, 1)).json()["id"]
        stranger = store.user("Eve")

        resp = client.get(f"/orders/{order_id}", headers=auth(stranger))

        assert resp.status_code == 404
        assert resp.json() == client.get("/orders/999", headers=auth(stranger)).json()
        assert client.get("/orders/me", headers=auth(stranger)).json() == []

    def test_missing_order_is_404(self, client, customer_headers):
        _, headers = customer_headers
        resp = client.get("/orders/999", headers=headers)
        assert resp.status_code == 404
        assert resp.json() == {"message": "order not found"}

    def test_non_numeric_id_is_400(self, client, customer_headers):
        _, headers = customer_headers
        assert client.get("/orders/abc", headers=headers).status_code == 400

    def test_admin_listing(self, client, store, customer_headers, admin_headers):
        _, headers = customer_headers
        _, admin = admin_headers
        phone = store.product(stock=10)
        first = checkout(client, headers, (phone, 1)).json()["id"]
        second = checkout(client, headers, (phone, 2)).json()["id"]

        resp = client.get("/orders", headers=admin)

        assert resp.status_code == 200
        assert [o["id"] for o in resp.json()] == [second, first]
        assert client.get("/orders", headers=headers).status_code == 403


class TestStatusEndpoint:
    def test_admin_cancels_and_stock_returns_once(self, client, store, customer_headers,
                                                  admin_headers, publisher):
        _, headers = customer_headers
        admin_id, admin = admin_headers
        phone = store.product(stock=5)
        order_id = checkout(client, headers, (phone, 3)).json()["id"]

        first = client.patch(f"/orders/{order_id}/status", json={"status": "cancelled"},
                             headers=admin)
        second = client.patch(f"/orders/{order_id}/status", json={"status": "CANCELLED"},
                              headers=admin)

        assert first.status_code == 200
        assert first.json()["status"] == "CANCELLED"
        assert second.status_code == 200
        assert store.stock(phone) == 5
        history = second.json()["statusHistory"]
        assert [(h["fromStatus"], h["toStatus"]) for h in history] == [
            (None, "PENDING"),
            ("PENDING", "CANCELLED"),
            ("CANCELLED", "CANCELLED"),
        ]
        assert history[1]["changedBy"] == admin_id
        assert publisher.events[-1] == ("order.status_changed", {
            "order_id": order_id,
            "from_status": "CANCELLED",
            "to_status": "CANCELLED",
            "changed_by": admin_id,
        })

    def test_customer_cannot_change_status(self, client, store, customer_headers):
        _, headers = customer_headers
        phone = store.product()
        order_id = checkout(client, headers, (phone, 1)).json()["id"]

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "SHIPPED"},
                            headers=headers)

        assert resp.status_code == 403
        assert store.get(Order, order_id).status == OrderStatus.PENDING

    def test_unknown_status_value(self, client, store, customer_headers, admin_headers):
        _, headers = customer_headers
        _, admin = admin_headers
        phone = store.product()
        order_id = checkout(client, headers, (phone, 1)).json()["id"]

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "lost"},
                            headers=admin)

        assert resp.status_code == 400
        assert resp.json()["message"] == "invalid order status: lost"

    def test_cancelled_order_cannot_be_reopened(self, client, store, customer_headers,
                                                admin_headers):
        _, headers = customer_headers
        _, admin = admin_headers
        phone = store.product(stock=5)
        order_id = checkout(client, headers, (phone, 3)).json()["id"]
        client.patch(f"/orders/{order_id}/status", json={"status": "CANCELLED"}, headers=admin)

        resp = client.patch(f"/orders/{order_id}/status", json={"status": "PENDING"},
                            headers=admin)

        assert resp.status_code == 400
        assert resp.json() == {"message": "cancelled orders cannot be reopened"}
        assert store.stock(phone) == 5

    def test_unknown_order(self, client, admin_headers):
        _, admin = admin_headers
        resp = client.patch("/orders/77/status", json={"status": "SHIPPED"}, headers=admin)
        assert resp.status_code == 404


class TestCouponPreview:
    def test_valid_coupon(self, client, store):
        coupon_id = store.coupon("SALE10", value=10, max_discount=20000)

        resp = client.post("/coupons/validate", json={"code": "sale10", "orderTotal": 300000})

        assert resp.status_code == 200
        body = resp.json()
        assert body["valid"] is True
        assert body["coupon"]["code"] == "SALE10"
        assert body["coupon"]["type"] == "PERCENT"
        assert Decimal(body["discountAmount"]) == 20000
        assert Decimal(body["finalTotal"]) == 280000
        assert store.get(Coupon, coupon_id).used_count == 0

    def test_unknown_coupon(self, client):
        resp = client.post("/coupons/validate", json={"code": "NOPE", "orderTotal": 1})
        assert resp.status_code == 404

    def test_expired_coupon_reports_reason(self, client, store):
        past = datetime.now(timezone.utc) - timedelta(days=2)
        store.coupon("OLD", start_at=past - timedelta(days=5), end_at=past)

        resp = client.post("/coupons/validate", json={"code": "OLD", "orderTotal": 100})

        assert resp.status_code == 400
        assert resp.json() == {"message": "coupon has expired"}


def test_unexpected_error_is_a_json_500(client, customer_headers, store, monkeypatch):
    _, headers = customer_headers
    phone = store.product()

    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(orders, "create_order", explode)
    raw_client = TestClient(app, raise_server_exceptions=False)

    resp = checkout(raw_client, headers, (phone, 1))

    assert resp.status_code == 500
    assert resp.json() == {"message": "internal server error"}
