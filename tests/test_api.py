from decimal import Decimal

from storefront.inventory.repository import InventoryRepository
from storefront.orders.models import Order
from tests.conftest import SHIPPING

USER = {"X-User-Id": "user-1"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "ADMIN"}


def settle(client, notification, correlation_id, **kwargs):
    response = client.post("/payments/notification", json=notification(correlation_id, **kwargs))
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestCheckoutEndpoints:
    def test_start_and_read_checkout(self, client, make_product):
        bag = make_product(price="100000", stock=5)

        response = client.post(
            "/checkout",
            json={"items": [{"product_id": bag.id, "quantity": 2}], "shipping": SHIPPING},
            headers=USER,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["correlation_id"].startswith("ORDER-")
        assert Decimal(body["total_amount"]) == Decimal("200000")
        assert body["redirect_url"]

        session = client.get(f"/checkout/{body['correlation_id']}", headers=USER)
        assert session.status_code == 200
        assert session.json()["items"][0]["product_id"] == bag.id

        other = client.get(f"/checkout/{body['correlation_id']}", headers={"X-User-Id": "user-2"})
        assert other.status_code == 404

    def test_expired_checkout_is_reported(self, client, clock, make_product):
        bag = make_product(stock=5)
        staged = client.post(
            "/checkout",
            json={"items": [{"product_id": bag.id, "quantity": 1}], "shipping": SHIPPING},
            headers=USER,
        ).json()
        clock.advance(3600)

        response = client.get(f"/checkout/{staged['correlation_id']}", headers=USER)

        assert response.status_code == 404
        assert response.json()["error"] == "session_expired"

    def test_checkout_requires_identity(self, client, make_product):
        bag = make_product(stock=5)
        response = client.post(
            "/checkout", json={"items": [{"product_id": bag.id, "quantity": 1}], "shipping": SHIPPING}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "authentication_required"

    def test_shortfall_lists_lines(self, client, make_product):
        bag = make_product(name="Tote Bag", stock=1)
        response = client.post(
            "/checkout",
            json={"items": [{"product_id": bag.id, "quantity": 3}], "shipping": SHIPPING},
            headers=USER,
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "insufficient_stock"
        assert body["details"]["items"][0]["available"] == 1

    def test_bad_shipping_is_unprocessable(self, client, make_product):
        bag = make_product(stock=5)
        response = client.post(
            "/checkout",
            json={"items": [{"product_id": bag.id, "quantity": 1}], "shipping": {**SHIPPING, "postal_code": "12"}},
            headers=USER,
        )
        assert response.status_code == 422

    def test_cod_confirmation(self, client, make_product):
        bag = make_product(price="100000", stock=5)
        staged = client.post(
            "/checkout",
            json={"items": [{"product_id": bag.id, "quantity": 1}], "shipping": SHIPPING, "payment_method": "cod"},
            headers=USER,
        ).json()

        response = client.post(f"/checkout/{staged['correlation_id']}/confirm", headers=USER)

        assert response.status_code == 200
        assert response.json()["status"] == "PAID"
        assert response.json()["payment_method"] == "cod"


class TestPaymentWebhook:
    def test_settlement_then_duplicate(self, client, db, make_product, stage_session, notification):
        product = make_product(price="100000", stock=2)
        stage_session("ORDER-3001", [(product, 2, None)])

        assert settle(client, notification, "ORDER-3001") == {"success": True}
        assert settle(client, notification, "ORDER-3001") == {"success": True}

        db.expire_all()
        assert db.query(Order).count() == 1
        assert InventoryRepository(db).get_stock_level(product.id) == 0

    def test_bad_signature_is_acknowledged_unsuccessfully(self, client, notification):
        body = notification("ORDER-3002")
        body["signature_key"] = "f" * 128

        response = client.post("/payments/notification", json=body)

        assert response.status_code == 200
        assert response.json() == {"success": False}

    def test_unreadable_body(self, client):
        response = client.post(
            "/payments/notification", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 200
        assert response.json() == {"success": False}

    def test_shortfall_is_acknowledged_unsuccessfully(self, client, db, make_product, stage_session, notification):
        product = make_product(price="100000", stock=1)
        stage_session("ORDER-3003", [(product, 2, None)])

        assert settle(client, notification, "ORDER-3003") == {"success": False}
        db.expire_all()
        assert db.query(Order).count() == 0

    def test_orphaned_notification_is_acknowledged(self, client, notification):
        assert settle(client, notification, "ORDER-UNKNOWN") == {"success": True}


class TestOrderEndpoints:
    def _paid_order(self, client, make_product, stage_session, notification, correlation_id="ORDER-4001"):
        product = make_product(price="100000", stock=5)
        stage_session(correlation_id, [(product, 2, None)])
        settle(client, notification, correlation_id)
        orders = client.get("/orders/user/user-1", headers=USER).json()
        return orders[0]["order_id"], product

    def test_order_visibility(self, client, make_product, stage_session, notification):
        order_id, _ = self._paid_order(client, make_product, stage_session, notification)

        own = client.get(f"/orders/{order_id}", headers=USER)
        assert own.status_code == 200
        assert own.json()["correlation_id"] == "ORDER-4001"
        assert own.json()["payment"]["provider_status"] == "settlement"

        assert client.get(f"/orders/{order_id}", headers={"X-User-Id": "user-2"}).status_code == 404
        assert client.get("/orders/user/user-1", headers={"X-User-Id": "user-2"}).status_code == 400

    def test_refund_round_trip(self, client, db, make_product, stage_session, notification):
        order_id, product = self._paid_order(client, make_product, stage_session, notification)

        requested = client.post(f"/orders/{order_id}/refund", json={"reason": "Arrived damaged"}, headers=USER)
        assert requested.status_code == 200
        assert requested.json()["status"] == "REFUND_REQUESTED"

        again = client.post(f"/orders/{order_id}/refund", json={"reason": "Still damaged"}, headers=USER)
        assert again.status_code == 409
        assert again.json()["error"] == "already_requested"

        forbidden = client.post(
            f"/admin/orders/{order_id}/refund/resolve",
            json={"approve": True},
            headers={"X-User-Id": "user-1", "X-User-Role": "CUSTOMER"},
        )
        assert forbidden.status_code == 403

        resolved = client.post(f"/admin/orders/{order_id}/refund/resolve", json={"approve": True}, headers=ADMIN)
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "REFUNDED"

        db.expire_all()
        assert InventoryRepository(db).get_stock_level(product.id) == 5

    def test_admin_status_updates(self, client, make_product, stage_session, notification):
        order_id, _ = self._paid_order(client, make_product, stage_session, notification)

        shipped_early = client.patch(f"/admin/orders/{order_id}/status", json={"status": "SHIPPED"}, headers=ADMIN)
        assert shipped_early.status_code == 409
        assert shipped_early.json()["details"]["current_status"] == "PAID"

        refund = client.patch(f"/admin/orders/{order_id}/status", json={"status": "REFUNDED"}, headers=ADMIN)
        assert refund.status_code == 400

        processing = client.patch(f"/admin/orders/{order_id}/status", json={"status": "PROCESSING"}, headers=ADMIN)
        assert processing.status_code == 200
        assert processing.json()["status"] == "PROCESSING"


class TestInventoryEndpoints:
    def test_create_and_read_product(self, client):
        created = client.post(
            "/admin/products",
            json={"name": "Batik Shirt", "price": "200000", "variants": [{"name": "M", "stock": 3}, {"name": "L", "stock": 2}]},
            headers=ADMIN,
        )
        assert created.status_code == 201
        product_id = created.json()["id"]

        product = client.get(f"/products/{product_id}").json()
        assert product["stock"] == 5
        assert sorted(v["name"] for v in product["variants"]) == ["L", "M"]

        assert client.get("/products/PROD-MISSING").status_code == 404

        listing = client.get("/products").json()
        assert [p["id"] for p in listing] == [product_id]

    def test_adjust_and_history(self, client, make_product):
        bag = make_product(stock=10)

        adjusted = client.post(
            "/admin/inventory/adjust",
            json={"product_id": bag.id, "quantity": -2, "change_type": "DAMAGE", "reason": "water damage"},
            headers=ADMIN,
        )
        assert adjusted.status_code == 200
        assert adjusted.json()["new_stock"] == 8

        history = client.get(f"/admin/inventory/{bag.id}/history", headers=ADMIN).json()
        assert history["current_stock"] == 8
        assert history["replayed_stock"] == 8
        assert history["history"][-1]["reason"] == "Admin adjustment: water damage"
        assert history["history"][-1]["actor_id"] == "admin-1"

    def test_adjust_rejects_zero_and_sale(self, client, make_product):
        bag = make_product(stock=10)
        zero = client.post(
            "/admin/inventory/adjust", json={"product_id": bag.id, "quantity": 0, "reason": "count"}, headers=ADMIN
        )
        sale = client.post(
            "/admin/inventory/adjust",
            json={"product_id": bag.id, "quantity": -1, "change_type": "SALE", "reason": "manual"},
            headers=ADMIN,
        )
        assert zero.status_code == 400
        assert sale.status_code == 400

    def test_admin_routes_need_admin(self, client, make_product):
        bag = make_product(stock=10)
        assert client.get(f"/admin/inventory/{bag.id}/history").status_code == 401
        assert client.get(f"/admin/inventory/{bag.id}/history", headers=USER).status_code == 403

    def test_reconciliation_is_empty_after_clean_sales(self, client, make_product, stage_session, notification):
        product = make_product(price="100000", stock=5)
        stage_session("ORDER-5001", [(product, 2, None)])
        settle(client, notification, "ORDER-5001")

        response = client.get("/admin/inventory/reconciliation", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"unassigned_sales": []}
