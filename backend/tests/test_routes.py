"""
HTTP contract tests: status codes, the {success, error} envelope,
authentication, admin-only actions and tenant scoping.
"""

import pytest

from conftest import auth_headers, issue_token
from shopledger.services import session_service


ADDRESS = {"name": "Asha Rao", "line1": "1 MG Road", "city": "Pune"}


@pytest.fixture
def admin_headers(admin_user):
    return auth_headers(issue_token(admin_user))


@pytest.fixture
def staff_headers(staff_user):
    return auth_headers(issue_token(staff_user))


@pytest.fixture
def other_headers(other_admin):
    return auth_headers(issue_token(other_admin))


def _place_order(client, store, variant, quantity=2, **extra):
    body = {
        "store_id": store.id,
        "email": "buyer@example.com",
        "items": [{"variant_id": variant.id, "quantity": quantity}],
        "shipping_address": ADDRESS,
    }
    body.update(extra)
    return client.post("/api/checkout/orders", json=body)


def _captured_order(client, store, variant, headers):
    order = _place_order(client, store, variant).json["order"]
    payment_id = order["payments"][0]["id"]
    assert client.post(f"/api/webhooks/payments/{payment_id}/authorized", json={}).status_code == 200
    assert client.post(f"/api/admin/payments/{payment_id}/capture", headers=headers).status_code == 200
    return order, payment_id


class TestSystem:

    def test_health(self, client, db_session):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json["checks"]["database"]["status"] == "healthy"


class TestAuthentication:

    def test_missing_token(self, client, db_session):
        response = client.get("/api/admin/orders/1")
        assert response.status_code == 401
        assert response.json == {"success": False, "error": "Authentication required"}

    def test_unknown_token(self, client, db_session):
        response = client.get("/api/admin/orders/1", headers=auth_headers("nope"))
        assert response.status_code == 401

    def test_deactivated_user(self, client, db_session, staff_user):
        headers = auth_headers(issue_token(staff_user))
        staff_user.is_active = False
        db_session.commit()
        assert client.get("/api/admin/discounts", headers=headers).status_code == 401

    def test_revoked_token(self, client, db_session, staff_user):
        token = issue_token(staff_user)
        assert client.get("/api/admin/discounts", headers=auth_headers(token)).status_code == 200

        assert session_service.revoke_session(token) is True
        assert client.get("/api/admin/discounts", headers=auth_headers(token)).status_code == 401


class TestCheckout:

    def test_place_order(self, client, db_session, store, stocked_variant, location):
        response = _place_order(client, store, stocked_variant)

        assert response.status_code == 201
        order = response.json["order"]
        assert order["total_amount"] == 11800
        assert order["payments"][0]["status"] == "pending"
        assert order["timeline"][0]["to_status"] == "pending"

    def test_float_quantity_rejected(self, client, db_session, store, stocked_variant, location):
        response = _place_order(client, store, stocked_variant, quantity=1.5)
        assert response.status_code == 400
        assert response.json["success"] is False

    def test_insufficient_stock_is_conflict(self, client, db_session, store, stocked_variant, location):
        response = _place_order(client, store, stocked_variant, quantity=50)
        assert response.status_code == 409

    def test_unknown_store(self, client, db_session, stocked_variant):
        response = client.post("/api/checkout/orders", json={
            "store_id": 999,
            "email": "buyer@example.com",
            "items": [{"variant_id": stocked_variant.id, "quantity": 1}],
            "shipping_address": ADDRESS,
        })
        assert response.status_code == 404

    def test_validate_discount(self, client, db_session, store, admin_headers):
        created = client.post("/api/admin/discounts", headers=admin_headers, json={
            "code": "SAVE10", "title": "Ten off", "type": "percentage", "value": 1000,
            "minimum_amount": 5000, "status": "active",
        })
        assert created.status_code == 201

        ok = client.post("/api/checkout/discounts/validate",
                         json={"store_id": store.id, "code": "save10", "order_amount": 10000})
        assert ok.status_code == 200
        assert ok.json["valid"] is True
        assert ok.json["discount_amount"] == 1000

        low = client.post("/api/checkout/discounts/validate",
                          json={"store_id": store.id, "code": "SAVE10", "order_amount": 4000})
        assert low.status_code == 200
        assert low.json == {
            "success": False,
            "valid": False,
            "error": "Minimum order amount of 50.00 required",
        }

    def test_validate_shipping_discount_omits_amount(self, client, db_session, store, admin_headers):
        created = client.post("/api/admin/discounts", headers=admin_headers, json={
            "code": "SHIPFREE", "title": "Free shipping", "type": "free_shipping", "value": 0, "status": "active",
        })
        assert created.status_code == 201

        response = client.post("/api/checkout/discounts/validate",
                               json={"store_id": store.id, "code": "SHIPFREE", "order_amount": 10000})
        assert response.status_code == 200
        assert response.json["valid"] is True
        assert "discount_amount" not in response.json


class TestOrders:

    def test_tenant_scoping(self, client, db_session, store, stocked_variant, location, other_headers):
        order = _place_order(client, store, stocked_variant).json["order"]

        response = client.get(f"/api/admin/orders/{order['id']}", headers=other_headers)
        assert response.status_code == 404

    def test_status_note_and_timeline(self, client, db_session, store, stocked_variant, location, staff_headers):
        order = _place_order(client, store, stocked_variant).json["order"]

        response = client.post(f"/api/admin/orders/{order['id']}/status", headers=staff_headers,
                               json={"status": "confirmed"})
        assert response.status_code == 200
        assert response.json["order"]["status"] == "confirmed"

        response = client.post(f"/api/admin/orders/{order['id']}/notes", headers=staff_headers,
                               json={"note": "Call before delivery"})
        assert response.status_code == 201

        timeline = client.get(f"/api/admin/orders/{order['id']}/timeline", headers=staff_headers).json["timeline"]
        assert [e["status_type"] for e in timeline] == ["order", "order", "note"]

        public = client.get(f"/api/admin/orders/{order['id']}/timeline?include_internal=false",
                            headers=staff_headers).json["timeline"]
        assert len(public) == 2

    def test_illegal_transition_is_conflict(self, client, db_session, store, stocked_variant, location, staff_headers):
        order = _place_order(client, store, stocked_variant).json["order"]
        response = client.post(f"/api/admin/orders/{order['id']}/status", headers=staff_headers,
                               json={"status": "delivered"})
        assert response.status_code == 409

    def test_cancel_requires_admin(self, client, db_session, store, stocked_variant, location,
                                   staff_headers, admin_headers):
        order = _place_order(client, store, stocked_variant).json["order"]

        denied = client.post(f"/api/admin/orders/{order['id']}/cancel", headers=staff_headers, json={})
        assert denied.status_code == 403

        allowed = client.post(f"/api/admin/orders/{order['id']}/cancel", headers=admin_headers,
                              json={"reason": "Out of area"})
        assert allowed.status_code == 200
        assert allowed.json["order"]["status"] == "cancelled"

    def test_fulfill(self, client, db_session, store, stocked_variant, location, staff_headers):
        order = _place_order(client, store, stocked_variant).json["order"]
        response = client.post(f"/api/admin/orders/{order['id']}/fulfill", headers=staff_headers, json={})
        assert response.status_code == 200
        assert response.json["order"]["fulfillment_status"] == "fulfilled"


class TestPayments:

    def test_refund_flow(self, client, db_session, store, stocked_variant, location, admin_headers):
        order, payment_id = _captured_order(client, store, stocked_variant, admin_headers)

        partial = client.post(f"/api/admin/payments/{payment_id}/refund", headers=admin_headers,
                              json={"amount": 1800, "reason": "Damaged box"})
        assert partial.status_code == 201
        assert partial.json["summary"]["payment_status"] == "partially_refunded"

        too_much = client.post(f"/api/admin/payments/{payment_id}/refund", headers=admin_headers,
                               json={"amount": 10001, "reason": "Again"})
        assert too_much.status_code == 409

        rest = client.post(f"/api/admin/payments/{payment_id}/refund", headers=admin_headers,
                           json={"reason": "Customer request"})
        assert rest.status_code == 201
        assert rest.json["refund"]["amount"] == 10000
        assert rest.json["summary"]["payment_status"] == "refunded"

    def test_refund_requires_admin(self, client, db_session, store, stocked_variant, location,
                                   admin_headers, staff_headers):
        _, payment_id = _captured_order(client, store, stocked_variant, admin_headers)
        response = client.post(f"/api/admin/payments/{payment_id}/refund", headers=staff_headers,
                               json={"reason": "x"})
        assert response.status_code == 403

    def test_refund_without_reason(self, client, db_session, store, stocked_variant, location, admin_headers):
        _, payment_id = _captured_order(client, store, stocked_variant, admin_headers)
        response = client.post(f"/api/admin/payments/{payment_id}/refund", headers=admin_headers, json={})
        assert response.status_code == 400

    def test_failed_webhook_and_retry(self, client, db_session, store, stocked_variant, location, staff_headers):
        order = _place_order(client, store, stocked_variant).json["order"]
        payment_id = order["payments"][0]["id"]

        failed = client.post(f"/api/webhooks/payments/{payment_id}/failed", json={"message": "Declined"})
        assert failed.status_code == 200
        assert failed.json["payment"]["failure_message"] == "Declined"

        retry = client.post(f"/api/admin/payments/{payment_id}/retry", headers=staff_headers)
        assert retry.status_code == 201
        assert retry.json["payment"]["retry_count"] == 1

    def test_webhook_redelivery_is_accepted(self, client, db_session, store, stocked_variant, location):
        order = _place_order(client, store, stocked_variant).json["order"]
        payment_id = order["payments"][0]["id"]

        url = f"/api/webhooks/payments/{payment_id}/authorized"
        first = client.post(url, json={"gateway_transaction_id": "txn_1"})
        again = client.post(url, json={"gateway_transaction_id": "txn_1"})

        assert first.status_code == 200
        assert again.status_code == 200
        assert again.json["payment"]["status"] == "authorized"

    def test_bulk_refund(self, client, db_session, store, stocked_variant, location, admin_headers):
        _, payment_id = _captured_order(client, store, stocked_variant, admin_headers)
        response = client.post("/api/admin/payments/bulk-refund", headers=admin_headers,
                               json={"payment_ids": [payment_id, 424242], "reason": "Recall"})
        assert response.status_code == 200
        assert response.json["succeeded"] == 1
        assert response.json["failed"] == 1
        assert response.json["success"] is False


class TestDiscounts:

    def test_crud(self, client, db_session, store, admin_headers):
        invalid = client.post("/api/admin/discounts", headers=admin_headers,
                              json={"code": "X", "title": "Bad", "type": "percentage", "value": 20000})
        assert invalid.status_code == 400

        created = client.post("/api/admin/discounts", headers=admin_headers, json={
            "code": "flat500", "title": "Flat", "type": "fixed_amount", "value": 500, "status": "active",
        })
        assert created.status_code == 201
        discount = created.json["discount"]
        assert discount["code"] == "FLAT500"

        duplicate_code = client.post("/api/admin/discounts", headers=admin_headers, json={
            "code": "FLAT500", "title": "Flat", "type": "fixed_amount", "value": 500,
        })
        assert duplicate_code.status_code == 409

        toggled = client.post(f"/api/admin/discounts/{discount['id']}/toggle", headers=admin_headers)
        assert toggled.json["discount"]["status"] == "disabled"

        copy = client.post(f"/api/admin/discounts/{discount['id']}/duplicate", headers=admin_headers)
        assert copy.status_code == 201
        assert copy.json["discount"]["status"] == "draft"

        check = client.get(f"/api/admin/discounts/{discount['id']}/usage-check", headers=admin_headers)
        assert check.json["consistent"] is True

        deleted = client.delete(f"/api/admin/discounts/{discount['id']}", headers=admin_headers)
        assert deleted.status_code == 200
        assert client.get(f"/api/admin/discounts/{discount['id']}", headers=admin_headers).status_code == 404

    def test_mutations_require_admin(self, client, db_session, store, staff_headers):
        response = client.post("/api/admin/discounts", headers=staff_headers, json={
            "code": "STAFF", "title": "Nope", "type": "fixed_amount", "value": 100,
        })
        assert response.status_code == 403
        assert client.get("/api/admin/discounts", headers=staff_headers).status_code == 200


class TestInventory:

    def test_adjust_and_reject_negative(self, client, db_session, store, variant, location, staff_headers):
        body = {"variant_id": variant.id, "location_id": location.id, "delta": 3, "reason_type": "received"}
        response = client.post("/api/admin/inventory/adjust", headers=staff_headers, json=body)
        assert response.status_code == 200
        assert response.json["item"]["quantity"] == 3

        body.update(delta=-5, reason_type="correction")
        response = client.post("/api/admin/inventory/adjust", headers=staff_headers, json=body)
        assert response.status_code == 409

    def test_set_quantity_requires_admin(self, client, db_session, store, stocked_variant, location,
                                         staff_headers, admin_headers):
        body = {"variant_id": stocked_variant.id, "location_id": location.id, "quantity": 2, "reason": "Count"}
        assert client.post("/api/admin/inventory/set-quantity", headers=staff_headers, json=body).status_code == 403

        response = client.post("/api/admin/inventory/set-quantity", headers=admin_headers, json=body)
        assert response.status_code == 200
        assert response.json["item"]["quantity"] == 2

    def test_other_store_location_not_found(self, client, db_session, store, variant, location, other_headers):
        body = {"variant_id": variant.id, "location_id": location.id, "delta": 3, "reason_type": "received"}
        response = client.post("/api/admin/inventory/adjust", headers=other_headers, json=body)
        assert response.status_code == 404


class TestReturns:

    def _shipped(self, client, store, variant, admin_headers):
        order, _ = _captured_order(client, store, variant, admin_headers)
        fulfilled = client.post(f"/api/admin/orders/{order['id']}/fulfill", headers=admin_headers, json={})
        assert fulfilled.status_code == 200
        return order

    def test_request_approve_and_process(self, client, db_session, store, stocked_variant, location,
                                         admin_headers, staff_headers):
        order = self._shipped(client, store, stocked_variant, admin_headers)
        item_id = order["items"][0]["id"]

        requested = client.post(f"/api/admin/orders/{order['id']}/returns", headers=staff_headers, json={
            "reason": "damaged", "lines": [{"order_item_id": item_id, "quantity": 2}],
        })
        assert requested.status_code == 201
        return_id = requested.json["return"]["id"]
        assert requested.json["return"]["status"] == "requested"

        assert client.post(f"/api/admin/returns/{return_id}/approve", headers=staff_headers).status_code == 403
        approved = client.post(f"/api/admin/returns/{return_id}/approve", headers=admin_headers)
        assert approved.status_code == 200

        processed = client.post(f"/api/admin/returns/{return_id}/process", headers=admin_headers,
                                json={"resolution": "refund"})
        assert processed.status_code == 200
        assert processed.json["return"]["status"] == "processed"
        assert processed.json["return"]["refund_id"] is not None

        detail = client.get(f"/api/admin/orders/{order['id']}", headers=staff_headers).json["order"]
        assert detail["fulfillment_status"] == "returned"
        assert detail["payment_status"] == "refunded"

    def test_invalid_requests(self, client, db_session, store, stocked_variant, location, admin_headers):
        order = self._shipped(client, store, stocked_variant, admin_headers)
        item_id = order["items"][0]["id"]
        url = f"/api/admin/orders/{order['id']}/returns"

        no_lines = client.post(url, headers=admin_headers, json={"reason": "damaged"})
        assert no_lines.status_code == 400

        too_many = client.post(url, headers=admin_headers, json={
            "reason": "damaged", "lines": [{"order_item_id": item_id, "quantity": 3}],
        })
        assert too_many.status_code == 409
        assert too_many.json["success"] is False

    def test_reject_and_list(self, client, db_session, store, stocked_variant, location, admin_headers):
        order = self._shipped(client, store, stocked_variant, admin_headers)
        item_id = order["items"][0]["id"]
        return_id = client.post(f"/api/admin/orders/{order['id']}/returns", headers=admin_headers, json={
            "reason": "other", "lines": [{"order_item_id": item_id, "quantity": 1}],
        }).json["return"]["id"]

        missing_reason = client.post(f"/api/admin/returns/{return_id}/reject", headers=admin_headers, json={})
        assert missing_reason.status_code == 400
        rejected = client.post(f"/api/admin/returns/{return_id}/reject", headers=admin_headers,
                               json={"reason": "Worn item"})
        assert rejected.status_code == 200

        listed = client.get("/api/admin/returns?status=rejected", headers=admin_headers).json["returns"]
        assert [r["id"] for r in listed] == [return_id]
        bad_status = client.get("/api/admin/returns?status=lost", headers=admin_headers)
        assert bad_status.status_code == 400

    def test_other_store_not_found(self, client, db_session, store, stocked_variant, location,
                                   admin_headers, other_headers):
        order = self._shipped(client, store, stocked_variant, admin_headers)
        item_id = order["items"][0]["id"]
        return_id = client.post(f"/api/admin/orders/{order['id']}/returns", headers=admin_headers, json={
            "reason": "quality", "lines": [{"order_item_id": item_id, "quantity": 1}],
        }).json["return"]["id"]

        assert client.get(f"/api/admin/returns/{return_id}", headers=other_headers).status_code == 404
        assert client.post(f"/api/admin/returns/{return_id}/approve", headers=other_headers).status_code == 404
        assert client.get("/api/admin/returns", headers=other_headers).json["returns"] == []
