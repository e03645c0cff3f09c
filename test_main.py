"""
test_main.py
============
API tests for the Food Delivery Orders & Vouchers API.

Covers:
- Voucher CRUD, filters, categories and code generation
- Request validation (percent over 100, bad condition values)
- Eligible voucher listing for a user
- Voucher validation at checkout, including the SAVE10 scenarios
"""

import contextlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import WebSocket
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from conftest import TestingSessionLocal
from main import app, get_db
from notifier import manager
from repositories import VoucherRepository


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_db(db):
    """Fresh tables come from the db fixture; route the app to the test database."""
    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides.clear()


client = TestClient(app)


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def in_days(days):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def category_id(name):
    categories = client.get("/vouchers/categories").json()
    return next(c["voucher_category_id"] for c in categories if c["name"] == name)


def create_voucher(code="SAVE10", voucher_type="Percentage", discount_amount=10, **kwargs):
    payload = {
        "code": code,
        "voucher_type": voucher_type,
        "discount_amount": discount_amount,
        "expiration_date": in_days(30),
    }
    payload.update(kwargs)
    return client.post("/vouchers", json=payload)


def validate(code, user_id, order_total, restaurant_id=1, product_ids=None):
    return client.post("/vouchers/validate", json={
        "voucher_code": code,
        "user_id": user_id,
        "order_total": order_total,
        "restaurant_id": restaurant_id,
        "product_ids": product_ids,
    })


# ══════════════════════════════════════════════
#  CRUD Tests
# ══════════════════════════════════════════════

class TestVoucherCRUD:

    def test_create_voucher(self):
        resp = create_voucher(minimum_order_amount=50000, usage_limit=5)
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == "Voucher created successfully."
        voucher = body["voucher"]
        assert voucher["code"] == "SAVE10"
        assert voucher["voucher_type"] == "Percentage"
        assert voucher["status"] == "Active"
        assert voucher["apply_mode"] == "Individual"
        assert voucher["usage_limit"] == 5
        assert "voucher_id" in voucher

    def test_create_voucher_with_category_and_conditions(self):
        resp = create_voucher(
            code="SHIPVIP",
            apply_mode="Condition",
            voucher_category_id=category_id("Free Shipping"),
            conditions=[
                {"condition_type": "User", "field": "Role", "operator": "IN", "value": '["VIP", "Customer"]'},
                {"condition_type": "Product", "field": "MinimumQuantity", "operator": ">=", "value": "4|2"},
            ],
        )
        assert resp.status_code == 201
        voucher = resp.json()["voucher"]
        assert voucher["category_name"] == "Free Shipping"
        assert [c["field"] for c in voucher["conditions"]] == ["Role", "MinimumQuantity"]

    def test_create_duplicate_code(self):
        create_voucher()
        resp = create_voucher()
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Voucher code already exists."

    def test_create_expired(self):
        resp = create_voucher(expiration_date=in_days(-1))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Expiration date must be in the future."

    def test_get_all_vouchers(self):
        create_voucher(code="A")
        create_voucher(code="B", status="Inactive")
        resp = client.get("/vouchers")
        assert resp.status_code == 200
        assert len(resp.json()) == 2

    def test_get_all_vouchers_filtered(self):
        create_voucher(code="A", voucher_category_id=category_id("Restaurant"), restaurant_id=3)
        create_voucher(code="B", voucher_category_id=category_id("Restaurant"), status="Inactive")
        create_voucher(code="C", voucher_category_id=category_id("Free Shipping"))
        resp = client.get("/vouchers", params={"status": "Active", "category": "Restaurant"})
        assert resp.status_code == 200
        assert [v["code"] for v in resp.json()] == ["A"]

    def test_get_voucher_by_id(self):
        created = create_voucher().json()["voucher"]
        resp = client.get(f"/vouchers/{created['voucher_id']}")
        assert resp.status_code == 200
        assert resp.json()["code"] == "SAVE10"

    def test_get_voucher_not_found(self):
        resp = client.get("/vouchers/9999")
        assert resp.status_code == 404

    def test_get_voucher_database_error(self, monkeypatch):
        created = create_voucher().json()["voucher"]

        def broken(self, voucher_id):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(VoucherRepository, "get_voucher", broken)
        resp = client.get(f"/vouchers/{created['voucher_id']}")
        assert resp.status_code == 500

    def test_update_voucher(self):
        created = create_voucher(usage_limit=5).json()["voucher"]
        resp = client.put(f"/vouchers/{created['voucher_id']}", json={"status": "Inactive"})
        assert resp.status_code == 200
        voucher = resp.json()["voucher"]
        assert voucher["status"] == "Inactive"
        assert voucher["usage_limit"] == 5

    def test_update_voucher_conditions(self):
        created = create_voucher(conditions=[
            {"condition_type": "User", "field": "TotalOrders", "operator": ">", "value": "3"},
        ]).json()["voucher"]
        resp = client.put(f"/vouchers/{created['voucher_id']}", json={
            "update_conditions": True,
            "conditions": [],
        })
        assert resp.status_code == 200
        assert resp.json()["voucher"]["conditions"] == []

    def test_update_voucher_code_collision(self):
        create_voucher(code="TAKEN")
        created = create_voucher(code="MINE").json()["voucher"]
        resp = client.put(f"/vouchers/{created['voucher_id']}", json={"code": "TAKEN"})
        assert resp.status_code == 400

    def test_update_voucher_not_found(self):
        resp = client.put("/vouchers/9999", json={"status": "Inactive"})
        assert resp.status_code == 404

    def test_delete_voucher(self):
        created = create_voucher().json()["voucher"]
        resp = client.delete(f"/vouchers/{created['voucher_id']}")
        assert resp.status_code == 204
        resp = client.get(f"/vouchers/{created['voucher_id']}")
        assert resp.status_code == 404

    def test_delete_voucher_not_found(self):
        resp = client.delete("/vouchers/9999")
        assert resp.status_code == 404

    def test_categories(self):
        resp = client.get("/vouchers/categories")
        assert resp.status_code == 200
        assert [c["name"] for c in resp.json()] == ["User", "Restaurant", "Product", "Free Shipping"]

    def test_generate_code(self):
        create_voucher()
        resp = client.get("/vouchers/generate-code")
        assert resp.status_code == 200
        code = resp.json()["code"]
        assert len(code) == 8
        assert code.isalnum() and code.upper() == code


# ══════════════════════════════════════════════
#  Validation Tests
# ══════════════════════════════════════════════

class TestRequestValidation:

    def test_invalid_voucher_type(self):
        resp = create_voucher(voucher_type="BuyOneGetOne")
        assert resp.status_code == 422

    def test_percentage_over_100(self):
        resp = create_voucher(discount_amount=150)
        assert resp.status_code == 422

    def test_non_positive_discount(self):
        resp = create_voucher(voucher_type="Fixed", discount_amount=0)
        assert resp.status_code == 422

    def test_negative_usage_limit(self):
        resp = create_voucher(usage_limit=-1)
        assert resp.status_code == 422

    def test_malformed_minimum_quantity_value(self):
        resp = create_voucher(conditions=[
            {"condition_type": "Product", "field": "MinimumQuantity", "operator": ">=", "value": "4"},
        ])
        assert resp.status_code == 422

    def test_in_value_must_be_json_array(self):
        resp = create_voucher(conditions=[
            {"condition_type": "User", "field": "Role", "operator": "IN", "value": "VIP,Customer"},
        ])
        assert resp.status_code == 422

    def test_unknown_condition_field(self):
        resp = create_voucher(conditions=[
            {"condition_type": "User", "field": "Birthday", "operator": "=", "value": "2000-01-01"},
        ])
        assert resp.status_code == 422

    def test_negative_order_total(self):
        resp = validate("SAVE10", 1, -5)
        assert resp.status_code == 422

    @pytest.mark.parametrize("field,value", [
        ("TotalAmount", "NaN"),
        ("TotalAmount", "Infinity"),
        ("TotalAmount", "lots"),
    ])
    def test_order_amount_value_must_be_a_finite_number(self, field, value):
        resp = create_voucher(conditions=[
            {"condition_type": "Order", "field": field, "operator": ">", "value": value},
        ])
        assert resp.status_code == 422

    def test_total_orders_value_must_be_whole_number(self):
        resp = create_voucher(conditions=[
            {"condition_type": "User", "field": "TotalOrders", "operator": ">", "value": "many"},
        ])
        assert resp.status_code == 422

    @pytest.mark.parametrize("condition_type,field", [("User", "JoinDate"), ("Order", "OrderDate")])
    def test_date_value_must_be_iso_date(self, condition_type, field):
        resp = create_voucher(conditions=[
            {"condition_type": condition_type, "field": field, "operator": ">", "value": "last year"},
        ])
        assert resp.status_code == 422

    def test_valid_date_value_accepted(self):
        resp = create_voucher(conditions=[
            {"condition_type": "User", "field": "JoinDate", "operator": "<", "value": "2024-01-01"},
        ])
        assert resp.status_code == 201


# ══════════════════════════════════════════════
#  Eligible Vouchers Tests
# ══════════════════════════════════════════════

class TestEligibleVouchers:

    def test_eligible_vouchers(self, make_user):
        customer = make_user(role="Customer")
        other = make_user(role="Customer")
        create_voucher(code="PUBLIC")
        create_voucher(code="OWN", user_id=customer.user_id)
        create_voucher(code="THEIRS", user_id=other.user_id)
        create_voucher(code="SHIP", apply_mode="Condition", voucher_category_id=category_id("Free Shipping"))
        create_voucher(code="VIP", apply_mode="Condition", conditions=[
            {"condition_type": "User", "field": "Role", "operator": "=", "value": "VIP"},
        ])

        resp = client.get("/vouchers/eligible", params={"user_id": customer.user_id})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert sorted(v["code"] for v in body["vouchers"]) == ["OWN", "PUBLIC", "SHIP"]

    def test_inactive_voucher_excluded(self, make_user):
        customer = make_user()
        create_voucher(code="OFF", status="Inactive")
        body = client.get("/vouchers/eligible", params={"user_id": customer.user_id}).json()
        assert body["vouchers"] == []

    def test_unknown_user(self):
        body = client.get("/vouchers/eligible", params={"user_id": 9999}).json()
        assert body["success"] is False
        assert body["message"] == "User not found."
        assert body["vouchers"] == []


# ══════════════════════════════════════════════
#  Validate Voucher Tests
# ══════════════════════════════════════════════

class TestValidateVoucher:

    def test_save10_valid(self, make_user):
        customer = make_user()
        create_voucher(code="SAVE10", minimum_order_amount=50000, usage_limit=5)

        resp = validate("SAVE10", customer.user_id, 200000)

        assert resp.status_code == 200
        body = resp.json()
        assert body["is_valid"] is True
        assert body["message"] == "Voucher is valid."
        assert Decimal(str(body["discount_amount"])) == Decimal("20000")
        assert body["voucher_type"] == "Percentage"

    def test_save10_below_minimum(self, make_user):
        customer = make_user()
        create_voucher(code="SAVE10", minimum_order_amount=50000, usage_limit=5)

        body = validate("SAVE10", customer.user_id, 30000).json()

        assert body["is_valid"] is False
        assert "50,000" in body["message"]
        assert Decimal(str(body["discount_amount"])) == 0

    def test_percentage_cap(self, make_user):
        customer = make_user()
        create_voucher(code="HALF", discount_amount=50, maximum_discount_amount=20000)
        body = validate("HALF", customer.user_id, 100000).json()
        assert Decimal(str(body["discount_amount"])) == Decimal("20000")

    def test_fixed_discount(self, make_user):
        customer = make_user()
        create_voucher(code="FLAT", voucher_type="Fixed", discount_amount=10000)
        body = validate("FLAT", customer.user_id, 500000).json()
        assert Decimal(str(body["discount_amount"])) == Decimal("10000")

    def test_invalid_code(self, make_user):
        customer = make_user()
        body = validate("NOPE", customer.user_id, 100000).json()
        assert body["is_valid"] is False
        assert body["message"] == "Invalid or expired voucher code."

    def test_wrong_restaurant(self, make_user):
        customer = make_user()
        create_voucher(code="PHO", voucher_category_id=category_id("Restaurant"), restaurant_id=3)
        body = validate("PHO", customer.user_id, 100000, restaurant_id=4).json()
        assert body["is_valid"] is False
        assert body["message"] == "This voucher does not apply to this restaurant."

    def test_conditions_not_met(self, make_user):
        customer = make_user()
        create_voucher(code="AND", apply_mode="Condition", conditions=[
            {"condition_type": "User", "field": "Role", "operator": "=", "value": "Customer"},
            {"condition_type": "User", "field": "TotalOrders", "operator": ">", "value": "10"},
        ])
        body = validate("AND", customer.user_id, 100000).json()
        assert body["is_valid"] is False
        assert body["message"] == "You are not eligible to use this voucher."

    def test_usage_exhausted(self, make_user):
        customer = make_user()
        create_voucher(code="GONE", usage_limit=0)
        body = validate("GONE", customer.user_id, 100000).json()
        assert body["message"] == "This voucher has reached its usage limit."


# ══════════════════════════════════════════════
#  Notification Socket Tests
# ══════════════════════════════════════════════

class TestNotificationSocket:

    def test_closed_socket_is_unregistered(self):
        with client.websocket_connect("/ws/notifications?user_id=42&restaurant_id=5"):
            pass
        assert 42 not in manager.user_connections
        assert "Restaurant_5" not in manager.group_connections

    def test_socket_error_still_unregisters(self, monkeypatch):
        async def broken_receive(self):
            raise RuntimeError("malformed frame")

        monkeypatch.setattr(WebSocket, "receive_text", broken_receive)
        with contextlib.suppress(Exception):
            with client.websocket_connect("/ws/notifications?user_id=43&restaurant_id=6"):
                pass
        assert 43 not in manager.user_connections
        assert "Restaurant_6" not in manager.group_connections


class TestHealth:

    def test_root(self):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
