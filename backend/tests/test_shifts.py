"""
Shift and cash reconciliation tests.

Verifies:
- expected = opening + cash sales - cash refunds + cash in - cash out
- variance = counted - expected, frozen at close
- One open shift per staff member
- Only the owner or a manager closes a shift
"""

from datetime import timedelta

import pytest

from retail.errors import ForbiddenError, ShiftError
from retail.services import auth_service, order_service, shift_service
from retail.time_utils import utcnow
from retail.validation import OrderDraft
from tests.helpers import PASSWORD, auth_headers, get_auth_token


def cash_sale(session, product, qty=1, *, method="cash", now=None):
    draft = OrderDraft.from_dict(
        {"items": [{"product_id": product.id, "qty": qty}], "payment": {"method": method}},
        allow_price_override=True,
    )
    order, _ = order_service.create_order(session, draft, source="pos", actor="test", now=now)
    return order


@pytest.fixture
def opened_at():
    return utcnow() - timedelta(hours=1)


@pytest.fixture
def other_cashier(db_session, manager):
    return auth_service.create_staff(
        db_session, name="Riley", username="riley", password=PASSWORD, role="cashier", actor=manager, rounds=4
    )


# =============================================================================
# RECONCILIATION
# =============================================================================


class TestReconciliation:

    def test_expected_and_variance(self, db_session, cashier, make_product, opened_at):
        product = make_product(price_cents=5000, stock=10)
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=10000, now=opened_at)
        cash_sale(db_session, product, now=opened_at + timedelta(minutes=1))
        shift_service.add_cash_movement(db_session, cashier, movement_type="out", amount_cents=2000, reason="float")

        shift, totals = shift_service.close_shift(db_session, shift.id, cashier, closing_cash_cents=12500)

        assert totals["cash_sales_cents"] == 5000
        assert totals["cash_out_cents"] == 2000
        assert shift.expected_cash_cents == 13000
        assert shift.variance_cents == -500
        assert shift.status == "closed"

    def test_non_cash_and_cancelled_orders_excluded(self, db_session, cashier, make_product, opened_at):
        product = make_product(price_cents=1000, stock=10)
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=0, now=opened_at)
        cash_sale(db_session, product, method="mobile", now=opened_at + timedelta(minutes=1))
        cancelled = cash_sale(db_session, product, now=opened_at + timedelta(minutes=2))
        order_service.cancel_order(db_session, cancelled, actor="test")
        shift_service.add_cash_movement(db_session, cashier, movement_type="in", amount_cents=300)

        _, totals = shift_service.close_shift(db_session, shift.id, cashier, closing_cash_cents=300)

        assert totals["mobile_sales_cents"] == 1000
        assert totals["cash_sales_cents"] == 0
        assert totals["expected_cash_cents"] == 300
        assert totals["variance_cents"] == 0

    def test_returned_cash_order_is_a_refund(self, db_session, cashier, make_product, opened_at):
        product = make_product(price_cents=700, stock=10)
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=1000, now=opened_at)
        order = cash_sale(db_session, product, now=opened_at + timedelta(minutes=1))
        order_service.set_status(db_session, order, "Delivered", actor="test")
        order_service.return_order(db_session, order, actor="test")

        _, totals = shift_service.close_shift(db_session, shift.id, cashier, closing_cash_cents=300)

        assert totals["cash_sales_cents"] == 0
        assert totals["cash_refunds_cents"] == 700
        assert totals["expected_cash_cents"] == 300

    def test_closed_shift_is_frozen(self, db_session, cashier, make_product, opened_at):
        product = make_product(price_cents=5000, stock=10)
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=10000, now=opened_at)
        shift, _ = shift_service.close_shift(db_session, shift.id, cashier, closing_cash_cents=10000)

        # A late POS sync lands inside the closed window
        cash_sale(db_session, product, now=opened_at + timedelta(minutes=5))

        summary = shift_service.shift_summary(db_session, shift.id)
        assert summary["totals"]["cash_sales_cents"] == 0
        assert summary["totals"]["expected_cash_cents"] == 10000
        assert summary["totals"]["variance_cents"] == 0

    def test_open_shift_summary_is_live(self, db_session, cashier, make_product, opened_at):
        product = make_product(price_cents=400, stock=10)
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=100, now=opened_at)
        cash_sale(db_session, product, qty=2, now=opened_at + timedelta(minutes=1))

        summary = shift_service.shift_summary(db_session, shift.id)
        assert summary["shift"]["status"] == "open"
        assert summary["totals"]["expected_cash_cents"] == 900


# =============================================================================
# RULES
# =============================================================================


class TestShiftRules:

    def test_one_open_shift_per_staff(self, db_session, cashier):
        shift_service.open_shift(db_session, cashier, opening_cash_cents=0)
        with pytest.raises(ShiftError):
            shift_service.open_shift(db_session, cashier, opening_cash_cents=0)

    def test_reopen_after_close(self, db_session, cashier):
        first = shift_service.open_shift(db_session, cashier, opening_cash_cents=0)
        shift_service.close_shift(db_session, first.id, cashier, closing_cash_cents=0)
        second = shift_service.open_shift(db_session, cashier, opening_cash_cents=0)
        assert second.id != first.id

    def test_cannot_close_twice(self, db_session, cashier):
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=0)
        shift_service.close_shift(db_session, shift.id, cashier, closing_cash_cents=0)
        with pytest.raises(ShiftError):
            shift_service.close_shift(db_session, shift.id, cashier, closing_cash_cents=0)

    def test_other_cashier_cannot_close(self, db_session, cashier, other_cashier):
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=0)
        with pytest.raises(ForbiddenError):
            shift_service.close_shift(db_session, shift.id, other_cashier, closing_cash_cents=0)

    def test_manager_can_close(self, db_session, cashier, manager):
        shift = shift_service.open_shift(db_session, cashier, opening_cash_cents=0)
        shift, _ = shift_service.close_shift(db_session, shift.id, manager, closing_cash_cents=0)
        assert shift.status == "closed"

    def test_movement_needs_open_shift(self, db_session, cashier):
        with pytest.raises(ShiftError):
            shift_service.add_cash_movement(db_session, cashier, movement_type="in", amount_cents=100)


# =============================================================================
# ROUTES
# =============================================================================


class TestShiftRoutes:

    def test_open_move_close(self, client, db_session, cashier_headers):
        opened = client.post("/api/shifts/open", json={"opening_cash_cents": 5000}, headers=cashier_headers)
        assert opened.status_code == 201
        shift_id = opened.json["shift"]["id"]

        again = client.post("/api/shifts/open", json={"opening_cash_cents": 0}, headers=cashier_headers)
        assert again.status_code == 409

        moved = client.post(
            "/api/shifts/cash-movements",
            json={"type": "in", "amount_cents": 1500, "reason": "change float"},
            headers=cashier_headers,
        )
        assert moved.status_code == 201

        current = client.get("/api/shifts/current", headers=cashier_headers).json
        assert current["totals"]["expected_cash_cents"] == 6500

        closed = client.post(f"/api/shifts/{shift_id}/close", json={"closing_cash_cents": 6600}, headers=cashier_headers)
        assert closed.status_code == 200
        assert closed.json["totals"]["variance_cents"] == 100

        assert client.get("/api/shifts/current", headers=cashier_headers).json["shift"] is None

    def test_summary_owner_or_manager(self, client, db_session, cashier_headers, manager_headers, other_cashier):
        shift_id = client.post("/api/shifts/open", json={}, headers=cashier_headers).json["shift"]["id"]
        other_headers = auth_headers(get_auth_token(client, "riley"))

        assert client.get(f"/api/shifts/{shift_id}/summary", headers=cashier_headers).status_code == 200
        assert client.get(f"/api/shifts/{shift_id}/summary", headers=manager_headers).status_code == 200
        assert client.get(f"/api/shifts/{shift_id}/summary", headers=other_headers).status_code == 403

    def test_zero_movement_rejected(self, client, db_session, cashier_headers):
        client.post("/api/shifts/open", json={}, headers=cashier_headers)
        resp = client.post("/api/shifts/cash-movements", json={"type": "out", "amount_cents": 0}, headers=cashier_headers)
        assert resp.status_code == 400
