"""
Reporting tests.

Verifies:
- Profit uses the cost captured on each order line
- Cancelled and returned orders produce no revenue
- Loyalty tiers by items bought this calendar month
- Daily cash nets refunds against sales
"""

from datetime import datetime, timedelta

from retail.services import order_service, reporting_service
from retail.time_utils import utcnow
from retail.validation import OrderDraft
from tests.helpers import sale_change


def sale(session, product, qty, *, phone=None, method="cash", now=None):
    payload = {"items": [{"product_id": product.id, "qty": qty}], "payment": {"method": method}}
    if phone:
        payload["customer"] = {"name": "Pat", "phone": phone}
    order, _ = order_service.create_order(
        session, OrderDraft.from_dict(payload, allow_price_override=True), source="pos", actor="test", now=now
    )
    return order


class TestProfitLoss:

    def test_uses_captured_cost(self, db_session, branch, make_product):
        p = make_product(price_cents=500, cost_cents=200, stock=10)
        sale(db_session, p, 2)
        p.cost_cents = 450
        db_session.commit()

        report = reporting_service.profit_loss(db_session)

        assert report["total_revenue_cents"] == 1000
        assert report["total_cost_cents"] == 400
        assert report["total_profit_cents"] == 600
        assert report["product_sales"][0]["units_sold"] == 2

    def test_cancelled_orders_excluded(self, db_session, branch, make_product):
        p = make_product(price_cents=500, stock=10)
        order = sale(db_session, p, 1)
        order_service.cancel_order(db_session, order, actor="test")

        report = reporting_service.profit_loss(db_session)
        assert report["order_count"] == 0
        assert report["total_revenue_cents"] == 0

    def test_route_manager_only(self, client, db_session, manager_headers, cashier_headers):
        assert client.get("/api/reports/profit-loss", headers=manager_headers).status_code == 200
        assert client.get("/api/reports/profit-loss", headers=cashier_headers).status_code == 403

    def test_bad_range(self, client, db_session, manager_headers):
        resp = client.get("/api/reports/profit-loss?start=yesterday", headers=manager_headers)
        assert resp.status_code == 400


class TestWeeklySales:

    def test_week_starts_on_sunday(self):
        wednesday = datetime(2026, 3, 4, 15, 30)
        assert reporting_service.week_start(wednesday) == datetime(2026, 3, 1)
        sunday = datetime(2026, 3, 1, 0, 0)
        assert reporting_service.week_start(sunday) == sunday

    def test_current_and_last_week(self, db_session, branch, make_product):
        p = make_product(price_cents=100, stock=100)
        now = utcnow()
        sale(db_session, p, 3, now=now)
        sale(db_session, p, 2, now=now - timedelta(days=7))

        report = reporting_service.weekly_sales(db_session, now=now)

        assert report["current_week"]["items_sold"] == 3
        assert report["last_week"]["items_sold"] == 2
        assert len(report["weeks"]) == reporting_service.WEEKS_IN_REPORT


class TestCustomerDiscounts:

    def test_tiers(self):
        assert reporting_service.discount_for_items(19)[0] == 0
        assert reporting_service.discount_for_items(20)[0] == 5
        assert reporting_service.discount_for_items(50)[0] == 10
        assert reporting_service.discount_for_items(100)[0] == 15

    def test_discount_lookup(self, client, db_session, branch, make_product, cashier_headers):
        p = make_product(price_cents=100, stock=100)
        sale(db_session, p, 12, phone="555 0100")
        sale(db_session, p, 8, phone="5550100")

        resp = client.get("/api/reports/customers/555%200100/discount", headers=cashier_headers)

        assert resp.status_code == 200
        assert resp.json["current_month"]["items_count"] == 20
        assert resp.json["discount_percent"] == 5

    def test_unknown_customer(self, db_session):
        entry = reporting_service.customer_discount(db_session, "000")
        assert entry["discount_percent"] == 0


class TestDailyCash:

    def test_refunds_net_against_sales(self, db_session, branch, make_product):
        p = make_product(price_cents=1000, stock=10)
        now = utcnow()
        sale(db_session, p, 2, now=now)
        returned = sale(db_session, p, 1, now=now)
        order_service.set_status(db_session, returned, "Delivered", actor="test")
        order_service.return_order(db_session, returned, actor="test")
        sale(db_session, p, 1, method="mobile", now=now)

        report = reporting_service.daily_cash(db_session, now.date())

        assert report["cash_sales_cents"] == 2000
        assert report["cash_refunds_cents"] == 1000
        assert report["net_cash_cents"] == 1000
        assert report["mobile_sales_cents"] == 1000

    def test_bad_date(self, client, db_session, manager_headers):
        resp = client.get("/api/reports/daily-cash?date=03/02/2026", headers=manager_headers)
        assert resp.status_code == 400


class TestStaffPerformanceAndAudit:

    def test_staff_performance(self, client, db_session, branch, make_product, manager_headers, pos_headers):
        p = make_product(price_cents=250, stock=10)
        client.post("/api/pos/sync", json={"changes": [sale_change([(p.id, 2)])]}, headers=pos_headers)

        rows = client.get("/api/reports/staff-performance", headers=manager_headers).json["staff"]

        assert rows[0]["staff_name"] == "Casey Cashier"
        assert rows[0]["total_sales_cents"] == 500
        assert rows[0]["avg_order_cents"] == 500

    def test_audit_log_records_logins(self, client, db_session, manager_headers):
        entries = client.get("/api/reports/audit-log?action=staff.login", headers=manager_headers).json["entries"]
        assert len(entries) == 1
        assert entries[0]["actor"] == "Morgan Manager"
