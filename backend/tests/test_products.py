"""
Product catalog and stock tests.

Verifies:
- Stock never goes negative through any writer
- Fractional quantities stay on a 3-decimal scale, so repeated small sales do not drift
- Manager-only catalog writes
- Bulk import: merge keeps going past bad rows, replace is all or nothing
"""

import pytest

from retail.errors import InsufficientStockError, ValidationError
from retail.models import Order, OrderItem, Product
from retail.services import products_service, stock_service
from tests.helpers import fetch, sale_change


# =============================================================================
# STOCK LEDGER
# =============================================================================


class TestStockLedger:

    def test_decrement_is_all_or_nothing(self, db_session, make_product):
        a = make_product(name="A", stock=5)
        b = make_product(name="B", stock=1)

        with pytest.raises(InsufficientStockError) as exc:
            stock_service.decrement_stock(db_session, {a.id: 2, b.id: 3})
        db_session.rollback()

        assert exc.value.details["items"][0]["product_id"] == b.id
        assert fetch(db_session, Product, a.id).stock == 5
        assert fetch(db_session, Product, b.id).stock == 1

    def test_exact_stock_can_be_sold(self, db_session, make_product):
        p = make_product(stock=2.5)
        stock_service.decrement_stock(db_session, {p.id: 2.5})
        db_session.commit()
        assert fetch(db_session, Product, p.id).stock == 0

    def test_fractional_sales_sell_down_to_zero(self, db_session, make_product):
        p = make_product(stock=0.3)
        for _ in range(3):
            stock_service.decrement_stock(db_session, {p.id: 0.1})
            db_session.commit()
        assert fetch(db_session, Product, p.id).stock == 0

    def test_fractional_adjustments_stay_on_scale(self, db_session, make_product):
        p = make_product(stock=0.3)
        for _ in range(3):
            stock_service.adjust_stock(db_session, p.id, -0.1)
            db_session.commit()
        assert fetch(db_session, Product, p.id).stock == 0

        stock_service.adjust_stock(db_session, p.id, 0.1 + 0.2)
        db_session.commit()
        assert fetch(db_session, Product, p.id).stock == 0.3

    def test_aggregates_repeated_lines(self):
        assert stock_service.aggregate_quantities([(1, 2), (2, 1), (1, 0.5)]) == {1: 2.5, 2: 1.0}
        assert stock_service.aggregate_quantities([(1, 0.1), (1, 0.2)]) == {1: 0.3}

    def test_adjust_below_zero_rejected(self, db_session, make_product):
        p = make_product(stock=3)
        with pytest.raises(InsufficientStockError):
            stock_service.adjust_stock(db_session, p.id, -4)
        db_session.rollback()
        assert fetch(db_session, Product, p.id).stock == 3

    def test_low_stock(self, db_session, make_product):
        make_product(name="Plenty", stock=50)
        make_product(name="Few", stock=2)
        make_product(name="None", stock=0)
        names = [p.name for p in stock_service.low_stock_products(db_session, 5)]
        assert names == ["None", "Few"]


# =============================================================================
# ROUTES
# =============================================================================


class TestProductRoutes:

    def test_public_list_and_search(self, client, db_session, make_product):
        make_product(name="Green Tea")
        make_product(name="Coffee")
        resp = client.get("/api/products?q=tea")
        assert resp.status_code == 200
        assert [p["name"] for p in resp.json["items"]] == ["Green Tea"]

    def test_barcode_lookup(self, client, db_session, make_product):
        make_product(name="Milk", barcode="4006381333931")
        assert client.get("/api/products/barcode/4006381333931").json["product"]["name"] == "Milk"
        assert client.get("/api/products/barcode/000").status_code == 404

    def test_manager_creates_product(self, client, db_session, manager_headers):
        resp = client.post("/api/products", json={"name": "Rice", "price_cents": 1200, "stock": 4.5}, headers=manager_headers)
        assert resp.status_code == 201
        assert resp.json["product"]["stock"] == 4.5

    def test_negative_price_rejected(self, client, db_session, manager_headers):
        resp = client.post("/api/products", json={"name": "Rice", "price_cents": -1}, headers=manager_headers)
        assert resp.status_code == 400

    def test_unknown_field_rejected(self, client, db_session, manager_headers, make_product):
        p = make_product()
        resp = client.patch(f"/api/products/{p.id}", json={"updated_at": "2020-01-01T00:00:00Z"}, headers=manager_headers)
        assert resp.status_code == 400

    def test_restock(self, client, db_session, manager_headers, make_product):
        p = make_product(stock=1)
        resp = client.post(f"/api/products/{p.id}/restock", json={"amount": 9}, headers=manager_headers)
        assert resp.status_code == 200
        assert resp.json["product"]["stock"] == 10

    def test_low_stock_route(self, client, db_session, cashier_headers, make_product):
        make_product(name="Few", stock=1)
        resp = client.get("/api/products/low-stock?threshold=2", headers=cashier_headers)
        assert [p["name"] for p in resp.json["items"]] == ["Few"]


# =============================================================================
# BULK IMPORT
# =============================================================================


class TestImport:

    def test_merge_updates_by_name_and_reports_bad_rows(self, db_session, make_product):
        tea = make_product(name="Tea", price_cents=300)

        summary = products_service.import_products(db_session, [
            {"name": "tea", "price_cents": 350},
            {"name": "Coffee", "price_cents": 500, "stock": 12},
            {"name": "Broken", "price_cents": "abc"},
            {"price_cents": 100},
        ], mode="merge", actor="test")

        assert (summary["created"], summary["updated"]) == (1, 1)
        assert [e["row"] for e in summary["errors"]] == [3, 4]
        assert fetch(db_session, Product, tea.id).price_cents == 350
        coffee = db_session.query(Product).filter_by(name="Coffee").one()
        assert coffee.stock == 12

    def test_replace_keeps_order_history(self, client, db_session, pos_headers, branch, make_product):
        old = make_product(name="Old Tea", price_cents=300, stock=5)
        client.post("/api/pos/sync", json={"changes": [sale_change([(old.id, 1)])]}, headers=pos_headers)

        summary = products_service.import_products(db_session, [
            {"name": "New Tea", "price_cents": 400},
        ], mode="replace", actor="test")

        assert summary["replaced"] == 1
        assert [p.name for p in db_session.query(Product).all()] == ["New Tea"]
        item = db_session.query(OrderItem).one()
        assert item.product_id is None
        assert item.product_name == "Old Tea"
        assert db_session.query(Order).one().total_cents == 300

    def test_replace_rejects_whole_file_on_bad_row(self, db_session, make_product):
        make_product(name="Keep")
        with pytest.raises(ValidationError):
            products_service.import_products(db_session, [
                {"name": "Good", "price_cents": 100},
                {"name": "Bad"},
            ], mode="replace", actor="test")
        db_session.rollback()
        assert [p.name for p in db_session.query(Product).all()] == ["Keep"]

    def test_import_route(self, client, db_session, manager_headers):
        resp = client.post("/api/products/import", json={
            "mode": "merge",
            "rows": [{"name": "Soap", "price_cents": 150}],
        }, headers=manager_headers)
        assert resp.status_code == 200
        assert resp.json["summary"]["created"] == 1
