"""
POS sync tests.

Verifies:
- Replaying an order:create never creates a second order
- A resent change_id returns the stored result instead of applying again
- Malformed change types are skipped, never a server error
- Rows a rejected change touched come back in the snapshot as reset rows
- One failing change does not abort its siblings
- Product edits follow last-writer-wins on updated_at
- Later changes in a batch can target orders created earlier in it
- The snapshot is full without a cursor and a delta with one
"""

from datetime import timedelta

from retail.models import AppliedChange, AuditLogEntry, Order, Product
from retail.time_utils import utcnow
from tests.helpers import change, fetch, iso_in, sale_change


def post_sync(client, headers, changes, since=None, **extra):
    body = {"since": since, "changes": changes, **extra}
    return client.post("/api/pos/sync", json=body, headers=headers)


# =============================================================================
# AUTHENTICATION
# =============================================================================


class TestPosCredential:

    def test_missing_token_rejected(self, client, db_session):
        resp = post_sync(client, {}, [])
        assert resp.status_code == 401

    def test_wrong_token_rejected(self, client, db_session):
        resp = post_sync(client, {"X-POS-Token": "nope"}, [])
        assert resp.status_code == 401

    def test_empty_batch_returns_cursor(self, client, db_session, pos_headers):
        resp = post_sync(client, pos_headers, [])
        assert resp.status_code == 200
        data = resp.json
        assert data["ok"] is True
        assert data["applied"] == []
        assert data["server_time"].endswith("Z")


# =============================================================================
# IDEMPOTENT ORDER CREATION
# =============================================================================


class TestIdempotentReplay:

    def test_same_external_id_creates_one_order(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        sale = sale_change([(p.id, 2)], external_id="till-1-0001")

        first = post_sync(client, pos_headers, [sale]).json["applied"][0]
        second = post_sync(client, pos_headers, [sale]).json["applied"][0]

        assert first["status"] == "ok"
        assert second["status"] == "ok"
        assert first["data"]["created"] is True
        assert second["data"]["replayed"] is True
        assert first["data"]["order_id"] == second["data"]["order_id"]

        assert db_session.query(Order).count() == 1
        assert fetch(db_session, Product, p.id).stock == 8

    def test_same_external_id_under_new_change_id(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        first = post_sync(client, pos_headers, [sale_change([(p.id, 2)], external_id="till-1-0009")]).json["applied"][0]
        second = post_sync(client, pos_headers, [sale_change([(p.id, 2)], external_id="till-1-0009")]).json["applied"][0]

        assert second["status"] == "ok"
        assert second["data"]["created"] is False
        assert "replayed" not in second["data"]
        assert first["data"]["order_id"] == second["data"]["order_id"]
        assert fetch(db_session, Product, p.id).stock == 8

    def test_fractional_sales_sell_down_to_zero(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=0.3)
        changes = [sale_change([(p.id, 0.1)]) for _ in range(3)]

        applied = post_sync(client, pos_headers, changes).json["applied"]

        assert [r["status"] for r in applied] == ["ok", "ok", "ok"]
        assert fetch(db_session, Product, p.id).stock == 0

    def test_pos_price_is_kept(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(price_cents=500, stock=10)
        sale = sale_change([(p.id, 2, 450)])

        result = post_sync(client, pos_headers, [sale]).json["applied"][0]

        order = fetch(db_session, Order, result["data"]["order_id"])
        assert order.items[0].price_at_cents == 450
        assert order.total_cents == 900
        assert order.staff_name == "Casey Cashier"
        assert order.branch_id == branch.id


# =============================================================================
# BATCH ISOLATION
# =============================================================================


class TestBatchIsolation:

    def test_failed_change_does_not_abort_siblings(self, client, db_session, pos_headers, branch, make_product):
        a = make_product(name="Apples", stock=10)
        b = make_product(name="Bread", stock=1)
        changes = [
            sale_change([(a.id, 1)]),
            sale_change([(b.id, 5)]),
            sale_change([(a.id, 2)]),
        ]

        applied = post_sync(client, pos_headers, changes).json["applied"]

        assert [r["status"] for r in applied] == ["ok", "failed", "ok"]
        assert [r["change_id"] for r in applied] == [c["change_id"] for c in changes]
        assert "Not enough stock" in applied[1]["error"]
        assert fetch(db_session, Product, a.id).stock == 7
        assert fetch(db_session, Product, b.id).stock == 1
        assert db_session.query(Order).count() == 2

    def test_failed_multi_line_sale_is_all_or_nothing(self, client, db_session, pos_headers, branch, make_product):
        a = make_product(name="Apples", stock=10)
        b = make_product(name="Bread", stock=1)

        applied = post_sync(client, pos_headers, [sale_change([(a.id, 3), (b.id, 2)])]).json["applied"]

        assert applied[0]["status"] == "failed"
        assert fetch(db_session, Product, a.id).stock == 10
        assert fetch(db_session, Product, b.id).stock == 1
        assert db_session.query(Order).count() == 0

    def test_unknown_product_fails(self, client, db_session, pos_headers, branch):
        applied = post_sync(client, pos_headers, [sale_change([(9999, 1)])]).json["applied"]
        assert applied[0]["status"] == "failed"

    def test_unknown_type_is_skipped(self, client, db_session, pos_headers):
        applied = post_sync(client, pos_headers, [change("coupon:apply", {"code": "X"})]).json["applied"]
        assert applied[0]["status"] == "skipped"
        assert applied[0]["type"] == "coupon:apply"

    def test_non_string_type_is_skipped(self, client, db_session, pos_headers, make_product):
        p = make_product(stock=10)
        changes = [
            change("stock:adjust", {"id": p.id, "amount": 1}),
            {"change_id": "c-list", "type": ["order:create"], "payload": {}},
            {"change_id": "c-dict", "type": {"a": 1}, "payload": {}},
        ]

        resp = post_sync(client, pos_headers, changes)

        assert resp.status_code == 200
        applied = resp.json["applied"]
        assert [r["status"] for r in applied] == ["ok", "skipped", "skipped"]
        assert [r["type"] for r in applied[1:]] == ["unknown", "unknown"]
        assert applied[1]["error"] == "Unknown change type"
        assert fetch(db_session, Product, p.id).stock == 11

    def test_malformed_change_id_fails(self, client, db_session, pos_headers, make_product):
        p = make_product(stock=10)
        bad = {"change_id": ["x"], "type": "stock:adjust", "payload": {"id": p.id, "amount": 1}}

        applied = post_sync(client, pos_headers, [bad]).json["applied"]

        assert applied[0]["status"] == "failed"
        assert fetch(db_session, Product, p.id).stock == 10

    def test_malformed_change_fails(self, client, db_session, pos_headers):
        applied = post_sync(client, pos_headers, ["not-an-object"]).json["applied"]
        assert applied[0]["status"] == "failed"

    def test_bad_cursor_rejects_whole_request(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        resp = post_sync(client, pos_headers, [sale_change([(p.id, 1)])], since="last tuesday")
        assert resp.status_code == 400
        assert db_session.query(Order).count() == 0


# =============================================================================
# ORDER LIFECYCLE THROUGH SYNC
# =============================================================================


class TestOrderChanges:

    def test_status_by_external_id_in_same_batch(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        changes = [
            sale_change([(p.id, 4)], external_id="till-1-0002"),
            change("order:status", {"external_id": "till-1-0002", "status": "Cancelled"}),
        ]

        applied = post_sync(client, pos_headers, changes).json["applied"]

        assert [r["status"] for r in applied] == ["ok", "ok"]
        assert applied[1]["data"]["status"] == "Cancelled"
        assert fetch(db_session, Product, p.id).stock == 10

    def test_return_after_delivery_restocks(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        applied = post_sync(client, pos_headers, [sale_change([(p.id, 3)])]).json["applied"]
        order_id = applied[0]["data"]["order_id"]

        applied = post_sync(client, pos_headers, [
            change("order:status", {"id": order_id, "status": "Delivered"}),
            change("order:return", {"id": order_id}),
        ]).json["applied"]

        assert [r["status"] for r in applied] == ["ok", "ok"]
        assert fetch(db_session, Order, order_id).status == "Returned"
        assert fetch(db_session, Product, p.id).stock == 10

    def test_invalid_transition_fails(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        applied = post_sync(client, pos_headers, [sale_change([(p.id, 1)])]).json["applied"]
        order_id = applied[0]["data"]["order_id"]

        applied = post_sync(client, pos_headers, [change("order:return", {"id": order_id})]).json["applied"]
        assert applied[0]["status"] == "failed"
        assert fetch(db_session, Order, order_id).status == "Placed"


# =============================================================================
# PRODUCT EDITS (LAST WRITER WINS)
# =============================================================================


class TestProductLastWriterWins:

    def test_older_edit_after_newer_is_skipped(self, client, db_session, pos_headers, make_product):
        p = make_product(name="Tea")
        newer = change("product:update", {"id": p.id, "name": "Green Tea", "updated_at": iso_in(hours=2)})
        older = change("product:update", {"id": p.id, "name": "Black Tea", "updated_at": iso_in(hours=1)})

        applied = post_sync(client, pos_headers, [newer, older]).json["applied"]

        assert [r["status"] for r in applied] == ["ok", "skipped"]
        assert fetch(db_session, Product, p.id).name == "Green Tea"

    def test_edits_in_clock_order_both_apply(self, client, db_session, pos_headers, make_product):
        p = make_product(name="Tea")
        older = change("product:update", {"id": p.id, "name": "Black Tea", "updated_at": iso_in(hours=1)})
        newer = change("product:update", {"id": p.id, "price_cents": 650, "updated_at": iso_in(hours=2)})

        applied = post_sync(client, pos_headers, [older, newer]).json["applied"]

        assert [r["status"] for r in applied] == ["ok", "ok"]
        product = fetch(db_session, Product, p.id)
        assert product.name == "Black Tea"
        assert product.price_cents == 650

    def test_edit_older_than_stored_row_is_skipped(self, client, db_session, pos_headers, make_product):
        p = make_product(name="Tea")
        stale = change("product:update", {"id": p.id, "name": "Old Tea", "updated_at": iso_in(days=-1)})

        applied = post_sync(client, pos_headers, [stale]).json["applied"]

        assert applied[0]["status"] == "skipped"
        assert fetch(db_session, Product, p.id).name == "Tea"

    def test_missing_updated_at_fails(self, client, db_session, pos_headers, make_product):
        p = make_product()
        applied = post_sync(client, pos_headers, [change("product:update", {"id": p.id, "name": "X"})]).json["applied"]
        assert applied[0]["status"] == "failed"


# =============================================================================
# STOCK ADJUSTMENTS
# =============================================================================


class TestStockAdjust:

    def test_adjustment_applies_relative_amount(self, client, db_session, pos_headers, make_product):
        p = make_product(stock=10)
        applied = post_sync(client, pos_headers, [change("stock:adjust", {"id": p.id, "amount": -3})]).json["applied"]
        assert applied[0]["status"] == "ok"
        assert applied[0]["data"]["stock"] == 7

    def test_adjustment_below_zero_fails(self, client, db_session, pos_headers, make_product):
        p = make_product(stock=2)
        applied = post_sync(client, pos_headers, [change("stock:adjust", {"id": p.id, "amount": -5})]).json["applied"]
        assert applied[0]["status"] == "failed"
        assert fetch(db_session, Product, p.id).stock == 2


# =============================================================================
# RESENT CHANGES
# =============================================================================


class TestResentChanges:

    def test_stock_adjust_applied_once(self, client, db_session, pos_headers, make_product):
        p = make_product(stock=10)
        adjust = change("stock:adjust", {"id": p.id, "amount": 3}, change_id="adj-1")

        first = post_sync(client, pos_headers, [adjust]).json["applied"][0]
        second = post_sync(client, pos_headers, [adjust]).json["applied"][0]

        assert first["status"] == second["status"] == "ok"
        assert second["data"]["replayed"] is True
        assert second["data"]["stock"] == 13
        assert fetch(db_session, Product, p.id).stock == 13
        assert db_session.query(AppliedChange).filter_by(change_id="adj-1").count() == 1

    def test_order_status_applied_once(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        order_id = post_sync(client, pos_headers, [sale_change([(p.id, 4)])]).json["applied"][0]["data"]["order_id"]
        cancel = change("order:status", {"id": order_id, "status": "Cancelled"}, change_id="st-1")

        first = post_sync(client, pos_headers, [cancel]).json["applied"][0]
        second = post_sync(client, pos_headers, [cancel]).json["applied"][0]

        assert first["status"] == second["status"] == "ok"
        assert second["data"] == {**first["data"], "replayed": True}
        assert fetch(db_session, Product, p.id).stock == 10
        assert db_session.query(AuditLogEntry).filter_by(action="order.cancel").count() == 1

    def test_order_return_applied_once(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=10)
        order_id = post_sync(client, pos_headers, [sale_change([(p.id, 3)])]).json["applied"][0]["data"]["order_id"]
        post_sync(client, pos_headers, [change("order:status", {"id": order_id, "status": "Delivered"})])
        ret = change("order:return", {"id": order_id}, change_id="ret-1")

        post_sync(client, pos_headers, [ret])
        second = post_sync(client, pos_headers, [ret]).json["applied"][0]

        assert second["status"] == "ok"
        assert second["data"]["replayed"] is True
        assert fetch(db_session, Order, order_id).status == "Returned"
        assert fetch(db_session, Product, p.id).stock == 10

    def test_product_update_resend_does_not_clobber_later_edit(self, client, db_session, pos_headers, make_product):
        p = make_product(name="Tea")
        first_edit = change("product:update", {"id": p.id, "name": "Black Tea", "updated_at": iso_in(hours=1)}, change_id="pu-1")
        post_sync(client, pos_headers, [first_edit])
        post_sync(client, pos_headers, [
            change("product:update", {"id": p.id, "name": "Green Tea", "updated_at": iso_in(hours=2)}),
        ])

        resent = post_sync(client, pos_headers, [first_edit]).json["applied"][0]

        assert resent["status"] == "ok"
        assert resent["data"]["replayed"] is True
        assert fetch(db_session, Product, p.id).name == "Green Tea"

    def test_rejected_change_is_not_recorded(self, client, db_session, pos_headers, make_product):
        p = make_product(stock=2)
        adjust = change("stock:adjust", {"id": p.id, "amount": -5}, change_id="adj-2")

        assert post_sync(client, pos_headers, [adjust]).json["applied"][0]["status"] == "failed"
        assert db_session.query(AppliedChange).filter_by(change_id="adj-2").count() == 0

        # Operator restocks, then retries the same change
        product = fetch(db_session, Product, p.id)
        product.stock = 10
        db_session.commit()
        retried = post_sync(client, pos_headers, [adjust]).json["applied"][0]

        assert retried["status"] == "ok"
        assert "replayed" not in retried["data"]
        assert fetch(db_session, Product, p.id).stock == 5

    def test_duplicate_within_one_batch_applied_once(self, client, db_session, pos_headers, make_product):
        p = make_product(stock=10)
        adjust = change("stock:adjust", {"id": p.id, "amount": -1}, change_id="adj-3")

        applied = post_sync(client, pos_headers, [adjust, adjust]).json["applied"]

        assert [r["status"] for r in applied] == ["ok", "ok"]
        assert applied[1]["data"]["replayed"] is True
        assert fetch(db_session, Product, p.id).stock == 9


# =============================================================================
# SNAPSHOT
# =============================================================================


class TestSnapshot:

    def _age(self, db_session, product, **delta):
        past = utcnow() - timedelta(**delta)
        product.updated_at = past
        product.server_updated_at = past
        db_session.commit()

    def test_without_cursor_returns_everything(self, client, db_session, pos_headers, make_product):
        make_product(name="A")
        make_product(name="B")

        snapshot = post_sync(client, pos_headers, []).json["snapshot"]

        assert snapshot["full"] is True
        assert {p["name"] for p in snapshot["products"]} == {"A", "B"}
        assert set(snapshot["reports"]) == {"profit_loss", "weekly_sales", "customer_discounts"}

    def test_cursor_returns_only_newer_rows(self, client, db_session, pos_headers, make_product):
        old = make_product(name="Old")
        self._age(db_session, old, hours=1)
        cursor = post_sync(client, pos_headers, []).json["server_time"]
        make_product(name="New")

        snapshot = post_sync(client, pos_headers, [], since=cursor).json["snapshot"]

        assert snapshot["full"] is False
        assert [p["name"] for p in snapshot["products"]] == ["New"]

    def test_late_offline_edit_is_shipped_to_current_devices(self, client, db_session, pos_headers, make_product):
        p = make_product(name="Tea")
        self._age(db_session, p, hours=2)
        cursor = post_sync(client, pos_headers, []).json["server_time"]

        # Stamped on a device an hour ago, applied now
        late = change("product:update", {"id": p.id, "name": "Late Tea", "updated_at": iso_in(hours=-1)})
        post_sync(client, pos_headers, [late])

        snapshot = post_sync(client, pos_headers, [], since=cursor).json["snapshot"]
        assert [x["name"] for x in snapshot["products"]] == ["Late Tea"]

    def test_rejected_change_ships_its_rows(self, client, db_session, pos_headers, branch, make_product):
        short = make_product(name="Short", stock=1)
        plenty = make_product(name="Plenty", stock=10)
        self._age(db_session, short, hours=1)
        self._age(db_session, plenty, hours=1)
        cursor = post_sync(client, pos_headers, []).json["server_time"]

        body = post_sync(client, pos_headers, [
            sale_change([(short.id, 4)]),
            sale_change([(plenty.id, 1)]),
        ], since=cursor).json

        assert [r["status"] for r in body["applied"]] == ["failed", "ok"]
        rows = {p["id"]: p for p in body["snapshot"]["products"]}
        assert rows[short.id]["stock"] == 1
        assert rows[plenty.id]["stock"] == 9
        assert body["snapshot"]["reset_product_ids"] == [short.id]

    def test_stale_edit_ships_current_row(self, client, db_session, pos_headers, make_product):
        p = make_product(name="Tea")
        self._age(db_session, p, hours=2)
        cursor = post_sync(client, pos_headers, []).json["server_time"]
        stale = change("product:update", {"id": p.id, "name": "Old Tea", "updated_at": iso_in(days=-1)})

        body = post_sync(client, pos_headers, [stale], since=cursor).json

        assert body["applied"][0]["status"] == "skipped"
        assert [x["name"] for x in body["snapshot"]["products"]] == ["Tea"]
        assert body["snapshot"]["reset_product_ids"] == [p.id]

    def test_orders_carry_tracking_token(self, client, db_session, pos_headers, branch, make_product):
        p = make_product(stock=5)
        snapshot = post_sync(client, pos_headers, [sale_change([(p.id, 1)])]).json["snapshot"]
        assert len(snapshot["orders"]) == 1
        assert snapshot["orders"][0]["tracking_token"]


# =============================================================================
# STAFF DIRECTORY
# =============================================================================


class TestStaffDirectory:

    def test_directory_requires_pos_token(self, client, db_session, cashier):
        assert client.get("/api/pos/staff-directory").status_code == 401

    def test_directory_includes_hashes(self, client, db_session, pos_headers, cashier):
        resp = client.get("/api/pos/staff-directory", headers=pos_headers)
        assert resp.status_code == 200
        staff = {s["username"]: s for s in resp.json["staff"]}
        assert set(staff) == {"manager", "cashier"}
        assert staff["cashier"]["password_hash"].startswith("$2")
