import threading
import time

import pytest
from sqlalchemy.exc import OperationalError

from storefront.inventory.ledger import StockChangeContext, StockLedger, StockLine, merge_lines
from storefront.inventory.models import StockChangeType, StockHistory
from storefront.inventory.repository import InventoryRepository
from storefront.shared.errors import (
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    ProductNotFound,
    StockConflict,
    VariantRequired,
)
from storefront.shared.outbox import OutboxEvent


def sale(order_id="ORD-TEST"):
    return StockChangeContext(change_type=StockChangeType.SALE, reason=f"Order {order_id}", order_id=order_id)


class TestDecrement:
    def test_decrement_writes_stock_and_history(self, db, make_product):
        product = make_product(stock=5)
        ledger = StockLedger(db)

        new_stock = ledger.decrement(product.id, None, 2, sale("ORD-1"))
        db.commit()

        assert new_stock == 3
        assert InventoryRepository(db).get_stock_level(product.id) == 3
        rows = db.query(StockHistory).filter(StockHistory.order_id == "ORD-1").all()
        assert len(rows) == 1
        assert rows[0].quantity == -2
        assert rows[0].previous_stock == 5
        assert rows[0].new_stock == 3
        assert rows[0].change_type == "SALE"

    def test_insufficient_stock_leaves_counter_untouched(self, db, make_product):
        product = make_product(name="Leather Wallet", stock=2)
        ledger = StockLedger(db)

        with pytest.raises(InsufficientStock) as exc_info:
            ledger.decrement(product.id, None, 3, sale())
        db.rollback()

        assert exc_info.value.available == 2
        assert exc_info.value.requested == 3
        assert exc_info.value.items[0]["product_name"] == "Leather Wallet"
        assert InventoryRepository(db).get_stock_level(product.id) == 2

    def test_zero_quantity_rejected(self, db, make_product):
        product = make_product(stock=2)
        with pytest.raises(InvalidQuantity):
            StockLedger(db).decrement(product.id, None, 0, sale())

    def test_unknown_product(self, db):
        with pytest.raises(ProductNotFound):
            StockLedger(db).decrement("PROD-MISSING", None, 1, sale())

    def test_variant_product_requires_variant(self, db, make_product):
        product = make_product(name="Batik Shirt", variants={"M": 3, "L": 1})
        with pytest.raises(VariantRequired):
            StockLedger(db).decrement(product.id, None, 1, sale())

    def test_variant_counter_is_decremented(self, db, make_product):
        product = make_product(name="Batik Shirt", variants={"M": 3, "L": 1})
        medium = next(v for v in product.variants if v.name == "M")

        StockLedger(db).decrement(product.id, medium.id, 2, sale())
        db.commit()

        repo = InventoryRepository(db)
        assert repo.get_stock_level(product.id, medium.id) == 1
        assert repo.replay_stock(product.id, medium.id) == 1

    def test_low_stock_event_recorded_below_threshold(self, db, make_product):
        product = make_product(stock=12)
        StockLedger(db, low_stock_threshold=10).decrement(product.id, None, 3, sale())
        db.commit()

        event_types = [e.event_type for e in db.query(OutboxEvent).all()]
        assert "inventory.decremented" in event_types
        assert "inventory.low" in event_types

    def test_lost_race_is_retried_then_conflicts(self, db, make_product, monkeypatch):
        product = make_product(stock=5)
        ledger = StockLedger(db)
        monkeypatch.setattr(ledger, "_compare_and_set", lambda *args: False)

        with pytest.raises(StockConflict):
            ledger.decrement(product.id, None, 1, sale())


class TestIncrementAndAdjust:
    def test_increment_appends_positive_delta(self, db, make_product):
        product = make_product(stock=1)
        context = StockChangeContext(change_type=StockChangeType.RESTOCK, reason="Order ORD-9 cancelled", order_id="ORD-9")

        assert StockLedger(db).increment(product.id, None, 4, context) == 5
        db.commit()
        assert InventoryRepository(db).replay_stock(product.id) == 5

    def test_admin_adjustment_reason_and_sign(self, db, make_product):
        product = make_product(stock=10)
        ledger = StockLedger(db)

        assert ledger.adjust(product.id, None, -3, StockChangeType.DAMAGE, "water damage", actor_id="admin-1") == 7
        assert ledger.adjust(product.id, None, 5, StockChangeType.RESTOCK, "supplier delivery", actor_id="admin-1") == 12
        db.commit()

        rows = InventoryRepository(db).get_history(product.id)
        assert rows[-2].reason == "Admin adjustment: water damage"
        assert rows[-2].quantity == -3
        assert rows[-1].change_type == "RESTOCK"
        assert rows[-1].actor_id == "admin-1"

    def test_zero_adjustment_rejected(self, db, make_product):
        product = make_product(stock=10)
        with pytest.raises(InvalidQuantity):
            StockLedger(db).adjust(product.id, None, 0, StockChangeType.ADJUSTMENT, "count")

    def test_sale_is_not_an_admin_change_type(self, db, make_product):
        product = make_product(stock=10)
        with pytest.raises(InvalidRequest):
            StockLedger(db).adjust(product.id, None, -1, StockChangeType.SALE, "manual sale")

    def test_adjustment_cannot_go_negative(self, db, make_product):
        product = make_product(stock=2)
        with pytest.raises(InsufficientStock):
            StockLedger(db).adjust(product.id, None, -5, StockChangeType.DAMAGE, "flood")


class TestAvailability:
    def test_check_reports_every_short_line(self, db, make_product):
        bag = make_product(name="Tote Bag", stock=2)
        scarf = make_product(name="Linen Scarf", variants={"Indigo": 0, "Sand": 4})
        indigo = next(v for v in scarf.variants if v.name == "Indigo")

        with pytest.raises(InsufficientStock) as exc_info:
            StockLedger(db).ensure_available(
                [StockLine(bag.id, 3), StockLine(scarf.id, 1, indigo.id)]
            )

        items = exc_info.value.items
        assert [(i["product_name"], i["variant_name"], i["available"]) for i in items] == [
            ("Tote Bag", None, 2),
            ("Linen Scarf", "Indigo", 0),
        ]

    def test_lines_on_the_same_counter_are_checked_together(self, db, make_product):
        bag = make_product(name="Tote Bag", stock=3)

        with pytest.raises(InsufficientStock) as exc_info:
            StockLedger(db).ensure_available([StockLine(bag.id, 2), StockLine(bag.id, 2)])

        assert exc_info.value.items == [
            {
                "product_id": bag.id,
                "variant_id": None,
                "product_name": "Tote Bag",
                "variant_name": None,
                "requested": 4,
                "available": 3,
            }
        ]

    def test_merge_keeps_variants_apart(self, make_product):
        scarf = make_product(name="Linen Scarf", variants={"Indigo": 2, "Sand": 4})
        indigo, sand = sorted(scarf.variants, key=lambda v: v.name)

        merged = merge_lines(
            [StockLine(scarf.id, 1, indigo.id), StockLine(scarf.id, 2, sand.id), StockLine(scarf.id, 1, indigo.id)]
        )

        assert [(line.variant_id, line.quantity) for line in merged] == [(indigo.id, 2), (sand.id, 2)]

    def test_merge_rejects_zero_quantity_before_summing(self, make_product):
        bag = make_product(stock=3)
        with pytest.raises(InvalidQuantity):
            merge_lines([StockLine(bag.id, 2), StockLine(bag.id, 0)])

    def test_check_takes_no_hold(self, db, make_product):
        bag = make_product(stock=2)
        StockLedger(db).ensure_available([StockLine(bag.id, 2)])
        assert InventoryRepository(db).get_stock_level(bag.id) == 2


class TestHistoryReplay:
    def test_replay_matches_after_mixed_changes(self, db, make_product):
        product = make_product(stock=20)
        ledger = StockLedger(db)
        ledger.decrement(product.id, None, 4, sale("ORD-A"))
        ledger.increment(
            product.id, None, 2, StockChangeContext(change_type=StockChangeType.REFUND, reason="refund", order_id="ORD-A")
        )
        ledger.adjust(product.id, None, -1, StockChangeType.DAMAGE, "torn")
        ledger.record_marker(
            product.id, None, StockChangeContext(change_type=StockChangeType.REFUND, reason="Refund requested - size")
        )
        db.commit()

        repo = InventoryRepository(db)
        assert repo.get_stock_level(product.id) == 17
        assert repo.replay_stock(product.id) == 17
        assert repo.verify_history(product.id)


class TestConcurrentDecrements:
    def test_parallel_buyers_never_oversell(self, session_factory, make_product):
        product = make_product(stock=5)
        product_id = product.id
        results = []
        lock = threading.Lock()

        def buy(n):
            for _ in range(50):
                db = session_factory()
                try:
                    StockLedger(db).decrement(product_id, None, 1, sale(f"ORD-{n}"))
                    db.commit()
                    outcome = "sold"
                except InsufficientStock:
                    db.rollback()
                    outcome = "short"
                except (OperationalError, StockConflict):
                    # SQLite refuses a second writer; try again
                    db.rollback()
                    time.sleep(0.02)
                    continue
                finally:
                    db.close()
                with lock:
                    results.append(outcome)
                return

        threads = [threading.Thread(target=buy, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        db = session_factory()
        try:
            repo = InventoryRepository(db)
            final = repo.get_stock_level(product_id)
            sold = results.count("sold")
            assert final >= 0
            assert sold == 5
            assert final == 5 - sold
            assert repo.replay_stock(product_id) == final
        finally:
            db.close()
