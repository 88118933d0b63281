import pytest

from storefront.inventory.ledger import StockLedger
from storefront.inventory.models import StockChangeType
from storefront.inventory.repository import InventoryRepository
from storefront.orders.models import OrderCompensation
from storefront.orders.service import OrderService
from storefront.orders.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    OrderStatus,
    validate_refund_reversal,
    validate_transition,
)
from storefront.shared.errors import InsufficientStock, InvalidTransition

ALLOWED_EDGES = {
    ("PENDING", "PAID"),
    ("PENDING", "CANCELLED"),
    ("PAID", "PROCESSING"),
    ("PAID", "CANCELLED"),
    ("PAID", "REFUND_REQUESTED"),
    ("PROCESSING", "SHIPPED"),
    ("PROCESSING", "REFUND_REQUESTED"),
    ("SHIPPED", "DELIVERED"),
    ("REFUND_REQUESTED", "REFUNDED"),
}


class TestTransitionTable:
    def test_table_has_exactly_the_documented_edges(self):
        edges = {(src.value, dst.value) for src, targets in ALLOWED_TRANSITIONS.items() for dst in targets}
        assert edges == ALLOWED_EDGES

    @pytest.mark.parametrize("current", list(OrderStatus))
    @pytest.mark.parametrize("target", list(OrderStatus))
    def test_validate_transition_matches_table(self, current, target):
        if (current.value, target.value) in ALLOWED_EDGES:
            assert validate_transition("ORD-1", current, target) == target
        else:
            with pytest.raises(InvalidTransition):
                validate_transition("ORD-1", current, target)

    def test_terminal_statuses_have_no_exit(self):
        for status in TERMINAL_STATUSES:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_refund_reversal_only_back_to_refundable_status(self):
        assert validate_refund_reversal("ORD-1", OrderStatus.REFUND_REQUESTED, OrderStatus.PROCESSING) == OrderStatus.PROCESSING
        with pytest.raises(InvalidTransition):
            validate_refund_reversal("ORD-1", OrderStatus.REFUND_REQUESTED, OrderStatus.SHIPPED)
        with pytest.raises(InvalidTransition):
            validate_refund_reversal("ORD-1", OrderStatus.PAID, OrderStatus.PAID)


class TestOrderService:
    def test_paid_order_takes_stock(self, db, make_product, stage_session):
        product = make_product(stock=5)
        session = stage_session("ORDER-S1", [(product, 2, None)])

        order = OrderService(db).create_order_from_session(session, OrderStatus.PAID)
        db.commit()

        assert order.status == "PAID"
        assert order.stock_committed is True
        repo = InventoryRepository(db)
        assert repo.get_stock_level(product.id) == 3
        assert [row.order_id for row in repo.get_order_history(order.id)] == [order.id]

    def test_pending_order_takes_no_stock(self, db, make_product, stage_session):
        product = make_product(stock=5)
        session = stage_session("ORDER-S2", [(product, 2, None)])

        order = OrderService(db).create_order_from_session(session, OrderStatus.PENDING)
        db.commit()

        assert order.stock_committed is False
        assert InventoryRepository(db).get_stock_level(product.id) == 5

    def test_pending_to_paid_decrements_once(self, db, make_product, stage_session):
        product = make_product(stock=5)
        session = stage_session("ORDER-S3", [(product, 2, None)])
        service = OrderService(db)
        order = service.create_order_from_session(session, OrderStatus.PENDING)
        db.commit()

        service.transition(order.id, OrderStatus.PAID)
        db.commit()

        assert order.status == "PAID"
        assert InventoryRepository(db).get_stock_level(product.id) == 3

    def test_pending_to_paid_shortfall_keeps_order_pending(self, db, make_product, stage_session):
        product = make_product(stock=2)
        session = stage_session("ORDER-S4", [(product, 2, None)])
        service = OrderService(db)
        order = service.create_order_from_session(session, OrderStatus.PENDING)
        db.commit()
        StockLedger(db).adjust(product.id, None, -1, StockChangeType.DAMAGE, "dropped")
        db.commit()

        with pytest.raises(InsufficientStock):
            service.transition(order.id, OrderStatus.PAID)
        db.rollback()

        assert service.get_order(order.id).status == "PENDING"
        assert InventoryRepository(db).get_stock_level(product.id) == 1

    def test_cancelling_paid_order_restocks_once(self, db, make_product, stage_session):
        product = make_product(stock=5)
        session = stage_session("ORDER-S5", [(product, 2, None)])
        service = OrderService(db)
        order = service.create_order_from_session(session, OrderStatus.PAID)
        db.commit()

        service.transition(order.id, OrderStatus.CANCELLED, actor_id="admin-1")
        db.commit()

        repo = InventoryRepository(db)
        assert repo.get_stock_level(product.id) == 5
        assert repo.replay_stock(product.id) == 5
        restocks = [row for row in repo.get_order_history(order.id) if row.change_type == "RESTOCK"]
        assert len(restocks) == 1
        assert db.query(OrderCompensation).filter_by(order_id=order.id).count() == 1

        with pytest.raises(InvalidTransition):
            service.transition(order.id, OrderStatus.CANCELLED)
        db.rollback()
        assert repo.get_stock_level(product.id) == 5

    def test_cancelling_pending_order_moves_no_stock(self, db, make_product, stage_session):
        product = make_product(stock=5)
        session = stage_session("ORDER-S6", [(product, 2, None)])
        service = OrderService(db)
        order = service.create_order_from_session(session, OrderStatus.PENDING)
        db.commit()

        service.transition(order.id, OrderStatus.CANCELLED)
        db.commit()

        assert InventoryRepository(db).get_stock_level(product.id) == 5
        assert db.query(OrderCompensation).count() == 0

    def test_disallowed_transition_leaves_order_unchanged(self, db, make_product, stage_session):
        product = make_product(stock=5)
        session = stage_session("ORDER-S7", [(product, 1, None)])
        service = OrderService(db)
        order = service.create_order_from_session(session, OrderStatus.PAID)
        db.commit()

        with pytest.raises(InvalidTransition) as exc_info:
            service.transition(order.id, OrderStatus.DELIVERED)
        db.rollback()

        assert exc_info.value.current == "PAID"
        assert exc_info.value.target == "DELIVERED"
        assert service.get_order(order.id).status == "PAID"

    def test_fulfilment_path(self, db, make_product, stage_session):
        product = make_product(stock=5)
        session = stage_session("ORDER-S8", [(product, 1, None)])
        service = OrderService(db)
        order = service.create_order_from_session(session, OrderStatus.PAID)
        db.commit()

        for target in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            service.transition(order.id, target)
            db.commit()

        assert order.status == "DELIVERED"
        assert InventoryRepository(db).get_stock_level(product.id) == 4
