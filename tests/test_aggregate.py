import pytest

from services.common.errors import Conflict
from services.order.app.aggregate import (
    CANCELED,
    COMPLETED,
    INVENTORY_RESERVED,
    ORDER_CANCELED,
    ORDER_PAID,
    PAID,
    RESERVED,
    VALIDATING,
    OrderAggregate,
    order_total,
)


def _new(**kwargs):
    agg, _ = OrderAggregate.new(
        [{"itemId": "X", "qty": 2, "unitPrice": "5.00"}, {"itemId": "Y", "qty": 3, "unitPrice": 0.1}],
        **kwargs,
    )
    return agg


class TestNewOrder:
    def test_total_is_computed_once(self):
        agg = _new()

        assert agg.status == VALIDATING
        assert str(agg.total_amount) == "10.30"
        assert agg.customer_id == "anonymous"
        assert agg.items[1]["unitPrice"] == "0.10"

    def test_total_unchanged_by_later_events(self):
        agg = _new()
        agg.apply_event(INVENTORY_RESERVED, {"reservationId": "r"})
        agg.apply_event(ORDER_PAID, {})

        assert agg.status == PAID
        assert str(agg.total_amount) == "10.30"

    def test_order_total(self):
        assert str(order_total([{"unitPrice": "19.99", "qty": 3}])) == "59.97"


class TestGuards:
    def test_pay_requires_reserved(self):
        agg = _new()

        with pytest.raises(Conflict) as exc:
            agg.check_pay()

        assert exc.value.code == "ORDER_INVALID_STATE"
        assert exc.value.details["status"] == VALIDATING

    def test_completed_cannot_be_canceled(self):
        agg = _new()
        agg.status = COMPLETED

        with pytest.raises(Conflict):
            agg.check_cancel()

    @pytest.mark.parametrize("status", [VALIDATING, RESERVED, PAID])
    def test_cancelable_states(self, status):
        agg = _new()
        agg.status = status

        agg.check_cancel()

    def test_canceled_is_absorbing_for_payment(self):
        agg = _new()
        agg.apply_event(ORDER_CANCELED, {"reason": "x"})

        assert agg.status == CANCELED
        with pytest.raises(Conflict):
            agg.check_pay()


def test_unknown_events_are_ignored():
    agg = _new()

    agg.apply_event("SomethingElse", {})

    assert agg.status == VALIDATING
