from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import (
    ADMIN,
    CUSTOMER,
    DRIVER,
    OTHER_CUSTOMER,
    OTHER_DRIVER,
    OTHER_OWNER,
    OWNER,
    advance_to_ready,
    deliver,
    order_request,
)
from order_service import services
from order_service.errors import (
    BusinessRuleViolation,
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from order_service.lifecycle import can_transition
from order_service.models import Driver, MenuItem, Order, OrderStatus, Restaurant
from order_service.schemas import CustomizationSelection

S = OrderStatus


# ── Placement ──────────────────────────────────────────────────


class TestPlacement:
    def test_new_order_is_pending_with_snapshot(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request(items=[(1, 2), (2, 1)]))

        assert order.status == "pending"
        assert order.order_number.startswith("ORD-")
        assert order.driver_id is None
        assert order.subtotal == Decimal("19.50")
        assert order.delivery_fee == Decimal("3.00")
        assert order.service_fee == Decimal("1.56")
        assert order.total == Decimal("24.06")
        assert order.total == order.subtotal + order.delivery_fee + order.service_fee + order.tax - order.discount
        assert [h.status for h in order.status_history] == ["pending"]
        assert order.payment_status == "pending"
        assert order.estimated_delivery_time > order.created_at

    def test_order_number_collision_is_regenerated(self, service, db_sess, marketplace, monkeypatch):
        first = service.place_order(CUSTOMER, order_request())
        numbers = iter([first.order_number, "ORD-FRESH-00001"])
        monkeypatch.setattr(services, "generate_order_number", lambda: next(numbers))

        second = service.place_order(CUSTOMER, order_request(items=[(1, 3)]))

        assert second.order_number == "ORD-FRESH-00001"
        assert [h.status for h in second.status_history] == ["pending"]
        db_sess.expire_all()
        assert db_sess.get(MenuItem, 1).total_orders == 5
        assert db_sess.scalar(select(func.count()).select_from(Order)) == 2

    def test_repeated_collision_is_a_conflict(self, service, marketplace, monkeypatch):
        first = service.place_order(CUSTOMER, order_request())
        monkeypatch.setattr(services, "generate_order_number", lambda: first.order_number)

        with pytest.raises(ConcurrencyConflict):
            service.place_order(CUSTOMER, order_request())

    def test_item_snapshot_keeps_customizations(self, service, marketplace):
        payload = order_request()
        payload.items[0].customizations = [CustomizationSelection(name="Extras", selected_options=["Cheese", "Bacon"])]
        order = service.place_order(CUSTOMER, payload)

        line = order.items[0]
        assert line.name == "Burger"
        assert line.price == Decimal("8.00")
        assert line.subtotal == Decimal("21.00")
        assert [o["name"] for o in line.customizations[0]["selected_options"]] == ["Cheese", "Bacon"]

    def test_popularity_counter_is_bumped(self, service, db_sess, marketplace):
        service.place_order(CUSTOMER, order_request(items=[(1, 3)]))
        db_sess.expire_all()
        assert db_sess.get(MenuItem, 1).total_orders == 3

    def test_below_minimum_is_rejected_before_persisting(self, service, db_sess, marketplace):
        with pytest.raises(BusinessRuleViolation):
            service.place_order(CUSTOMER, order_request(items=[(1, 1)]))

        assert db_sess.scalar(select(func.count()).select_from(Order)) == 0

    def test_closed_restaurant_is_rejected(self, service, db_sess, marketplace):
        db_sess.get(Restaurant, 10).is_open = False
        db_sess.commit()
        with pytest.raises(BusinessRuleViolation):
            service.place_order(CUSTOMER, order_request())

    def test_unknown_payment_method(self, service, marketplace):
        with pytest.raises(ValidationError):
            service.place_order(CUSTOMER, order_request(payment_method="bitcoin"))

    def test_unknown_restaurant(self, service, marketplace):
        with pytest.raises(NotFound):
            service.place_order(CUSTOMER, order_request(restaurant_id=999))

    def test_item_from_another_restaurant(self, service, marketplace):
        with pytest.raises(NotFound):
            service.place_order(CUSTOMER, order_request(items=[(4, 2)]))

    def test_unavailable_item(self, service, marketplace):
        with pytest.raises(BusinessRuleViolation):
            service.place_order(CUSTOMER, order_request(items=[(3, 2)]))

    def test_unknown_customization(self, service, marketplace):
        payload = order_request()
        payload.items[0].customizations = [CustomizationSelection(name="Extras", selected_options=["Truffle"])]
        with pytest.raises(ValidationError):
            service.place_order(CUSTOMER, payload)

    def test_only_customers_place_orders(self, service, marketplace):
        with pytest.raises(Forbidden):
            service.place_order(OWNER, order_request())

    def test_pricing_snapshot_is_immutable(self, service, db_sess, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        with pytest.raises(ValueError):
            order.total = Decimal("1.00")
        with pytest.raises(ValueError):
            order.order_number = "ORD-OTHER"


# ── State machine ──────────────────────────────────────────────


def test_transition_table():
    assert can_transition(S.PENDING, S.CONFIRMED)
    assert can_transition(S.PICKED_UP, S.DELIVERED)
    assert can_transition(S.PICKED_UP, S.ON_THE_WAY)
    assert not can_transition(S.PENDING, S.DELIVERED)
    assert not can_transition(S.CONFIRMED, S.PENDING)
    for target in S:
        assert not can_transition(S.DELIVERED, target)
        assert not can_transition(S.CANCELLED, target)
        assert not can_transition(S.REJECTED, target)


class TestTransitions:
    def test_full_lifecycle_history(self, service, db_sess, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        order = deliver(service, order)

        statuses = [h.status for h in order.status_history]
        assert statuses == ["pending", "confirmed", "preparing", "ready", "assigned", "picked-up", "delivered"]
        stamps = [h.timestamp for h in order.status_history]
        assert stamps == sorted(stamps)

        assert order.accepted_at and order.prepared_at and order.picked_up_at and order.delivered_at
        assert order.payment_status == "completed"
        assert order.paid_at is not None

    def test_delivery_updates_restaurant_and_driver_stats(self, service, db_sess, marketplace):
        order = deliver(service, service.place_order(CUSTOMER, order_request()))

        db_sess.expire_all()
        restaurant = db_sess.get(Restaurant, 10)
        driver = db_sess.get(Driver, DRIVER.user_id)
        assert restaurant.total_orders == 1
        assert restaurant.total_revenue == order.restaurant_earnings
        assert driver.total_deliveries == 1
        assert driver.is_available is True

    def test_on_the_way_is_optional_checkpoint(self, service, marketplace):
        order = advance_to_ready(service, service.place_order(CUSTOMER, order_request()))
        service.accept_order(DRIVER, order.order_id)
        service.pickup_order(DRIVER, order.order_id)
        service.start_delivery(DRIVER, order.order_id)
        order = service.complete_delivery(DRIVER, order.order_id)

        assert [h.status for h in order.status_history][-3:] == ["picked-up", "on-the-way", "delivered"]

    def test_pending_to_delivered_is_invalid(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        with pytest.raises(InvalidTransition):
            service.update_status(DRIVER, order.order_id, "delivered")

    def test_nothing_leaves_delivered(self, service, marketplace):
        order = deliver(service, service.place_order(CUSTOMER, order_request()))
        for status in ("confirmed", "preparing", "ready"):
            with pytest.raises(InvalidTransition):
                service.update_status(OWNER, order.order_id, status)
        with pytest.raises(InvalidTransition):
            service.update_status(DRIVER, order.order_id, "picked-up")

    def test_skipping_states_is_invalid(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        with pytest.raises(InvalidTransition):
            service.update_status(OWNER, order.order_id, "ready")

    def test_restaurant_actions_need_the_owner(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        with pytest.raises(Forbidden):
            service.update_status(OTHER_OWNER, order.order_id, "confirmed")
        with pytest.raises(Forbidden):
            service.update_status(CUSTOMER, order.order_id, "confirmed")

    def test_driver_actions_need_the_assigned_driver(self, service, marketplace):
        order = advance_to_ready(service, service.place_order(CUSTOMER, order_request()))
        service.accept_order(DRIVER, order.order_id)
        with pytest.raises(Forbidden):
            service.pickup_order(OTHER_DRIVER, order.order_id)

    def test_retried_status_does_not_duplicate_history(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        service.update_status(OWNER, order.order_id, "confirmed")
        order = service.update_status(OWNER, order.order_id, "confirmed")

        assert [h.status for h in order.status_history] == ["pending", "confirmed"]

    def test_reject_is_terminal(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        order = service.update_status(OWNER, order.order_id, "rejected")
        assert order.status == "rejected"
        with pytest.raises(InvalidTransition):
            service.cancel_order(CUSTOMER, order.order_id, "too late")

    def test_unknown_status_is_a_validation_error(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        with pytest.raises(ValidationError):
            service.update_status(OWNER, order.order_id, "teleported")

    def test_unknown_order(self, service, marketplace):
        with pytest.raises(NotFound):
            service.update_status(OWNER, 12345, "confirmed")

    def test_stale_write_is_a_conflict(self, service, session_factory, make_service, marketplace):
        order = service.place_order(CUSTOMER, order_request())

        other_sess = session_factory()
        try:
            stale = other_sess.get(Order, order.order_id)
            service.update_status(OWNER, order.order_id, "confirmed")

            stale.status = "rejected"
            with pytest.raises(ConcurrencyConflict):
                make_service(other_sess)._commit()
        finally:
            other_sess.close()


# ── Cancellation ───────────────────────────────────────────────


class TestCancellation:
    def test_customer_cancels_pending(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        order = service.cancel_order(CUSTOMER, order.order_id, "changed mind")

        assert order.status == "cancelled"
        assert order.cancellation["reason"] == "changed mind"
        assert order.cancellation["cancelled_by"] == "customer"
        assert order.cancellation["cancelled_at"] is not None
        assert [h.status for h in order.status_history] == ["pending", "cancelled"]

    def test_owner_and_admin_record_their_role(self, service, marketplace):
        first = service.place_order(CUSTOMER, order_request())
        second = service.place_order(CUSTOMER, order_request())

        assert service.cancel_order(OWNER, first.order_id, "out of stock").cancelled_by == "restaurant"
        assert service.cancel_order(ADMIN, second.order_id, "fraud check").cancelled_by == "admin"

    def test_cancelled_cannot_be_cancelled_again(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        service.cancel_order(CUSTOMER, order.order_id, "changed mind")
        with pytest.raises(InvalidTransition):
            service.cancel_order(CUSTOMER, order.order_id, "changed mind")

        order = service.get_order(CUSTOMER, order.order_id)
        assert [h.status for h in order.status_history] == ["pending", "cancelled"]

    def test_delivered_cannot_be_cancelled(self, service, marketplace):
        order = deliver(service, service.place_order(CUSTOMER, order_request()))
        with pytest.raises(InvalidTransition):
            service.cancel_order(CUSTOMER, order.order_id, "late")

    def test_strangers_and_drivers_cannot_cancel(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        with pytest.raises(Forbidden):
            service.cancel_order(OTHER_CUSTOMER, order.order_id, "nope")
        with pytest.raises(Forbidden):
            service.cancel_order(DRIVER, order.order_id, "nope")

    def test_cash_payment_is_left_alone(self, service, payments, marketplace):
        order = service.place_order(CUSTOMER, order_request(payment_method="cash"))
        order = service.cancel_order(CUSTOMER, order.order_id, "changed mind")

        assert order.payment_status == "pending"
        assert payments.calls == []

    def test_cancel_after_assignment(self, service, marketplace):
        order = advance_to_ready(service, service.place_order(CUSTOMER, order_request()))
        service.accept_order(DRIVER, order.order_id)
        order = service.cancel_order(OWNER, order.order_id, "kitchen fire")
        assert order.status == "cancelled"

    def test_cancel_frees_the_driver(self, service, db_sess, marketplace):
        order = advance_to_ready(service, service.place_order(CUSTOMER, order_request()))
        service.accept_order(DRIVER, order.order_id)
        service.pickup_order(DRIVER, order.order_id)
        service.cancel_order(ADMIN, order.order_id, "customer unreachable")

        db_sess.expire_all()
        assert db_sess.get(Driver, DRIVER.user_id).is_available is True
        assert service.available_orders(DRIVER, 0, 0) == []

    def test_cancel_before_dispatch_leaves_drivers_alone(self, service, db_sess, marketplace):
        service.toggle_availability(DRIVER)
        order = service.place_order(CUSTOMER, order_request())
        service.cancel_order(CUSTOMER, order.order_id, "changed mind")

        db_sess.expire_all()
        assert db_sess.get(Driver, DRIVER.user_id).is_available is False

    def test_cancel_via_status_endpoint_uses_note_as_reason(self, service, marketplace):
        order = service.place_order(CUSTOMER, order_request())
        order = service.update_status(CUSTOMER, order.order_id, "cancelled", note="changed mind")
        assert order.cancel_reason == "changed mind"
