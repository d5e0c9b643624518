"""
Tests for the NinjaVan event vocabularies and payload helpers.
"""
from reconciler.models.order import OrderStatus
from reconciler.services.carrier_events import (
    V1_EVENTS,
    V2_EVENTS,
    extract_failure_reason,
    is_rts_leg,
    map_v1_event,
    map_v2_event,
)
from reconciler.services.state_machine import ALL_ORDER_STATES


class TestV2Mapping:
    """Full event table used by the v2 webhook."""

    def test_pickup_and_transit(self):
        assert map_v2_event("Pending Pickup").normalized_status == OrderStatus.FOR_SHIPPING
        assert map_v2_event("Picked Up, In Transit To Origin Hub").normalized_status == OrderStatus.PICKED_UP
        assert map_v2_event("Arrived at Transit Hub").normalized_status == OrderStatus.SHIPPED
        assert map_v2_event("On Vehicle for Delivery").normalized_status == OrderStatus.OUT_FOR_DELIVERY

    def test_delivered_is_terminal(self):
        mapping = map_v2_event("Delivered, Left at Doorstep")
        assert mapping.normalized_status == OrderStatus.DELIVERED
        assert mapping.should_transition
        assert mapping.is_terminal

    def test_reschedules_do_not_transition(self):
        mapping = map_v2_event("Pickup Exception, Reattempt Scheduled")
        assert mapping.normalized_status == OrderStatus.FOR_SHIPPING
        assert not mapping.should_transition

    def test_max_attempts(self):
        assert map_v2_event("Pickup Exception, Max Attempts Reached").normalized_status == OrderStatus.PICKUP_FAILED
        assert map_v2_event("Delivery Exception, Max Attempts Reached").normalized_status == OrderStatus.DELIVERY_FAILED

    def test_return_to_shipper_max_attempts_stays_returning(self):
        mapping = map_v2_event("Return to Shipper Exception, Max Attempts Reached")
        assert mapping.normalized_status == OrderStatus.RETURNING
        assert not mapping.should_transition

    def test_customs_hold(self):
        assert map_v2_event("International Transit, Customs Held").normalized_status == OrderStatus.CUSTOMS_HOLD

    def test_measurement_update_is_informational(self):
        mapping = map_v2_event("Parcel Measurements Update")
        assert mapping.normalized_status is None
        assert not mapping.should_transition

    def test_whitespace_is_ignored(self):
        assert map_v2_event("  Arrived at Origin Hub ").normalized_status == OrderStatus.SHIPPED

    def test_unknown_event_is_a_no_op(self):
        mapping = map_v2_event("Teleported to Mars")
        assert mapping.normalized_status is None
        assert not mapping.should_transition
        assert not mapping.is_terminal
        assert "Teleported to Mars" in mapping.description

    def test_empty_event(self):
        assert map_v2_event(None).normalized_status is None
        assert map_v2_event("").normalized_status is None


class TestV1Mapping:
    """Coarse event set used by the v1 webhook."""

    def test_known_events(self):
        assert map_v1_event("Successful Pickup").normalized_status == OrderStatus.PICKED_UP
        assert map_v1_event("Successful Delivery").normalized_status == OrderStatus.DELIVERED
        assert map_v1_event("Completed").normalized_status == OrderStatus.DELIVERED
        assert map_v1_event("Returned to Sender").normalized_status == OrderStatus.RETURNED

    def test_v2_only_event_is_unknown_on_v1(self):
        assert map_v1_event("On Vehicle for Delivery").normalized_status is None


class TestVocabularyTargets:
    """Every mapped status is a real order state."""

    def test_all_targets_exist(self):
        for table in (V1_EVENTS, V2_EVENTS):
            for event, mapping in table.items():
                if mapping.normalized_status is not None:
                    assert mapping.normalized_status in ALL_ORDER_STATES, event


class TestPayloadHelpers:
    def test_failure_reason_from_delivery_exception(self):
        payload = {"delivery_exception": {"failure_reason": "Customer not home"}}
        assert extract_failure_reason(payload) == "Customer not home"

    def test_failure_reason_from_pickup_exception(self):
        payload = {"pickup_exception": {"failure_reason": "Shop closed"}}
        assert extract_failure_reason(payload) == "Shop closed"

    def test_failure_reason_missing(self):
        assert extract_failure_reason({}) is None
        assert extract_failure_reason({"delivery_exception": "not a dict"}) is None

    def test_rts_flag_wins(self):
        assert is_rts_leg({"is_parcel_on_rts_leg": True}, "Arrived at Transit Hub")
        assert not is_rts_leg({"is_parcel_on_rts_leg": False}, "Returned to Sender")

    def test_rts_from_event_name(self):
        assert is_rts_leg({}, "Return to Shipper Exception, Parcel Scrapped")
        assert is_rts_leg({}, "Delivery Exception, Return to Sender Initiated")
        assert not is_rts_leg({}, "On Vehicle for Delivery")
