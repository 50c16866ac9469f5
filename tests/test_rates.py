"""
Test suite for the rate controller

The global rate starts at its configured value and may only be lowered.
"""

import pytest

from accrual_vault.audit import AuditEventType
from accrual_vault.errors import RateIncreaseRejected, Unauthorized, InvalidAmount
from accrual_vault.events import DomainEvent
from accrual_vault.rates import RateController
from accrual_vault.rbac import Capability


INITIAL_RATE = 5 * 10**10


class TestRateInitialization:
    """Test first-run initialization"""

    def test_initial_rate(self, rate_controller):
        assert rate_controller.get_rate() == INITIAL_RATE

    def test_initial_history_entry(self, rate_controller):
        history = rate_controller.get_rate_history()
        assert len(history) == 1
        assert history[0]['rate'] == INITIAL_RATE
        assert history[0]['changed_by'] is None

    def test_initialization_is_audited(self, rate_controller, audit_trail):
        events = audit_trail.get_events_by_type(AuditEventType.RATE_INITIALIZED)
        assert len(events) == 1
        assert events[0].metadata['rate'] == str(INITIAL_RATE)

    def test_existing_rate_survives_restart(self, storage, access_control, audit_trail,
                                            dispatcher, rate_controller):
        """Test that a stored rate wins over the constructor argument"""
        rate_controller.set_rate(4 * 10**10, "owner")

        restarted = RateController(storage, access_control, audit_trail, dispatcher, INITIAL_RATE)
        assert restarted.get_rate() == 4 * 10**10
        assert len(restarted.get_rate_history()) == 2

    def test_invalid_initial_rate(self, storage, access_control, audit_trail, dispatcher):
        with pytest.raises(InvalidAmount):
            RateController(storage, access_control, audit_trail, dispatcher, -1)


class TestSetRate:
    """Test lowering the global rate"""

    def test_lower_rate(self, rate_controller):
        rate_controller.set_rate(4 * 10**10, "owner")
        assert rate_controller.get_rate() == 4 * 10**10

    def test_equal_rate_is_accepted(self, rate_controller):
        rate_controller.set_rate(INITIAL_RATE, "owner")
        assert rate_controller.get_rate() == INITIAL_RATE
        assert len(rate_controller.get_rate_history()) == 2

    def test_increase_rejected(self, rate_controller):
        """Test that raising the rate fails and leaves state untouched"""
        with pytest.raises(RateIncreaseRejected) as exc_info:
            rate_controller.set_rate(6 * 10**10, "owner")

        assert exc_info.value.current_rate == INITIAL_RATE
        assert exc_info.value.requested_rate == 6 * 10**10
        assert rate_controller.get_rate() == INITIAL_RATE
        assert len(rate_controller.get_rate_history()) == 1

    def test_rejected_increase_is_not_audited(self, rate_controller, audit_trail):
        with pytest.raises(RateIncreaseRejected):
            rate_controller.set_rate(INITIAL_RATE + 1, "owner")
        assert audit_trail.get_events_by_type(AuditEventType.RATE_CHANGED) == []

    def test_zero_rate_is_final(self, rate_controller):
        rate_controller.set_rate(0, "owner")
        with pytest.raises(RateIncreaseRejected):
            rate_controller.set_rate(1, "owner")
        assert rate_controller.get_rate() == 0

    def test_negative_rate_rejected(self, rate_controller):
        with pytest.raises(InvalidAmount):
            rate_controller.set_rate(-1, "owner")

    def test_unauthorized_caller(self, rate_controller):
        with pytest.raises(Unauthorized):
            rate_controller.set_rate(1, "mallory")
        assert rate_controller.get_rate() == INITIAL_RATE

    def test_granted_admin_may_lower(self, rate_controller, access_control):
        access_control.grant("owner", "ops", Capability.RATE_ADMIN)
        rate_controller.set_rate(3 * 10**10, "ops")

        history = rate_controller.get_rate_history()
        assert history[-1]['changed_by'] == "ops"
        assert history[-1]['rate'] == 3 * 10**10

    def test_rate_change_audited_and_published(self, rate_controller, audit_trail, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.RATE_CHANGED, received.append)

        rate_controller.set_rate(4 * 10**10, "owner")

        events = audit_trail.get_events_by_type(AuditEventType.RATE_CHANGED)
        assert len(events) == 1
        assert events[0].caller == "owner"
        assert events[0].metadata == {"previous_rate": str(INITIAL_RATE),
                                      "new_rate": str(4 * 10**10)}

        assert len(received) == 1
        assert received[0].data["new_rate"] == str(4 * 10**10)

    def test_rejected_increase_publishes_nothing(self, rate_controller, dispatcher):
        received = []
        dispatcher.subscribe_all(received.append)

        with pytest.raises(RateIncreaseRejected):
            rate_controller.set_rate(INITIAL_RATE * 2, "owner")
        assert received == []

    def test_history_is_ordered(self, rate_controller):
        for rate in (4 * 10**10, 3 * 10**10, 3 * 10**10, 10**10):
            rate_controller.set_rate(rate, "owner")

        rates = [entry['rate'] for entry in rate_controller.get_rate_history()]
        assert rates == [INITIAL_RATE, 4 * 10**10, 3 * 10**10, 3 * 10**10, 10**10]
        assert rates == sorted(rates, reverse=True)
