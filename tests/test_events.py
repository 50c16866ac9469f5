"""
Tests for the Event System (Observer Pattern)

Tests the dispatcher, deferred delivery and handler isolation.
"""

import pytest
import threading
from datetime import datetime
from unittest.mock import Mock

from accrual_vault.events import DomainEvent, EventPayload, EventDispatcher, EventPublisherMixin


def _transfer_event(amount="1"):
    return EventPayload(
        event_type=DomainEvent.TRANSFER,
        entity_type="account",
        entity_id="alice",
        data={"from": "alice", "to": "bob", "amount": amount}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = _transfer_event()

        assert event.event_type == DomainEvent.TRANSFER
        assert event.entity_id == "alice"
        assert isinstance(event.timestamp, datetime)
        assert event.timestamp.tzinfo is not None
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        """Test event payload to/from dict"""
        original = _transfer_event("42")

        event_dict = original.to_dict()
        assert event_dict['event_type'] == "token.transfer"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.data == original.data
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test the event dispatcher"""

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.TRANSFER, handler)

        event = _transfer_event()
        dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_handlers_only_see_their_type(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.MINT, handler)

        dispatcher.publish(_transfer_event())

        handler.assert_not_called()

    def test_subscribe_all(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(_transfer_event())
        dispatcher.publish(EventPayload(DomainEvent.RATE_CHANGED, "rate", "global_rate", {}))

        assert handler.call_count == 2

    def test_unsubscribe(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.TRANSFER, handler)
        dispatcher.unsubscribe(DomainEvent.TRANSFER, handler)

        dispatcher.publish(_transfer_event())

        handler.assert_not_called()
        # Unsubscribing twice is tolerated
        dispatcher.unsubscribe(DomainEvent.TRANSFER, handler)

    def test_failing_handler_is_isolated(self):
        """Test that one broken handler does not stop delivery to others"""
        dispatcher = EventDispatcher()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        dispatcher.subscribe(DomainEvent.TRANSFER, broken)
        dispatcher.subscribe(DomainEvent.TRANSFER, healthy)

        dispatcher.publish(_transfer_event())

        healthy.assert_called_once()

    def test_handler_count_and_clear(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.TRANSFER, Mock())
        dispatcher.subscribe(DomainEvent.MINT, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.TRANSFER) == 1
        assert dispatcher.get_handler_count() == 3

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0


class TestDeferredDelivery:
    """Test buffering of events until the outermost block completes"""

    def test_events_held_until_block_exits(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)

        with dispatcher.deferred():
            dispatcher.publish(_transfer_event())
            assert received == []

        assert len(received) == 1

    def test_nested_blocks_deliver_at_outermost_exit(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)

        with dispatcher.deferred():
            with dispatcher.deferred():
                dispatcher.publish(_transfer_event("1"))
            assert received == []
            dispatcher.publish(_transfer_event("2"))

        assert [e.data["amount"] for e in received] == ["1", "2"]

    def test_failed_block_discards_events(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)

        with pytest.raises(RuntimeError):
            with dispatcher.deferred():
                dispatcher.publish(_transfer_event())
                raise RuntimeError("abort")

        assert received == []
        dispatcher.publish(_transfer_event())
        assert len(received) == 1

    def test_failed_inner_block_keeps_outer_events(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)

        with dispatcher.deferred():
            dispatcher.publish(_transfer_event("outer"))
            with pytest.raises(RuntimeError):
                with dispatcher.deferred():
                    dispatcher.publish(_transfer_event("inner"))
                    raise RuntimeError("abort")

        assert [e.data["amount"] for e in received] == ["outer"]

    def test_deferral_is_per_thread(self):
        """Test that another thread's open block does not hold this thread's events"""
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)
        entered = threading.Event()
        release = threading.Event()

        def hold_open():
            with dispatcher.deferred():
                entered.set()
                release.wait(timeout=5)

        worker = threading.Thread(target=hold_open)
        worker.start()
        entered.wait(timeout=5)

        dispatcher.publish(_transfer_event())
        assert len(received) == 1

        release.set()
        worker.join()


class TestEventPublisherMixin:
    """Test the publishing mixin used by domain classes"""

    def test_publish_event(self):
        class Publisher(EventPublisherMixin):
            def __init__(self, dispatcher):
                self.event_dispatcher = dispatcher

        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.BURN, handler)

        Publisher(dispatcher).publish_event(DomainEvent.BURN, "account", "alice",
                                            {"from": "alice", "amount": "5"})

        event = handler.call_args[0][0]
        assert event.entity_id == "alice"
        assert event.data["amount"] == "5"
