"""
Unit tests for EventChannel.
"""
import pytest
import sys
import os
from unittest.mock import Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'rplugin', 'python3'))

from kiln.core.events import EventChannel


class TestEventChannel:

    def setup_method(self):
        self.channel = EventChannel("test")

    def test_listeners_called_in_subscription_order(self):
        calls = []
        self.channel.subscribe(lambda p: calls.append(("first", p)))
        self.channel.subscribe(lambda p: calls.append(("second", p)))

        self.channel.fire(42)

        assert calls == [("first", 42), ("second", 42)]

    def test_unsubscribe(self):
        listener = Mock()
        unsubscribe = self.channel.subscribe(listener)

        unsubscribe()
        unsubscribe()
        self.channel.fire("x")

        listener.assert_not_called()
        assert self.channel.listener_count == 0

    def test_failing_listener_does_not_stop_delivery(self):
        failing = Mock(side_effect=RuntimeError("boom"))
        other = Mock()
        self.channel.subscribe(failing)
        self.channel.subscribe(other)

        self.channel.fire("payload")

        other.assert_called_once_with("payload")

    def test_listener_added_during_fire_is_not_called(self):
        """Delivery uses a snapshot of the listeners."""
        late = Mock()
        self.channel.subscribe(lambda p: self.channel.subscribe(late))

        self.channel.fire(1)

        late.assert_not_called()
        assert self.channel.listener_count == 2

    def test_forward_to(self):
        target = EventChannel("target")
        listener = Mock()
        target.subscribe(listener)
        self.channel.forward_to(target)

        self.channel.fire("forwarded")

        listener.assert_called_once_with("forwarded")

    def test_disposed_channel_is_silent(self):
        listener = Mock()
        self.channel.subscribe(listener)

        self.channel.dispose()
        self.channel.fire(1)
        unsubscribe = self.channel.subscribe(listener)
        unsubscribe()

        listener.assert_not_called()
        assert self.channel.listener_count == 0


if __name__ == "__main__":
    pytest.main([__file__])
