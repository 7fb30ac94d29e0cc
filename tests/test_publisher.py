"""Tests for the reliable publisher."""

import json

import pytest

from plc_fleet_sim.errors import TransportError
from plc_fleet_sim.messages import MessageFormatter
from plc_fleet_sim.publisher import ConnectionState, ReliablePublisher

from conftest import FakeTransport, make_oven_config


@pytest.fixture
def formatter():
    return MessageFormatter()


@pytest.fixture
def make_message(formatter):
    configs = {}

    def _make(equipment_id="oven1"):
        config = configs.setdefault(equipment_id, make_oven_config(equipment_id))
        return formatter.create_heartbeat(config)

    return _make


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def publisher(transport, sleeps):
    return ReliablePublisher(transport, buffer_capacity=5, max_retries=3, retry_delay_s=1.0, sleep=sleeps.append)


class TestBuffering:
    """Tests for behavior while disconnected."""

    def test_publish_while_disconnected_buffers(self, publisher, make_message, transport):
        for expected in range(1, 4):
            assert publisher.publish(make_message()) is False
            assert publisher.buffer_size == expected
        assert transport.published == []

    def test_overflow_evicts_oldest(self, publisher, make_message):
        messages = [make_message() for _ in range(6)]
        for message in messages:
            publisher.publish(message)

        assert publisher.buffer_size == 5
        assert publisher.dropped_count == 1
        assert publisher.buffered_messages() == messages[1:]

    def test_initial_state(self, publisher):
        assert publisher.state is ConnectionState.DISCONNECTED
        assert publisher.connected is False


class TestConnectedPublishing:
    """Tests for behavior while connected."""

    def test_connect_and_publish(self, publisher, transport, make_message):
        connected = []
        publisher.add_listener("connected", lambda: connected.append(True))

        assert publisher.connect() is True
        assert publisher.publish(make_message("press3")) is True

        assert connected == [True]
        assert transport.topics() == ["plc_data_press3"]
        assert transport.payloads()[0]["equipmentId"] == "press3"
        assert publisher.published_count == 1

    def test_flush_on_connect_groups_by_equipment(self, publisher, transport, make_message):
        first, second, third = make_message("oven1"), make_message("press3"), make_message("oven1")
        for message in (first, second, third):
            publisher.publish(message)
        assert publisher.buffer_size == 3

        publisher.connect()

        assert publisher.buffer_size == 0
        assert transport.topics() == ["plc_data_oven1", "plc_data_oven1", "plc_data_press3"]
        assert [p["id"] for p in transport.payloads()] == [first.id, third.id, second.id]

    def test_write_failure_rebuffers_and_raises(self, publisher, transport, make_message):
        publisher.connect()
        transport.fail_after = 0
        transport.refuse_connect = True
        disconnected = []
        publisher.add_listener("disconnected", lambda: disconnected.append(True))
        message = make_message()

        with pytest.raises(TransportError):
            publisher.publish(message)
        publisher.join_reconnect(timeout=5)

        assert publisher.state is ConnectionState.DISCONNECTED
        assert publisher.buffered_messages() == [message]
        assert disconnected == [True]

    def test_unknown_listener_event(self, publisher):
        with pytest.raises(ValueError):
            publisher.add_listener("exploded", lambda: None)


class TestReconnect:
    """Tests for backoff and terminal failure."""

    def test_exponential_backoff_then_terminal_error(self, sleeps, make_message):
        transport = FakeTransport(refuse_connect=True)
        publisher = ReliablePublisher(transport, max_retries=3, retry_delay_s=1.0, sleep=sleeps.append)
        errors = []
        publisher.add_listener("error", errors.append)

        assert publisher.connect() is False
        publisher.join_reconnect(timeout=5)

        assert sleeps == [1.0, 2.0, 4.0]
        assert transport.connect_calls == 4
        assert publisher.terminal_error is not None
        assert publisher.terminal_error.terminal is True
        assert errors[-1] is publisher.terminal_error

        # publishing keeps buffering after giving up
        assert publisher.publish(make_message()) is False
        assert publisher.buffer_size == 1

    def test_reconnect_succeeds_and_flushes(self, sleeps, make_message):
        transport = FakeTransport(connect_failures=3)
        publisher = ReliablePublisher(transport, max_retries=5, retry_delay_s=0.5, sleep=sleeps.append)
        publisher.publish(make_message())
        publisher.publish(make_message("press3"))

        publisher.connect()
        publisher.join_reconnect(timeout=5)

        assert sleeps == [0.5, 1.0, 2.0]
        assert publisher.connected is True
        assert publisher.retry_attempts == 0
        assert publisher.buffer_size == 0
        assert len(transport.published) == 2

    def test_connection_lost_triggers_reconnect(self, publisher, transport, make_message):
        publisher.connect()
        events = []
        publisher.add_listener("disconnected", lambda: events.append("disconnected"))
        publisher.add_listener("connected", lambda: events.append("connected"))

        transport.connected = False
        transport.on_connection_lost("keepalive timeout")
        publisher.join_reconnect(timeout=5)

        assert events == ["disconnected", "connected"]
        assert publisher.connected is True
        assert transport.connect_calls == 2

    def test_failed_flush_requeues_unsent_in_order(self, make_message):
        transport = FakeTransport()
        publisher = ReliablePublisher(transport, max_retries=0, sleep=lambda s: None)
        messages = [make_message("oven1"), make_message("oven1"), make_message("oven1")]
        for message in messages:
            publisher.publish(message)
        transport.fail_after = 1

        assert publisher.connect() is False
        publisher.join_reconnect(timeout=5)

        assert len(transport.published) == 1
        assert publisher.buffered_messages() == messages[1:]
        assert publisher.terminal_error is not None

    def test_disconnect_stops_reconnect_loop(self, make_message):
        transport = FakeTransport(refuse_connect=True)
        publisher = ReliablePublisher(transport, max_retries=5, retry_delay_s=30.0)

        publisher.connect()
        publisher.disconnect()

        assert transport.closed is True
        assert transport.connect_calls == 1
        assert publisher.state is ConnectionState.DISCONNECTED


class TestWirePayload:
    def test_payload_is_envelope_json(self, publisher, transport, make_message):
        publisher.connect()
        message = make_message()
        publisher.publish(message)

        payload = json.loads(transport.published[0][1])
        assert payload["id"] == message.id
        assert payload["messageType"] == "HEARTBEAT"
