"""Tests for accuniq.controller."""

import re
from datetime import datetime

import pytest

from conftest import (
    FakeScheduler,
    FakeTransport,
    MemoryPreferences,
    make_measurement_packet,
    make_packet,
)
from accuniq.controller import ConnectionState, Controller
from accuniq.device import MemberInfo
from accuniq.protocol import (
    encode_packet,
    request_measurement,
    transmit_member_info,
    transmit_time,
)
from accuniq.state import DeviceState
from accuniq.transport import BluetoothDevice, SerialDevice

HC05 = SerialDevice("/dev/rfcomm0", "HC-05")
OTHER = SerialDevice("/dev/ttyUSB0", "USB Serial")
BT = BluetoothDevice("AA:BB:CC:DD:EE:FF", "HC-05")

DEVICE_INFO = make_packet("I", "BC720&AP&1.4&1.0&K&0")


def _controller(transport=None, prefs=None, **kwargs):
    """Build a Controller over test doubles; return all the pieces."""
    transport = transport if transport is not None else FakeTransport()
    prefs = prefs if prefs is not None else MemoryPreferences()
    sched = FakeScheduler()
    ctl = Controller(transport, prefs, sched, **kwargs)
    return ctl, transport, prefs, sched


def _record(channel) -> list:
    """Subscribe a list to *channel* and return it."""
    seen = []
    channel.subscribe(seen.append)
    return seen


def _status(byte: int) -> bytes:
    return encode_packet("A", bytes([byte]))


class TestConnect:
    """Tests for Controller.connect()."""

    def test_success(self):
        ctl, transport, prefs, _ = _controller()
        events = _record(ctl.events.connection)

        assert ctl.connect(HC05)

        assert ctl.is_connected
        assert ctl.state is ConnectionState.CONNECTED
        assert ctl.handle == HC05
        assert transport.connects == [HC05]
        assert events == [True]
        assert prefs.last.device_id == "/dev/rfcomm0"
        assert prefs.last.device_type == "serial"
        assert prefs.last.device_name == "HC-05"

    def test_failure(self):
        ctl, transport, prefs, _ = _controller(FakeTransport(connect_results=[False]))
        events = _record(ctl.events.connection)

        assert not ctl.connect(HC05)

        assert not ctl.is_connected
        assert ctl.state is ConnectionState.DISCONNECTED
        assert events == []
        assert prefs.last is None

    def test_state_is_connecting_during_attempt(self):
        seen = []

        class Watching(FakeTransport):
            def connect(self, handle):
                seen.append(ctl.state)
                return super().connect(handle)

        ctl, _, _, _ = _controller(Watching())
        ctl.connect(HC05)
        assert seen == [ConnectionState.CONNECTING]

    def test_manual_connect_supersedes_one_in_flight(self):
        """A connect issued while another is opening wins."""
        nested = []

        class Reentrant(FakeTransport):
            def connect(self, handle):
                if handle == HC05:
                    nested.append(ctl.connect(OTHER))
                return super().connect(handle)

        ctl, transport, prefs, _ = _controller(Reentrant())
        events = _record(ctl.events.connection)

        assert not ctl.connect(HC05)

        assert nested == [True]
        assert ctl.handle == OTHER
        assert ctl.state is ConnectionState.CONNECTED
        assert transport.connects == [OTHER, HC05]
        assert events == [True]
        assert prefs.last.device_id == OTHER.port

    def test_disconnect_during_connect_abandons_it(self):
        class UserCancels(FakeTransport):
            def connect(self, handle):
                ctl.disconnect()
                return super().connect(handle)

        ctl, transport, prefs, _ = _controller(UserCancels())
        events = _record(ctl.events.connection)

        assert not ctl.connect(HC05)

        assert not ctl.is_connected
        assert ctl.state is ConnectionState.DISCONNECTED
        assert transport.disconnects == 2
        assert events == []
        assert prefs.last is None

    def test_data_during_connect_is_dispatched(self):
        class Chatty(FakeTransport):
            def connect(self, handle):
                ok = super().connect(handle)
                self.feed(DEVICE_INFO)
                return ok

        ctl, _, _, _ = _controller(Chatty())
        ctl.connect(HC05)
        assert ctl.device_info.device_name == "BC720"

    def test_link_lost_during_connect_is_handled(self):
        class Flaky(FakeTransport):
            def connect(self, handle):
                ok = super().connect(handle)
                self.drop("read failed")
                return ok

        ctl, _, _, sched = _controller(
            Flaky(), MemoryPreferences(auto_connect=True),
        )
        events = _record(ctl.events.connection)

        assert ctl.connect(HC05)

        assert not ctl.is_connected
        assert ctl.state is ConnectionState.DISCONNECTED
        assert events == [True, False]
        assert len(sched.pending(3.0)) == 1

    def test_replaces_existing_session(self):
        ctl, transport, _, _ = _controller()
        ctl.connect(HC05)
        transport.feed(DEVICE_INFO)
        assert ctl.device_info is not None

        assert ctl.connect(BT)

        assert ctl.handle == BT
        assert ctl.device_info is None
        assert ctl.device_state is DeviceState.UNKNOWN

    def test_success_cancels_pending_retry(self):
        ctl, transport, _, sched = _controller()
        ctl.set_auto_connect_enabled(True)
        assert ctl.retry_count == 1
        assert sched.pending(12.0)

        ctl.connect(HC05)

        assert ctl.retry_count == 0
        assert sched.pending() == []


class TestSend:
    """Outgoing commands."""

    def test_not_connected(self):
        ctl, transport, _, _ = _controller()
        assert not ctl.request_measurement()
        assert not ctl.request_device_version()
        assert not ctl.request_device_state()
        assert not ctl.request_serial_number()
        assert not ctl.sync_time()
        assert not ctl.send_member_info(MemberInfo("1", "A", 30, "M", 170))
        assert transport.sent == []

    def test_request_measurement_bytes(self):
        ctl, transport, _, _ = _controller()
        ctl.connect(HC05)
        assert ctl.request_measurement()
        assert transport.sent == [bytes([0x02, 0x4D, 0x03, 0x52])]

    def test_member_info(self):
        ctl, transport, _, _ = _controller()
        ctl.connect(HC05)
        ctl.send_member_info(MemberInfo("7", "Kim", 27, "M", 173.0))
        assert transport.sent == [transmit_member_info("7,Kim,27,M,173.0")]

    def test_sync_time(self):
        ctl, transport, _, _ = _controller()
        ctl.connect(HC05)
        now = datetime(2024, 3, 9, 7, 5, 1)
        ctl.sync_time(now)
        assert transport.sent == [transmit_time(now)]

    def test_send_failure(self):
        ctl, transport, _, _ = _controller()
        ctl.connect(HC05)
        transport.send_ok = False
        assert not ctl.request_device_state()


class TestEchoSuppression:
    """Packets identical to the last one sent are dropped."""

    def test_echo_of_request_ignored(self):
        ctl, transport, _, _ = _controller()
        results = _record(ctl.events.measurement)
        ctl.connect(HC05)
        ctl.request_measurement()

        transport.feed(request_measurement())

        assert results == []

    def test_different_packet_dispatched(self):
        ctl, transport, _, _ = _controller()
        results = _record(ctl.events.measurement)
        ctl.connect(HC05)
        ctl.request_measurement()

        transport.feed(make_measurement_packet())

        assert len(results) == 1

    def test_one_byte_difference_dispatched(self):
        """A packet that differs from the last sent in one data byte is not an echo."""
        ctl, transport, _, _ = _controller()
        lines = _record(ctl.events.log)
        ctl.connect(HC05)
        ctl.send_member_info(MemberInfo("7", "Kim", 27, "M", 173.0))
        lines.clear()

        transport.feed(transmit_member_info("7,Kim,27,M,174.0"))

        assert any("ACK/NAK" in line for line in lines)

    def test_echo_of_member_info_ignored(self):
        ctl, transport, _, _ = _controller()
        lines = _record(ctl.events.log)
        ctl.connect(HC05)
        ctl.send_member_info(MemberInfo("7", "Kim", 27, "M", 173.0))
        lines.clear()

        transport.feed(transmit_member_info("7,Kim,27,M,173.0"))

        assert not any("ACK/NAK" in line for line in lines)

    def test_only_last_sent_is_suppressed(self):
        """An earlier request's echo is no longer recognised."""
        ctl, transport, _, _ = _controller()
        results = _record(ctl.events.measurement)
        ctl.connect(HC05)
        ctl.request_measurement()
        ctl.request_device_state()

        transport.feed(request_measurement())

        # A bare M packet decodes to the zero default record.
        assert len(results) == 1
        assert results[0].weight == 0.0


class TestDispatch:
    """Incoming packets by command letter."""

    def test_device_info(self):
        ctl, transport, _, _ = _controller()
        infos = _record(ctl.events.device_info)
        ctl.connect(HC05)

        transport.feed(DEVICE_INFO)

        assert len(infos) == 1
        assert infos[0].device_name == "BC720"
        assert ctl.device_info.region_code == "K"

    def test_malformed_device_info_ignored(self):
        ctl, transport, _, _ = _controller()
        infos = _record(ctl.events.device_info)
        ctl.connect(HC05)

        transport.feed(make_packet("I", "BC720&AP"))

        assert infos == []
        assert ctl.device_info is None

    def test_serial_number_attached_and_republished(self):
        ctl, transport, _, _ = _controller()
        infos = _record(ctl.events.device_info)
        ctl.connect(HC05)

        transport.feed(DEVICE_INFO)
        transport.feed(encode_packet("K", b"SN12345"))

        assert len(infos) == 2
        assert ctl.device_info.serial_number == "SN12345"

    def test_serial_number_without_device_info(self):
        ctl, transport, _, _ = _controller()
        infos = _record(ctl.events.device_info)
        ctl.connect(HC05)

        transport.feed(encode_packet("K", b"SN12345"))

        assert infos == []

    def test_measurement(self):
        ctl, transport, _, _ = _controller()
        results = _record(ctl.events.measurement)
        ctl.connect(HC05)

        transport.feed(make_measurement_packet())

        assert results[0].weight == pytest.approx(60.1)
        assert results[0].bmi == pytest.approx(20.08, abs=0.01)

    def test_packet_split_across_chunks(self):
        ctl, transport, _, _ = _controller()
        results = _record(ctl.events.measurement)
        ctl.connect(HC05)
        packet = make_measurement_packet()

        for i in range(0, len(packet), 7):
            transport.feed(packet[i:i + 7])

        assert len(results) == 1

    def test_unknown_command_logged(self):
        ctl, transport, _, _ = _controller()
        lines = _record(ctl.events.log)
        ctl.connect(HC05)

        transport.feed(make_packet("Z", "hello"))

        assert any("Unknown command 'Z'" in line for line in lines)

    def test_member_ack_logged(self):
        ctl, transport, _, _ = _controller()
        lines = _record(ctl.events.log)
        ctl.connect(HC05)

        transport.feed(make_packet("B", "OK"))

        assert any("ACK/NAK" in line for line in lines)

    def test_log_lines_are_timestamped(self):
        ctl, _, _, _ = _controller()
        lines = _record(ctl.events.log)
        ctl.connect(HC05)
        assert any(
            re.match(r"^\[\d\d:\d\d:\d\d\.\d{3}\] Connected to HC-05", line)
            for line in lines
        )

    def test_data_while_disconnected_ignored(self):
        ctl, transport, _, _ = _controller()
        results = _record(ctl.events.measurement)
        transport.feed(make_measurement_packet())
        assert results == []


class TestDeviceState:
    """Status tracking and the automatic measurement request."""

    def test_transitions_published_once(self):
        ctl, transport, _, _ = _controller()
        states = _record(ctl.events.state)
        ctl.connect(HC05)

        transport.feed(_status(0x30) + _status(0x30) + _status(0x31))

        assert states == [DeviceState.READY, DeviceState.MEASURING_WEIGHT]
        assert ctl.device_state is DeviceState.MEASURING_WEIGHT

    def test_complete_schedules_one_request(self):
        ctl, transport, _, sched = _controller()
        states = _record(ctl.events.state)
        ctl.connect(HC05)
        transport.feed(_status(0x35))
        states.clear()

        transport.feed(_status(0x36))
        transport.feed(_status(0x36))

        assert states == [DeviceState.COMPLETE_DISPLAY]
        assert len(sched.pending(0.5)) == 1
        assert transport.sent == []

        sched.run_pending()
        assert transport.sent == [request_measurement()]

    def test_disconnect_cancels_pending_request(self):
        ctl, transport, _, sched = _controller()
        ctl.connect(HC05)
        transport.feed(_status(0x36))

        ctl.disconnect()

        assert sched.pending(0.5) == []
        assert ctl.device_state is DeviceState.UNKNOWN


class TestDisconnect:
    """Manual and unexpected disconnects."""

    def test_manual(self):
        ctl, transport, _, sched = _controller()
        ctl.set_auto_connect_enabled(False)
        events = _record(ctl.events.connection)
        ctl.connect(HC05)

        ctl.disconnect()

        assert not ctl.is_connected
        assert ctl.state is ConnectionState.DISCONNECTED
        assert ctl.was_manual_disconnect
        assert events == [True, False]
        assert transport.disconnects == 1
        assert sched.pending() == []

    def test_manual_with_auto_connect_does_not_reconnect(self):
        ctl, _, _, sched = _controller()
        ctl.connect(HC05)
        ctl.set_auto_connect_enabled(True)

        ctl.disconnect()

        assert sched.pending() == []

    def test_link_loss_schedules_reconnect(self):
        ctl, transport, _, sched = _controller()
        ctl.connect(HC05)
        ctl.set_auto_connect_enabled(True)
        events = _record(ctl.events.connection)

        transport.drop("read failed")

        assert events == [False]
        assert not ctl.was_manual_disconnect
        assert len(sched.pending(3.0)) == 1

    def test_link_loss_without_auto_connect(self):
        ctl, transport, _, sched = _controller()
        ctl.set_auto_connect_enabled(False)
        ctl.connect(HC05)

        transport.drop()

        assert sched.pending() == []

    def test_reconnect_uses_last_device(self):
        ctl, transport, _, sched = _controller()
        ctl.connect(HC05)
        ctl.set_auto_connect_enabled(True)
        transport.drop()

        sched.run_pending()

        assert ctl.is_connected
        assert ctl.state is ConnectionState.CONNECTED
        assert transport.connects == [HC05, HC05]

    def test_failed_reconnect_ends_disconnected(self):
        transport = FakeTransport(connect_results=[True, False])
        ctl, _, prefs, sched = _controller(transport)
        ctl.connect(HC05)
        ctl.set_auto_connect_enabled(True)
        transport.drop()

        sched.run_pending()

        assert ctl.state is ConnectionState.DISCONNECTED
        assert prefs.fails == 1
        assert len(sched.pending(12.0)) == 1

    def test_manual_disconnect_cancels_pending_reconnect(self):
        ctl, transport, _, sched = _controller()
        ctl.connect(HC05)
        ctl.set_auto_connect_enabled(True)
        transport.drop()
        assert sched.pending(3.0)

        ctl.disconnect()

        assert sched.pending() == []
        assert ctl.was_manual_disconnect

    def test_close(self):
        ctl, transport, _, sched = _controller()
        ctl.connect(HC05)
        transport.feed(_status(0x36))

        ctl.close()

        assert not ctl.is_connected
        assert transport.closed_calls == 1
        assert sched.pending() == []


class TestStart:
    """Loading the auto-connect flag."""

    def test_default_enabled_and_persisted(self):
        ctl, transport, prefs, _ = _controller(FakeTransport(candidates=[HC05]))
        ctl.start()
        assert prefs.auto is True
        assert ctl.auto_connect_enabled
        assert ctl.is_connected

    def test_default_disabled(self):
        ctl, transport, prefs, _ = _controller(
            FakeTransport(candidates=[HC05]), auto_connect_default=False,
        )
        ctl.start()
        assert prefs.auto is False
        assert transport.connects == []

    def test_stored_flag_wins(self):
        ctl, transport, _, _ = _controller(
            FakeTransport(candidates=[HC05]), MemoryPreferences(auto_connect=False),
        )
        ctl.start()
        assert not ctl.auto_connect_enabled
        assert transport.connects == []


class TestAutoConnect:
    """Priority policy and bounded retries."""

    def test_disabled_does_nothing(self):
        ctl, transport, _, sched = _controller(
            FakeTransport(candidates=[HC05]), MemoryPreferences(auto_connect=False),
        )
        assert not ctl.auto_connect()
        assert transport.connects == []
        assert sched.pending() == []

    def test_on_demand_uses_stored_flag(self):
        """auto_connect() works without start() when the flag is stored."""
        ctl, transport, _, _ = _controller(
            FakeTransport(candidates=[HC05]), MemoryPreferences(auto_connect=True),
        )
        assert ctl.auto_connect()
        assert ctl.auto_connect_enabled
        assert transport.connects == [HC05]

    def test_on_demand_applies_default_when_unset(self):
        ctl, transport, prefs, _ = _controller(
            FakeTransport(candidates=[HC05]), auto_connect_default=False,
        )
        assert not ctl.auto_connect()
        assert prefs.auto is False
        assert transport.connects == []

    def test_manual_connect_stops_auto_connect(self):
        """A user connect during the last-device attempt ends the policy run."""
        prefs = MemoryPreferences(auto_connect=True)
        prefs.save_last_device("/dev/rfcomm9", "serial", "old")

        class UserConnects(FakeTransport):
            def connect(self, handle):
                if handle.port == "/dev/rfcomm9":
                    ctl.connect(OTHER)
                    return super().connect(handle) and False
                return super().connect(handle)

        transport = UserConnects(candidates=[HC05])
        ctl, _, _, sched = _controller(transport, prefs)

        assert ctl.auto_connect()

        assert ctl.handle == OTHER
        assert transport.connects == [OTHER, SerialDevice("/dev/rfcomm9", "old")]
        assert prefs.fails == 0
        assert sched.pending() == []
        assert ctl.state is ConnectionState.CONNECTED

    def test_already_connected(self):
        ctl, transport, _, _ = _controller()
        ctl.connect(HC05)
        ctl.set_auto_connect_enabled(True)
        assert ctl.auto_connect()
        assert transport.connects == [HC05]

    def test_last_device_first(self):
        prefs = MemoryPreferences(auto_connect=True)
        prefs.save_last_device(BT.address, "bluetooth", "HC-05")
        ctl, transport, _, _ = _controller(
            FakeTransport(candidates=[HC05, BT]), prefs,
        )

        assert ctl.auto_connect()

        assert transport.connects == [BT]

    def test_unlisted_last_device_rebuilt_from_record(self):
        prefs = MemoryPreferences(auto_connect=True)
        prefs.save_last_device("AA:BB:CC:DD:EE:FF", "bluetooth", "HC-05")
        ctl, transport, _, _ = _controller(FakeTransport(), prefs)

        assert ctl.auto_connect()

        assert transport.connects == [BluetoothDevice("AA:BB:CC:DD:EE:FF", "HC-05")]

    def test_falls_back_to_module_candidate(self):
        prefs = MemoryPreferences(auto_connect=True)
        prefs.save_last_device("/dev/rfcomm9", "serial", "old")
        transport = FakeTransport(candidates=[OTHER, HC05], connect_results=[False])
        ctl, _, _, _ = _controller(transport, prefs)

        assert ctl.auto_connect()

        assert transport.connects == [SerialDevice("/dev/rfcomm9", "old"), HC05]
        assert prefs.last.device_id == HC05.port
        assert prefs.fails == 0

    def test_non_module_candidates_skipped(self):
        transport = FakeTransport(candidates=[OTHER])
        ctl, _, _, sched = _controller(transport, MemoryPreferences(auto_connect=True))
        ctl.start()
        assert transport.connects == []
        assert ctl.retry_count == 1
        assert len(sched.pending(12.0)) == 1
        assert ctl.state is ConnectionState.DISCONNECTED

    def test_unknown_last_device_type_forgotten(self):
        prefs = MemoryPreferences(auto_connect=True)
        prefs.save_last_device("x", "usb", "odd")
        ctl, transport, _, _ = _controller(FakeTransport(candidates=[HC05]), prefs)

        assert ctl.auto_connect()

        assert transport.connects == [HC05]
        assert prefs.last.device_id == HC05.port

    def test_last_device_cleared_after_three_failures(self):
        prefs = MemoryPreferences(auto_connect=True)
        prefs.save_last_device("/dev/rfcomm9", "serial", "old")
        transport = FakeTransport(connect_results=[False] * 10)
        ctl, _, _, sched = _controller(transport, prefs)

        ctl.auto_connect()
        assert prefs.fails == 1
        sched.run_pending()
        assert prefs.fails == 2
        assert prefs.last is not None
        sched.run_pending()

        assert prefs.last is None
        assert prefs.fails == 0
        assert len(transport.connects) == 3

    def test_retries_capped(self):
        """Five scheduled retries, then auto-connect stops."""
        ctl, transport, _, sched = _controller()
        ctl.set_auto_connect_enabled(True)
        assert ctl.retry_count == 1

        for _ in range(5):
            assert sched.run_pending() == 1

        assert sched.pending() == []
        assert ctl.retry_count == 0
        assert len(sched.tasks) == 5
        assert all(t.delay == 12.0 for t in sched.tasks)

    def test_retry_succeeds_later(self):
        transport = FakeTransport()
        ctl, _, _, sched = _controller(transport)
        ctl.set_auto_connect_enabled(True)
        transport._candidates = [HC05]

        sched.run_pending()

        assert ctl.is_connected
        assert ctl.retry_count == 0
        assert sched.pending() == []

    def test_disable_cancels_retry(self):
        ctl, _, prefs, sched = _controller()
        ctl.set_auto_connect_enabled(True)
        assert sched.pending(12.0)

        ctl.set_auto_connect_enabled(False)

        assert sched.pending() == []
        assert ctl.retry_count == 0
        assert prefs.auto is False

    def test_toggle(self):
        ctl, _, prefs, _ = _controller(auto_connect_default=False)
        assert ctl.toggle_auto_connect() is True
        assert prefs.auto is True
        assert ctl.toggle_auto_connect() is False
        assert prefs.auto is False

    def test_custom_timing(self):
        ctl, transport, _, sched = _controller(
            retry_interval=1.0, max_retries=1, reconnect_delay=0.1,
        )
        ctl.set_auto_connect_enabled(True)
        assert len(sched.pending(1.0)) == 1
        sched.run_pending()
        assert sched.pending() == []
