"""
Unit Tests for the Cast Session Manager

Tests for:
- Item id validation (no device contact, no audit)
- Successful start: phases, audit, events, last-seen
- Failures: resolution, connect, launch, timeout, DNS, audit write
- Stop, stop failure, preemption, concurrent starts, abort during start
- Status, device test and cleanup
"""

import pytest
import socket
import sqlite3
import threading
import time
from unittest.mock import Mock, MagicMock

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from core.cast.errors import (
    CastCancelledError,
    DeviceProtocolError,
    NetworkTimeoutError,
    NotFoundError,
    TransientNetworkError,
    ValidationError,
)
from core.cast.notifier import EventNotifier, EventType
from core.cast.registry import DeviceRegistry
from core.cast.session import CastSessionManager
from core.cast.store import CastStore
from core.cast.transport import DeviceControl
from core.cast.types import AttemptStatus, CastState

ITEM = "dQw4w9WgXcQ"
OTHER_ITEM = "jNQXAC9IVRw"
THIRD_ITEM = "M7lc1UVf-VE"


class RecordingNotifier(EventNotifier):
    """Keeps published events in memory."""

    def __init__(self):
        self.events = []

    def _deliver(self, event, message):
        self.events.append((event, message))

    def kinds(self):
        return [e for e, _ in self.events]

    def of(self, kind):
        return [m for e, m in self.events if e == kind]


def make_control():
    control = MagicMock(spec=DeviceControl)
    control.load_item.return_value = {"playerState": "PLAYING"}
    return control


@pytest.fixture
def store():
    s = CastStore(":memory:")
    s.init_schema()
    yield s
    s.close()


@pytest.fixture
def device(store):
    return store.create_device("Living Room", "10.0.0.1", is_default=True)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def controls():
    return []


@pytest.fixture
def manager(store, notifier, controls):
    def factory():
        control = make_control()
        controls.append(control)
        return control

    mgr = CastSessionManager(DeviceRegistry(store), store, notifier, control_factory=factory,
                             connect_timeout=1.0, launch_timeout=1.0, load_timeout=1.0,
                             stop_timeout=1.0, discovery=Mock())
    yield mgr
    mgr.pool.shutdown(wait=False)


class TestValidation:
    """Tests for item id validation."""

    @pytest.mark.parametrize("bad", [None, "", "short", "has space!!", 12345678901])
    def test_rejected_before_anything(self, manager, store, notifier, controls, device, bad):
        """A malformed id raises, announces cast_failed, audits nothing."""
        with pytest.raises(ValidationError):
            manager.start_cast(bad, device.id)
        assert controls == []
        assert store.get_cast_logs() == []
        assert notifier.kinds() == [EventType.CAST_FAILED]
        assert manager.last_attempt is None
        assert manager.state == CastState.IDLE


class TestStartCast:
    """Tests for a successful start."""

    def test_start_success(self, manager, store, notifier, controls, device):
        """Connect, launch, load, then active with one started record."""
        status = manager.start_cast(ITEM, device.id, schedule_id=7)

        assert status["active"] is True
        assert status["itemId"] == ITEM
        assert status["deviceName"] == "Living Room"
        assert manager.state == CastState.ACTIVE

        control = controls[0]
        control.connect.assert_called_once_with("10.0.0.1", 8009, 1.0)
        control.launch_receiver.assert_called_once()
        control.load_item.assert_called_once_with(ITEM, 1.0)

        logs = store.get_cast_logs()
        assert len(logs) == 1
        assert logs[0].status == AttemptStatus.STARTED
        assert logs[0].schedule_id == 7
        assert logs[0].device_id == device.id

        started = notifier.of(EventType.CAST_STARTED)
        assert len(started) == 1
        assert started[0]["deviceName"] == "Living Room"
        assert started[0]["status"] == {"playerState": "PLAYING"}

    def test_memo_recorded(self, manager, device):
        """The last attempt is remembered with its parameters."""
        manager.start_cast(ITEM, device.id, schedule_id=3)
        memo = manager.last_attempt
        assert (memo.item_id, memo.device_id, memo.schedule_id) == (ITEM, device.id, 3)
        assert manager.get_status()["lastAttempt"]["itemId"] == ITEM

    def test_touches_last_seen(self, manager, store, device):
        """A successful cast refreshes the device's last-seen."""
        before = store.get_device(device.id).last_seen
        time.sleep(0.01)
        manager.start_cast(ITEM, device.id)
        assert store.get_device(device.id).last_seen > before

    def test_hostname_resolved(self, store, notifier, device):
        """Hostnames are resolved before connecting."""
        host_device = store.create_device("Bedroom", "bedroom.local")
        control = make_control()
        resolver = Mock(return_value=[(socket.AF_INET, socket.SOCK_STREAM, 6, '', ('192.168.1.50', 0))])
        mgr = CastSessionManager(DeviceRegistry(store), store, notifier,
                                 control_factory=lambda: control, resolver=resolver,
                                 connect_timeout=1.0)
        try:
            mgr.start_cast(ITEM, host_device.id)
        finally:
            mgr.pool.shutdown(wait=False)
        assert resolver.call_args[0][0] == "bedroom.local"
        control.connect.assert_called_once_with("192.168.1.50", 8009, 1.0)

    def test_title_recorded(self, manager, store, device):
        """A known title is kept on the record, the status and the memo."""
        status = manager.start_cast(ITEM, device.id, item_title="Morning Show")
        assert status["itemTitle"] == "Morning Show"
        assert store.get_cast_logs()[0].item_title == "Morning Show"
        assert manager.last_attempt.item_title == "Morning Show"


class TestStartFailures:
    """Tests for failures after validation."""

    def test_no_device(self, manager, store, notifier, controls):
        """No resolvable device: NotFoundError, one error record without device."""
        with pytest.raises(NotFoundError):
            manager.start_cast(ITEM)
        logs = store.get_cast_logs()
        assert len(logs) == 1
        assert logs[0].status == AttemptStatus.ERROR
        assert logs[0].device_id is None
        assert controls == []
        failed = notifier.of(EventType.CAST_FAILED)
        assert len(failed) == 1
        assert failed[0]["deviceId"] is None
        assert manager.state == CastState.IDLE

    def test_no_device_keeps_requested_id(self, manager, store, notifier):
        """When resolution fails the requested id is audited."""
        with pytest.raises(NotFoundError):
            manager.start_cast(ITEM, device_id=42)
        assert store.get_cast_logs()[0].device_id == 42
        assert notifier.of(EventType.CAST_FAILED)[0]["deviceId"] == 42

    def test_connect_refused(self, manager, store, notifier, controls, device):
        """Connection errors are transient; handle closed; one audit, one event."""
        def factory():
            control = make_control()
            control.connect.side_effect = ConnectionRefusedError("refused")
            controls.append(control)
            return control
        manager.control_factory = factory

        with pytest.raises(TransientNetworkError):
            manager.start_cast(ITEM, device.id)

        controls[0].close.assert_called_once()
        logs = store.get_cast_logs()
        assert len(logs) == 1
        assert logs[0].status == AttemptStatus.ERROR
        assert logs[0].device_id == device.id
        assert notifier.kinds().count(EventType.CAST_FAILED) == 1
        assert manager.state == CastState.IDLE
        assert manager.get_status()["active"] is False

    def test_launch_rejected_is_protocol_error(self, manager, controls, device):
        """Unexpected capability errors become DeviceProtocolError."""
        def factory():
            control = make_control()
            control.launch_receiver.side_effect = RuntimeError("app not available")
            controls.append(control)
            return control
        manager.control_factory = factory

        with pytest.raises(DeviceProtocolError):
            manager.start_cast(ITEM, device.id)
        controls[0].load_item.assert_not_called()

    @pytest.mark.timeout(5)
    def test_connect_timeout(self, store, notifier, device):
        """A hung connect is bounded by the connect timeout."""
        control = make_control()
        control.connect.side_effect = lambda *a: time.sleep(0.5)
        mgr = CastSessionManager(DeviceRegistry(store), store, notifier,
                                 control_factory=lambda: control, connect_timeout=0.05)
        try:
            with pytest.raises(NetworkTimeoutError):
                mgr.start_cast(ITEM, device.id)
        finally:
            mgr.pool.shutdown(wait=False)
        assert mgr.state == CastState.IDLE
        assert store.get_cast_logs()[0].status == AttemptStatus.ERROR

    def test_dns_failure(self, store, notifier):
        """An unresolvable hostname is a transient network error."""
        dev = store.create_device("Ghost", "ghost.local")
        resolver = Mock(side_effect=socket.gaierror("Name or service not known"))
        mgr = CastSessionManager(DeviceRegistry(store), store, notifier,
                                 control_factory=make_control, resolver=resolver)
        try:
            with pytest.raises(TransientNetworkError):
                mgr.start_cast(ITEM, dev.id)
        finally:
            mgr.pool.shutdown(wait=False)

    def test_no_addresses_is_transient(self, store, notifier):
        """A resolver answering with no addresses is a transient network error."""
        dev = store.create_device("Ghost", "ghost.local")
        mgr = CastSessionManager(DeviceRegistry(store), store, notifier,
                                 control_factory=make_control, resolver=Mock(return_value=[]))
        try:
            with pytest.raises(TransientNetworkError):
                mgr.start_cast(ITEM, dev.id)
        finally:
            mgr.pool.shutdown(wait=False)
        assert mgr.state == CastState.IDLE

    def test_started_record_write_fails(self, manager, store, notifier, controls, device,
                                        monkeypatch):
        """If the started record cannot be written the attempt fails back to idle."""
        create_cast_log = store.create_cast_log

        def locked_on_start(item_id, status, **kwargs):
            if status == AttemptStatus.STARTED:
                raise sqlite3.OperationalError("database is locked")
            return create_cast_log(item_id, status, **kwargs)

        monkeypatch.setattr(store, "create_cast_log", locked_on_start)

        with pytest.raises(DeviceProtocolError):
            manager.start_cast(ITEM, device.id)

        assert manager.state == CastState.IDLE
        assert manager.get_status()["active"] is False
        controls[0].close.assert_called_once()
        assert len(notifier.of(EventType.CAST_FAILED)) == 1
        assert EventType.CAST_STARTED not in notifier.kinds()
        logs = store.get_cast_logs()
        assert [entry.status for entry in logs] == [AttemptStatus.ERROR]
        assert "database is locked" in logs[0].error_message

    def test_last_seen_failure_keeps_session(self, manager, store, notifier, device,
                                             monkeypatch):
        """A failed last-seen update does not undo an active session."""
        monkeypatch.setattr(manager.registry, "touch", Mock(side_effect=RuntimeError("busy")))
        status = manager.start_cast(ITEM, device.id)
        assert status["active"] is True
        assert manager.state == CastState.ACTIVE
        assert len(notifier.of(EventType.CAST_STARTED)) == 1


class TestStopCast:
    """Tests for stopping and preemption."""

    def test_stop_idle_is_noop(self, manager, notifier):
        """Stopping with nothing active changes nothing."""
        result = manager.stop_cast()
        assert result["active"] is False
        assert notifier.events == []

    def test_stop_finalizes_record(self, manager, store, notifier, controls, device):
        """Stop quits the app, closes, and marks the same record stopped."""
        manager.start_cast(ITEM, device.id)
        result = manager.stop_cast()

        assert result["stopped"] is True
        controls[0].stop.assert_called_once()
        controls[0].close.assert_called_once()
        logs = store.get_cast_logs()
        assert len(logs) == 1
        assert logs[0].status == AttemptStatus.STOPPED
        assert logs[0].ended_at is not None
        stopped = notifier.of(EventType.CAST_STOPPED)
        assert stopped == [{"reason": "manual", "deviceName": "Living Room",
                            "timestamp": stopped[0]["timestamp"]}]
        assert manager.get_status() == {"active": False, "state": "idle",
                                        "lastAttempt": manager.last_attempt.to_dict()}

    def test_stop_failure_still_idle(self, manager, store, notifier, controls, device):
        """A device error during stop forces idle and re-raises."""
        manager.start_cast(ITEM, device.id)
        controls[0].stop.side_effect = RuntimeError("socket closed")

        with pytest.raises(DeviceProtocolError):
            manager.stop_cast()

        assert manager.state == CastState.IDLE
        assert manager.get_status()["active"] is False
        assert store.get_cast_logs()[0].status == AttemptStatus.ERROR
        assert len(notifier.of(EventType.CAST_STOPPED)) == 1

    def test_preempt(self, manager, store, notifier, controls, device):
        """A second start stops the first session as superseded."""
        manager.start_cast(ITEM, device.id)
        manager.start_cast(OTHER_ITEM, device.id)

        controls[0].stop.assert_called_once()
        assert notifier.of(EventType.CAST_STOPPED)[0]["reason"] == "superseded"
        assert manager.get_status()["itemId"] == OTHER_ITEM
        statuses = sorted(entry.status.value for entry in store.get_cast_logs())
        assert statuses == ["started", "stopped"]

    def test_preempt_survives_stop_failure(self, manager, controls, device):
        """A failing preempted stop does not block the new session."""
        manager.start_cast(ITEM, device.id)
        controls[0].stop.side_effect = RuntimeError("gone")
        manager.start_cast(OTHER_ITEM, device.id)
        assert manager.get_status()["itemId"] == OTHER_ITEM

    @pytest.mark.timeout(10)
    def test_concurrent_starts_leave_one_active(self, manager, store, notifier, controls,
                                                device):
        """Simultaneous starts serialize; only the last one stays active."""
        def factory():
            control = make_control()
            def slow_load(item_id, timeout):
                time.sleep(0.1)
                return {"playerState": "PLAYING", "itemId": item_id}
            control.load_item.side_effect = slow_load
            controls.append(control)
            return control
        manager.control_factory = factory

        items = [ITEM, OTHER_ITEM, THIRD_ITEM]
        barrier = threading.Barrier(len(items))
        errors = []

        def run_start(item_id):
            barrier.wait()
            try:
                manager.start_cast(item_id, device.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run_start, args=(item,)) for item in items]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5.0)

        assert errors == []
        assert manager.state == CastState.ACTIVE
        active_item = manager.get_status()["itemId"]
        assert active_item in items

        statuses = sorted(entry.status.value for entry in store.get_cast_logs())
        assert statuses == ["started", "stopped", "stopped"]
        started = [entry for entry in store.get_cast_logs()
                   if entry.status == AttemptStatus.STARTED]
        assert started[0].item_id == active_item

        still_playing = [c for c in controls if not c.stop.called]
        assert len(still_playing) == 1
        assert len(notifier.of(EventType.CAST_STOPPED)) == 2

    @pytest.mark.timeout(10)
    def test_stop_during_start_aborts(self, manager, store, notifier, controls, device):
        """A stop arriving mid-start cancels the start."""
        entered = threading.Event()
        release = threading.Event()

        def factory():
            control = make_control()
            def slow_connect(*args):
                entered.set()
                release.wait(2.0)
            control.connect.side_effect = slow_connect
            controls.append(control)
            return control
        manager.control_factory = factory

        outcome = {}

        def run_start():
            try:
                manager.start_cast(ITEM, device.id)
            except Exception as e:
                outcome["error"] = e

        def run_stop():
            outcome["stop"] = manager.stop_cast()

        starter = threading.Thread(target=run_start)
        starter.start()
        assert entered.wait(2.0)

        stopper = threading.Thread(target=run_stop)
        stopper.start()
        deadline = time.time() + 2.0
        while not manager._abort.is_set() and time.time() < deadline:
            time.sleep(0.01)
        release.set()
        starter.join(3.0)
        stopper.join(3.0)

        assert isinstance(outcome["error"], CastCancelledError)
        assert outcome["stop"]["active"] is False
        assert manager.state == CastState.IDLE
        logs = store.get_cast_logs()
        assert len(logs) == 1
        assert logs[0].error_message == "cancelled"
        controls[0].launch_receiver.assert_not_called()


class TestMaintenance:
    """Tests for device test and cleanup."""

    def test_device_test_ok(self, manager, controls, device):
        """A reachable device passes and is disconnected."""
        assert manager.test_device(device.id) is True
        controls[0].close.assert_called_once()

    def test_device_test_failure(self, manager, controls, device):
        """Network failures return False."""
        def factory():
            control = make_control()
            control.connect.side_effect = OSError("unreachable")
            controls.append(control)
            return control
        manager.control_factory = factory
        assert manager.test_device(device.id) is False

    def test_device_test_unknown(self, manager):
        """Unknown device ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            manager.test_device(404)

    def test_cleanup_idempotent(self, manager, notifier, controls, device):
        """Cleanup stops the session once and closes discovery once."""
        manager.start_cast(ITEM, device.id)
        manager.cleanup()
        manager.cleanup()
        assert notifier.of(EventType.CAST_STOPPED)[0]["reason"] == "cleanup"
        controls[0].stop.assert_called_once()
        manager.discovery.close.assert_called_once()
