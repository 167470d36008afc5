"""
Cast Session Manager - The single playback session state machine

    idle -> connecting -> launching -> loading -> active -> stopping -> idle
                 \\___________\\____________\\-> failed -> idle

Only one session exists at a time. A new start preempts the running
session. Every start/stop sequence runs under one transition lock; a
separate short state lock guards the fields read by get_status() so
status never waits behind a slow device.

A stop that arrives while a start is in flight sets an abort flag. The
start checks it between phases, audits the attempt as cancelled and
returns to idle, after which the stop finds nothing to do.

Usage:
    sessions = CastSessionManager(registry, store, notifier)
    sessions.start_cast("dQw4w9WgXcQ", device_id=2, schedule_id=5)
    sessions.get_status()
    sessions.stop_cast()
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import ipaddress
import logging
import socket
import threading

from .errors import (
    CastCancelledError,
    CastError,
    DeviceProtocolError,
    NotFoundError,
    TransientNetworkError,
    ValidationError,
)
from .notifier import EventNotifier, EventType
from .registry import DeviceRegistry
from .store import CastStore
from .transport import DeviceControl, call_with_timeout, create_device_control
from .types import (
    AttemptStatus,
    CastSession,
    CastState,
    Device,
    LastAttemptMemo,
    validate_item_id,
)

logger = logging.getLogger(__name__)

# Constants
CONNECT_TIMEOUT_S = 10.0
LAUNCH_TIMEOUT_S = 15.0
LOAD_TIMEOUT_S = 15.0
STOP_TIMEOUT_S = 10.0
IO_WORKERS = 4

IN_FLIGHT_STATES = (CastState.CONNECTING, CastState.LAUNCHING, CastState.LOADING)


class CastSessionManager:
    """
    Owns the current CastSession and the LastAttemptMemo.

    Attributes:
        registry: Device resolution
        store: Audit log (cast_logs)
        notifier: Outbound events
        control_factory: Builds a fresh DeviceControl per connection
    """

    def __init__(self, registry: DeviceRegistry, store: CastStore, notifier: EventNotifier,
                 control_factory: Callable[[], DeviceControl] = create_device_control,
                 connect_timeout: float = CONNECT_TIMEOUT_S,
                 launch_timeout: float = LAUNCH_TIMEOUT_S,
                 load_timeout: float = LOAD_TIMEOUT_S,
                 stop_timeout: float = STOP_TIMEOUT_S,
                 resolver: Callable = socket.getaddrinfo,
                 discovery: Optional[Any] = None):
        self.registry = registry
        self.store = store
        self.notifier = notifier
        self.control_factory = control_factory
        self.connect_timeout = connect_timeout
        self.launch_timeout = launch_timeout
        self.load_timeout = load_timeout
        self.stop_timeout = stop_timeout
        self.resolver = resolver
        self.discovery = discovery

        self.pool = ThreadPoolExecutor(max_workers=IO_WORKERS, thread_name_prefix="cast-io")
        self._transition_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._abort = threading.Event()
        self._state = CastState.IDLE
        self._session: Optional[CastSession] = None
        self._memo: Optional[LastAttemptMemo] = None
        self._closed = False

    # ─────────────────────────────────────────────────────────
    # State helpers
    # ─────────────────────────────────────────────────────────

    @property
    def state(self) -> CastState:
        with self._state_lock:
            return self._state

    @property
    def last_attempt(self) -> Optional[LastAttemptMemo]:
        with self._state_lock:
            return self._memo

    def _set_state(self, state: CastState) -> None:
        with self._state_lock:
            logger.debug(f"Cast state {self._state.value} -> {state.value}")
            self._state = state

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise CastCancelledError("cancelled")

    def _resolve_host(self, address: str) -> str:
        try:
            ipaddress.ip_address(address)
            return address
        except ValueError:
            pass
        infos = call_with_timeout(self.pool, self.resolver, self.connect_timeout,
                                  address, None, socket.AF_INET, socket.SOCK_STREAM)
        if not infos:
            raise TransientNetworkError(f"No address for {address}")
        resolved = infos[0][4][0]
        logger.info(f"Resolved {address} -> {resolved}")
        return resolved

    def _close_handle(self, handle: Optional[DeviceControl]) -> None:
        if handle is None:
            return
        try:
            call_with_timeout(self.pool, handle.close, self.stop_timeout)
        except CastError as e:
            logger.warning(f"Closing device handle failed: {e}")

    # ─────────────────────────────────────────────────────────
    # Start
    # ─────────────────────────────────────────────────────────

    def start_cast(self, item_id: str, device_id: Optional[int] = None,
                   schedule_id: Optional[int] = None,
                   item_title: Optional[str] = None) -> Dict[str, Any]:
        """
        Start casting an item, replacing any running session.

        Returns:
            Status of the new session

        Raises:
            ValidationError: Malformed item id (nothing is contacted or audited)
            NotFoundError: No device could be resolved
            TransientNetworkError: Connect, launch or load failed or timed out
            CastCancelledError: A stop arrived mid-sequence
        """
        try:
            validate_item_id(item_id)
        except ValidationError as e:
            logger.warning(f"Cast rejected: {e}")
            self.notifier.publish(EventType.CAST_FAILED, {
                "scheduleId": schedule_id, "error": str(e),
                "itemId": item_id, "deviceId": device_id,
            })
            raise

        with self._transition_lock:
            self._abort.clear()
            with self._state_lock:
                self._memo = LastAttemptMemo(item_id=item_id, device_id=device_id,
                                             schedule_id=schedule_id, item_title=item_title)

            if self._session is not None:
                logger.info("Preempting active session")
                try:
                    self._stop_locked("superseded")
                except CastError as e:
                    logger.warning(f"Preempted session did not stop cleanly: {e}")

            device: Optional[Device] = None
            handle: Optional[DeviceControl] = None
            try:
                device = self.registry.resolve_target(device_id)

                self._set_state(CastState.CONNECTING)
                host = self._resolve_host(device.ip_address)
                self._check_abort()
                handle = self.control_factory()
                call_with_timeout(self.pool, handle.connect, self.connect_timeout,
                                  host, device.port, self.connect_timeout)
                self._check_abort()

                self._set_state(CastState.LAUNCHING)
                call_with_timeout(self.pool, handle.launch_receiver, self.launch_timeout,
                                  self.launch_timeout)
                self._check_abort()

                self._set_state(CastState.LOADING)
                load_status = call_with_timeout(self.pool, handle.load_item, self.load_timeout,
                                                item_id, self.load_timeout) or {}
                self._check_abort()

                log_id = self.store.create_cast_log(item_id, AttemptStatus.STARTED,
                                                    schedule_id=schedule_id, device_id=device.id,
                                                    item_title=item_title)
            except Exception as e:
                error = e if isinstance(e, CastError) else DeviceProtocolError(str(e))
                self._fail(handle, error, item_id,
                           device.id if device else device_id, schedule_id, item_title)
                if error is e:
                    raise
                raise error from e

            session = CastSession(item_id=item_id, device=device, schedule_id=schedule_id,
                                  log_id=log_id, handle=handle, started_at=datetime.now(),
                                  load_status=load_status, item_title=item_title)
            with self._state_lock:
                self._session = session
                self._state = CastState.ACTIVE
            try:
                self.registry.touch(device.id)
            except Exception as e:
                logger.warning(f"Could not update last-seen for {device.name}: {e}")

        logger.info(f"Casting {item_id} to {device.name}")
        self.notifier.publish(EventType.CAST_STARTED, {
            "itemId": item_id, "deviceName": device.name, "status": load_status,
        })
        return self.get_status()

    def _fail(self, handle: Optional[DeviceControl], error: CastError, item_id: str,
              device_id: Optional[int], schedule_id: Optional[int],
              item_title: Optional[str] = None) -> None:
        self._set_state(CastState.FAILED)
        self._close_handle(handle)
        try:
            self.store.create_cast_log(item_id, AttemptStatus.ERROR, schedule_id=schedule_id,
                                       device_id=device_id, item_title=item_title,
                                       error_message=str(error))
        except Exception as e:
            logger.error(f"Could not record failed cast of {item_id}: {e}")
        finally:
            self._set_state(CastState.IDLE)
        logger.error(f"Cast of {item_id} failed: {error}")
        self.notifier.publish(EventType.CAST_FAILED, {
            "scheduleId": schedule_id, "error": str(error),
            "itemId": item_id, "deviceId": device_id,
        })

    # ─────────────────────────────────────────────────────────
    # Stop
    # ─────────────────────────────────────────────────────────

    def stop_cast(self, reason: str = "manual") -> Dict[str, Any]:
        """
        Stop the running session.

        Idle is a no-op. A device error still leaves the manager idle
        and is re-raised as DeviceProtocolError.
        """
        with self._state_lock:
            if self._state in IN_FLIGHT_STATES:
                logger.info(f"Stop requested during {self._state.value}, aborting start")
                self._abort.set()

        with self._transition_lock:
            if self._session is None:
                return {"active": False, "state": self.state.value}
            return self._stop_locked(reason)

    def _stop_locked(self, reason: str) -> Dict[str, Any]:
        session = self._session
        self._set_state(CastState.STOPPING)
        failure: Optional[CastError] = None
        try:
            call_with_timeout(self.pool, session.handle.stop, self.stop_timeout)
        except CastError as e:
            failure = e

        self._close_handle(session.handle)
        with self._state_lock:
            self._session = None
            self._state = CastState.IDLE

        if session.log_id is not None:
            if failure is None:
                self.store.update_cast_log_end(session.log_id, AttemptStatus.STOPPED)
            else:
                self.store.update_cast_log_end(session.log_id, AttemptStatus.ERROR, str(failure))

        self.notifier.publish(EventType.CAST_STOPPED, {
            "reason": reason, "deviceName": session.device.name,
        })

        if failure is not None:
            logger.error(f"Stop on {session.device.name} failed: {failure}")
            if isinstance(failure, DeviceProtocolError):
                raise failure
            raise DeviceProtocolError(str(failure)) from failure

        logger.info(f"Cast stopped on {session.device.name} ({reason})")
        return {"active": False, "stopped": True, "reason": reason,
                "deviceName": session.device.name}

    # ─────────────────────────────────────────────────────────
    # Status / maintenance
    # ─────────────────────────────────────────────────────────

    def get_status(self) -> Dict[str, Any]:
        with self._state_lock:
            memo = self._memo.to_dict() if self._memo else None
            if self._session is None:
                return {"active": False, "state": self._state.value, "lastAttempt": memo}
            status = self._session.to_dict()
            status.update({"active": True, "state": self._state.value, "lastAttempt": memo})
            return status

    def test_device(self, device_id: int) -> bool:
        """
        Check that a device accepts a connection and a receiver launch.

        Raises:
            NotFoundError: Unknown device id
        """
        device = self.registry.get(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")

        with self._transition_lock:
            handle = None
            try:
                host = self._resolve_host(device.ip_address)
                handle = self.control_factory()
                call_with_timeout(self.pool, handle.connect, self.connect_timeout,
                                  host, device.port, self.connect_timeout)
                call_with_timeout(self.pool, handle.launch_receiver, self.launch_timeout,
                                  self.launch_timeout)
                logger.info(f"Device test passed: {device.name}")
                return True
            except CastError as e:
                logger.warning(f"Device test failed for {device.name}: {e}")
                return False
            finally:
                self._close_handle(handle)

    def cleanup(self) -> None:
        """Stop any session and release resources. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        logger.info("Cast session manager cleanup")
        try:
            self.stop_cast(reason="cleanup")
        except CastError as e:
            logger.warning(f"Cleanup stop failed: {e}")
        if self.discovery is not None:
            self.discovery.close()
        self.pool.shutdown(wait=False)
