"""
Event Notifier - Outbound state-transition announcements

The cast subsystem announces every state transition through an
EventNotifier. Event kinds form a closed enum and each kind has a fixed
payload contract, checked on publish, so adding a kind means adding its
contract here.

Classes:
    EventType: Closed set of outbound event kinds
    EventNotifier: Abstract publisher
    SocketIONotifier: Broadcasts through Flask-SocketIO
    NullNotifier: Logs only (no observers attached)
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
import logging

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Outbound event kinds."""
    SCHEDULE_TRIGGERED = "schedule_triggered"
    LIVE_DETECTED = "live_detected"
    NO_LIVE_STREAM = "no_live_stream"
    CAST_STARTED = "cast_started"
    CAST_STOPPED = "cast_stopped"
    CAST_FAILED = "cast_failed"
    DEVICES_FOUND = "devices_found"
    CAST_RETRY_STARTED = "cast_retry_started"
    CAST_RETRY_ATTEMPT = "cast_retry_attempt"
    CAST_RETRY_SUCCESS = "cast_retry_success"
    CAST_RETRY_FAILED = "cast_retry_failed"
    SCHEDULE_ERROR = "schedule_error"


EVENT_PAYLOAD_KEYS: Dict[EventType, FrozenSet[str]] = {
    EventType.SCHEDULE_TRIGGERED: frozenset({"scheduleId", "channelName", "startTime"}),
    EventType.LIVE_DETECTED: frozenset({"itemId", "title", "channelTitle", "thumbnail"}),
    EventType.NO_LIVE_STREAM: frozenset({"scheduleId", "channelName"}),
    EventType.CAST_STARTED: frozenset({"itemId", "deviceName", "status"}),
    EventType.CAST_STOPPED: frozenset({"reason", "deviceName"}),
    EventType.CAST_FAILED: frozenset({"scheduleId", "error", "itemId", "deviceId"}),
    EventType.DEVICES_FOUND: frozenset({"devices"}),
    EventType.CAST_RETRY_STARTED: frozenset({"itemId", "deviceId", "maxRetries"}),
    EventType.CAST_RETRY_ATTEMPT: frozenset({"attempt", "maxRetries", "itemId"}),
    EventType.CAST_RETRY_SUCCESS: frozenset({"attempt", "itemId"}),
    EventType.CAST_RETRY_FAILED: frozenset({"maxRetries", "error", "lastError"}),
    EventType.SCHEDULE_ERROR: frozenset({"scheduleId", "error"}),
}

_missing = set(EventType) - set(EVENT_PAYLOAD_KEYS)
if _missing:
    raise RuntimeError(f"Event kinds without a payload contract: {sorted(e.value for e in _missing)}")


def build_payload(event: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check a payload against its contract and stamp it.

    Raises:
        ValueError: If required keys are missing or unknown keys are present
    """
    expected = EVENT_PAYLOAD_KEYS[event]
    keys = set(payload)
    missing = expected - keys
    extra = keys - expected
    if missing or extra:
        raise ValueError(
            f"Bad payload for {event.value}: missing={sorted(missing)} extra={sorted(extra)}"
        )
    stamped = dict(payload)
    stamped["timestamp"] = datetime.now().isoformat()
    return stamped


class EventNotifier(ABC):
    """Publishes state transitions to observers."""

    def publish(self, event: EventType, payload: Dict[str, Any]) -> None:
        """
        Publish one event.

        Delivery failures are logged and never raised into the caller;
        contract violations are programming errors and do raise.
        """
        message = build_payload(event, payload)
        try:
            self._deliver(event, message)
        except Exception as e:
            logger.error(f"Failed to publish {event.value}: {e}")

    @abstractmethod
    def _deliver(self, event: EventType, message: Dict[str, Any]) -> None:
        pass


class SocketIONotifier(EventNotifier):
    """Broadcasts events to every connected Socket.IO client."""

    def __init__(self, socketio: Any, namespace: Optional[str] = None):
        self.socketio = socketio
        self.namespace = namespace

    def _deliver(self, event: EventType, message: Dict[str, Any]) -> None:
        logger.debug(f"emit {event.value}: {message}")
        if self.namespace:
            self.socketio.emit(event.value, message, namespace=self.namespace)
        else:
            self.socketio.emit(event.value, message)


class NullNotifier(EventNotifier):
    """Logs events without delivering them anywhere."""

    def _deliver(self, event: EventType, message: Dict[str, Any]) -> None:
        logger.info(f"event {event.value}: {message}")
