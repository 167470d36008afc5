"""
Cast Type Definitions - Dataclasses for Schedules, Devices and Sessions

This module contains the dataclasses and enums shared by the cast subsystem.
Apart from small parsing/validation helpers they carry no business logic.

Classes:
    Schedule: Recurring weekly slot bound to a channel and a device
    Device: Known playback device (persisted)
    DiscoveredDevice: Device observed by a discovery strategy
    LiveStatus: Result of a live status probe
    CastSession: The single active playback session
    CastAttempt: Audit record of one cast attempt
    LastAttemptMemo: Parameters of the most recent attempt

Enums:
    CastState: Session state machine states
    LiveState: Prober result kinds
    ResolutionTier: Which rule picked a target device
    AttemptStatus: Audit outcome of an attempt
    DiscoverySource: Strategy that found a device
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime
import re

from .errors import ValidationError


# ============================================================
# Constants
# ============================================================

DEFAULT_CAST_PORT = 8009
MIN_ITEM_ID_LENGTH = 10

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_ITEM_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class CastState(Enum):
    """State of the cast session state machine."""
    IDLE = "idle"
    CONNECTING = "connecting"
    LAUNCHING = "launching"
    LOADING = "loading"
    ACTIVE = "active"
    STOPPING = "stopping"
    FAILED = "failed"


class LiveState(Enum):
    """Live status of a channel."""
    NONE = "none"
    LIVE = "live"
    UPCOMING = "upcoming"


class ResolutionTier(Enum):
    """Which resolution rule selected the target device."""
    EXPLICIT = "explicit"
    DEFAULT = "default"
    MOST_RECENT = "most_recent"


class AttemptStatus(Enum):
    """Outcome recorded in the audit log."""
    STARTED = "started"
    STOPPED = "stopped"
    ERROR = "error"


class DiscoverySource(Enum):
    """Discovery strategy that observed a device."""
    MDNS = "mdns"
    PORT_PROBE = "port_probe"


# ============================================================
# Validation helpers
# ============================================================

def parse_start_time(value: Any) -> tuple:
    """
    Parse a 24-hour ``HH:MM`` string.

    Returns:
        (hour, minute) tuple

    Raises:
        ValidationError: If the value is not a valid 24-hour time
    """
    if not isinstance(value, str):
        raise ValidationError(f"Invalid start time: {value!r}")
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValidationError(f"Invalid start time: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"Invalid start time: {value!r}")
    return hour, minute


def validate_day_of_week(value: Any) -> int:
    """Check a 0 (Sunday) .. 6 (Saturday) weekday."""
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
        raise ValidationError(f"Invalid day of week: {value!r} (expected 0-6)")
    return value


def validate_item_id(item_id: Any) -> str:
    """
    Reject obviously malformed playable item ids.

    Raises:
        ValidationError: If the id is missing, too short or has bad characters
    """
    if not item_id or not isinstance(item_id, str):
        raise ValidationError(f"Invalid item id: {item_id!r}")
    if len(item_id) < MIN_ITEM_ID_LENGTH or not _ITEM_ID_RE.match(item_id):
        raise ValidationError(f"Invalid item id: {item_id!r}")
    return item_id


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================
# Persisted records
# ============================================================

@dataclass
class Schedule:
    """
    Recurring weekly time slot bound to a channel.

    Attributes:
        id: Schedule identifier
        channel_id: Video platform channel id
        channel_name: Display name of the channel
        day_of_week: 0 = Sunday .. 6 = Saturday
        start_time: 24-hour "HH:MM"
        duration_minutes: Expected broadcast length
        device_id: Target device (None = no automatic cast)
        is_active: Whether a trigger should be armed
    """
    id: int
    channel_id: str
    channel_name: str
    day_of_week: int
    start_time: str
    duration_minutes: int = 60
    device_id: Optional[int] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def validate(self) -> None:
        """Raise ValidationError if the recurrence is malformed."""
        validate_day_of_week(self.day_of_week)
        parse_start_time(self.start_time)
        if not self.channel_id:
            raise ValidationError("channel_id is required")

    @classmethod
    def from_row(cls, row: Any) -> "Schedule":
        """Build from a sqlite3.Row or mapping."""
        return cls(
            id=row["id"],
            channel_id=row["channel_id"],
            channel_name=row["channel_name"] or "",
            day_of_week=row["day_of_week"],
            start_time=row["start_time"],
            duration_minutes=row["duration_minutes"] or 60,
            device_id=row["device_id"],
            is_active=bool(row["is_active"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "dayOfWeek": self.day_of_week,
            "startTime": self.start_time,
            "durationMinutes": self.duration_minutes,
            "deviceId": self.device_id,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Device:
    """
    Known playback device.

    The network address uniquely identifies a device row.
    """
    id: int
    name: str
    ip_address: str
    port: int = DEFAULT_CAST_PORT
    is_default: bool = False
    is_active: bool = True
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Device":
        return cls(
            id=row["id"],
            name=row["name"],
            ip_address=row["ip_address"],
            port=row["port"] or DEFAULT_CAST_PORT,
            is_default=bool(row["is_default"]),
            is_active=bool(row["is_active"]),
            last_seen=_parse_ts(row["last_seen"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ipAddress": self.ip_address,
            "port": self.port,
            "isDefault": self.is_default,
            "isActive": self.is_active,
            "lastSeen": _iso(self.last_seen),
        }


@dataclass
class CastAttempt:
    """Audit record of one cast attempt (table cast_logs)."""
    id: int
    item_id: str
    status: AttemptStatus
    schedule_id: Optional[int] = None
    device_id: Optional[int] = None
    item_title: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "CastAttempt":
        return cls(
            id=row["id"],
            item_id=row["item_id"],
            status=AttemptStatus(row["status"]),
            schedule_id=row["schedule_id"],
            device_id=row["device_id"],
            item_title=row["item_title"],
            error_message=row["error_message"],
            started_at=_parse_ts(row["started_at"]),
            ended_at=_parse_ts(row["ended_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "itemId": self.item_id,
            "status": self.status.value,
            "scheduleId": self.schedule_id,
            "deviceId": self.device_id,
            "itemTitle": self.item_title,
            "errorMessage": self.error_message,
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
        }


# ============================================================
# Capability results
# ============================================================

@dataclass
class DiscoveredDevice:
    """A device observed on the network by one discovery strategy."""
    name: str
    address: str
    port: int = DEFAULT_CAST_PORT
    host: Optional[str] = None
    source: DiscoverySource = DiscoverySource.MDNS

    @property
    def key(self) -> tuple:
        """Deduplication key."""
        return (self.address, self.port)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ipAddress": self.address,
            "port": self.port,
            "host": self.host,
            "source": self.source.value,
        }


@dataclass
class LiveStatus:
    """Answer of the live status prober for one channel."""
    state: LiveState
    item_id: Optional[str] = None
    title: Optional[str] = None
    channel_title: Optional[str] = None
    thumbnail: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.state == LiveState.LIVE and bool(self.item_id)

    @classmethod
    def not_live(cls) -> "LiveStatus":
        return cls(state=LiveState.NONE)


# ============================================================
# In-memory session state
# ============================================================

@dataclass
class LastAttemptMemo:
    """Parameters of the most recent cast attempt, kept for retry."""
    item_id: str
    device_id: Optional[int] = None
    schedule_id: Optional[int] = None
    item_title: Optional[str] = None
    recorded_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "deviceId": self.device_id,
            "scheduleId": self.schedule_id,
            "itemTitle": self.item_title,
            "recordedAt": self.recorded_at.isoformat(),
        }


@dataclass
class CastSession:
    """
    The single active playback session.

    Only created once the device reports the item loaded.

    Attributes:
        item_id: Playable item being cast
        device: Target device
        schedule_id: Originating schedule (None for manual casts)
        log_id: Audit record id
        handle: Open DeviceControl for the device
        load_status: Status reported by the load call
        item_title: Display title, when known
    """
    item_id: str
    device: Device
    schedule_id: Optional[int]
    log_id: Optional[int]
    handle: Any
    started_at: datetime = field(default_factory=datetime.now)
    load_status: Dict[str, Any] = field(default_factory=dict)
    item_title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "deviceName": self.device.name,
            "itemTitle": self.item_title,
            "deviceId": self.device.id,
            "scheduleId": self.schedule_id,
            "startedAt": self.started_at.isoformat(),
        }
