"""
AutoCast Cast Module - Scheduled casting of live broadcasts

Key Components:
- CastSessionManager: The single playback session state machine
- DeviceDiscovery: mDNS discovery with port-probe fallback
- DeviceRegistry: Known devices and target resolution
- RetryController: Fixed-backoff replay of the last attempt
- ScheduleExecutor: Trigger -> live check -> cast
- EventNotifier: Closed set of outbound events

Usage:
    from core.cast import CastStore, DeviceRegistry, CastSessionManager

    store = CastStore(DB_PATH)
    store.init_schema()
    registry = DeviceRegistry(store)
    sessions = CastSessionManager(registry, store, notifier)
    sessions.start_cast("dQw4w9WgXcQ")

Transport:
    Devices are driven through pychromecast; live status comes from the
    YouTube Data API v3.
"""

from .types import (
    AttemptStatus,
    CastAttempt,
    CastSession,
    CastState,
    DEFAULT_CAST_PORT,
    Device,
    DiscoveredDevice,
    DiscoverySource,
    LastAttemptMemo,
    LiveState,
    LiveStatus,
    ResolutionTier,
    Schedule,
    parse_start_time,
    validate_day_of_week,
    validate_item_id,
)
from .errors import (
    CastCancelledError,
    CastError,
    DeviceProtocolError,
    NetworkTimeoutError,
    NotFoundError,
    RetryExhaustedError,
    TransientNetworkError,
    UpstreamServiceError,
    ValidationError,
)
from .notifier import EventNotifier, EventType, NullNotifier, SocketIONotifier
from .store import CastStore
from .prober import LiveStatusProber, YouTubeLiveProber
from .transport import ChromecastDeviceControl, DeviceControl, call_with_timeout
from .registry import DeviceRegistry
from .discovery import DeviceDiscovery, MdnsDiscoveryStrategy, PortProbeStrategy
from .session import CastSessionManager
from .retry import RetryController
from .executor import ScheduleExecutor

__all__ = [
    # Types
    'AttemptStatus',
    'CastAttempt',
    'CastSession',
    'CastState',
    'DEFAULT_CAST_PORT',
    'Device',
    'DiscoveredDevice',
    'DiscoverySource',
    'LastAttemptMemo',
    'LiveState',
    'LiveStatus',
    'ResolutionTier',
    'Schedule',
    'parse_start_time',
    'validate_day_of_week',
    'validate_item_id',
    # Errors
    'CastCancelledError',
    'CastError',
    'DeviceProtocolError',
    'NetworkTimeoutError',
    'NotFoundError',
    'RetryExhaustedError',
    'TransientNetworkError',
    'UpstreamServiceError',
    'ValidationError',
    # Components
    'EventNotifier',
    'EventType',
    'NullNotifier',
    'SocketIONotifier',
    'CastStore',
    'LiveStatusProber',
    'YouTubeLiveProber',
    'ChromecastDeviceControl',
    'DeviceControl',
    'call_with_timeout',
    'DeviceRegistry',
    'DeviceDiscovery',
    'MdnsDiscoveryStrategy',
    'PortProbeStrategy',
    'CastSessionManager',
    'RetryController',
    'ScheduleExecutor',
]

__version__ = '0.1.0'
