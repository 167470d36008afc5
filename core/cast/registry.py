"""
Device Registry - Known devices and target resolution

Resolution picks the device a cast goes to:

    1. explicit id, if that device is active
    2. the default device, if it is active
    3. the active device seen most recently

Nothing matching raises NotFoundError. The chosen tier is always logged.
"""

from typing import Any, Dict, List, Optional, Tuple
import logging

from .errors import NotFoundError, ValidationError
from .store import CastStore
from .types import Device, DiscoveredDevice, ResolutionTier

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Device bookkeeping on top of the store."""

    def __init__(self, store: CastStore):
        self.store = store

    def get(self, device_id: int) -> Optional[Device]:
        return self.store.get_device(device_id)

    def list_devices(self, active_only: bool = False) -> List[Device]:
        return self.store.list_devices(active_only=active_only)

    def resolve_target_with_tier(self, explicit_device_id: Optional[int] = None
                                 ) -> Tuple[Device, ResolutionTier]:
        if explicit_device_id is not None:
            device = self.store.get_device(explicit_device_id)
            if device and device.is_active:
                logger.info(f"Resolved device {device.name} (tier={ResolutionTier.EXPLICIT.value})")
                return device, ResolutionTier.EXPLICIT
            logger.warning(f"Requested device {explicit_device_id} unavailable, falling back")

        device = self.store.get_default_device()
        if device:
            logger.info(f"Resolved device {device.name} (tier={ResolutionTier.DEFAULT.value})")
            return device, ResolutionTier.DEFAULT

        device = self.store.get_most_recent_device()
        if device:
            logger.info(f"Resolved device {device.name} (tier={ResolutionTier.MOST_RECENT.value})")
            return device, ResolutionTier.MOST_RECENT

        raise NotFoundError("No available Cast device found")

    def resolve_target(self, explicit_device_id: Optional[int] = None) -> Device:
        """
        Pick the concrete device for a cast.

        Raises:
            NotFoundError: If no active device exists
        """
        return self.resolve_target_with_tier(explicit_device_id)[0]

    def reconcile(self, discovered: DiscoveredDevice) -> Tuple[Device, bool]:
        """Insert or refresh the row for a discovered address."""
        device, created = self.store.upsert_seen_device(
            discovered.name, discovered.address, discovered.port)
        if created:
            logger.info(f"New device registered: {device.name} ({device.ip_address}:{device.port})")
        return device, created

    def touch(self, device_id: int) -> None:
        self.store.touch_device(device_id)

    def add_device(self, name: str, ip_address: str, port: Optional[int] = None,
                   is_default: bool = False) -> Device:
        return self.store.create_device(name, ip_address, port, is_default=is_default)

    def update_device(self, device_id: int, data: Dict[str, Any]) -> Device:
        if 'name' in data and not data['name']:
            raise ValidationError("name must not be empty")
        return self.store.update_device(device_id, data)

    def deactivate(self, device_id: int) -> Device:
        return self.store.update_device(device_id, {'is_active': False, 'is_default': False})
