"""
Cast Transport Layer - Device control capability and pychromecast adapter

The session manager drives a device only through the DeviceControl
interface. Every blocking call is bounded at the call site with
call_with_timeout, which runs it on a shared worker pool and waits for
the result with its own timeout.

Classes:
    DeviceControl: Abstract capability (connect, launch, load, status, stop, close)
    ChromecastDeviceControl: pychromecast implementation launching the YouTube receiver

Example:
    control = ChromecastDeviceControl()
    call_with_timeout(pool, control.connect, 10.0, "192.168.1.40", 8009, 10.0)
    call_with_timeout(pool, control.launch_receiver, 15.0, 15.0)
    status = call_with_timeout(pool, control.load_item, 15.0, "dQw4w9WgXcQ", 15.0)
"""

from abc import ABC, abstractmethod
from concurrent.futures import Executor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional
import logging

import pychromecast
from pychromecast.config import APP_YOUTUBE
from pychromecast.controllers.youtube import YouTubeController

from .errors import CastError, DeviceProtocolError, NetworkTimeoutError, TransientNetworkError

logger = logging.getLogger(__name__)


def call_with_timeout(pool: Executor, fn: Callable, timeout: float, *args, **kwargs) -> Any:
    """
    Run a blocking capability call with its own deadline.

    Taxonomy errors pass through unchanged. A missed deadline becomes
    NetworkTimeoutError, connection failures TransientNetworkError and
    anything else DeviceProtocolError.
    """
    name = getattr(fn, "__name__", "call")
    future = pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        raise NetworkTimeoutError(f"{name} timed out after {timeout}s")
    except CastError:
        raise
    except (ConnectionError, OSError) as e:
        raise TransientNetworkError(f"{name} failed: {e}") from e
    except Exception as e:
        raise DeviceProtocolError(f"{name} failed: {e}") from e


class DeviceControl(ABC):
    """
    Capability: control one remote playback device.

    An instance is bound to a single device after connect() and is
    discarded after close().
    """

    @abstractmethod
    def connect(self, host: str, port: int, timeout: float) -> None:
        """Open a control channel to the device."""
        pass

    @abstractmethod
    def launch_receiver(self, timeout: float) -> None:
        """Start the receiver application that plays items."""
        pass

    @abstractmethod
    def load_item(self, item_id: str, timeout: float) -> Dict[str, Any]:
        """Load and play an item; returns the device-reported status."""
        pass

    @abstractmethod
    def get_status(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop playback and quit the receiver."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the control channel. Must be safe to call twice."""
        pass


class ChromecastDeviceControl(DeviceControl):
    """DeviceControl backed by pychromecast and its YouTube controller."""

    def __init__(self, app_id: str = APP_YOUTUBE):
        self.app_id = app_id
        self.cast: Optional[Any] = None
        self.browser: Optional[Any] = None
        self.youtube: Optional[YouTubeController] = None

    def connect(self, host: str, port: int, timeout: float) -> None:
        chromecasts, browser = pychromecast.get_chromecasts(known_hosts=[host], timeout=timeout)
        self.browser = browser
        match = None
        for cc in chromecasts:
            info = getattr(cc, "cast_info", None)
            if info is not None and info.host == host and (not info.port or info.port == port):
                match = cc
                break
        if match is None:
            self._stop_browser()
            raise TransientNetworkError(f"No Cast device answering at {host}:{port}")

        match.wait(timeout=timeout)
        self.cast = match
        logger.info(f"Connected to {match.name} at {host}:{port}")

    def _require_cast(self) -> Any:
        if self.cast is None:
            raise DeviceProtocolError("Not connected")
        return self.cast

    def launch_receiver(self, timeout: float) -> None:
        cast = self._require_cast()
        self.youtube = YouTubeController()
        cast.register_handler(self.youtube)
        cast.start_app(self.app_id, timeout=timeout)
        logger.debug(f"Receiver {self.app_id} launched on {cast.name}")

    def load_item(self, item_id: str, timeout: float) -> Dict[str, Any]:
        cast = self._require_cast()
        if self.youtube is None:
            raise DeviceProtocolError("Receiver not launched")
        self.youtube.play_video(item_id)
        cast.media_controller.block_until_active(timeout=timeout)
        return self.get_status()

    def get_status(self) -> Dict[str, Any]:
        cast = self._require_cast()
        media = cast.media_controller.status
        return {
            "appId": getattr(cast, "app_id", None),
            "displayName": getattr(cast.status, "display_name", None) if cast.status else None,
            "playerState": getattr(media, "player_state", None) if media else None,
            "contentId": getattr(media, "content_id", None) if media else None,
        }

    def stop(self) -> None:
        cast = self._require_cast()
        cast.quit_app()

    def close(self) -> None:
        if self.cast is not None:
            try:
                self.cast.disconnect(timeout=5)
            except Exception as e:
                logger.debug(f"Disconnect error ignored: {e}")
            self.cast = None
        self.youtube = None
        self._stop_browser()

    def _stop_browser(self) -> None:
        if self.browser is not None:
            try:
                self.browser.stop_discovery()
            except Exception as e:
                logger.debug(f"Browser stop error ignored: {e}")
            self.browser = None


def create_device_control() -> DeviceControl:
    """Factory used by the session manager for each new connection."""
    return ChromecastDeviceControl()
