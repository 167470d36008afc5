"""
Unit Tests for the Cast Transport Layer

Tests for:
- call_with_timeout error mapping
- ChromecastDeviceControl against a mocked pychromecast
"""

import pytest
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, MagicMock, patch

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from core.cast.errors import (
    DeviceProtocolError,
    NetworkTimeoutError,
    NotFoundError,
    TransientNetworkError,
)
from core.cast.transport import ChromecastDeviceControl, call_with_timeout


@pytest.fixture
def pool():
    p = ThreadPoolExecutor(max_workers=2)
    yield p
    p.shutdown(wait=False)


class TestCallWithTimeout:
    """Tests for per-call deadlines and error mapping."""

    def test_returns_value(self, pool):
        """Results pass through."""
        assert call_with_timeout(pool, lambda x: x * 2, 1.0, 21) == 42

    @pytest.mark.timeout(5)
    def test_timeout(self, pool):
        """A slow call raises NetworkTimeoutError."""
        with pytest.raises(NetworkTimeoutError):
            call_with_timeout(pool, time.sleep, 0.05, 0.5)

    def test_os_error_is_transient(self, pool):
        """OS-level failures are transient network errors."""
        def refuse():
            raise ConnectionRefusedError("refused")
        with pytest.raises(TransientNetworkError):
            call_with_timeout(pool, refuse, 1.0)

    def test_other_error_is_protocol(self, pool):
        """Unexpected exceptions become DeviceProtocolError."""
        def bad():
            raise ValueError("bad status")
        with pytest.raises(DeviceProtocolError):
            call_with_timeout(pool, bad, 1.0)

    def test_taxonomy_passes_through(self, pool):
        """Cast errors are not rewrapped."""
        def missing():
            raise NotFoundError("gone")
        with pytest.raises(NotFoundError):
            call_with_timeout(pool, missing, 1.0)


class TestChromecastDeviceControl:
    """Tests for the pychromecast adapter."""

    def make_cast(self, host="192.168.1.40", port=8009):
        cast = MagicMock()
        cast.name = "Living Room"
        cast.cast_info.host = host
        cast.cast_info.port = port
        return cast

    def test_connect_matches_host(self):
        """connect picks the Chromecast at the requested host and waits for it."""
        cast = self.make_cast()
        browser = Mock()
        with patch('core.cast.transport.pychromecast.get_chromecasts',
                   return_value=([self.make_cast("10.0.0.9"), cast], browser)) as get_cc:
            control = ChromecastDeviceControl()
            control.connect("192.168.1.40", 8009, 3.0)
        assert get_cc.call_args[1]["known_hosts"] == ["192.168.1.40"]
        cast.wait.assert_called_once_with(timeout=3.0)
        assert control.cast is cast

    def test_connect_no_match(self):
        """No device at the host is a transient error and stops browsing."""
        browser = Mock()
        with patch('core.cast.transport.pychromecast.get_chromecasts', return_value=([], browser)):
            control = ChromecastDeviceControl()
            with pytest.raises(TransientNetworkError):
                control.connect("192.168.1.40", 8009, 3.0)
        browser.stop_discovery.assert_called_once()

    def test_launch_and_load(self):
        """launch registers the YouTube controller; load plays the item."""
        cast = self.make_cast()
        control = ChromecastDeviceControl()
        control.cast = cast
        with patch('core.cast.transport.YouTubeController') as yt_cls:
            control.launch_receiver(5.0)
            yt = yt_cls.return_value
            cast.register_handler.assert_called_once_with(yt)
            cast.start_app.assert_called_once()
            status = control.load_item("dQw4w9WgXcQ", 5.0)
        yt.play_video.assert_called_once_with("dQw4w9WgXcQ")
        assert "playerState" in status

    def test_not_connected(self):
        """Calls before connect are protocol errors."""
        with pytest.raises(DeviceProtocolError):
            ChromecastDeviceControl().launch_receiver(1.0)

    def test_close_twice(self):
        """close is safe to call twice."""
        cast = self.make_cast()
        browser = Mock()
        control = ChromecastDeviceControl()
        control.cast, control.browser = cast, browser
        control.close()
        control.close()
        cast.disconnect.assert_called_once()
        browser.stop_discovery.assert_called_once()
