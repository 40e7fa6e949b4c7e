"""
Unit tests for user-agent parsing.
"""
import pytest

from marketplace_analytics.models import DeviceType
from marketplace_analytics.user_agent import detect_device_type, detect_model, parse_user_agent

from conftest import DESKTOP_UA, IPHONE_UA

PIXEL_UA = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36"
)
ANDROID_TABLET_UA = (
    "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPAD_UA = (
    "Mozilla/5.0 (iPad; CPU OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)
EDGE_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.2478.51"
)
MAC_SAFARI_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15"
)
FIREFOX_LINUX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0"


class TestDetectDeviceType:
    """Tests for device classification."""

    @pytest.mark.parametrize("ua,expected", [
        (DESKTOP_UA, DeviceType.DESKTOP),
        (IPHONE_UA, DeviceType.MOBILE),
        (PIXEL_UA, DeviceType.MOBILE),
        (IPAD_UA, DeviceType.TABLET),
        (ANDROID_TABLET_UA, DeviceType.TABLET),
        ("curl/8.4.0", DeviceType.DESKTOP),
    ])
    def test_classification(self, ua, expected):
        """Test mobile, tablet and desktop buckets."""
        assert detect_device_type(ua) == expected


class TestParseUserAgent:
    """Tests for full user-agent parsing."""

    def test_windows_chrome(self):
        """Test a desktop Chrome user agent."""
        info = parse_user_agent(DESKTOP_UA)

        assert info.os == "Windows"
        assert info.browser == "Chrome"
        assert info.model == "Unknown"

    def test_edge_wins_over_chrome(self):
        """Test Edge is detected before Chrome."""
        assert parse_user_agent(EDGE_UA).browser == "Edge"

    def test_iphone(self):
        """Test an iPhone user agent."""
        info = parse_user_agent(IPHONE_UA)

        assert info.type == DeviceType.MOBILE
        assert info.os == "iOS"
        assert info.browser == "Safari"
        assert info.model == "iPhone"

    def test_mac_safari(self):
        """Test a macOS Safari user agent."""
        info = parse_user_agent(MAC_SAFARI_UA)

        assert info.os == "macOS"
        assert info.browser == "Safari"

    def test_linux_firefox(self):
        """Test a Linux Firefox user agent."""
        info = parse_user_agent(FIREFOX_LINUX_UA)

        assert info.os == "Linux"
        assert info.browser == "Firefox"

    def test_android_model(self):
        """Test Android device model extraction."""
        assert detect_model(PIXEL_UA) == "Pixel 8"

    def test_reduced_android_model_is_unknown(self):
        """Test the reduced 'K' model placeholder is ignored."""
        ua = "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 Chrome/124.0 Mobile Safari/537.36"
        assert detect_model(ua) == "Unknown"

    @pytest.mark.parametrize("ua", ["", None])
    def test_empty_defaults_to_desktop(self, ua):
        """Test a missing user agent yields the default device."""
        info = parse_user_agent(ua)

        assert info.type == DeviceType.DESKTOP
        assert info.browser == "Unknown"
