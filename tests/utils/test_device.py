"""Tests for device detection utilities."""

from unittest.mock import Mock

from fastapi import Request

from src.utils.device import DeviceDetector


class TestDeviceDetector:
    """Test device detection functionality."""

    def test_detect_mobile_from_client_hints(self) -> None:
        """Test mobile detection using Client Hints."""
        mock_request = Mock(spec=Request)
        mock_request.headers = {"viewport-width": "375", "dpr": "2.0"}

        device = DeviceDetector.detect_device(mock_request)
        assert device == "mobile"

    def test_detect_retina_from_client_hints(self) -> None:
        """Test high-DPR desktop detection."""
        mock_request = Mock(spec=Request)
        mock_request.headers = {"viewport-width": "1440", "dpr": "2.0"}

        assert DeviceDetector.detect_device(mock_request) == "retina"

    def test_detect_mobile_from_user_agent(self) -> None:
        """Test mobile detection from User-Agent."""
        mock_request = Mock(spec=Request)
        mock_request.headers = {
            "user-agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 14_0 like Mac OS X)"
        }

        device = DeviceDetector.detect_device(mock_request)
        assert device == "mobile"

    def test_detect_tablet_from_user_agent(self) -> None:
        mock_request = Mock(spec=Request)
        mock_request.headers = {"user-agent": "Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X)"}

        assert DeviceDetector.detect_device(mock_request) == "tablet"

    def test_default_to_desktop(self) -> None:
        """Test default detection when no hints available."""
        mock_request = Mock(spec=Request)
        mock_request.headers = {"user-agent": "Unknown"}

        device = DeviceDetector.detect_device(mock_request)
        assert device == "desktop"

    def test_invalid_viewport_falls_back_to_user_agent(self) -> None:
        mock_request = Mock(spec=Request)
        mock_request.headers = {"viewport-width": "wide", "user-agent": "Android 13 Mobile"}

        assert DeviceDetector.detect_device(mock_request) == "mobile"

    def test_resolve_dimensions_auto(self) -> None:
        """Test auto detection maps to breakpoint dimensions."""
        mock_request = Mock(spec=Request)
        mock_request.headers = {"viewport-width": "800"}

        assert DeviceDetector.resolve_dimensions(mock_request) == (768, 1024)

    def test_resolve_dimensions_explicit(self) -> None:
        mock_request = Mock(spec=Request)
        mock_request.headers = {}

        assert DeviceDetector.resolve_dimensions(mock_request, "retina") == (2560, 1440)
        assert DeviceDetector.resolve_dimensions(mock_request, "unknown") == (1920, 1080)
