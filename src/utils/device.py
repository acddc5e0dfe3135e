"""Device detection utilities."""

import logging
import re
from typing import Tuple

from fastapi import Request

from src.api.config import DEVICE_CLASS_DIMENSIONS

logger = logging.getLogger(__name__)

MOBILE_PATTERNS = [
    r"iphone",
    r"ipod",
    r"android.*mobile",
    r"windows phone",
    r"blackberry",
]

TABLET_PATTERNS = [
    r"ipad",
    r"android(?!.*mobile)",
    r"tablet",
    r"kindle",
    r"playbook",
]


class DeviceDetector:
    """Detect the target device class from request headers."""

    @staticmethod
    def detect_device(request: Request) -> str:
        """
        Detect device type from request headers.

        Priority:
        1. Client Hints (Viewport-Width, DPR)
        2. User-Agent parsing

        Args:
            request: FastAPI request object

        Returns:
            Device type: 'mobile', 'tablet', 'desktop', or 'retina'
        """
        viewport_width = request.headers.get("viewport-width")
        dpr = request.headers.get("dpr")

        if viewport_width:
            try:
                width = int(viewport_width)
                pixel_ratio = float(dpr) if dpr else 1.0

                if width < 768:
                    return "mobile"
                elif width < 1024:
                    return "tablet"
                elif pixel_ratio > 1.5:
                    return "retina"
                else:
                    return "desktop"
            except ValueError:
                pass

        user_agent = request.headers.get("user-agent", "").lower()
        return DeviceDetector._detect_from_user_agent(user_agent)

    @staticmethod
    def _detect_from_user_agent(user_agent: str) -> str:
        for pattern in MOBILE_PATTERNS:
            if re.search(pattern, user_agent):
                logger.debug(f"Detected mobile device from UA: {pattern}")
                return "mobile"

        for pattern in TABLET_PATTERNS:
            if re.search(pattern, user_agent):
                logger.debug(f"Detected tablet device from UA: {pattern}")
                return "tablet"

        return "desktop"

    @staticmethod
    def resolve_dimensions(request: Request, device: str = "auto") -> Tuple[int, int]:
        """
        Map a device class to breakpoint dimensions.

        Args:
            request: FastAPI request object
            device: Explicit device class, or 'auto' to detect from headers

        Returns:
            (width, height) of the matching device breakpoint
        """
        if device == "auto":
            device = DeviceDetector.detect_device(request)
            logger.info(f"Auto-detected device: {device}")
        return DEVICE_CLASS_DIMENSIONS.get(device, DEVICE_CLASS_DIMENSIONS["desktop"])
