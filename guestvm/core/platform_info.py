"""
Host platform detection.

The host profile is detected once when the application context is built and
then passed explicitly to everything that branches on the host (capability
resolution, default descriptors, native runtime acceleration).
"""

import platform
import sys
from dataclasses import dataclass

from guestvm.core.logging_utils import get_module_logger

logger = get_module_logger("PlatformInfo")

_ARM_MACHINES = {"arm64", "aarch64"}


@dataclass(frozen=True)
class HostProfile:
    """Immutable facts about the machine guestvm runs on.

    Attributes:
        platform: System platform ('linux', 'darwin', 'win32')
        architecture: CPU architecture as reported by the OS ('x86_64', 'arm64', 'aarch64')
        os_release: OS release version string
        python_version: Python version string
    """

    platform: str
    architecture: str
    os_release: str = ""
    python_version: str = ""

    @property
    def is_linux(self) -> bool:
        return self.platform.startswith("linux")

    @property
    def is_macos(self) -> bool:
        return self.platform == "darwin"

    @property
    def is_arm(self) -> bool:
        return self.architecture.lower() in _ARM_MACHINES

    @property
    def is_apple_silicon(self) -> bool:
        return self.is_macos and self.is_arm

    def __str__(self) -> str:
        if self.is_apple_silicon:
            return f"macOS on Apple Silicon ({self.architecture})"
        return f"{self.platform} ({self.architecture})"


def detect_host_profile() -> HostProfile:
    profile = HostProfile(
        platform=sys.platform,
        architecture=platform.machine(),
        os_release=platform.release(),
        python_version=platform.python_version(),
    )
    logger.info("Host detected: %s", profile)
    return profile


__all__ = ["HostProfile", "detect_host_profile"]
