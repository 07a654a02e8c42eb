"""Core identifiers shared across runtimes, config and supervision."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Optional


class RuntimeKind(str, Enum):
    """Which backend runs the guest. Values are the tokens persisted in config."""

    DOCKER = "Docker"
    PODMAN = "Podman"
    QEMU_NATIVE = "QEMU Native"

    def __str__(self) -> str:
        return self.value


class RuntimeStatus(str, Enum):
    """Closed set of instance states every backend reports."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    EXITED = "exited"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class GuestArchitecture(str, Enum):
    AMD64 = "amd64"
    ARM64 = "arm64"

    def __str__(self) -> str:
        return self.value


class CommonPorts(IntEnum):
    """Well-known guest-side (container) ports."""

    RDP = 3389
    NOVNC = 8006
    API = 7148
    QMP = 7149


_RUNTIME_TOKENS = {
    "docker": RuntimeKind.DOCKER,
    "podman": RuntimeKind.PODMAN,
    "qemu native": RuntimeKind.QEMU_NATIVE,
    "qemu-native": RuntimeKind.QEMU_NATIVE,
    "qemu_native": RuntimeKind.QEMU_NATIVE,
    "qemunative": RuntimeKind.QEMU_NATIVE,
}

_ARCH_TOKENS = {
    "amd64": GuestArchitecture.AMD64,
    "x86_64": GuestArchitecture.AMD64,
    "x64": GuestArchitecture.AMD64,
    "arm64": GuestArchitecture.ARM64,
    "aarch64": GuestArchitecture.ARM64,
}


def parse_runtime_kind(value: object) -> Optional[RuntimeKind]:
    """Map a persisted or user-supplied runtime token to a RuntimeKind, or None."""
    if isinstance(value, RuntimeKind):
        return value
    if not isinstance(value, str):
        return None
    return _RUNTIME_TOKENS.get(value.strip().lower())


def normalize_runtime_kind(value: object, fallback: RuntimeKind = RuntimeKind.DOCKER) -> RuntimeKind:
    return parse_runtime_kind(value) or fallback


def preferred_guest_architecture(runtime: RuntimeKind) -> GuestArchitecture:
    if runtime is RuntimeKind.QEMU_NATIVE:
        return GuestArchitecture.ARM64
    return GuestArchitecture.AMD64


def parse_guest_architecture(token: object) -> Optional[GuestArchitecture]:
    """Accept the architecture spellings reported by guests (``x86_64``, ``aarch64``...)."""
    if isinstance(token, GuestArchitecture):
        return token
    if not isinstance(token, str):
        return None
    return _ARCH_TOKENS.get(token.strip().lower())


__all__ = [
    "CommonPorts",
    "GuestArchitecture",
    "RuntimeKind",
    "RuntimeStatus",
    "normalize_runtime_kind",
    "parse_guest_architecture",
    "parse_runtime_kind",
    "preferred_guest_architecture",
]
