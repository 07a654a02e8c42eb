"""
Per-runtime capability resolution.

``resolve`` is a pure function of (runtime, host, flags): no I/O, nothing
cached, nothing persisted. Callers recompute on every query.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from guestvm.core.feature_flags import (
    EXPERIMENTAL_NATIVE_RUNTIME,
    LEGACY_EXPERIMENTAL_QEMU_NATIVE,
    FeatureFlags,
)
from guestvm.core.models import GuestArchitecture, RuntimeKind, preferred_guest_architecture
from guestvm.core.platform_info import HostProfile

DOCKER_ENGINE_LINUX_GUIDE = "https://docs.docker.com/engine/install/"
DOCKER_DESKTOP_MAC_GUIDE = "https://docs.docker.com/desktop/setup/install/mac-install/"
PODMAN_GUIDE = "https://podman.io/docs/installation"
QEMU_GUIDE = "https://formulae.brew.sh/formula/qemu"


@dataclass(frozen=True)
class RuntimeCapabilities:
    runtime: RuntimeKind
    supported_on_host: bool
    guest_architecture: GuestArchitecture
    install_guide_url: str
    experimental: bool = False
    supports_compose: bool = True
    supports_control_channel: bool = True
    supports_auto_start: bool = True
    supports_usb_passthrough: bool = False
    supports_guided_install: bool = True
    unsupported_reason: Optional[str] = None
    usb_passthrough_reason: Optional[str] = None
    auto_start_reason: Optional[str] = None
    guided_install_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "runtime": self.runtime.value,
            "supportedOnHost": self.supported_on_host,
            "experimental": self.experimental,
            "supportsCompose": self.supports_compose,
            "supportsControlChannel": self.supports_control_channel,
            "supportsAutoStart": self.supports_auto_start,
            "supportsUsbPassthrough": self.supports_usb_passthrough,
            "supportsGuidedInstall": self.supports_guided_install,
            "guestArchitecture": self.guest_architecture.value,
            "installGuideUrl": self.install_guide_url,
            "unsupportedReason": self.unsupported_reason,
            "usbPassthroughReason": self.usb_passthrough_reason,
            "autoStartReason": self.auto_start_reason,
            "guidedInstallReason": self.guided_install_reason,
        }


def install_guide_url(runtime: RuntimeKind, host: HostProfile) -> str:
    if runtime is RuntimeKind.PODMAN:
        return PODMAN_GUIDE
    if runtime is RuntimeKind.QEMU_NATIVE:
        return QEMU_GUIDE
    return DOCKER_ENGINE_LINUX_GUIDE if host.is_linux else DOCKER_DESKTOP_MAC_GUIDE


def unsupported_reason(runtime: RuntimeKind, host: HostProfile, flags: FeatureFlags) -> Optional[str]:
    """Name the first unmet condition, platform before opt-in flag."""
    if runtime is RuntimeKind.PODMAN and not host.is_linux:
        return "Podman runtime is currently supported only on Linux hosts."
    if runtime is RuntimeKind.QEMU_NATIVE:
        if not host.is_apple_silicon:
            return "QEMU Native runtime currently requires macOS on Apple Silicon."
        if not flags.experimental_native_runtime:
            return (
                f"QEMU Native runtime is currently hidden behind {EXPERIMENTAL_NATIVE_RUNTIME}=1 "
                f"(legacy: {LEGACY_EXPERIMENTAL_QEMU_NATIVE}=1)."
            )
    return None


def resolve(runtime: RuntimeKind, host: HostProfile, flags: FeatureFlags) -> RuntimeCapabilities:
    reason = unsupported_reason(runtime, host, flags)
    common = dict(
        runtime=runtime,
        supported_on_host=reason is None,
        unsupported_reason=reason,
        guest_architecture=preferred_guest_architecture(runtime),
        install_guide_url=install_guide_url(runtime, host),
    )

    if runtime is RuntimeKind.DOCKER:
        return RuntimeCapabilities(
            **common,
            supports_usb_passthrough=host.is_linux,
            usb_passthrough_reason=(
                None if host.is_linux else "USB passthrough is currently supported only on Linux hosts."
            ),
        )
    if runtime is RuntimeKind.PODMAN:
        return RuntimeCapabilities(
            **common,
            usb_passthrough_reason="USB passthrough is not yet supported while using Podman as the runtime.",
        )
    return RuntimeCapabilities(
        **common,
        experimental=True,
        supports_compose=False,
        supports_auto_start=False,
        supports_guided_install=False,
        usb_passthrough_reason="USB passthrough is not yet available for QEMU Native runtime.",
        auto_start_reason="Auto-start is not available for QEMU Native runtime.",
        guided_install_reason=(
            "Guided Windows installation is not available for QEMU Native runtime yet (manual flow only)."
        ),
    )


def capability_matrix(host: HostProfile, flags: FeatureFlags) -> Dict[RuntimeKind, RuntimeCapabilities]:
    return {kind: resolve(kind, host, flags) for kind in RuntimeKind}


def supported_runtime_kinds(host: HostProfile, flags: FeatureFlags) -> List[RuntimeKind]:
    return [kind for kind, caps in capability_matrix(host, flags).items() if caps.supported_on_host]


__all__ = [
    "RuntimeCapabilities",
    "capability_matrix",
    "install_guide_url",
    "resolve",
    "supported_runtime_kinds",
    "unsupported_reason",
]
