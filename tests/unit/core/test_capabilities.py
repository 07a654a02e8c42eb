"""Tests for feature flags, runtime tokens and capability resolution."""

import pytest

from guestvm.core.capabilities import capability_matrix, resolve, supported_runtime_kinds
from guestvm.core.feature_flags import FeatureFlags
from guestvm.core.models import (
    GuestArchitecture,
    RuntimeKind,
    normalize_runtime_kind,
    parse_guest_architecture,
    parse_runtime_kind,
)
from guestvm.core.platform_info import HostProfile


class TestFeatureFlags:

    @pytest.mark.parametrize("value", ["1", "true", "YES", " True "])
    def test_truthy_values(self, value):
        flags = FeatureFlags.from_environ({"GUESTVM_EXPERIMENTAL_NATIVE_RUNTIME": value})
        assert flags.experimental_native_runtime is True

    @pytest.mark.parametrize("value", ["", "0", "false", "on", "enabled"])
    def test_falsy_values(self, value):
        flags = FeatureFlags.from_environ({"GUESTVM_EXPERIMENTAL_NATIVE_RUNTIME": value})
        assert flags.experimental_native_runtime is False

    def test_legacy_name_is_honoured(self):
        flags = FeatureFlags.from_environ({"GUESTVM_EXPERIMENTAL_QEMU_NATIVE": "1"})
        assert flags.experimental_native_runtime is True

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("GUESTVM_EXPERIMENTAL_NATIVE_RUNTIME", "yes")
        assert FeatureFlags.from_environ().experimental_native_runtime is True


class TestRuntimeTokens:

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("docker", RuntimeKind.DOCKER),
            ("Podman", RuntimeKind.PODMAN),
            ("QEMU Native", RuntimeKind.QEMU_NATIVE),
            ("qemu-native", RuntimeKind.QEMU_NATIVE),
            ("qemu_native", RuntimeKind.QEMU_NATIVE),
            ("QemuNative", RuntimeKind.QEMU_NATIVE),
        ],
    )
    def test_parse(self, token, expected):
        assert parse_runtime_kind(token) is expected

    def test_unknown_falls_back(self):
        assert parse_runtime_kind("lxc") is None
        assert normalize_runtime_kind(42) is RuntimeKind.DOCKER

    @pytest.mark.parametrize(
        "token,expected",
        [("x86_64", GuestArchitecture.AMD64), ("x64", GuestArchitecture.AMD64), ("aarch64", GuestArchitecture.ARM64)],
    )
    def test_guest_architecture_aliases(self, token, expected):
        assert parse_guest_architecture(token) is expected
        assert parse_guest_architecture("sparc") is None


class TestCapabilityResolver:
    """Resolution is a pure function of runtime, host and flags."""

    def test_podman_is_linux_only(self, linux_host, mac_arm_host, no_flags):
        assert resolve(RuntimeKind.PODMAN, linux_host, no_flags).supported_on_host

        caps = resolve(RuntimeKind.PODMAN, mac_arm_host, no_flags)
        assert not caps.supported_on_host
        assert caps.unsupported_reason == "Podman runtime is currently supported only on Linux hosts."

    def test_native_requires_apple_silicon_before_flag(self, linux_host, mac_intel_host, native_flags):
        for host in (linux_host, mac_intel_host):
            caps = resolve(RuntimeKind.QEMU_NATIVE, host, native_flags)
            assert not caps.supported_on_host
            assert "Apple Silicon" in caps.unsupported_reason

    def test_native_requires_flag(self, mac_arm_host, no_flags, native_flags):
        hidden = resolve(RuntimeKind.QEMU_NATIVE, mac_arm_host, no_flags)
        assert not hidden.supported_on_host
        assert "GUESTVM_EXPERIMENTAL_NATIVE_RUNTIME=1" in hidden.unsupported_reason
        assert "GUESTVM_EXPERIMENTAL_QEMU_NATIVE=1" in hidden.unsupported_reason

        caps = resolve(RuntimeKind.QEMU_NATIVE, mac_arm_host, native_flags)
        assert caps.supported_on_host
        assert caps.unsupported_reason is None
        assert caps.experimental
        assert not caps.supports_compose
        assert caps.guest_architecture is GuestArchitecture.ARM64

    def test_docker_usb_passthrough(self, linux_host, mac_arm_host, no_flags):
        assert resolve(RuntimeKind.DOCKER, linux_host, no_flags).supports_usb_passthrough
        caps = resolve(RuntimeKind.DOCKER, mac_arm_host, no_flags)
        assert not caps.supports_usb_passthrough
        assert caps.usb_passthrough_reason

    def test_supported_iff_no_reason(self, linux_host, mac_arm_host, mac_intel_host, no_flags, native_flags):
        windows_host = HostProfile(platform="win32", architecture="AMD64")
        for host in (linux_host, mac_arm_host, mac_intel_host, windows_host):
            for flags in (no_flags, native_flags):
                for caps in capability_matrix(host, flags).values():
                    assert caps.supported_on_host == (caps.unsupported_reason is None)

    def test_supported_runtime_kinds(self, linux_host, mac_arm_host, no_flags, native_flags):
        assert supported_runtime_kinds(linux_host, no_flags) == [RuntimeKind.DOCKER, RuntimeKind.PODMAN]
        assert supported_runtime_kinds(mac_arm_host, no_flags) == [RuntimeKind.DOCKER]
        assert supported_runtime_kinds(mac_arm_host, native_flags) == [RuntimeKind.DOCKER, RuntimeKind.QEMU_NATIVE]

    def test_to_dict(self, linux_host, no_flags):
        payload = resolve(RuntimeKind.DOCKER, linux_host, no_flags).to_dict()

        assert payload["runtime"] == "Docker"
        assert payload["guestArchitecture"] == "amd64"
        assert payload["installGuideUrl"].startswith("https://docs.docker.com/engine")
