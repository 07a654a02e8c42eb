"""Seed descriptors for a fresh instance, one per runtime, shaped by the host."""

from __future__ import annotations

from guestvm.core.descriptor import InstanceDescriptor
from guestvm.core.models import RuntimeKind
from guestvm.core.platform_info import HostProfile
from guestvm.core.ports import PortMapper

GUEST_IMAGE = "ghcr.io/dockur/windows:5.14"
NATIVE_IMAGE = "local/windows-arm64"
INSTANCE_NAME = "guestvm"
CONTAINER_NAME = "GuestVM"
NATIVE_INSTANCE_NAME = "guestvm-qemu-native"
NATIVE_CONTAINER_NAME = "GuestVMQemuNative"

RESTART_ON_FAILURE = "on-failure"
RESTART_NO = "no"
STOP_GRACE_PERIOD = "120s"
ENGINE_QMP_ARGUMENTS = "-qmp tcp:0.0.0.0:7149,server,wait=off"

DOCKER_PORTS = [
    "127.0.0.1:47270-47279:8006",  # web VNC
    "127.0.0.1:47280-47289:7148",  # guest API
    "127.0.0.1:47290-47299:7149",  # QMP
    "127.0.0.1:47300-47309:3389/tcp",
    "127.0.0.1:47310-47319:3389/udp",
]

PODMAN_PORTS = [
    "127.0.0.1::8006",
    "127.0.0.1::7148",
    "127.0.0.1::7149",
    "127.0.0.1::3389/tcp",
    "127.0.0.1::3389/udp",
]

NATIVE_PORTS = [
    "127.0.0.1:47270:8006",
    "127.0.0.1:47280:7148",
    "127.0.0.1:47290:7149",
    "127.0.0.1:47300:3389/tcp",
    "127.0.0.1:47301:3389/udp",
]


def _base_environment() -> dict:
    return {
        "VERSION": "11",
        "RAM_SIZE": "4G",
        "CPU_CORES": "4",
        "DISK_SIZE": "64G",
        "USERNAME": "MyWindowsUser",
        "PASSWORD": "MyWindowsPassword",
        "HOME": "${HOME}",
        "LANGUAGE": "English",
    }


def docker_default(host: HostProfile) -> InstanceDescriptor:
    volumes = ["data:/storage", "${HOME}:/shared", "./oem:/oem"]
    devices = []
    if host.is_linux:
        volumes.insert(2, "/dev/bus/usb:/dev/bus/usb")
        devices.append("/dev/kvm")

    environment = _base_environment()
    environment.update(USER_PORTS="7148", HOST_PORTS="7149", ARGUMENTS=ENGINE_QMP_ARGUMENTS)
    return InstanceDescriptor(
        name=INSTANCE_NAME,
        image=GUEST_IMAGE,
        platform="linux/amd64" if host.is_apple_silicon else None,
        container_name=CONTAINER_NAME,
        environment=environment,
        named_volumes={"data": None},
        volumes=volumes,
        ports=PortMapper.from_entries(DOCKER_PORTS),
        restart=RESTART_ON_FAILURE,
        cap_add=["NET_ADMIN"],
        devices=devices,
        privileged=True,
        stop_grace_period=STOP_GRACE_PERIOD,
    )


def podman_default(host: HostProfile) -> InstanceDescriptor:
    devices = ["/dev/kvm", "/dev/bus/usb"] if host.is_linux else []

    environment = _base_environment()
    environment.update(NETWORK="user", USER_PORTS="7148", HOST_PORTS="7149", ARGUMENTS=ENGINE_QMP_ARGUMENTS)
    if host.is_macos:
        environment["KVM"] = "N"
    return InstanceDescriptor(
        name=INSTANCE_NAME,
        image=GUEST_IMAGE,
        platform="linux/amd64" if host.is_apple_silicon else None,
        container_name=CONTAINER_NAME,
        environment=environment,
        named_volumes={"data": None},
        volumes=["data:/storage", "${HOME}:/shared", "./oem:/oem"],
        ports=PortMapper.from_entries(PODMAN_PORTS),
        restart=RESTART_ON_FAILURE,
        cap_add=["NET_ADMIN"],
        devices=devices,
        privileged=True,
        stop_grace_period=STOP_GRACE_PERIOD,
    )


def qemu_native_default(host: HostProfile) -> InstanceDescriptor:
    environment = _base_environment()
    environment.update(USER_PORTS="7148", HOST_PORTS="7149", ARGUMENTS="")
    return InstanceDescriptor(
        name=NATIVE_INSTANCE_NAME,
        image=NATIVE_IMAGE,
        container_name=NATIVE_CONTAINER_NAME,
        environment=environment,
        named_volumes={"data": None},
        volumes=["${HOME}:/shared"],
        ports=PortMapper.from_entries(NATIVE_PORTS),
        restart=RESTART_NO,
        cap_add=[],
        devices=[],
        stop_grace_period=STOP_GRACE_PERIOD,
    )


_FACTORIES = {
    RuntimeKind.DOCKER: docker_default,
    RuntimeKind.PODMAN: podman_default,
    RuntimeKind.QEMU_NATIVE: qemu_native_default,
}


def default_descriptor(kind: RuntimeKind, host: HostProfile) -> InstanceDescriptor:
    return _FACTORIES[kind](host)


__all__ = [
    "default_descriptor",
    "docker_default",
    "podman_default",
    "qemu_native_default",
]
