"""Runtime backends and the factory that picks one for a RuntimeKind."""

from guestvm.core.models import RuntimeKind
from guestvm.core.paths import AppPaths
from guestvm.core.platform_info import HostProfile

from .base import (
    ComposeDirection,
    HostProbe,
    LifecycleAction,
    RuntimeManager,
    ToolResult,
    run_tool,
)
from .engine import DockerRuntime, PodmanRuntime
from .qemu_native import QemuNativeRuntime

_PROBES = {
    RuntimeKind.DOCKER: DockerRuntime.host_capability_probe,
    RuntimeKind.PODMAN: PodmanRuntime.host_capability_probe,
    RuntimeKind.QEMU_NATIVE: QemuNativeRuntime.host_capability_probe,
}


def create_runtime(kind: RuntimeKind, paths: AppPaths, host: HostProfile) -> RuntimeManager:
    kind = RuntimeKind(kind)
    if kind is RuntimeKind.DOCKER:
        return DockerRuntime(paths.docker_descriptor, host)
    if kind is RuntimeKind.PODMAN:
        return PodmanRuntime(paths.podman_descriptor, host)
    return QemuNativeRuntime(paths.qemu_native_descriptor, host, paths.qemu_runtime_dir)


async def probe_host(kind: RuntimeKind) -> HostProbe:
    return await _PROBES[RuntimeKind(kind)]()


__all__ = [
    "ComposeDirection",
    "DockerRuntime",
    "HostProbe",
    "LifecycleAction",
    "PodmanRuntime",
    "QemuNativeRuntime",
    "RuntimeManager",
    "ToolResult",
    "create_runtime",
    "probe_host",
    "run_tool",
]
