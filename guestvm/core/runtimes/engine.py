"""
Container-engine backends (Docker, Podman).

Both drive the engine CLI: ``compose`` for apply, ``container <action>`` for
lifecycle, ``inspect`` for status and ``port`` for live bindings. They differ
only in executable, compose environment and status vocabulary.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Mapping, Optional, Sequence

from guestvm.core.errors import GuestVMError, PortParseError, RuntimeCommandError
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import RuntimeKind, RuntimeStatus
from guestvm.core.ports import PortBinding, ResolvedPortBinding
from guestvm.core.runtimes.base import (
    COMPOSE_TIMEOUT,
    PROBE_TIMEOUT,
    ComposeDirection,
    HostProbe,
    LifecycleAction,
    RuntimeManager,
    run_tool,
)

logger = get_module_logger("Engine")

DOCKER_STATUS_MAP: Dict[str, RuntimeStatus] = {
    "created": RuntimeStatus.CREATED,
    "restarting": RuntimeStatus.UNKNOWN,
    "removing": RuntimeStatus.UNKNOWN,
    "running": RuntimeStatus.RUNNING,
    "paused": RuntimeStatus.PAUSED,
    "exited": RuntimeStatus.EXITED,
    "dead": RuntimeStatus.UNKNOWN,
}

PODMAN_STATUS_MAP: Dict[str, RuntimeStatus] = {
    **DOCKER_STATUS_MAP,
    "initialized": RuntimeStatus.UNKNOWN,
    "stopping": RuntimeStatus.EXITED,
    "stopped": RuntimeStatus.EXITED,
}

PODMAN_COMPOSE_ENV = {
    "PODMAN_COMPOSE_PROVIDER": "podman-compose",
    "PODMAN_COMPOSE_WARNING_LOGS": "false",
}

_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")


def map_engine_status(raw: str, status_map: Mapping[str, RuntimeStatus]) -> RuntimeStatus:
    """Total mapping: anything not in ``status_map`` is UNKNOWN."""
    status = status_map.get(raw.strip().lower())
    if status is None:
        logger.warning("Unmapped engine status '%s', reporting unknown", raw.strip())
        return RuntimeStatus.UNKNOWN
    return status


def parse_port_output(stdout: str) -> List[ResolvedPortBinding]:
    """Parse ``<engine> port <name>`` output.

    Each line reads ``3389/tcp -> 127.0.0.1:47300`` and is rewritten to the
    token ``127.0.0.1:47300:3389/tcp``. Lines that do not parse are skipped.
    """
    bindings: List[ResolvedPortBinding] = []
    for line in stdout.splitlines():
        if "->" not in line:
            continue
        container_part, _, host_part = (part.strip() for part in line.partition("->"))
        try:
            binding = PortBinding.from_token(f"{host_part}:{container_part}")
            bindings.append(binding.resolve(binding.host_port))  # type: ignore[arg-type]
        except PortParseError as e:
            logger.warning("Skipping unparsable port line '%s': %s", line.strip(), e)
    return bindings


class ComposeEngineRuntime(RuntimeManager):
    executable: ClassVar[str]
    status_map: ClassVar[Mapping[str, RuntimeStatus]]
    compose_env: ClassVar[Optional[Mapping[str, str]]] = None

    async def apply(self, direction: ComposeDirection, extra_args: Sequence[str] = ()) -> None:
        direction = ComposeDirection(direction)
        argv = [self.executable, "compose", "-f", str(self.descriptor_path), direction.value, *extra_args]
        if direction is ComposeDirection.UP:
            argv.append("-d")

        try:
            result = await run_tool(argv, timeout=COMPOSE_TIMEOUT, env=self.compose_env)
        except RuntimeCommandError as e:
            logger.error("Compose %s failed: %s", direction.value, e)
            raise
        if result.stderr.strip():
            # compose writes progress to stderr even on success
            logger.info("Compose %s output: %s", direction.value, result.stderr.strip())
        self.invalidate_port_cache()

    async def lifecycle(self, action: LifecycleAction) -> None:
        action = LifecycleAction(action)
        argv = [self.executable, "container", action.value, self.container_name]
        try:
            result = await run_tool(argv)
        except RuntimeCommandError as e:
            logger.error("Container action '%s' failed: %s", action.value, e)
            raise
        logger.info("Container action '%s' response: '%s'", action.value, result.stdout.strip())
        if action is not LifecycleAction.UNPAUSE:
            self.invalidate_port_cache()

    async def _query_status(self) -> RuntimeStatus:
        result = await run_tool([self.executable, "inspect", "--format={{.State.Status}}", self.container_name])
        return map_engine_status(result.stdout, self.status_map)

    async def _query_ports(self) -> List[ResolvedPortBinding]:
        result = await run_tool([self.executable, "port", self.container_name])
        return parse_port_output(result.stdout)

    async def exists(self) -> bool:
        argv = [self.executable, "ps", "-a", "--filter", f"name={self.container_name}", "--format", "{{.Names}}"]
        try:
            result = await run_tool(argv)
        except GuestVMError as e:
            logger.error("Failed to list containers, is %s installed? %s", self.executable.capitalize(), e)
            return False
        return self.container_name in result.stdout.split()

    async def remove(self) -> None:
        try:
            await run_tool([self.executable, "rm", self.container_name])
            logger.info("Removed container %s", self.container_name)
        except GuestVMError as e:
            logger.error("Failed to remove container '%s': %s", self.container_name, e)
        self.invalidate_port_cache()


async def _probe_output(argv: Sequence[str], env: Optional[Mapping[str, str]] = None) -> str:
    try:
        result = await run_tool(argv, timeout=PROBE_TIMEOUT, env=env)
    except GuestVMError as e:
        logger.debug("Probe '%s' failed: %s", " ".join(argv), e)
        return ""
    return result.stdout


@dataclass(frozen=True)
class DockerProbe(HostProbe):
    docker_installed: bool = False
    compose_installed: bool = False
    daemon_running: bool = False
    user_in_docker_group: bool = False


@dataclass(frozen=True)
class PodmanProbe(HostProbe):
    podman_installed: bool = False
    compose_installed: bool = False


class DockerRuntime(ComposeEngineRuntime):
    kind = RuntimeKind.DOCKER
    executable = "docker"
    status_map = DOCKER_STATUS_MAP

    @staticmethod
    async def host_capability_probe() -> DockerProbe:
        installed = bool(await _probe_output(["docker", "--version"]))

        # "Docker Compose version v2.35.1"
        match = _VERSION_RE.search(await _probe_output(["docker", "compose", "version"]))
        compose_installed = match is not None and int(match.group(1)) >= 2

        running = bool(await _probe_output(["docker", "ps"]))

        if sys.platform.startswith("linux"):
            in_group = "docker" in (await _probe_output(["id", "-Gn"])).split()
        else:
            in_group = True

        return DockerProbe(
            docker_installed=installed,
            compose_installed=compose_installed,
            daemon_running=running,
            user_in_docker_group=in_group,
        )


class PodmanRuntime(ComposeEngineRuntime):
    kind = RuntimeKind.PODMAN
    executable = "podman"
    status_map = PODMAN_STATUS_MAP
    compose_env = PODMAN_COMPOSE_ENV

    @staticmethod
    async def host_capability_probe() -> PodmanProbe:
        return PodmanProbe(
            podman_installed=bool(await _probe_output(["podman", "--version"])),
            compose_installed=bool(await _probe_output(["podman", "compose", "--version"], env=PODMAN_COMPOSE_ENV)),
        )


__all__ = [
    "DOCKER_STATUS_MAP",
    "PODMAN_STATUS_MAP",
    "ComposeEngineRuntime",
    "DockerProbe",
    "DockerRuntime",
    "PodmanProbe",
    "PodmanRuntime",
    "map_engine_status",
    "parse_port_output",
]
