"""
RuntimeManager contract shared by every backend.

Polling-path calls (``status``, ``port``) never raise: failures are logged and
degrade to ``RuntimeStatus.UNKNOWN`` / an empty binding list so the
supervisor loop keeps going. User-initiated calls (``apply``, ``lifecycle``,
``write_descriptor``) propagate their errors.
"""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from guestvm.core.default_descriptors import default_descriptor
from guestvm.core.descriptor import InstanceDescriptor
from guestvm.core.errors import RuntimeCommandError, ToolTimeoutError
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import RuntimeKind, RuntimeStatus
from guestvm.core.platform_info import HostProfile
from guestvm.core.ports import PortMapper, ResolvedPortBinding

logger = get_module_logger("Runtime")

DEFAULT_TOOL_TIMEOUT = 30.0
PROBE_TIMEOUT = 10.0
# compose up can pull a multi-GB image
COMPOSE_TIMEOUT = 3600.0


class ComposeDirection(str, Enum):
    UP = "up"
    DOWN = "down"


class LifecycleAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    PAUSE = "pause"
    UNPAUSE = "unpause"


@dataclass(frozen=True)
class ToolResult:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str


async def run_tool(
    argv: Sequence[str],
    *,
    timeout: float = DEFAULT_TOOL_TIMEOUT,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
) -> ToolResult:
    """Run an external tool to completion with a hard timeout.

    ``env`` entries are layered over the current environment. A tool still
    running at the deadline is killed.

    Raises:
        ToolTimeoutError: deadline exceeded.
        RuntimeCommandError: the tool could not be started, or (with ``check``)
            exited non-zero.
    """
    argv = [str(arg) for arg in argv]
    merged_env = None if env is None else {**os.environ, **env}
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=merged_env,
        )
    except OSError as e:
        raise RuntimeCommandError(argv, None, str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ToolTimeoutError(argv, timeout) from None

    result = ToolResult(
        argv=argv,
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if check and result.returncode != 0:
        raise RuntimeCommandError(argv, result.returncode, result.stderr)
    return result


@dataclass(frozen=True)
class HostProbe:
    """Diagnostics-only view of a backend's tooling on this host."""

    @property
    def ready(self) -> bool:
        return all(asdict(self).values())

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


class RuntimeManager(ABC):
    """One instance, one backend. Owns the descriptor file and resolved-port cache."""

    kind: RuntimeKind

    def __init__(self, descriptor_path: Path, host: HostProfile):
        self.descriptor_path = Path(descriptor_path)
        self.host = host
        self.default_descriptor = default_descriptor(self.kind, host)
        self._resolved_ports: Optional[PortMapper] = None

    @property
    def container_name(self) -> str:
        return self.default_descriptor.container_name

    # ------------------------------------------------------------------
    # Descriptor

    def write_descriptor(self, descriptor: InstanceDescriptor) -> None:
        descriptor.write(self.descriptor_path)
        logger.info("Wrote %s descriptor to %s", self.kind, self.descriptor_path)

    def read_descriptor(self) -> InstanceDescriptor:
        return InstanceDescriptor.load(self.descriptor_path)

    async def load_descriptor(self) -> InstanceDescriptor:
        """Read the descriptor, seeding the backend default first if none exists."""
        if not await asyncio.to_thread(self.descriptor_path.exists):
            logger.info("No descriptor at %s, writing %s default", self.descriptor_path, self.kind)
            await asyncio.to_thread(self.write_descriptor, self.default_descriptor.copy())
        return await InstanceDescriptor.load_async(self.descriptor_path)

    # ------------------------------------------------------------------
    # Lifecycle

    @abstractmethod
    async def apply(self, direction: ComposeDirection, extra_args: Sequence[str] = ()) -> None:
        ...

    @abstractmethod
    async def lifecycle(self, action: LifecycleAction) -> None:
        ...

    @abstractmethod
    async def exists(self) -> bool:
        ...

    @abstractmethod
    async def remove(self) -> None:
        ...

    # ------------------------------------------------------------------
    # Status and ports

    async def status(self) -> RuntimeStatus:
        try:
            status = await self._query_status()
        except Exception as e:
            logger.error("%s status query failed: %s", self.kind, e)
            status = RuntimeStatus.UNKNOWN
        if status is not RuntimeStatus.RUNNING:
            self.invalidate_port_cache()
        return status

    async def port(self) -> List[ResolvedPortBinding]:
        try:
            reported = await self._query_ports()
        except Exception as e:
            logger.error("%s port query failed: %s", self.kind, e)
            self.invalidate_port_cache()
            return []

        resolved = PortMapper()
        bindings = resolved.apply_resolved(reported)
        self._resolved_ports = resolved
        logger.info("%s active port mappings: %s", self.kind, ", ".join(str(b) for b in bindings) or "none")
        return bindings

    @abstractmethod
    async def _query_status(self) -> RuntimeStatus:
        ...

    @abstractmethod
    async def _query_ports(self) -> List[ResolvedPortBinding]:
        ...

    @property
    def cached_port_mappings(self) -> Optional[List[ResolvedPortBinding]]:
        if self._resolved_ports is None:
            return None
        return [b.resolve(b.host_port) for b in self._resolved_ports]  # type: ignore[arg-type]

    def get_active_host_port(self, container_port: int, protocol: str = "tcp") -> Optional[int]:
        if self._resolved_ports is None:
            return None
        return self._resolved_ports.get_resolved_port(int(container_port), protocol)

    def invalidate_port_cache(self) -> None:
        if self._resolved_ports is not None:
            logger.debug("Invalidating %s port cache", self.kind)
        self._resolved_ports = None

    # ------------------------------------------------------------------
    # Diagnostics

    @staticmethod
    @abstractmethod
    async def host_capability_probe() -> HostProbe:
        ...


__all__ = [
    "COMPOSE_TIMEOUT",
    "ComposeDirection",
    "DEFAULT_TOOL_TIMEOUT",
    "HostProbe",
    "LifecycleAction",
    "PROBE_TIMEOUT",
    "RuntimeManager",
    "ToolResult",
    "run_tool",
]
