"""
Instance descriptor (compose-equivalent) model.

On disk the descriptor is a YAML document shaped like a compose file with a
single ``windows`` service. The model keeps every key it does not understand
so that a load/write cycle never drops user edits.
"""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import aiofiles
import yaml

from guestvm.core.errors import DescriptorError
from guestvm.core.file_sync_utils import atomic_write_text
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.ports import PortMapper

logger = get_module_logger("Descriptor")

SERVICE_NAME = "windows"
STORAGE_GUEST_PATH = "/storage"

DEFAULT_RAM_GIB = 4
DEFAULT_CPU_CORES = 4
DEFAULT_DISK_GIB = 64

_SERVICE_KEYS = (
    "image",
    "platform",
    "container_name",
    "environment",
    "cap_add",
    "privileged",
    "ports",
    "stop_grace_period",
    "restart",
    "volumes",
    "devices",
)


def parse_gib_token(token: Optional[str], fallback: int) -> int:
    """``"8G"`` -> 8. Non-digits are stripped; empty or non-positive -> fallback."""
    if not token:
        return fallback
    digits = re.sub(r"[^0-9]", "", str(token))
    if not digits:
        return fallback
    value = int(digits)
    return value if value > 0 else fallback


def split_volume(volume: str) -> Optional[Tuple[str, str]]:
    """Split ``host:guest`` at the last colon; None when either side is empty."""
    index = volume.rfind(":")
    if index <= 0 or index >= len(volume) - 1:
        return None
    return volume[:index], volume[index + 1:]


def _string_env(environment: Any) -> Dict[str, str]:
    if environment is None:
        return {}
    if isinstance(environment, list):
        # compose also accepts ["KEY=value", ...]
        pairs = (item.split("=", 1) for item in environment if isinstance(item, str))
        return {pair[0]: pair[1] if len(pair) > 1 else "" for pair in pairs}
    if not isinstance(environment, Mapping):
        raise DescriptorError(f"environment must be a mapping, got {type(environment).__name__}")
    return {str(key): "" if value is None else str(value) for key, value in environment.items()}


def _string_list(value: Any, what: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DescriptorError(f"{what} must be a list, got {type(value).__name__}")
    return [str(item) for item in value]


@dataclass
class InstanceDescriptor:
    name: str
    image: str
    container_name: str
    environment: Dict[str, str] = field(default_factory=dict)
    named_volumes: Dict[str, Any] = field(default_factory=dict)
    volumes: List[str] = field(default_factory=list)
    ports: PortMapper = field(default_factory=PortMapper)
    restart: str = "no"
    cap_add: List[str] = field(default_factory=list)
    devices: List[str] = field(default_factory=list)
    privileged: Optional[bool] = None
    platform: Optional[str] = None
    stop_grace_period: Optional[str] = None
    service_extras: Dict[str, Any] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Compose mapping

    @classmethod
    def from_compose(cls, data: Mapping[str, Any]) -> "InstanceDescriptor":
        if not isinstance(data, Mapping):
            raise DescriptorError("Descriptor root must be a mapping")
        services = data.get("services")
        if not isinstance(services, Mapping) or not isinstance(services.get(SERVICE_NAME), Mapping):
            raise DescriptorError(f"Descriptor has no services.{SERVICE_NAME} block")
        service = services[SERVICE_NAME]

        named_volumes = data.get("volumes") or {}
        if not isinstance(named_volumes, Mapping):
            raise DescriptorError("Top-level volumes must be a mapping")

        privileged = service.get("privileged")
        return cls(
            name=str(data.get("name", "")),
            image=str(service.get("image", "")),
            container_name=str(service.get("container_name", "")),
            environment=_string_env(service.get("environment")),
            named_volumes=dict(named_volumes),
            volumes=_string_list(service.get("volumes"), "volumes"),
            ports=PortMapper.from_entries(service.get("ports") or []),
            restart=str(service.get("restart", "no")),
            cap_add=_string_list(service.get("cap_add"), "cap_add"),
            devices=_string_list(service.get("devices"), "devices"),
            privileged=None if privileged is None else bool(privileged),
            platform=service.get("platform"),
            stop_grace_period=service.get("stop_grace_period"),
            service_extras={k: copy.deepcopy(v) for k, v in service.items() if k not in _SERVICE_KEYS},
            extras={k: copy.deepcopy(v) for k, v in data.items() if k not in ("name", "volumes", "services")},
        )

    def to_compose(self) -> Dict[str, Any]:
        service: Dict[str, Any] = {"image": self.image}
        if self.platform:
            service["platform"] = self.platform
        service["container_name"] = self.container_name
        service["environment"] = dict(self.environment)
        service["cap_add"] = list(self.cap_add)
        if self.privileged is not None:
            service["privileged"] = self.privileged
        service["ports"] = self.ports.to_entries()
        if self.stop_grace_period:
            service["stop_grace_period"] = self.stop_grace_period
        service["restart"] = self.restart
        service["volumes"] = list(self.volumes)
        service["devices"] = list(self.devices)
        service.update(copy.deepcopy(self.service_extras))

        data: Dict[str, Any] = {
            "name": self.name,
            "volumes": copy.deepcopy(self.named_volumes),
            "services": {SERVICE_NAME: service},
        }
        data.update(copy.deepcopy(self.extras))
        return data

    def copy(self) -> "InstanceDescriptor":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # YAML

    @classmethod
    def from_yaml(cls, text: str) -> "InstanceDescriptor":
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise DescriptorError(f"Descriptor is not valid YAML: {e}") from e
        return cls.from_compose(data or {})

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_compose(), sort_keys=False, default_flow_style=False)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "InstanceDescriptor":
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))

    @classmethod
    async def load_async(cls, path: Union[str, Path]) -> "InstanceDescriptor":
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
        return cls.from_yaml(text)

    def write(self, path: Union[str, Path]) -> Path:
        target = atomic_write_text(path, self.to_yaml())
        logger.debug("Wrote descriptor %s", target)
        return target

    # ------------------------------------------------------------------
    # Helpers

    @property
    def credentials(self) -> Tuple[str, str]:
        return self.environment.get("USERNAME", ""), self.environment.get("PASSWORD", "")

    @property
    def memory_gib(self) -> int:
        return parse_gib_token(self.environment.get("RAM_SIZE"), DEFAULT_RAM_GIB)

    @property
    def cpu_cores(self) -> int:
        return parse_gib_token(self.environment.get("CPU_CORES"), DEFAULT_CPU_CORES)

    @property
    def disk_gib(self) -> int:
        return parse_gib_token(self.environment.get("DISK_SIZE"), DEFAULT_DISK_GIB)

    def storage_host_path(self, home: Optional[Union[str, Path]] = None) -> Optional[Path]:
        """Host side of the volume mounted at ``/storage``, with ``${HOME}`` expanded."""
        for volume in self.volumes:
            parts = split_volume(volume)
            if parts is None or parts[1] != STORAGE_GUEST_PATH:
                continue
            home_dir = str(home) if home is not None else os.path.expanduser("~")
            return Path(parts[0].replace("${HOME}", home_dir))
        return None


__all__ = [
    "InstanceDescriptor",
    "SERVICE_NAME",
    "parse_gib_token",
    "split_volume",
]
