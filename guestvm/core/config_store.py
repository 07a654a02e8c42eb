"""Single owner of the persisted config after migration."""

from __future__ import annotations

import asyncio
import copy
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from guestvm.core.capabilities import supported_runtime_kinds
from guestvm.core.config_migration import ConfigMigrationEngine, MigrationResult
from guestvm.core.feature_flags import FeatureFlags
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import GuestArchitecture, RuntimeKind, normalize_runtime_kind, preferred_guest_architecture
from guestvm.core.platform_info import HostProfile

logger = get_module_logger("ConfigStore")

ConfigDict = Dict[str, Any]
Mutator = Callable[[ConfigDict], Optional[ConfigDict]]


class ConfigStore:
    """Holds the normalized config and persists every mutation.

    Mutations go through ``update(mutator)``: the mutator receives a private
    copy, edits it in place (or returns a replacement), and the result is
    written atomically before becoming the new current value.
    """

    def __init__(self, path: Path, engine: Optional[ConfigMigrationEngine] = None):
        self.path = Path(path)
        self.engine = engine or ConfigMigrationEngine()
        self._config: Optional[ConfigDict] = None
        self._lock = asyncio.Lock()
        self.last_migration: Optional[MigrationResult] = None

    def load(self, host: HostProfile, flags: FeatureFlags) -> ConfigDict:
        result = self.engine.read_config_file(self.path)
        self.last_migration = result
        config = copy.deepcopy(result.config)
        changed = False

        configured = normalize_runtime_kind(config.get("containerRuntime"))
        supported = supported_runtime_kinds(host, flags)
        if configured not in supported:
            fallback = supported[0] if supported else RuntimeKind.DOCKER
            logger.warning("Runtime '%s' is not supported on this host, using '%s'", configured, fallback)
            config["containerRuntime"] = fallback.value
            changed = True

        preferred = preferred_guest_architecture(normalize_runtime_kind(config["containerRuntime"])).value
        if config.get("guestArch") != preferred:
            logger.info(
                "Updating guest architecture from '%s' to '%s' for runtime '%s'",
                config.get("guestArch"), preferred, config["containerRuntime"],
            )
            config["guestArch"] = preferred
            changed = True

        version_data = config["versionData"]
        if version_data["current"] != self.engine.app_version:
            version_data["previous"] = version_data["current"]
            version_data["current"] = self.engine.app_version
            logger.info("Updated version data from '%s' to '%s'", version_data["previous"], version_data["current"])
            changed = True

        if config["schemaVersion"] < self.engine.current_version:
            logger.info(
                "Normalizing config schema version from '%s' to '%s'",
                config["schemaVersion"], self.engine.current_version,
            )
            config["schemaVersion"] = self.engine.current_version
            changed = True

        if changed:
            self.engine.write_config(self.path, config)
        self._config = config
        return copy.deepcopy(config)

    def _require(self) -> ConfigDict:
        if self._config is None:
            raise RuntimeError("ConfigStore.load() has not been called")
        return self._config

    @property
    def loaded(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> ConfigDict:
        return copy.deepcopy(self._require())

    def get(self, key: str, default: Any = None) -> Any:
        return copy.deepcopy(self._require().get(key, default))

    def update(self, mutator: Mutator) -> ConfigDict:
        working = copy.deepcopy(self._require())
        replacement = mutator(working)
        if replacement is not None:
            working = replacement
        if not isinstance(working, dict):
            raise TypeError(f"Config mutator produced {type(working).__name__}, expected dict")
        self.engine.write_config(self.path, working)
        self._config = working
        logger.debug("Wrote modified config to disk")
        return copy.deepcopy(working)

    async def update_async(self, mutator: Mutator) -> ConfigDict:
        async with self._lock:
            return await asyncio.to_thread(self.update, mutator)

    # ------------------------------------------------------------------
    # Typed accessors

    @property
    def runtime_kind(self) -> RuntimeKind:
        return normalize_runtime_kind(self._require().get("containerRuntime"))

    @property
    def guest_architecture(self) -> GuestArchitecture:
        return GuestArchitecture(self._require()["guestArch"])

    @property
    def experimental_features(self) -> bool:
        return bool(self._require().get("experimentalFeatures"))

    @property
    def rdp_monitoring_enabled(self) -> bool:
        return bool(self._require().get("rdpMonitoringEnabled"))

    @property
    def app_version(self) -> str:
        return self.engine.app_version


__all__ = ["ConfigStore"]
