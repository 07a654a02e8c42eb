"""
Versioned config migration.

The persisted config carries a ``schemaVersion`` cursor. Reading it runs an
ordered chain of single-step transforms (N -> N+1) until the current version
is reached, then normalizes the result onto the defaults. Unknown fields are
preserved. A config written by a newer build is normalized in place and never
migrated. A corrupt file is backed up next to the original before defaults
replace it.
"""

from __future__ import annotations

import copy
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from guestvm import __version__
from guestvm.core.errors import ConfigCorruptionError, MigrationFailureError
from guestvm.core.file_sync_utils import atomic_write_text
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import GuestArchitecture, RuntimeKind, normalize_runtime_kind, preferred_guest_architecture

logger = get_module_logger("ConfigMigration")

CURRENT_SCHEMA_VERSION = 2
LEGACY_RUNTIME_KEYS = ("runtime", "container", "containerType")
MULTI_MONITOR_MODES = ("None", "MultiMon", "Span")

ConfigDict = Dict[str, Any]
Transform = Callable[[ConfigDict], ConfigDict]


@dataclass(frozen=True)
class AppVersion:
    """``generation.major.minor`` with an optional ``-alpha`` tag."""

    token: str
    generation: int
    major: int
    minor: int
    alpha: bool = False

    @classmethod
    def parse(cls, token: str) -> "AppVersion":
        numbers, _, tag = token.partition("-")
        parts = numbers.split(".")
        if len(parts) != 3 or not all(part.isdigit() for part in parts):
            raise ValueError(f"Invalid version format: '{token}'")
        return cls(token, int(parts[0]), int(parts[1]), int(parts[2]), alpha="alpha" in tag)

    def __str__(self) -> str:
        return self.token


def normalize_version_token(value: Any, fallback: str) -> str:
    if isinstance(value, str):
        try:
            return str(AppVersion.parse(value))
        except ValueError:
            return fallback
    return fallback


def normalize_guest_architecture(value: Any, runtime: RuntimeKind) -> str:
    if value in (GuestArchitecture.AMD64.value, GuestArchitecture.ARM64.value):
        return value
    return preferred_guest_architecture(runtime).value


def infer_schema_version(config: Mapping[str, Any]) -> int:
    explicit = config.get("schemaVersion")
    if isinstance(explicit, int) and not isinstance(explicit, bool) and explicit >= 0:
        return explicit
    if "guestArch" in config:
        return 1
    return 0


def migrate_v0_to_v1(config: ConfigDict) -> ConfigDict:
    """Fold the legacy runtime keys into ``containerRuntime``."""
    migrated = copy.deepcopy(config)
    runtime_value = migrated.get("containerRuntime")
    if runtime_value is None:
        runtime_value = next((migrated[key] for key in LEGACY_RUNTIME_KEYS if migrated.get(key) is not None), None)
    migrated["containerRuntime"] = normalize_runtime_kind(runtime_value).value
    for key in LEGACY_RUNTIME_KEYS:
        migrated.pop(key, None)
    migrated["schemaVersion"] = 1
    return migrated


def migrate_v1_to_v2(config: ConfigDict) -> ConfigDict:
    """Pin ``guestArch`` to a valid architecture for the runtime."""
    migrated = copy.deepcopy(config)
    runtime = normalize_runtime_kind(migrated.get("containerRuntime"))
    migrated["containerRuntime"] = runtime.value
    migrated["guestArch"] = normalize_guest_architecture(migrated.get("guestArch"), runtime)
    migrated["schemaVersion"] = 2
    return migrated


DEFAULT_TRANSFORMS: Dict[int, Transform] = {
    0: migrate_v0_to_v1,
    1: migrate_v1_to_v2,
}


@dataclass(frozen=True)
class MigrationResult:
    config: ConfigDict
    was_migrated: bool
    started_from: int
    backup_path: Optional[Path] = None


class ConfigMigrationEngine:
    def __init__(
        self,
        *,
        current_version: int = CURRENT_SCHEMA_VERSION,
        transforms: Optional[Mapping[int, Transform]] = None,
        app_version: str = __version__,
    ):
        self.current_version = current_version
        self.transforms: Dict[int, Transform] = dict(DEFAULT_TRANSFORMS if transforms is None else transforms)
        self.app_version = app_version

    def default_config(self) -> ConfigDict:
        runtime = RuntimeKind.DOCKER
        return {
            "scale": 100,
            "scaleDesktop": 100,
            "smartcardEnabled": False,
            "rdpMonitoringEnabled": False,
            "passedThroughDevices": [],
            "customApps": [],
            "experimentalFeatures": False,
            "advancedFeatures": False,
            "multiMonitor": "None",
            "rdpArgs": [],
            "disableAnimations": False,
            "containerRuntime": runtime.value,
            "guestArch": preferred_guest_architecture(runtime).value,
            "schemaVersion": self.current_version,
            "versionData": {"previous": self.app_version, "current": self.app_version},
            "appsSortOrder": "name",
        }

    def normalize(self, config: Mapping[str, Any], schema_version: Optional[int] = None) -> ConfigDict:
        """Overlay ``config`` on the defaults and coerce the typed fields."""
        defaults = self.default_config()
        normalized = {**defaults, **copy.deepcopy(dict(config))}
        runtime = normalize_runtime_kind(config.get("containerRuntime"), RuntimeKind(defaults["containerRuntime"]))
        normalized["containerRuntime"] = runtime.value
        normalized["guestArch"] = normalize_guest_architecture(config.get("guestArch"), runtime)
        normalized["schemaVersion"] = self.current_version if schema_version is None else schema_version

        version_data = config.get("versionData")
        if not isinstance(version_data, Mapping):
            version_data = {}
        normalized["versionData"] = {
            "previous": normalize_version_token(version_data.get("previous"), self.app_version),
            "current": normalize_version_token(version_data.get("current"), self.app_version),
        }
        if normalized.get("multiMonitor") not in MULTI_MONITOR_MODES:
            normalized["multiMonitor"] = defaults["multiMonitor"]
        return normalized

    def migrate(self, config: Mapping[str, Any]) -> MigrationResult:
        """Run the transform chain.

        Raises:
            MigrationFailureError: no transform for an intermediate version, a
                transform raised, or a transform did not advance the version.
        """
        started_from = infer_schema_version(config)

        if started_from > self.current_version:
            logger.warning(
                "Config schema version %d is newer than supported version %d; leaving it unmigrated",
                started_from, self.current_version,
            )
            return MigrationResult(self.normalize(config, started_from), False, started_from)

        working: ConfigDict = copy.deepcopy(dict(config))
        version = started_from
        while version < self.current_version:
            transform = self.transforms.get(version)
            if transform is None:
                raise MigrationFailureError(version, f"No migration step available for schema version {version}")
            try:
                working = transform(working)
            except Exception as e:
                raise MigrationFailureError(version, f"Migration step from schema version {version} failed: {e}") from e

            next_version = infer_schema_version(working)
            if next_version <= version:
                raise MigrationFailureError(version, f"Migration step from schema version {version} did not advance")
            logger.info("Migrated config schema %d -> %d", version, next_version)
            version = next_version

        return MigrationResult(self.normalize(working, version), version != started_from, started_from)

    # ------------------------------------------------------------------
    # File handling

    def write_config(self, path: Path, config: Mapping[str, Any]) -> None:
        atomic_write_text(path, json.dumps(config, indent=4) + "\n")

    def _backup_corrupt(self, path: Path, raw: bytes) -> Path:
        backup = path.with_name(f"{path.stem}.corrupt.{int(time.time() * 1000)}.json")
        backup.write_bytes(raw)
        logger.error("Backed up corrupted config to '%s'", backup)
        return backup

    @staticmethod
    def _parse(raw: bytes) -> ConfigDict:
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ConfigCorruptionError(f"Config is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ConfigCorruptionError("Config root must be a JSON object")
        return parsed

    def read_config_file(self, path: Path, *, write_default: bool = True) -> MigrationResult:
        """Load, migrate and normalize the config at ``path``. Never raises for content problems."""
        path = Path(path)
        if not path.exists():
            config = self.default_config()
            if write_default:
                self.write_config(path, config)
                logger.info("Wrote default config to %s", path)
            return MigrationResult(config, False, self.current_version)

        raw = path.read_bytes()
        try:
            parsed = self._parse(raw)
        except ConfigCorruptionError as e:
            logger.error("Failed to parse config, falling back to defaults: %s", e)
            backup = self._backup_corrupt(path, raw)
            config = self.default_config()
            if write_default:
                self.write_config(path, config)
            return MigrationResult(config, False, self.current_version, backup_path=backup)

        try:
            result = self.migrate(parsed)
        except MigrationFailureError as e:
            logger.error("Config migration failed at schema version %d: %s", e.schema_version, e)
            fallback_version = infer_schema_version(parsed)
            return MigrationResult(self.normalize(parsed, fallback_version), False, fallback_version)

        if result.was_migrated:
            logger.info(
                "Migrated config schema version from %d to %d",
                result.started_from, result.config["schemaVersion"],
            )

        has_all_keys = all(key in parsed for key in self.default_config())
        if result.was_migrated or result.config != parsed or not has_all_keys:
            self.write_config(path, result.config)
            logger.info("Wrote normalized config to disk")
        return result


__all__ = [
    "AppVersion",
    "CURRENT_SCHEMA_VERSION",
    "ConfigMigrationEngine",
    "MigrationResult",
    "infer_schema_version",
    "migrate_v0_to_v1",
    "migrate_v1_to_v2",
]
