"""Centralized path layout for guestvm state."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

APP_DIR_ENV = "GUESTVM_HOME"
DEFAULT_APP_DIR_NAME = ".guestvm"

CONFIG_FILE_NAME = "guestvm.config.json"
DOCKER_DESCRIPTOR_NAME = "docker-compose.yml"
PODMAN_DESCRIPTOR_NAME = "podman-compose.yml"
QEMU_NATIVE_DESCRIPTOR_NAME = "qemu-native-compose.yml"


def default_app_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return ``$GUESTVM_HOME`` if set, else ``~/.guestvm``."""
    env = os.environ if environ is None else environ
    override = env.get(APP_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_APP_DIR_NAME


@dataclass(frozen=True)
class AppPaths:
    """Every on-disk location used by one guestvm installation."""

    root: Path

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "AppPaths":
        return cls(default_app_dir(environ))

    @property
    def config_file(self) -> Path:
        return self.root / CONFIG_FILE_NAME

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def app_log_file(self) -> Path:
        return self.logs_dir / "guestvm.log"

    @property
    def migrations_log_file(self) -> Path:
        return self.logs_dir / "migrations.log"

    @property
    def backup_dir(self) -> Path:
        return self.root / "backup"

    @property
    def docker_descriptor(self) -> Path:
        return self.root / DOCKER_DESCRIPTOR_NAME

    @property
    def podman_descriptor(self) -> Path:
        return self.root / PODMAN_DESCRIPTOR_NAME

    @property
    def qemu_native_descriptor(self) -> Path:
        return self.root / QEMU_NATIVE_DESCRIPTOR_NAME

    @property
    def qemu_runtime_dir(self) -> Path:
        return self.root / "qemu-native"

    def ensure(self) -> "AppPaths":
        self.root.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self


__all__ = [
    "APP_DIR_ENV",
    "AppPaths",
    "default_app_dir",
]
