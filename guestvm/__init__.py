"""Guest OS runtime manager: Docker, Podman and native QEMU backends."""

from __future__ import annotations

from importlib import metadata

try:
    __version__ = metadata.version("guestvm")
except metadata.PackageNotFoundError:  # pragma: no cover - local dev
    __version__ = "0.9.0"


__all__ = ["__version__"]
