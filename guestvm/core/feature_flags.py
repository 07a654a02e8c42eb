"""Environment-driven rollout gates."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

EXPERIMENTAL_NATIVE_RUNTIME = "GUESTVM_EXPERIMENTAL_NATIVE_RUNTIME"
LEGACY_EXPERIMENTAL_QEMU_NATIVE = "GUESTVM_EXPERIMENTAL_QEMU_NATIVE"

TRUTHY_TOKENS = frozenset({"1", "true", "yes"})


def env_flag_enabled(name: str, environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return env.get(name, "").strip().lower() in TRUTHY_TOKENS


@dataclass(frozen=True)
class FeatureFlags:
    """Flags read once at startup and passed explicitly afterwards."""

    experimental_native_runtime: bool = False

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "FeatureFlags":
        return cls(
            experimental_native_runtime=(
                env_flag_enabled(EXPERIMENTAL_NATIVE_RUNTIME, environ)
                or env_flag_enabled(LEGACY_EXPERIMENTAL_QEMU_NATIVE, environ)
            ),
        )


__all__ = [
    "EXPERIMENTAL_NATIVE_RUNTIME",
    "LEGACY_EXPERIMENTAL_QEMU_NATIVE",
    "FeatureFlags",
    "env_flag_enabled",
]
