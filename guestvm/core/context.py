"""Process-wide objects, built once at startup and passed explicitly."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from guestvm.core.config_store import ConfigStore
from guestvm.core.feature_flags import FeatureFlags
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.paths import AppPaths
from guestvm.core.platform_info import HostProfile, detect_host_profile
from guestvm.core.runtimes import RuntimeManager, create_runtime
from guestvm.core.supervisor import InstanceSupervisor

logger = get_module_logger("AppContext")


@dataclass
class AppContext:
    paths: AppPaths
    host: HostProfile
    flags: FeatureFlags
    config: ConfigStore
    runtime: RuntimeManager

    def create_supervisor(self, **kwargs) -> InstanceSupervisor:
        return InstanceSupervisor(
            self.runtime,
            self.config,
            self.host,
            self.flags,
            backup_dir=self.paths.backup_dir,
            **kwargs,
        )


def create_app_context(
    environ: Optional[Mapping[str, str]] = None,
    *,
    host: Optional[HostProfile] = None,
) -> AppContext:
    """Resolve paths and flags, migrate + load the config, then pick the runtime.

    The runtime is created only after the config is normalized so a config
    naming an unsupported backend never instantiates it.
    """
    paths = AppPaths.from_environment(environ).ensure()
    host = host or detect_host_profile()
    flags = FeatureFlags.from_environ(environ)

    config = ConfigStore(paths.config_file)
    config.load(host, flags)
    runtime = create_runtime(config.runtime_kind, paths, host)
    logger.info("Using %s runtime on %s (app dir %s)", runtime.kind, host, paths.root)
    return AppContext(paths=paths, host=host, flags=flags, config=config, runtime=runtime)


__all__ = ["AppContext", "create_app_context"]
