"""
Instance supervisor.

A single status poll (1 s) drives everything else. When the instance becomes
RUNNING the resolved-port cache is refreshed first, then the derived tasks
start: guest health, metrics, RDP status and (when experimental features are
on and the runtime supports it) the QMP control channel. Any transition away
from RUNNING stops those tasks and tears the control session down inside the
same tick, so the next tick never sees a stale session.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from guestvm.core.asyncio_utils import PeriodicTask
from guestvm.core.capabilities import RuntimeCapabilities, resolve
from guestvm.core.config_store import ConfigStore
from guestvm.core.control_channel import ControlChannelClient
from guestvm.core.descriptor import InstanceDescriptor
from guestvm.core.errors import (
    ActionInProgressError,
    GuestAPIError,
    GuestVMError,
    UnsupportedRuntimeError,
)
from guestvm.core.feature_flags import FeatureFlags
from guestvm.core.guest_api import GuestAPIClient
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import CommonPorts, GuestArchitecture, RuntimeStatus
from guestvm.core.platform_info import HostProfile
from guestvm.core.ports import PortRange
from guestvm.core.runtimes.base import ComposeDirection, LifecycleAction, RuntimeManager

logger = get_module_logger("Supervisor")
migration_logger = get_module_logger("ConfigMigration.Descriptor")

STATUS_INTERVAL = 1.0
HEALTH_INTERVAL = 1.0
METRICS_INTERVAL = 1.0
RDP_STATUS_INTERVAL = 1.0
CONTROL_INTERVAL = 2.0
UPDATE_SETTLE_DELAY = 3.0
UPDATE_HEALTH_TIMEOUT = 300.0
GUEST_API_HOST = "127.0.0.1"
GUEST_SERVER_ZIP = "guest_server.zip"

ControlFactory = Callable[[str, int], Awaitable[ControlChannelClient]]
ApiFactory = Callable[[str], GuestAPIClient]


@dataclass(frozen=True)
class GuestVersionCheck:
    app_version: str
    reported_version: str
    configured_arch: GuestArchitecture
    reported_arch: Optional[str]
    needs_version_update: bool
    needs_arch_update: bool

    @property
    def update_required(self) -> bool:
        return self.needs_version_update or self.needs_arch_update


def guest_server_zip_candidates(base_dir: Path, arch: GuestArchitecture) -> List[Path]:
    candidates = [
        base_dir / "dist" / arch.value / GUEST_SERVER_ZIP,
        base_dir / "dist" / f"windows-{arch.value}" / GUEST_SERVER_ZIP,
        base_dir / "dist" / f"guest_server_{arch.value}.zip",
    ]
    if arch is GuestArchitecture.AMD64:
        candidates.append(base_dir / GUEST_SERVER_ZIP)
    return candidates


class InstanceSupervisor:
    def __init__(
        self,
        runtime: RuntimeManager,
        config: ConfigStore,
        host: HostProfile,
        flags: FeatureFlags,
        *,
        backup_dir: Path,
        guest_server_dir: Optional[Path] = None,
        control_factory: ControlFactory = ControlChannelClient.create_connection,
        api_factory: ApiFactory = GuestAPIClient,
        status_interval: float = STATUS_INTERVAL,
        api_interval: float = HEALTH_INTERVAL,
        control_interval: float = CONTROL_INTERVAL,
    ):
        self.runtime = runtime
        self.config = config
        self.host = host
        self.flags = flags
        self.backup_dir = Path(backup_dir)
        self.guest_server_dir = guest_server_dir
        self._control_factory = control_factory
        self._api_factory = api_factory
        self.status_interval = status_interval
        self.api_interval = api_interval
        self.control_interval = control_interval

        self.status = RuntimeStatus.UNKNOWN
        self.is_online = False
        self.rdp_connected = False
        self.metrics: Optional[Dict] = None
        self.is_updating_guest_server = False
        self.action_in_progress = False
        self.last_version_check: Optional[GuestVersionCheck] = None

        self.control: Optional[ControlChannelClient] = None
        self.api: Optional[GuestAPIClient] = None
        self._status_task: Optional[PeriodicTask] = None
        self._derived_tasks: Dict[str, PeriodicTask] = {}
        self._poll_lock = asyncio.Lock()

    @property
    def capabilities(self) -> RuntimeCapabilities:
        return resolve(self.runtime.kind, self.host, self.flags)

    @property
    def api_url(self) -> Optional[str]:
        port = self.runtime.get_active_host_port(CommonPorts.API)
        return None if port is None else f"http://{GUEST_API_HOST}:{port}"

    @property
    def has_control_task(self) -> bool:
        return "control" in self._derived_tasks

    # ------------------------------------------------------------------
    # Monitoring loop

    def start_monitoring(self) -> None:
        if self._status_task is None:
            self._status_task = PeriodicTask(self.poll_once, self.status_interval, name="StatusPoll", logger=logger)
        self._status_task.start()

    async def stop_monitoring(self) -> None:
        if self._status_task is not None:
            await self._status_task.stop()
            self._status_task = None
        async with self._poll_lock:
            await self._destroy_derived_tasks()

    async def poll_once(self) -> RuntimeStatus:
        """One status tick. Transition side effects finish before it returns."""
        async with self._poll_lock:
            status = await self.runtime.status()
            if status is self.status:
                if status is RuntimeStatus.RUNNING and not self.runtime.cached_port_mappings:
                    # the port query on the transition tick came back empty
                    if await self.runtime.port():
                        await self._create_derived_tasks()
                return status

            previous, self.status = self.status, status
            logger.info("Instance state changed from %s to %s", previous, status)
            if status is RuntimeStatus.RUNNING:
                await self.runtime.port()
                await self._create_derived_tasks()
            else:
                await self._destroy_derived_tasks()
            return status

    async def _create_derived_tasks(self) -> None:
        await self._destroy_derived_tasks()
        url = self.api_url
        if url is None:
            logger.warning("Guest API port is not bound, guest polling disabled")
        else:
            self.api = self._api_factory(url)
            self._add_task("health", self._health_tick, self.api_interval)
            self._add_task("metrics", self._metrics_tick, self.api_interval)
            self._add_task("rdp", self._rdp_tick, self.api_interval)

        if self._control_enabled():
            self._add_task("control", self._control_tick, self.control_interval)
        logger.info("Derived polling started (%s)", ", ".join(self._derived_tasks) or "none")

    def _add_task(self, name: str, callback: Callable[[], Awaitable[None]], interval: float) -> None:
        task = PeriodicTask(callback, interval, name=f"{name}Poll", logger=logger)
        self._derived_tasks[name] = task
        task.start()

    async def _destroy_derived_tasks(self) -> None:
        tasks, self._derived_tasks = self._derived_tasks, {}
        for task in tasks.values():
            await task.stop()
        self.is_online = False
        self.rdp_connected = False
        self.metrics = None
        await self._teardown_control()
        if self.api is not None:
            await self.api.close()
            self.api = None
        if tasks:
            logger.info("Derived polling stopped")

    # ------------------------------------------------------------------
    # Derived ticks

    async def _health_tick(self) -> None:
        if self.api is None or self.is_updating_guest_server:
            return
        online = await self.api.health()
        if online is self.is_online:
            return
        self.is_online = online
        logger.info("Guest API went %s", "online" if online else "offline")
        if online:
            await self._on_guest_online()

    async def _metrics_tick(self) -> None:
        if self.api is None or not self.is_online or self.is_updating_guest_server:
            return
        try:
            self.metrics = await self.api.metrics()
        except GuestAPIError as e:
            logger.debug("Metrics unavailable: %s", e)

    async def _rdp_tick(self) -> None:
        if self.api is None or not self.is_online or self.is_updating_guest_server:
            return
        if not self.config.rdp_monitoring_enabled:
            self.rdp_connected = False
            return
        try:
            connected = await self.api.rdp_status()
        except GuestAPIError as e:
            logger.debug("RDP status unavailable: %s", e)
            return
        if connected is not self.rdp_connected:
            self.rdp_connected = connected
            logger.info("RDP connection status changed to %s", "connected" if connected else "disconnected")

    def _control_enabled(self) -> bool:
        return self.config.experimental_features and self.capabilities.supports_control_channel

    async def _control_tick(self) -> None:
        if not self._control_enabled():
            logger.info("Control channel disabled, stopping its poll")
            task = self._derived_tasks.pop("control", None)
            await self._teardown_control()
            if task is not None:
                await task.stop()
            return

        if self.control is not None and await self.control.is_alive():
            return

        # at most one fresh connection per tick; a dead session is never retried
        await self._teardown_control()
        port = self.runtime.get_active_host_port(CommonPorts.QMP)
        if port is None:
            logger.warning("Control port is not bound, cannot connect")
            return
        try:
            self.control = await self._control_factory(GUEST_API_HOST, port)
            logger.info("Control channel connected on port %d", port)
        except GuestVMError as e:
            logger.error("Control channel connection failed: %s", e)

    async def _teardown_control(self) -> None:
        control, self.control = self.control, None
        if control is not None:
            await control.close()
            logger.info("Control channel closed")

    # ------------------------------------------------------------------
    # Guest server version

    async def _on_guest_online(self) -> None:
        try:
            check = await self.check_guest_version()
        except GuestAPIError as e:
            logger.error("Guest version check failed: %s", e)
            return
        if not check.update_required:
            return
        if self.guest_server_dir is None:
            logger.info("Guest server update required but no update bundle is configured")
            return
        try:
            await self.update_guest_server(check.configured_arch)
        except GuestVMError as e:
            logger.error("Guest server update failed: %s", e)

    async def check_guest_version(self) -> GuestVersionCheck:
        if self.api is None:
            raise GuestAPIError("Guest API is not available")
        version = await self.api.version()
        configured = self.config.guest_architecture
        reported = version.architecture
        check = GuestVersionCheck(
            app_version=self.config.app_version,
            reported_version=version.version,
            configured_arch=configured,
            reported_arch=version.guest_arch,
            needs_version_update=version.version != self.config.app_version,
            needs_arch_update=(reported is not configured) if reported else configured is GuestArchitecture.ARM64,
        )
        self.last_version_check = check
        if check.needs_version_update:
            logger.info("Guest server %s differs from app version %s", check.reported_version, check.app_version)
        if check.needs_arch_update:
            logger.info(
                "Guest server architecture update required (configured: %s, reported: %s)",
                configured, version.guest_arch or "unknown",
            )
        return check

    async def update_guest_server(self, arch: GuestArchitecture) -> None:
        if self.api is None or self.guest_server_dir is None:
            raise GuestAPIError("Guest API or update bundle directory is not available")
        candidates = guest_server_zip_candidates(self.guest_server_dir, arch)
        zip_path = next((path for path in candidates if path.is_file()), None)
        if zip_path is None:
            raise GuestVMError(
                f"Could not locate guest server zip for {arch}. Checked: {', '.join(str(p) for p in candidates)}"
            )

        _, password = (await self.runtime.load_descriptor()).credentials
        self.is_updating_guest_server = True
        try:
            await self.api.update_guest_server(zip_path, password)
            await asyncio.sleep(UPDATE_SETTLE_DELAY)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + UPDATE_HEALTH_TIMEOUT
            while not await self.api.health():
                if loop.time() >= deadline:
                    raise GuestAPIError(f"Guest server did not come back within {UPDATE_HEALTH_TIMEOUT:.0f}s")
                await asyncio.sleep(1.0)
            logger.info("Update completed, guest server is online")
        finally:
            self.is_updating_guest_server = False

    # ------------------------------------------------------------------
    # Lifecycle helpers

    def _require_supported(self) -> RuntimeCapabilities:
        caps = self.capabilities
        if not caps.supported_on_host:
            raise UnsupportedRuntimeError(caps.unsupported_reason or f"{caps.runtime} is not supported on this host")
        return caps

    async def _run_action(self, action: LifecycleAction) -> RuntimeStatus:
        self._require_supported()
        if self.action_in_progress:
            raise ActionInProgressError(f"Cannot {action.value}: another action is in progress")
        self.action_in_progress = True
        try:
            logger.info("Running %s on %s instance", action.value, self.runtime.kind)
            await self.runtime.lifecycle(action)
        finally:
            self.action_in_progress = False
        return await self.poll_once()

    async def start(self) -> RuntimeStatus:
        return await self._run_action(LifecycleAction.START)

    async def stop(self) -> RuntimeStatus:
        return await self._run_action(LifecycleAction.STOP)

    async def restart(self) -> RuntimeStatus:
        return await self._run_action(LifecycleAction.RESTART)

    async def pause(self) -> RuntimeStatus:
        return await self._run_action(LifecycleAction.PAUSE)

    async def unpause(self) -> RuntimeStatus:
        return await self._run_action(LifecycleAction.UNPAUSE)

    async def apply(self, direction: ComposeDirection, extra_args: Sequence[str] = ()) -> RuntimeStatus:
        self._require_supported()
        await self.runtime.apply(direction, extra_args)
        return await self.poll_once()

    # ------------------------------------------------------------------
    # Descriptor maintenance

    def _backup_descriptor(self) -> Optional[Path]:
        source = self.runtime.descriptor_path
        if not source.exists():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        target = self.backup_dir / f"{int(time.time() * 1000)}-{source.name}"
        shutil.move(str(source), str(target))
        logger.info("Backed up descriptor to %s", target)
        return target

    async def replace_descriptor(self, descriptor: InstanceDescriptor) -> Optional[Path]:
        """Stop, bring down, back up, rewrite and bring the instance back up."""
        self._require_supported()
        if await self.runtime.status() is RuntimeStatus.RUNNING:
            await self.runtime.lifecycle(LifecycleAction.STOP)
        await self.runtime.apply(ComposeDirection.DOWN)
        backup = await asyncio.to_thread(self._backup_descriptor)
        await asyncio.to_thread(self.runtime.write_descriptor, descriptor)
        await self.runtime.apply(ComposeDirection.UP)
        await self.poll_once()
        return backup

    async def migrate_descriptor_ports(self) -> bool:
        """Move pre-0.9.0 installs off the fixed web-VNC port 8006.

        Returns True if the descriptor was rewritten. Failures are logged.
        """
        if not self.capabilities.supports_compose:
            return False
        try:
            if not await asyncio.to_thread(self.runtime.descriptor_path.exists):
                return False
            current = await self.runtime.load_descriptor()
            novnc = current.ports.get_binding(CommonPorts.NOVNC)
            if novnc is None or isinstance(novnc.host_port, PortRange) or novnc.host_port != int(CommonPorts.NOVNC):
                return False

            migration_logger.info("Migrating descriptor ports for pre-0.9.0 install")
            if await self.runtime.exists():
                migration_logger.info("Bringing current instance down")
                await self.runtime.apply(ComposeDirection.DOWN)

            default = self.runtime.default_descriptor
            current.ports = default.copy().ports
            current.image = default.image
            current.environment["USER_PORTS"] = default.environment.get("USER_PORTS", "")
            await asyncio.to_thread(self.runtime.write_descriptor, current)

            migration_logger.info("Recreating instance without starting it")
            await self.runtime.apply(ComposeDirection.UP, ["--no-start"])
            return True
        except GuestVMError as e:
            migration_logger.error("Automatic descriptor migration failed: %s", e)
            return False


__all__ = [
    "GuestVersionCheck",
    "InstanceSupervisor",
    "guest_server_zip_candidates",
]
