"""
Native QEMU backend.

Runs the hypervisor as a detached process instead of going through a
container engine. Every piece of state lives in one runtime directory:

    qemu-native/
        qemu.pid              PID of the running hypervisor
        edk2-vars.fd          per-instance UEFI variables (copied from template)
        windows-arm64.qcow2   default disk (unless a /storage volume is mapped)
        qemu.stdout.log
        qemu.stderr.log

The PID file is what lets a later invocation find and manage a hypervisor it
did not spawn itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import psutil

from guestvm.core.descriptor import InstanceDescriptor
from guestvm.core.errors import GuestVMError, PrerequisiteMissingError, ProcessLifecycleError
from guestvm.core.file_sync_utils import atomic_write_text
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import CommonPorts, RuntimeKind, RuntimeStatus
from guestvm.core.platform_info import HostProfile
from guestvm.core.ports import ResolvedPortBinding
from guestvm.core.runtimes.base import (
    PROBE_TIMEOUT,
    ComposeDirection,
    HostProbe,
    LifecycleAction,
    RuntimeManager,
    run_tool,
)

logger = get_module_logger("QemuNative")

QEMU_BIN_CANDIDATES = (
    "/opt/homebrew/bin/qemu-system-aarch64",
    "/usr/local/bin/qemu-system-aarch64",
    "qemu-system-aarch64",
)
QEMU_IMG_CANDIDATES = (
    "/opt/homebrew/bin/qemu-img",
    "/usr/local/bin/qemu-img",
    "qemu-img",
)
EDK2_CODE_CANDIDATES = (
    "/opt/homebrew/share/qemu/edk2-aarch64-code.fd",
    "/usr/local/share/qemu/edk2-aarch64-code.fd",
)
EDK2_VARS_CANDIDATES = (
    "/opt/homebrew/share/qemu/edk2-arm-vars.fd",
    "/usr/local/share/qemu/edk2-arm-vars.fd",
)

PID_FILE = "qemu.pid"
VARS_FILE = "edk2-vars.fd"
DISK_FILE = "windows-arm64.qcow2"
STDOUT_LOG = "qemu.stdout.log"
STDERR_LOG = "qemu.stderr.log"

GRACE_TIMEOUT = 5.0
POLL_INTERVAL = 0.1
DISK_CREATE_TIMEOUT = 120.0
DEFAULT_FORWARD_ADDRESS = "127.0.0.1"


@dataclass(frozen=True)
class NativeArtifacts:
    qemu_binary: str
    qemu_img_binary: str
    firmware_code: Path
    firmware_vars_template: Path
    vars_path: Path
    disk_path: Path


@dataclass(frozen=True)
class QemuNativeProbe(HostProbe):
    qemu_installed: bool = False
    qemu_img_installed: bool = False
    firmware_code_present: bool = False
    firmware_vars_present: bool = False
    hardware_acceleration: bool = False


def _process_alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # exists but owned by someone else
        return True


def pid_is_alive(pid: int) -> bool:
    try:
        return _process_alive(psutil.Process(pid))
    except psutil.NoSuchProcess:
        return False


async def terminate_with_grace(
    pid: int,
    grace_timeout: float = GRACE_TIMEOUT,
    poll_interval: float = POLL_INTERVAL,
) -> bool:
    """SIGTERM, poll until ``grace_timeout``, then SIGKILL.

    Returns:
        True if the process had to be force-killed.
    """
    try:
        proc = psutil.Process(pid)
        proc.terminate()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied as e:
        raise ProcessLifecycleError(f"Not permitted to signal PID {pid}", e) from e

    loop = asyncio.get_running_loop()
    deadline = loop.time() + grace_timeout
    while _process_alive(proc) and loop.time() < deadline:
        await asyncio.sleep(poll_interval)

    if not _process_alive(proc):
        return False

    logger.warning("PID %d ignored SIGTERM for %.1fs, sending SIGKILL", pid, grace_timeout)
    try:
        proc.kill()
    except psutil.NoSuchProcess:
        return False
    return True


def _first_existing(candidates: Sequence[str]) -> Optional[Path]:
    for candidate in candidates:
        path = Path(candidate).expanduser()
        if path.is_file():
            return path
    return None


async def _first_runnable(candidates: Sequence[str]) -> Optional[str]:
    for candidate in candidates:
        try:
            await run_tool([candidate, "--version"], timeout=PROBE_TIMEOUT)
            return candidate
        except GuestVMError:
            continue
    return None


class QemuNativeRuntime(RuntimeManager):
    kind = RuntimeKind.QEMU_NATIVE

    def __init__(
        self,
        descriptor_path: Path,
        host: HostProfile,
        runtime_dir: Path,
        *,
        qemu_candidates: Sequence[str] = QEMU_BIN_CANDIDATES,
        qemu_img_candidates: Sequence[str] = QEMU_IMG_CANDIDATES,
        firmware_code_candidates: Sequence[str] = EDK2_CODE_CANDIDATES,
        firmware_vars_candidates: Sequence[str] = EDK2_VARS_CANDIDATES,
        grace_timeout: float = GRACE_TIMEOUT,
        home: Optional[Path] = None,
    ):
        super().__init__(descriptor_path, host)
        self.runtime_dir = Path(runtime_dir)
        self.qemu_candidates = tuple(qemu_candidates)
        self.qemu_img_candidates = tuple(qemu_img_candidates)
        self.firmware_code_candidates = tuple(firmware_code_candidates)
        self.firmware_vars_candidates = tuple(firmware_vars_candidates)
        self.grace_timeout = grace_timeout
        self.home = home
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def pid_path(self) -> Path:
        return self.runtime_dir / PID_FILE

    @property
    def stdout_log_path(self) -> Path:
        return self.runtime_dir / STDOUT_LOG

    @property
    def stderr_log_path(self) -> Path:
        return self.runtime_dir / STDERR_LOG

    # ------------------------------------------------------------------
    # RuntimeManager

    def write_descriptor(self, descriptor: InstanceDescriptor) -> None:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        super().write_descriptor(descriptor)

    async def apply(self, direction: ComposeDirection, extra_args: Sequence[str] = ()) -> None:
        direction = ComposeDirection(direction)
        if extra_args:
            logger.debug("Ignoring compose arguments %s", list(extra_args))
        if direction is ComposeDirection.UP:
            await self._start_vm()
        else:
            await self._stop_vm()

    async def lifecycle(self, action: LifecycleAction) -> None:
        action = LifecycleAction(action)
        if action is LifecycleAction.START:
            await self._start_vm()
        elif action is LifecycleAction.STOP:
            await self._stop_vm()
        elif action is LifecycleAction.RESTART:
            await self._stop_vm()
            await self._start_vm()
        else:
            self._signal_running(suspend=action is LifecycleAction.PAUSE)

    async def _query_status(self) -> RuntimeStatus:
        pid = self.read_pid()
        if pid is not None and pid_is_alive(pid):
            return RuntimeStatus.RUNNING
        return RuntimeStatus.EXITED

    async def _query_ports(self) -> List[ResolvedPortBinding]:
        descriptor = await self.load_descriptor()
        bindings: List[ResolvedPortBinding] = []
        for binding in descriptor.ports:
            if not binding.is_resolved:
                logger.warning("Cannot forward %s natively, a fixed host port is required", binding)
                continue
            resolved = binding.resolve(binding.host_port)  # type: ignore[arg-type]
            if resolved.host_address is None:
                resolved = ResolvedPortBinding(
                    container_port=resolved.container_port,
                    host_port=resolved.host_port,
                    protocol=resolved.protocol,
                    host_address=DEFAULT_FORWARD_ADDRESS,
                )
            bindings.append(resolved)
        return bindings

    async def exists(self) -> bool:
        return await asyncio.to_thread(self.descriptor_path.exists)

    async def remove(self) -> None:
        await self._stop_vm()
        self._discard_pid_file()

    # ------------------------------------------------------------------
    # PID file

    def read_pid(self) -> Optional[int]:
        try:
            raw = self.pid_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not (raw.isascii() and raw.isdigit()) or int(raw) <= 0:
            logger.warning("Ignoring malformed PID file content %r", raw)
            return None
        return int(raw)

    def _discard_pid_file(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.pid_path.unlink()

    def _signal_running(self, *, suspend: bool) -> None:
        pid = self.read_pid()
        if pid is None or not pid_is_alive(pid):
            logger.warning("Cannot %s: VM is not running", "pause" if suspend else "unpause")
            return
        try:
            proc = psutil.Process(pid)
            if suspend:
                proc.suspend()
            else:
                proc.resume()
        except psutil.Error as e:
            raise ProcessLifecycleError(f"Failed to {'suspend' if suspend else 'resume'} PID {pid}: {e}") from e
        logger.info("VM %s (PID %d)", "paused" if suspend else "resumed", pid)

    # ------------------------------------------------------------------
    # Start / stop

    async def _start_vm(self) -> None:
        pid = self.read_pid()
        if pid is not None and not pid_is_alive(pid):
            logger.info("Discarding stale PID file (PID %d is gone)", pid)
            self._discard_pid_file()

        if await self.status() is RuntimeStatus.RUNNING:
            logger.info("VM already running")
            return

        descriptor = await self.load_descriptor()
        artifacts = await self.resolve_artifacts(descriptor)

        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        await self._ensure_firmware_vars(artifacts)
        await self._ensure_disk(artifacts, descriptor)

        args = self.build_args(descriptor, artifacts)
        logger.info("Launching VM: %s %s", artifacts.qemu_binary, " ".join(args))

        with open(self.stdout_log_path, "ab") as stdout_log, open(self.stderr_log_path, "ab") as stderr_log:
            try:
                process = await asyncio.create_subprocess_exec(
                    artifacts.qemu_binary,
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=stdout_log,
                    stderr=stderr_log,
                    start_new_session=True,
                )
            except OSError as e:
                raise ProcessLifecycleError(f"Failed to spawn {artifacts.qemu_binary}", e) from e

        self._process = process
        atomic_write_text(self.pid_path, str(process.pid))
        logger.info("VM started with PID %d", process.pid)
        await self.port()

    async def _stop_vm(self) -> None:
        pid = self.read_pid()
        if pid is None:
            self._discard_pid_file()
            return

        try:
            forced = await terminate_with_grace(pid, self.grace_timeout)
            if self._process is not None and self._process.pid == pid:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._process.wait(), timeout=1.0)
            logger.info("VM (PID %d) %s", pid, "force-killed" if forced else "stopped")
        finally:
            self._process = None
            self._discard_pid_file()
            self.invalidate_port_cache()

    # ------------------------------------------------------------------
    # Artifacts

    def disk_path_for(self, descriptor: InstanceDescriptor) -> Path:
        storage = descriptor.storage_host_path(self.home)
        if storage is None:
            return self.runtime_dir / DISK_FILE
        return storage / DISK_FILE

    async def resolve_artifacts(self, descriptor: InstanceDescriptor) -> NativeArtifacts:
        """Locate binaries and firmware, failing on the first missing one."""
        qemu_binary = await _first_runnable(self.qemu_candidates)
        if qemu_binary is None:
            raise PrerequisiteMissingError("QEMU system emulator (qemu-system-aarch64)", self.qemu_candidates)

        qemu_img = await _first_runnable(self.qemu_img_candidates)
        if qemu_img is None:
            raise PrerequisiteMissingError("QEMU disk tool (qemu-img)", self.qemu_img_candidates)

        firmware_code = _first_existing(self.firmware_code_candidates)
        if firmware_code is None:
            raise PrerequisiteMissingError("EDK2 AArch64 firmware code", self.firmware_code_candidates)

        vars_template = _first_existing(self.firmware_vars_candidates)
        if vars_template is None:
            raise PrerequisiteMissingError("EDK2 AArch64 firmware vars template", self.firmware_vars_candidates)

        return NativeArtifacts(
            qemu_binary=qemu_binary,
            qemu_img_binary=qemu_img,
            firmware_code=firmware_code,
            firmware_vars_template=vars_template,
            vars_path=self.runtime_dir / VARS_FILE,
            disk_path=self.disk_path_for(descriptor),
        )

    async def _ensure_firmware_vars(self, artifacts: NativeArtifacts) -> None:
        if artifacts.vars_path.exists():
            return
        logger.info("Seeding UEFI variables from %s", artifacts.firmware_vars_template)
        await asyncio.to_thread(shutil.copyfile, artifacts.firmware_vars_template, artifacts.vars_path)

    async def _ensure_disk(self, artifacts: NativeArtifacts, descriptor: InstanceDescriptor) -> None:
        if artifacts.disk_path.exists():
            return
        artifacts.disk_path.parent.mkdir(parents=True, exist_ok=True)
        size = f"{descriptor.disk_gib}G"
        logger.info("Creating %s disk at %s", size, artifacts.disk_path)
        await run_tool(
            [artifacts.qemu_img_binary, "create", "-f", "qcow2", str(artifacts.disk_path), size],
            timeout=DISK_CREATE_TIMEOUT,
        )

    # ------------------------------------------------------------------
    # Command line

    def accelerator(self) -> str:
        if self.host.is_macos:
            return "hvf"
        if self.host.is_linux and os.path.exists("/dev/kvm"):
            return "kvm"
        return "tcg"

    def control_listen_address(self, descriptor: InstanceDescriptor) -> str:
        """QMP listens directly on the host side of the control-port binding."""
        binding = descriptor.ports.get_binding(CommonPorts.QMP)
        if binding is None or not binding.is_resolved:
            return f"{DEFAULT_FORWARD_ADDRESS}:{int(CommonPorts.QMP)}"
        return f"{binding.host_address or DEFAULT_FORWARD_ADDRESS}:{binding.host_port}"

    def host_forward_tokens(self, descriptor: InstanceDescriptor) -> List[str]:
        tokens = []
        for binding in descriptor.ports:
            if binding.matches(CommonPorts.QMP):
                continue
            if not binding.is_resolved:
                logger.warning("Skipping %s: user-mode networking needs a fixed host port", binding)
                continue
            address = binding.host_address or DEFAULT_FORWARD_ADDRESS
            tokens.append(f"hostfwd={binding.protocol}:{address}:{binding.host_port}-:{binding.container_port}")
        return tokens

    def build_args(self, descriptor: InstanceDescriptor, artifacts: NativeArtifacts) -> List[str]:
        accel = self.accelerator()
        netdev = ",".join(["user", "id=net0", *self.host_forward_tokens(descriptor)])
        return [
            "-accel", accel,
            "-machine", "virt,highmem=on",
            "-cpu", "max" if accel == "tcg" else "host",
            "-smp", str(descriptor.cpu_cores),
            "-m", str(descriptor.memory_gib * 1024),
            "-drive", f"if=pflash,format=raw,readonly=on,file={artifacts.firmware_code}",
            "-drive", f"if=pflash,format=raw,file={artifacts.vars_path}",
            "-drive", f"if=virtio,file={artifacts.disk_path},format=qcow2",
            "-netdev", netdev,
            "-device", "virtio-net-pci,netdev=net0",
            "-qmp", f"tcp:{self.control_listen_address(descriptor)},server,wait=off",
            "-display", "none",
            "-monitor", "none",
            "-serial", "none",
        ]

    # ------------------------------------------------------------------
    # Diagnostics

    @staticmethod
    async def host_capability_probe() -> QemuNativeProbe:
        hardware = False
        if sys.platform == "darwin":
            try:
                result = await run_tool(["sysctl", "-n", "kern.hv_support"], timeout=PROBE_TIMEOUT)
                hardware = result.stdout.strip() == "1"
            except GuestVMError as e:
                logger.debug("HVF probe failed: %s", e)
        else:
            hardware = os.path.exists("/dev/kvm")

        return QemuNativeProbe(
            qemu_installed=await _first_runnable(QEMU_BIN_CANDIDATES) is not None,
            qemu_img_installed=await _first_runnable(QEMU_IMG_CANDIDATES) is not None,
            firmware_code_present=_first_existing(EDK2_CODE_CANDIDATES) is not None,
            firmware_vars_present=_first_existing(EDK2_VARS_CANDIDATES) is not None,
            hardware_acceleration=hardware,
        )


__all__ = [
    "NativeArtifacts",
    "QemuNativeProbe",
    "QemuNativeRuntime",
    "pid_is_alive",
    "terminate_with_grace",
]
