"""Native backend tests against small shell scripts standing in for QEMU.

The fake hypervisor answers ``--version`` and otherwise sleeps until
signalled; the fake disk tool just touches the requested image path.
"""

import asyncio
import stat
from pathlib import Path

import psutil
import pytest
import pytest_asyncio

from guestvm.core.errors import PrerequisiteMissingError
from guestvm.core.models import CommonPorts, RuntimeStatus
from guestvm.core.runtimes.base import ComposeDirection, LifecycleAction
from guestvm.core.runtimes.qemu_native import QemuNativeRuntime, pid_is_alive, terminate_with_grace

pytestmark = pytest.mark.posix

FAKE_QEMU = """#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "QEMU emulator version 9.1.0"
    exit 0
fi
echo "fake qemu $*"
exec sleep 1000
"""

STUBBORN_QEMU = """#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "QEMU emulator version 9.1.0"
    exit 0
fi
trap '' TERM
while true; do
    sleep 0.1
done
"""

FAKE_QEMU_IMG = """#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "qemu-img version 9.1.0"
    exit 0
fi
# qemu-img create -f qcow2 <path> <size>
touch "$4"
"""


def _script(path: Path, body: str) -> str:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def toolchain(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    firmware = tmp_path / "share"
    firmware.mkdir()
    (firmware / "edk2-aarch64-code.fd").write_bytes(b"code")
    (firmware / "edk2-arm-vars.fd").write_bytes(b"vars")
    return {
        "qemu": _script(bin_dir / "qemu-system-aarch64", FAKE_QEMU),
        "stubborn": _script(bin_dir / "qemu-stubborn", STUBBORN_QEMU),
        "qemu_img": _script(bin_dir / "qemu-img", FAKE_QEMU_IMG),
        "code": str(firmware / "edk2-aarch64-code.fd"),
        "vars": str(firmware / "edk2-arm-vars.fd"),
    }


def make_runtime(tmp_path, host, toolchain, *, qemu_key="qemu", grace_timeout=2.0) -> QemuNativeRuntime:
    return QemuNativeRuntime(
        tmp_path / "qemu-native-compose.yml",
        host,
        tmp_path / "qemu-native",
        qemu_candidates=[str(tmp_path / "missing-qemu"), toolchain[qemu_key]],
        qemu_img_candidates=[toolchain["qemu_img"]],
        firmware_code_candidates=[toolchain["code"]],
        firmware_vars_candidates=[toolchain["vars"]],
        grace_timeout=grace_timeout,
        home=tmp_path / "home",
    )


@pytest_asyncio.fixture
async def runtime(tmp_path, mac_arm_host, toolchain):
    rt = make_runtime(tmp_path, mac_arm_host, toolchain)
    yield rt
    await rt.apply(ComposeDirection.DOWN)


class TestStartStop:

    @pytest.mark.asyncio
    async def test_start_creates_state_and_is_idempotent(self, runtime):
        await runtime.lifecycle(LifecycleAction.START)

        pid = runtime.read_pid()
        assert pid is not None
        assert pid_is_alive(pid)
        assert await runtime.status() is RuntimeStatus.RUNNING
        assert (runtime.runtime_dir / "edk2-vars.fd").read_bytes() == b"vars"
        assert (runtime.runtime_dir / "windows-arm64.qcow2").exists()

        await runtime.lifecycle(LifecycleAction.START)

        assert runtime.read_pid() == pid

    @pytest.mark.asyncio
    async def test_start_resolves_fixed_ports(self, runtime):
        await runtime.apply(ComposeDirection.UP)

        assert runtime.get_active_host_port(CommonPorts.QMP) == 47290
        assert runtime.get_active_host_port(CommonPorts.RDP, "udp") == 47301

    @pytest.mark.asyncio
    async def test_graceful_stop_removes_pid_file(self, runtime):
        await runtime.lifecycle(LifecycleAction.START)
        pid = runtime.read_pid()

        await runtime.lifecycle(LifecycleAction.STOP)

        assert not runtime.pid_path.exists()
        assert not pid_is_alive(pid)
        assert await runtime.status() is RuntimeStatus.EXITED
        assert runtime.cached_port_mappings is None

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_stubborn_process_is_force_killed(self, tmp_path, mac_arm_host, toolchain):
        rt = make_runtime(tmp_path, mac_arm_host, toolchain, qemu_key="stubborn", grace_timeout=0.5)
        await rt.lifecycle(LifecycleAction.START)
        pid = rt.read_pid()

        await rt.lifecycle(LifecycleAction.STOP)

        assert not rt.pid_path.exists()
        assert not pid_is_alive(pid)

    @pytest.mark.asyncio
    async def test_stale_pid_is_discarded(self, runtime):
        gone = await asyncio.create_subprocess_exec("sh", "-c", "exit 0")
        await gone.wait()
        runtime.runtime_dir.mkdir(parents=True, exist_ok=True)
        runtime.pid_path.write_text(str(gone.pid))

        assert await runtime.status() is RuntimeStatus.EXITED

        await runtime.lifecycle(LifecycleAction.START)

        assert runtime.read_pid() != gone.pid
        assert await runtime.status() is RuntimeStatus.RUNNING

    @pytest.mark.asyncio
    async def test_malformed_pid_file(self, runtime):
        runtime.runtime_dir.mkdir(parents=True, exist_ok=True)
        runtime.pid_path.write_text("not-a-pid")

        assert runtime.read_pid() is None
        assert await runtime.status() is RuntimeStatus.EXITED

    @pytest.mark.asyncio
    async def test_non_ascii_digit_pid_file(self, runtime):
        runtime.runtime_dir.mkdir(parents=True, exist_ok=True)
        runtime.pid_path.write_text("²", encoding="utf-8")

        assert runtime.read_pid() is None

    @pytest.mark.asyncio
    async def test_stop_without_pid_file_is_noop(self, runtime):
        await runtime.lifecycle(LifecycleAction.STOP)

        assert not runtime.pid_path.exists()

    @pytest.mark.asyncio
    async def test_remove_absent_instance_twice(self, runtime):
        await runtime.remove()
        await runtime.remove()

        assert not runtime.pid_path.exists()
        assert await runtime.status() is RuntimeStatus.EXITED

    @pytest.mark.asyncio
    async def test_pause_keeps_running_status(self, runtime):
        await runtime.lifecycle(LifecycleAction.START)

        await runtime.lifecycle(LifecycleAction.PAUSE)
        assert await runtime.status() is RuntimeStatus.RUNNING

        await runtime.lifecycle(LifecycleAction.UNPAUSE)
        assert await runtime.status() is RuntimeStatus.RUNNING

    @pytest.mark.asyncio
    async def test_missing_prerequisite_names_requirement(self, tmp_path, mac_arm_host, toolchain):
        rt = make_runtime(tmp_path, mac_arm_host, toolchain)
        rt.firmware_code_candidates = (str(tmp_path / "nowhere.fd"),)

        with pytest.raises(PrerequisiteMissingError) as excinfo:
            await rt.lifecycle(LifecycleAction.START)

        assert "firmware code" in excinfo.value.requirement
        assert excinfo.value.candidates == [str(tmp_path / "nowhere.fd")]
        assert not rt.pid_path.exists()


class TestCommandLine:

    @pytest.mark.asyncio
    async def test_build_args(self, tmp_path, mac_arm_host, toolchain):
        rt = make_runtime(tmp_path, mac_arm_host, toolchain)
        descriptor = await rt.load_descriptor()
        artifacts = await rt.resolve_artifacts(descriptor)

        args = rt.build_args(descriptor, artifacts)

        assert args[args.index("-accel") + 1] == "hvf"
        assert args[args.index("-qmp") + 1] == "tcp:127.0.0.1:47290,server,wait=off"
        netdev = args[args.index("-netdev") + 1]
        assert "hostfwd=tcp:127.0.0.1:47300-:3389" in netdev
        assert "hostfwd=udp:127.0.0.1:47301-:3389" in netdev
        assert ":7149" not in netdev
        assert args[args.index("-m") + 1] == "4096"
        assert artifacts.qemu_binary == toolchain["qemu"]

    @pytest.mark.asyncio
    async def test_ranged_ports_are_skipped(self, tmp_path, mac_arm_host, toolchain):
        rt = make_runtime(tmp_path, mac_arm_host, toolchain)
        descriptor = await rt.load_descriptor()
        descriptor.ports.set_binding(8006, "47270-47279")

        tokens = rt.host_forward_tokens(descriptor)

        assert not any(token.endswith("-:8006") for token in tokens)

    def test_storage_volume_moves_disk(self, tmp_path, mac_arm_host, toolchain):
        rt = make_runtime(tmp_path, mac_arm_host, toolchain)
        descriptor = rt.default_descriptor.copy()
        descriptor.volumes.append("${HOME}/vm:/storage")

        assert rt.disk_path_for(descriptor) == tmp_path / "home" / "vm" / "windows-arm64.qcow2"


class TestTerminateWithGrace:

    @pytest.mark.asyncio
    async def test_missing_pid(self):
        gone = await asyncio.create_subprocess_exec("sh", "-c", "exit 0")
        await gone.wait()

        assert await terminate_with_grace(gone.pid, 0.1) is False

    @pytest.mark.asyncio
    async def test_sigterm_suffices(self):
        proc = await asyncio.create_subprocess_exec("sleep", "1000")
        try:
            forced = await terminate_with_grace(proc.pid, 2.0)
        finally:
            await proc.wait()

        assert forced is False
        assert not psutil.pid_exists(proc.pid) or not pid_is_alive(proc.pid)
