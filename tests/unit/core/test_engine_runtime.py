"""Tests for the Docker/Podman backends with the tool runner patched out."""

from unittest.mock import AsyncMock, patch

import pytest

from guestvm.core.errors import RuntimeCommandError, ToolTimeoutError
from guestvm.core.models import CommonPorts, RuntimeStatus
from guestvm.core.runtimes import DockerRuntime, PodmanRuntime
from guestvm.core.runtimes.base import ComposeDirection, LifecycleAction, ToolResult, run_tool
from guestvm.core.runtimes.engine import (
    DOCKER_STATUS_MAP,
    PODMAN_STATUS_MAP,
    map_engine_status,
    parse_port_output,
)

RUN_TOOL = "guestvm.core.runtimes.engine.run_tool"

PORT_OUTPUT = """\
8006/tcp -> 127.0.0.1:47270
7148/tcp -> 127.0.0.1:47281
7149/tcp -> 127.0.0.1:47293
3389/tcp -> 127.0.0.1:47300
3389/udp -> 127.0.0.1:47310
"""


def ok(stdout: str = "", stderr: str = "") -> ToolResult:
    return ToolResult(argv=[], returncode=0, stdout=stdout, stderr=stderr)


@pytest.fixture
def docker(tmp_path, linux_host) -> DockerRuntime:
    return DockerRuntime(tmp_path / "docker-compose.yml", linux_host)


@pytest.fixture
def podman(tmp_path, linux_host) -> PodmanRuntime:
    return PodmanRuntime(tmp_path / "podman-compose.yml", linux_host)


class TestStatusMapping:
    """Every raw engine status maps into the closed RuntimeStatus set."""

    @pytest.mark.parametrize("raw", list(PODMAN_STATUS_MAP) + ["weird", "", "RUNNING\n"])
    def test_total(self, raw):
        assert map_engine_status(raw, PODMAN_STATUS_MAP) in set(RuntimeStatus)

    def test_known_values(self):
        assert map_engine_status("running\n", DOCKER_STATUS_MAP) is RuntimeStatus.RUNNING
        assert map_engine_status("stopped", PODMAN_STATUS_MAP) is RuntimeStatus.EXITED
        assert map_engine_status("stopped", DOCKER_STATUS_MAP) is RuntimeStatus.UNKNOWN
        assert map_engine_status("dead", DOCKER_STATUS_MAP) is RuntimeStatus.UNKNOWN


class TestParsePortOutput:

    def test_parse(self):
        bindings = parse_port_output(PORT_OUTPUT)

        assert len(bindings) == 5
        assert bindings[2].container_port == 7149
        assert bindings[2].host_port == 47293
        assert bindings[4].protocol == "udp"

    def test_ipv6_and_garbage_lines(self):
        bindings = parse_port_output("3389/tcp -> [::]:47300\nnot a port line\n7149/tcp -> nonsense\n")

        assert [(b.host_address, b.host_port) for b in bindings] == [("::", 47300)]


class TestDockerRuntime:

    @pytest.mark.asyncio
    async def test_status_running(self, docker):
        with patch(RUN_TOOL, AsyncMock(return_value=ok("running\n"))) as run:
            assert await docker.status() is RuntimeStatus.RUNNING

        argv = run.await_args.args[0]
        assert argv == ["docker", "inspect", "--format={{.State.Status}}", "GuestVM"]

    @pytest.mark.asyncio
    async def test_status_failure_is_unknown(self, docker):
        error = RuntimeCommandError(["docker", "inspect"], 1, "Error: No such object: GuestVM")
        with patch(RUN_TOOL, AsyncMock(side_effect=error)):
            assert await docker.status() is RuntimeStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_port_populates_cache(self, docker):
        with patch(RUN_TOOL, AsyncMock(return_value=ok(PORT_OUTPUT))):
            bindings = await docker.port()

        assert len(bindings) == 5
        assert docker.get_active_host_port(CommonPorts.QMP) == 47293
        assert docker.get_active_host_port(CommonPorts.RDP, "udp") == 47310

    @pytest.mark.asyncio
    async def test_port_failure_returns_empty(self, docker):
        with patch(RUN_TOOL, AsyncMock(side_effect=ToolTimeoutError(["docker", "port"], 30))):
            assert await docker.port() == []
        assert docker.cached_port_mappings is None

    @pytest.mark.asyncio
    async def test_non_running_status_invalidates_cache(self, docker):
        with patch(RUN_TOOL, AsyncMock(return_value=ok(PORT_OUTPUT))):
            await docker.port()
        assert docker.cached_port_mappings

        with patch(RUN_TOOL, AsyncMock(return_value=ok("exited"))):
            assert await docker.status() is RuntimeStatus.EXITED
        assert docker.get_active_host_port(CommonPorts.QMP) is None

    @pytest.mark.asyncio
    async def test_apply_up(self, docker):
        with patch(RUN_TOOL, AsyncMock(return_value=ok(stderr="Container GuestVM Started"))) as run:
            await docker.apply(ComposeDirection.UP, ["--no-start"])

        argv = run.await_args.args[0]
        assert argv[:4] == ["docker", "compose", "-f", str(docker.descriptor_path)]
        assert argv[4:] == ["up", "--no-start", "-d"]
        assert run.await_args.kwargs["env"] is None

    @pytest.mark.asyncio
    async def test_apply_failure_propagates(self, docker):
        with patch(RUN_TOOL, AsyncMock(side_effect=RuntimeCommandError(["docker"], 1, "boom"))):
            with pytest.raises(RuntimeCommandError):
                await docker.apply(ComposeDirection.DOWN)

    @pytest.mark.asyncio
    async def test_lifecycle(self, docker):
        with patch(RUN_TOOL, AsyncMock(return_value=ok("GuestVM\n"))) as run:
            await docker.lifecycle(LifecycleAction.PAUSE)

        assert run.await_args.args[0] == ["docker", "container", "pause", "GuestVM"]

    @pytest.mark.asyncio
    async def test_exists(self, docker):
        with patch(RUN_TOOL, AsyncMock(return_value=ok("GuestVMOld\nGuestVM\n"))):
            assert await docker.exists() is True
        with patch(RUN_TOOL, AsyncMock(return_value=ok("GuestVMOld\n"))):
            assert await docker.exists() is False
        with patch(RUN_TOOL, AsyncMock(side_effect=RuntimeCommandError(["docker"], None, "not found"))):
            assert await docker.exists() is False

    @pytest.mark.asyncio
    async def test_remove_twice_does_not_raise(self, docker, caplog):
        results = [ok("GuestVM"), RuntimeCommandError(["docker", "rm"], 1, "No such container: GuestVM")]
        with patch(RUN_TOOL, AsyncMock(side_effect=results)):
            await docker.remove()
            await docker.remove()

        assert "Failed to remove container" in caplog.text

    @pytest.mark.asyncio
    async def test_load_descriptor_seeds_default(self, docker):
        descriptor = await docker.load_descriptor()

        assert docker.descriptor_path.exists()
        assert descriptor.container_name == "GuestVM"

    @pytest.mark.asyncio
    async def test_probe(self):
        outputs = {
            ("docker", "--version"): "Docker version 27.0.3",
            ("docker", "compose", "version"): "Docker Compose version v2.35.1",
            ("docker", "ps"): "CONTAINER ID   IMAGE",
            ("id", "-Gn"): "alice wheel docker",
        }

        async def fake(argv, **kwargs):
            return ok(outputs[tuple(argv)])

        with patch(RUN_TOOL, side_effect=fake):
            probe = await DockerRuntime.host_capability_probe()

        assert probe.docker_installed
        assert probe.compose_installed
        assert probe.daemon_running
        assert probe.user_in_docker_group
        assert probe.ready

    @pytest.mark.asyncio
    async def test_probe_rejects_compose_v1(self):
        async def fake(argv, **kwargs):
            if tuple(argv) == ("docker", "compose", "version"):
                return ok("docker-compose version 1.29.2")
            raise RuntimeCommandError(argv, 1, "")

        with patch(RUN_TOOL, side_effect=fake):
            probe = await DockerRuntime.host_capability_probe()

        assert not probe.compose_installed
        assert not probe.ready


class TestPodmanRuntime:

    @pytest.mark.asyncio
    async def test_compose_environment(self, podman):
        with patch(RUN_TOOL, AsyncMock(return_value=ok())) as run:
            await podman.apply(ComposeDirection.DOWN)

        argv = run.await_args.args[0]
        assert argv[0] == "podman"
        assert argv[-1] == "down"
        assert run.await_args.kwargs["env"]["PODMAN_COMPOSE_PROVIDER"] == "podman-compose"

    @pytest.mark.asyncio
    async def test_stopped_maps_to_exited(self, podman):
        with patch(RUN_TOOL, AsyncMock(return_value=ok("stopped\n"))):
            assert await podman.status() is RuntimeStatus.EXITED


class TestRunTool:
    """The real tool runner against trivial host binaries."""

    @pytest.mark.asyncio
    @pytest.mark.posix
    async def test_success_and_failure(self):
        result = await run_tool(["sh", "-c", "echo hello; echo oops >&2"])
        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"

        with pytest.raises(RuntimeCommandError) as excinfo:
            await run_tool(["sh", "-c", "echo bad >&2; exit 3"])
        assert excinfo.value.returncode == 3
        assert "bad" in str(excinfo.value)

        unchecked = await run_tool(["sh", "-c", "exit 4"], check=False)
        assert unchecked.returncode == 4

    @pytest.mark.asyncio
    @pytest.mark.posix
    async def test_timeout_kills(self):
        with pytest.raises(ToolTimeoutError):
            await run_tool(["sh", "-c", "sleep 10"], timeout=0.2)

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with pytest.raises(RuntimeCommandError):
            await run_tool(["definitely-not-a-real-binary-guestvm"])
