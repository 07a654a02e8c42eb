"""Exception taxonomy shared by every guestvm component."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class GuestVMError(Exception):
    """Base class for all guestvm errors."""


class PrerequisiteMissingError(GuestVMError):
    """A binary, firmware image or disk tool required by a backend is absent."""

    def __init__(self, requirement: str, candidates: Sequence[str] = ()):
        self.requirement = requirement
        self.candidates = list(candidates)
        message = f"Missing prerequisite: {requirement}"
        if self.candidates:
            message += f" (looked for: {', '.join(self.candidates)})"
        super().__init__(message)


class ControlChannelError(GuestVMError):
    """The control channel could not be reached or timed out."""


class ProtocolViolationError(ControlChannelError):
    """Command sent out of handshake order, or the server sent something malformed.

    The connection is unusable afterwards and must be recreated.
    """


class ControlCommandError(ControlChannelError):
    """The server answered a command with ``{"error": {...}}``."""

    def __init__(self, command: str, error: Dict[str, Any]):
        self.command = command
        self.error = error
        error_class = error.get("class", "GenericError") if isinstance(error, dict) else "GenericError"
        desc = error.get("desc", "") if isinstance(error, dict) else str(error)
        super().__init__(f"Command '{command}' failed: {error_class}: {desc}")


class PortParseError(ValueError):
    """A port-binding token or long-form mapping could not be parsed."""


class PortConflictError(GuestVMError):
    """A requested fixed host port is not bindable on this host."""

    def __init__(self, host_port: int, protocol: str = "tcp", host_address: Optional[str] = None, reason: str = ""):
        self.host_port = host_port
        self.protocol = protocol
        self.host_address = host_address
        self.reason = reason
        where = f"{host_address or '0.0.0.0'}:{host_port}/{protocol}"
        super().__init__(f"Host port {where} is unavailable" + (f": {reason}" if reason else ""))


class DescriptorError(GuestVMError):
    """An instance descriptor file is missing its service block or is not valid YAML."""


class ConfigCorruptionError(GuestVMError):
    """The persisted config file is not a JSON object."""


class MigrationFailureError(GuestVMError):
    """The config migration chain could not advance past ``schema_version``."""

    def __init__(self, schema_version: int, message: str):
        self.schema_version = schema_version
        super().__init__(message)


class ProcessLifecycleError(GuestVMError):
    """Spawning or signalling the hypervisor process failed."""

    def __init__(self, message: str, os_error: Optional[OSError] = None):
        self.os_error = os_error
        if os_error is not None:
            message = f"{message}: {os_error}"
        super().__init__(message)


class RuntimeCommandError(GuestVMError):
    """An external tool (engine CLI, disk tool) exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: Optional[int], stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr"
        super().__init__(f"Command '{' '.join(self.argv)}' failed with exit code {returncode}: {detail}")


class ToolTimeoutError(RuntimeCommandError):
    """An external tool did not finish within its timeout and was killed."""

    def __init__(self, argv: Sequence[str], timeout: float):
        self.timeout = timeout
        GuestVMError.__init__(self, f"Command '{' '.join(argv)}' timed out after {timeout:.1f}s")
        self.argv = list(argv)
        self.returncode = None
        self.stderr = ""


class ActionInProgressError(GuestVMError):
    """A lifecycle action was requested while another one is still running."""


class GuestAPIError(GuestVMError):
    """The in-guest HTTP agent was unreachable or answered with an unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class UnsupportedRuntimeError(GuestVMError):
    """A runtime or runtime feature is not available on this host."""


__all__ = [
    "GuestVMError",
    "PrerequisiteMissingError",
    "ControlChannelError",
    "ProtocolViolationError",
    "ControlCommandError",
    "PortParseError",
    "PortConflictError",
    "DescriptorError",
    "ConfigCorruptionError",
    "MigrationFailureError",
    "ProcessLifecycleError",
    "RuntimeCommandError",
    "ToolTimeoutError",
    "ActionInProgressError",
    "GuestAPIError",
    "UnsupportedRuntimeError",
]
