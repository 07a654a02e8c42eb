"""Core components of the guest runtime manager."""

from .errors import GuestVMError
from .logging_utils import get_module_logger
from .models import CommonPorts, GuestArchitecture, RuntimeKind, RuntimeStatus
from .paths import AppPaths

__all__ = [
    "AppPaths",
    "CommonPorts",
    "GuestArchitecture",
    "GuestVMError",
    "RuntimeKind",
    "RuntimeStatus",
    "get_module_logger",
]
