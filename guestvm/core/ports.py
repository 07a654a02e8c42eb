"""
Port-binding model and mapper.

A binding connects a guest (container) port to a host port. Descriptors
carry bindings either as short tokens::

    127.0.0.1:47290-47299:7149      ranged host port, engine picks one
    127.0.0.1::8006                 engine-assigned host port
    47300:3389/udp                  fixed host port, explicit protocol

or as long-form mappings (``target``/``published``/``host_ip``/``protocol``).
Both forms parse into the same :class:`PortBinding`. Only a binding whose host
port is a single number is *resolved*; resolution happens once the backend is
running and reports what it actually bound.
"""

from __future__ import annotations

import asyncio
import os
import socket
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from guestvm.core.errors import PortConflictError, PortParseError
from guestvm.core.logging_utils import get_module_logger

logger = get_module_logger("PortMapper")

PROTOCOLS = ("tcp", "udp")
DEFAULT_PROTOCOL = "tcp"
LONG_FORM_KEYS = ("target", "published", "host_ip", "protocol")
PORT_CHECK_TIMEOUT = 1.0


def _parse_port_number(token: str, what: str) -> int:
    text = token.strip()
    if not (text.isascii() and text.isdigit()):
        raise PortParseError(f"Invalid {what} '{token}'")
    value = int(text)
    if not 0 < value <= 65535:
        raise PortParseError(f"{what.capitalize()} {value} is out of range")
    return value


def _parse_protocol(token: Any) -> str:
    if token is None:
        return DEFAULT_PROTOCOL
    protocol = str(token).strip().lower() or DEFAULT_PROTOCOL
    if protocol not in PROTOCOLS:
        raise PortParseError(f"Unsupported protocol '{token}'")
    return protocol


@dataclass(frozen=True)
class PortRange:
    """Inclusive host port range; the engine chooses one port inside it."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if not (0 < self.start <= 65535 and 0 < self.end <= 65535):
            raise PortParseError(f"Port range {self.start}-{self.end} is out of bounds")
        if self.start > self.end:
            raise PortParseError(f"Port range {self.start}-{self.end} is inverted")

    @classmethod
    def parse(cls, token: str) -> "PortRange":
        lo, sep, hi = token.partition("-")
        if not sep:
            raise PortParseError(f"'{token}' is not a port range")
        return cls(_parse_port_number(lo, "range start"), _parse_port_number(hi, "range end"))

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


HostPort = Union[int, PortRange, None]


def parse_host_port(token: Any) -> HostPort:
    """``""``/None -> engine-assigned, ``"lo-hi"`` -> PortRange, else a number."""
    if token is None:
        return None
    if isinstance(token, bool):
        raise PortParseError(f"Invalid host port {token!r}")
    if isinstance(token, int):
        return _parse_port_number(str(token), "host port")
    text = str(token).strip()
    if not text:
        return None
    if "-" in text:
        return PortRange.parse(text)
    return _parse_port_number(text, "host port")


@dataclass(frozen=True)
class PortBinding:
    """One host<->guest port binding, as declared or as reported."""

    container_port: int
    host_port: HostPort = None
    protocol: str = DEFAULT_PROTOCOL
    host_address: Optional[str] = None
    long_form: bool = False
    extras: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_resolved(self) -> bool:
        return isinstance(self.host_port, int)

    @property
    def is_range(self) -> bool:
        return isinstance(self.host_port, PortRange)

    @property
    def is_dynamic(self) -> bool:
        return self.host_port is None

    def matches(self, container_port: int, protocol: str = DEFAULT_PROTOCOL) -> bool:
        return self.container_port == container_port and self.protocol == protocol

    def resolve(self, host_port: int) -> "ResolvedPortBinding":
        return ResolvedPortBinding(
            container_port=self.container_port,
            host_port=host_port,
            protocol=self.protocol,
            host_address=self.host_address,
            long_form=self.long_form,
            extras=dict(self.extras),
        )

    # ------------------------------------------------------------------
    # Parsing

    @classmethod
    def from_token(cls, token: str) -> "PortBinding":
        text = token.strip()
        if not text:
            raise PortParseError("Empty port token")

        protocol = DEFAULT_PROTOCOL
        if "/" in text:
            text, proto = text.rsplit("/", 1)
            protocol = _parse_protocol(proto)

        host_address: Optional[str] = None
        if text.startswith("["):
            close = text.find("]")
            if close == -1 or text[close + 1:close + 2] != ":":
                raise PortParseError(f"Malformed IPv6 host address in '{token}'")
            host_address = text[1:close]
            parts = text[close + 2:].split(":")
            if len(parts) != 2:
                raise PortParseError(f"Malformed port token '{token}'")
            host_token, container_token = parts
        else:
            parts = text.split(":")
            if len(parts) == 1:
                host_token, container_token = "", parts[0]
            elif len(parts) == 2:
                host_token, container_token = parts
            elif len(parts) == 3:
                host_address, host_token, container_token = parts
            else:
                raise PortParseError(f"Malformed port token '{token}'")

        return cls(
            container_port=_parse_port_number(container_token, "container port"),
            host_port=parse_host_port(host_token),
            protocol=protocol,
            host_address=host_address or None,
        )

    @classmethod
    def from_long_form(cls, mapping: Mapping[str, Any]) -> "PortBinding":
        if "target" not in mapping:
            raise PortParseError(f"Long-form port mapping without 'target': {dict(mapping)!r}")
        target = mapping["target"]
        if isinstance(target, bool) or not isinstance(target, (int, str)):
            raise PortParseError(f"Invalid target port {target!r}")
        return cls(
            container_port=_parse_port_number(str(target), "container port"),
            host_port=parse_host_port(mapping.get("published")),
            protocol=_parse_protocol(mapping.get("protocol")),
            host_address=mapping.get("host_ip") or None,
            long_form=True,
            extras={key: value for key, value in mapping.items() if key not in LONG_FORM_KEYS},
        )

    @classmethod
    def from_entry(cls, entry: Union[str, Mapping[str, Any]]) -> "PortBinding":
        if isinstance(entry, str):
            return cls.from_token(entry)
        if isinstance(entry, Mapping):
            return cls.from_long_form(entry)
        raise PortParseError(f"Unsupported port entry {entry!r}")

    # ------------------------------------------------------------------
    # Serialization

    def to_token(self) -> str:
        host = "" if self.host_port is None else str(self.host_port)
        if self.host_address:
            address = f"[{self.host_address}]" if ":" in self.host_address else self.host_address
            text = f"{address}:{host}:{self.container_port}"
        elif host:
            text = f"{host}:{self.container_port}"
        else:
            text = str(self.container_port)
        if self.protocol != DEFAULT_PROTOCOL:
            text += f"/{self.protocol}"
        return text

    def to_long_form(self) -> Dict[str, Any]:
        mapping: Dict[str, Any] = {"target": self.container_port}
        if self.host_port is not None:
            mapping["published"] = str(self.host_port)
        if self.host_address:
            mapping["host_ip"] = self.host_address
        mapping["protocol"] = self.protocol
        mapping.update(self.extras)
        return mapping

    def to_entry(self) -> Union[str, Dict[str, Any]]:
        return self.to_long_form() if self.long_form else self.to_token()

    def __str__(self) -> str:
        return self.to_token()


@dataclass(frozen=True)
class ResolvedPortBinding(PortBinding):
    """A binding whose host port is one concrete number (instance is running)."""

    def __post_init__(self) -> None:
        if isinstance(self.host_port, bool) or not isinstance(self.host_port, int):
            raise PortParseError(
                f"Resolved binding for {self.container_port}/{self.protocol} needs a concrete host port, "
                f"got {self.host_port!r}"
            )


def parse_port_token(token: str) -> PortBinding:
    return PortBinding.from_token(token)


def format_port_token(binding: PortBinding) -> str:
    return binding.to_token()


# ----------------------------------------------------------------------
# Host port availability


def _try_bind(host: str, port: int, protocol: str) -> None:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    kind = socket.SOCK_STREAM if protocol == "tcp" else socket.SOCK_DGRAM
    with socket.socket(family, kind) as sock:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))


async def check_port_available(
    port: int,
    *,
    host: str = "127.0.0.1",
    protocol: str = DEFAULT_PROTOCOL,
    timeout: float = PORT_CHECK_TIMEOUT,
) -> None:
    """Bind and release ``host:port`` once.

    Raises:
        PortConflictError: if the port cannot be bound (in use, privileged,
            bad address) or the probe times out.
    """
    try:
        await asyncio.wait_for(asyncio.to_thread(_try_bind, host, port, protocol), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise PortConflictError(port, protocol, host, reason="availability probe timed out") from e
    except OSError as e:
        raise PortConflictError(port, protocol, host, reason=e.strerror or str(e)) from e


async def is_port_available(port: int, **kwargs: Any) -> bool:
    try:
        await check_port_available(port, **kwargs)
        return True
    except PortConflictError:
        return False


# ----------------------------------------------------------------------
# Mapper


class PortMapper:
    """Ordered collection of bindings for one instance descriptor.

    Lookups match on ``(container_port, protocol)``; the first match wins.
    """

    def __init__(self, bindings: Iterable[PortBinding] = ()):
        self._bindings: List[PortBinding] = list(bindings)

    @classmethod
    def from_entries(cls, entries: Iterable[Union[str, Mapping[str, Any]]]) -> "PortMapper":
        return cls(PortBinding.from_entry(entry) for entry in entries)

    def to_entries(self) -> List[Union[str, Dict[str, Any]]]:
        return [binding.to_entry() for binding in self._bindings]

    @property
    def bindings(self) -> List[PortBinding]:
        return list(self._bindings)

    def __iter__(self) -> Iterator[PortBinding]:
        return iter(list(self._bindings))

    def __len__(self) -> int:
        return len(self._bindings)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PortMapper):
            return NotImplemented
        return self._bindings == other._bindings

    def __repr__(self) -> str:
        return f"PortMapper({[str(b) for b in self._bindings]!r})"

    def _index_of(self, container_port: int, protocol: str) -> Optional[int]:
        for index, binding in enumerate(self._bindings):
            if binding.matches(container_port, protocol):
                return index
        return None

    def get_binding(self, container_port: int, protocol: str = DEFAULT_PROTOCOL) -> Optional[PortBinding]:
        index = self._index_of(int(container_port), protocol)
        return None if index is None else self._bindings[index]

    def set_binding(
        self,
        container_port: int,
        host_port: HostPort,
        *,
        protocol: str = DEFAULT_PROTOCOL,
        host_address: Optional[str] = None,
    ) -> PortBinding:
        """Replace the binding for ``(container_port, protocol)`` or append a new one.

        When ``host_address`` is omitted an existing entry keeps its address.
        Repeating an identical call leaves the mapper unchanged.
        """
        protocol = _parse_protocol(protocol)
        if isinstance(host_port, str):
            host_port = parse_host_port(host_port)
        index = self._index_of(int(container_port), protocol)
        if index is None:
            binding = PortBinding(
                container_port=int(container_port),
                host_port=host_port,
                protocol=protocol,
                host_address=host_address,
            )
            self._bindings.append(binding)
            return binding

        existing = self._bindings[index]
        binding = replace(
            existing,
            host_port=host_port,
            host_address=host_address if host_address is not None else existing.host_address,
        )
        self._bindings[index] = binding
        return binding

    def remove_binding(self, container_port: int, protocol: str = DEFAULT_PROTOCOL) -> bool:
        index = self._index_of(int(container_port), protocol)
        if index is None:
            return False
        del self._bindings[index]
        return True

    def get_resolved_port(self, container_port: int, protocol: str = DEFAULT_PROTOCOL) -> Optional[int]:
        binding = self.get_binding(container_port, protocol)
        if binding is None or not binding.is_resolved:
            return None
        return binding.host_port  # type: ignore[return-value]

    def apply_resolved(self, reported: Iterable[PortBinding]) -> List[ResolvedPortBinding]:
        """Concretize declared bindings with what the running backend reports.

        A reported port outside a declared range is still taken (the engine is
        authoritative) but logged. Reported bindings with no declared
        counterpart are appended.
        """
        resolved: List[ResolvedPortBinding] = []
        for item in reported:
            if not item.is_resolved:
                logger.warning("Ignoring unresolved binding reported by backend: %s", item)
                continue
            declared = self.get_binding(item.container_port, item.protocol)
            if declared is not None and declared.is_range and item.host_port not in declared.host_port:  # type: ignore[operator]
                logger.warning(
                    "Backend bound %s/%s to %s, outside declared range %s",
                    item.container_port, item.protocol, item.host_port, declared.host_port,
                )
            address = item.host_address or (declared.host_address if declared else None)
            self.set_binding(item.container_port, item.host_port, protocol=item.protocol, host_address=address)
            resolved.append(self.get_binding(item.container_port, item.protocol).resolve(item.host_port))  # type: ignore[union-attr,arg-type]
        return resolved

    def conflicts(self) -> List[Tuple[PortBinding, PortBinding]]:
        """Pairs of bindings that claim the same fixed host port and protocol."""
        seen: Dict[Tuple[int, str], PortBinding] = {}
        clashes: List[Tuple[PortBinding, PortBinding]] = []
        for binding in self._bindings:
            if not binding.is_resolved:
                continue
            key = (binding.host_port, binding.protocol)  # type: ignore[assignment]
            other = seen.get(key)  # type: ignore[arg-type]
            if other is not None and _addresses_overlap(other.host_address, binding.host_address):
                clashes.append((other, binding))
            else:
                seen[key] = binding  # type: ignore[index]
        return clashes

    async def validate_host_ports(self, timeout: float = PORT_CHECK_TIMEOUT) -> List[PortConflictError]:
        """Probe every fixed host port; return the failures instead of raising."""
        problems: List[PortConflictError] = []
        for first, second in self.conflicts():
            problems.append(
                PortConflictError(
                    second.host_port,  # type: ignore[arg-type]
                    second.protocol,
                    second.host_address,
                    reason=f"also claimed by {first}",
                )
            )
        for binding in self._bindings:
            if not binding.is_resolved:
                continue
            try:
                await check_port_available(
                    binding.host_port,  # type: ignore[arg-type]
                    host=binding.host_address or "127.0.0.1",
                    protocol=binding.protocol,
                    timeout=timeout,
                )
            except PortConflictError as e:
                logger.warning("Port validation failed: %s", e)
                problems.append(e)
        return problems

    async def set_fixed_binding(
        self,
        container_port: int,
        host_port: int,
        *,
        protocol: str = DEFAULT_PROTOCOL,
        host_address: Optional[str] = None,
        timeout: float = PORT_CHECK_TIMEOUT,
    ) -> PortBinding:
        """Set a user-chosen fixed host port after checking it is bindable.

        Raises:
            PortConflictError: the port is unavailable; the mapper is unchanged.
        """
        current = self.get_binding(container_port, protocol)
        address = host_address if host_address is not None else (current.host_address if current else None)
        if current is None or current.host_port != host_port or current.host_address != address:
            await check_port_available(
                host_port, host=address or "127.0.0.1", protocol=protocol, timeout=timeout
            )
        return self.set_binding(container_port, host_port, protocol=protocol, host_address=address)


def _addresses_overlap(a: Optional[str], b: Optional[str]) -> bool:
    wildcard = {None, "", "0.0.0.0", "::"}
    return a in wildcard or b in wildcard or a == b


__all__ = [
    "PROTOCOLS",
    "HostPort",
    "PortBinding",
    "PortMapper",
    "PortRange",
    "ResolvedPortBinding",
    "check_port_available",
    "format_port_token",
    "is_port_available",
    "parse_host_port",
    "parse_port_token",
]
