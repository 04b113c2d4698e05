"""Probe module interface, registry and the common response fields."""

from __future__ import annotations

import abc
import struct
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Optional, Union

from scanprobe.packet import IPHeader, make_ip_str

OUTPUT_TYPE_STATIC = 1
OUTPUT_TYPE_DYNAMIC = 2

PACKET_VALID = True
PACKET_INVALID = False


@dataclass(frozen=True)
class FieldDef:
    """Name, type and description of an output field."""

    name: str
    type: str
    desc: str


class FieldSet:
    """Ordered named values describing one response."""

    def __init__(self) -> None:
        self._fields: list[list[Any]] = []

    def add(self, name: str, value: Any) -> None:
        self._fields.append([name, value])

    def _find(self, name: str) -> list[Any]:
        for entry in self._fields:
            if entry[0] == name:
                return entry
        raise KeyError(name)

    def get(self, name: str) -> Any:
        return self._find(name)[1]

    def modify(self, name: str, value: Any) -> None:
        self._find(name)[1] = value

    def as_dict(self) -> dict[str, Any]:
        return {name: value for name, value in self._fields}

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._fields]

    def __getitem__(self, key: Union[int, str]) -> Any:
        if isinstance(key, int):
            return self._fields[key][1]
        return self.get(key)

    def __contains__(self, name: object) -> bool:
        return any(entry[0] == name for entry in self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __iter__(self) -> Iterator[tuple[str, Any]]:
        return ((name, value) for name, value in self._fields)


class ProbeModule(abc.ABC):
    """A kind of probe: how to build it and how to read the replies."""

    name: str = ""
    packet_length: int = 0
    pcap_filter: Optional[str] = None
    pcap_snaplen: int = 0
    # Whether source and target ports must be given for this probe.
    port_args: bool = False
    output_type: int = OUTPUT_TYPE_STATIC
    fields: tuple[FieldDef, ...] = ()
    helptext: str = ""

    def global_initialize(self, config: Any) -> None:
        """Prepare state shared by all sending threads."""

    def thread_initialize(self, src_mac: bytes, gw_mac: bytes, dst_port: int, rand: Any) -> Any:
        """Prepare a per-thread packet template."""
        return None

    @abc.abstractmethod
    def make_packet(self, frame, src_ip, dst_ip, ttl, validation, probe_num, rand):
        """Fill in a packet for one target."""

    @abc.abstractmethod
    def print_packet(self, packet):
        """Describe a packet for a dry run."""

    @abc.abstractmethod
    def validate_packet(self, ip_data, length, src_ip, validation):
        """Whether a received packet answers one of our probes."""

    @abc.abstractmethod
    def process_packet(self, packet, fs):
        """Add the probe's fields for a response to ``fs``."""

    def close(self, config: Any, send_state: Any, recv_state: Any) -> None:
        """Release whatever global_initialize set up."""


_registry: dict[str, ProbeModule] = {}


def register_probe_module(module: ProbeModule) -> ProbeModule:
    """Make ``module`` available by name."""
    if module.name in _registry:
        raise ValueError(f"probe module {module.name!r} already registered")
    _registry[module.name] = module
    return module


def get_probe_module_by_name(name: str) -> Optional[ProbeModule]:
    return _registry.get(name)


def probe_module_names() -> list[str]:
    """Names of the registered probe modules in registration order."""
    return list(_registry)


def _raw_address(ip: int) -> int:
    # The address as it sits in memory in network byte order, read natively.
    return int.from_bytes(struct.pack("!I", ip), sys.byteorder)


def add_ip_fields(fs: FieldSet, header: IPHeader) -> None:
    """Add the fields describing a response's IP header."""
    fs.add("saddr", make_ip_str(header.src))
    fs.add("saddr_raw", _raw_address(header.src))
    fs.add("daddr", make_ip_str(header.dst))
    fs.add("daddr_raw", _raw_address(header.dst))
    fs.add("ipid", header.ident)
    fs.add("ttl", header.ttl)


def add_system_fields(
    fs: FieldSet, is_repeat: bool, in_cooldown: bool, when: Optional[datetime] = None
) -> None:
    """Add repeat/cooldown flags and the local arrival timestamp."""
    fs.add("repeat", bool(is_repeat))
    fs.add("cooldown", bool(in_cooldown))
    moment = (when if when is not None else datetime.now()).astimezone()
    millis = moment.microsecond // 1000
    timestamp = (
        moment.strftime("%Y-%m-%dT%H:%M:%S")
        + f".{millis:03d}"
        + moment.strftime("%z")
    )
    fs.add("timestamp_str", timestamp)
    fs.add("timestamp_ts", int(moment.replace(microsecond=0).timestamp()))
    fs.add("timestamp_us", moment.microsecond)


IP_FIELDS: tuple[FieldDef, ...] = (
    FieldDef("saddr", "string", "source IP address of response"),
    FieldDef("saddr_raw", "int", "network order integer form of source IP address"),
    FieldDef("daddr", "string", "destination IP address of response"),
    FieldDef("daddr_raw", "int", "network order integer form of destination IP address"),
    FieldDef("ipid", "int", "IP identification number of response"),
    FieldDef("ttl", "int", "time-to-live of response packet"),
)

SYS_FIELDS: tuple[FieldDef, ...] = (
    FieldDef("repeat", "bool", "Is response a repeat response from host"),
    FieldDef("cooldown", "bool", "Was response received during the cooldown period"),
    FieldDef("timestamp_str", "string", "timestamp of when response arrived in ISO8601 format."),
    FieldDef("timestamp_ts", "int", "timestamp of when response arrived in seconds since Epoch"),
    FieldDef(
        "timestamp_us",
        "int",
        "microsecond part of timestamp (e.g. microseconds since 'timestamp-ts')",
    ),
)