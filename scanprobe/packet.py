"""Building, checksumming and describing Ethernet, IP, UDP, TCP and ICMP headers."""

from __future__ import annotations

import ipaddress
import random
import struct
from dataclasses import dataclass
from typing import Sequence, Union

from scanprobe.state import MAXTTL, ScanConfig

MAX_PACKET_SIZE = 4096
ETHER_HEADER_LEN = 14
ETHER_ADDR_LEN = 6
IP_HEADER_LEN = 20
UDP_HEADER_LEN = 8
ICMP_HEADER_LEN = 8
TCP_HEADER_LEN = 20

ETHERTYPE_IP = 0x0800
IPPROTO_ICMP = 1
IPPROTO_TCP = 6
IPPROTO_UDP = 17
ICMP_ECHO = 8
ICMP_UNREACH = 3
IP_MF = 0x2000

_IP_FORMAT = struct.Struct("!BBHHHBBHII")


@dataclass
class IPHeader:
    """An IPv4 header; addresses are integers in host order."""

    protocol: int = 0
    total_length: int = 0
    src: int = 0
    dst: int = 0
    ttl: int = 0
    ident: int = 0
    tos: int = 0
    frag_off: int = 0
    checksum: int = 0
    version: int = 4
    ihl: int = 5

    @property
    def header_length(self) -> int:
        return self.ihl * 4

    def pack(self) -> bytes:
        return _IP_FORMAT.pack(
            ((self.version & 0xF) << 4) | (self.ihl & 0xF),
            self.tos,
            self.total_length,
            self.ident,
            self.frag_off,
            self.ttl,
            self.protocol,
            self.checksum,
            self.src,
            self.dst,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "IPHeader":
        if len(data) < IP_HEADER_LEN:
            raise ValueError("buffer too short for an IP header")
        (ver_ihl, tos, total_length, ident, frag_off, ttl, protocol,
         checksum, src, dst) = _IP_FORMAT.unpack_from(data)
        return cls(
            protocol=protocol,
            total_length=total_length,
            src=src,
            dst=dst,
            ttl=ttl,
            ident=ident,
            tos=tos,
            frag_off=frag_off,
            checksum=checksum,
            version=ver_ihl >> 4,
            ihl=ver_ihl & 0xF,
        )


def make_eth_header(src: bytes, dst: bytes) -> bytes:
    """Ethernet header carrying IPv4 from ``src`` to ``dst``."""
    if len(src) != ETHER_ADDR_LEN or len(dst) != ETHER_ADDR_LEN:
        raise ValueError("MAC addresses must be 6 bytes")
    return bytes(dst) + bytes(src) + struct.pack("!H", ETHERTYPE_IP)


def make_ip_header(protocol: int, length: int) -> IPHeader:
    """IPv4 header with the scanner's fixed identification and maximum TTL."""
    return IPHeader(
        protocol=protocol,
        total_length=length,
        ident=54321,
        ttl=MAXTTL,
    )


def make_udp_header(dest_port: int, length: int) -> bytes:
    """UDP header with a zero source port and zero (unused) checksum."""
    return struct.pack("!HHHH", 0, dest_port, length, 0)


def make_icmp_header() -> bytes:
    """ICMP echo request header with zero code, id and sequence."""
    return struct.pack("!BBHHH", ICMP_ECHO, 0, 0, 0, 0)


def make_tcp_header(dest_port: int, flags: int, seq: int | None = None) -> bytes:
    """TCP header with data offset 5 and the largest window."""
    if seq is None:
        seq = random.getrandbits(31)
    return struct.pack(
        "!HHIIBBHHH", 0, dest_port, seq, 0, 5 << 4, flags & 0xFF, 65535, 0, 0
    )


def _fold(total: int) -> int:
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def in_checksum(data: bytes) -> int:
    """Internet checksum over whole 16-bit words; an odd last byte is ignored."""
    words = len(data) // 2
    total = sum(struct.unpack_from(f"!{words}H", data)) if words else 0
    return _fold(total)


def ip_checksum(header: Union[IPHeader, bytes]) -> int:
    """Checksum of the 20-byte IPv4 header as it stands."""
    data = header.pack() if isinstance(header, IPHeader) else bytes(header)
    return in_checksum(data[:IP_HEADER_LEN])


def tcp_checksum(segment: bytes, saddr: int, daddr: int) -> int:
    """TCP checksum including the IPv4 pseudo header."""
    data = bytes(segment)
    if len(data) % 2:
        data += b"\x00"
    words = len(data) // 2
    total = sum(struct.unpack(f"!{words}H", data)) if words else 0
    total += (saddr >> 16) + (saddr & 0xFFFF)
    total += (daddr >> 16) + (daddr & 0xFFFF)
    total += len(segment) & 0xFFFF
    total += IPPROTO_TCP
    return _fold(total)


def _c_mod(a: int, b: int) -> int:
    remainder = abs(a) % abs(b)
    return -remainder if a < 0 else remainder


def check_dst_port(
    port: int, num_ports: int, validation: Sequence[int], config: ScanConfig
) -> bool:
    """Whether ``port`` is one of the source ports this probe could have used."""
    if port > config.source_port_last or port < config.source_port_first:
        return False
    to_validate = port - config.source_port_first
    low = (validation[1] & 0xFFFFFFFF) % num_ports
    high = ((validation[1] + config.packet_streams - 1) & 0xFFFFFFFF) % num_ports
    return _c_mod(high - low, num_ports) >= _c_mod(to_validate - low, num_ports)


def get_src_port(
    num_ports: int, probe_num: int, validation: Sequence[int], config: ScanConfig
) -> int:
    """Source port for the given probe, derived from the validation words."""
    offset = ((validation[1] + probe_num) & 0xFFFFFFFF) % num_ports
    return (config.source_port_first + offset) & 0xFFFF


def make_ip_str(ip: int) -> str:
    """Dotted-quad form of a host-order address."""
    return str(ipaddress.IPv4Address(ip))


def format_mac(mac: bytes) -> str:
    return ":".join(f"{octet:02x}" for octet in mac)


def _alt_hex(value: int) -> str:
    # "%#04X" prints no prefix for zero.
    return "0000" if value == 0 else "%#04X" % value


def format_ip_header(header: IPHeader) -> str:
    return "ip { saddr: %s | daddr: %s | checksum: %s }\n" % (
        make_ip_str(header.src),
        make_ip_str(header.dst),
        _alt_hex(header.checksum),
    )


def format_eth_header(frame: bytes, send_ip_pkts: bool) -> str:
    """Description of the Ethernet header at the start of ``frame``."""
    if send_ip_pkts:
        return ""
    dhost = frame[0:ETHER_ADDR_LEN]
    shost = frame[ETHER_ADDR_LEN:2 * ETHER_ADDR_LEN]
    return f"eth {{ shost: {format_mac(shost)} | dhost: {format_mac(dhost)} }}\n"