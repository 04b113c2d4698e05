"""Probe that sends UDP datagrams, with a fixed or templated payload."""

from __future__ import annotations

import logging
import random
import re
import struct
import sys
from typing import Callable, Optional

from scanprobe.packet import (
    ETHER_HEADER_LEN,
    ICMP_UNREACH,
    IP_HEADER_LEN,
    IPPROTO_ICMP,
    IPPROTO_UDP,
    UDP_HEADER_LEN,
    IPHeader,
    check_dst_port,
    format_eth_header,
    format_ip_header,
    get_src_port,
    ip_checksum,
    make_eth_header,
    make_ip_header,
    make_ip_str,
    make_udp_header,
)
from scanprobe.probe_modules import (
    PACKET_INVALID,
    PACKET_VALID,
    FieldDef,
    FieldSet,
    ProbeModule,
)
from scanprobe.state import MAX_PACKET_SIZE, ScanConfig
from scanprobe.udp_template import PayloadTemplate, load_template, template_field_help

logger = logging.getLogger(__name__)

MAX_UDP_PAYLOAD_LEN = 1472
ICMP_UNREACH_HEADER_SIZE = 8
ICMP_UNREACH_PRECEDENCE_CUTOFF = 15

DEFAULT_PAYLOAD = b"GET / HTTP/1.1\r\nHost: www\r\n\r\n"

UDP_UNREACH_STRINGS: tuple[str, ...] = (
    "network unreachable",
    "host unreachable",
    "protocol unreachable",
    "port unreachable",
    "fragments required",
    "source route failed",
    "network unknown",
    "host unknown",
    "source host isolated",
    "network admin. prohibited",
    "host admin. prohibited",
    "network unreachable TOS",
    "host unreachable TOS",
    "communication admin. prohibited",
    "host presdence violation",
    "precedence cutoff",
)

UDP_USAGE_ERROR = (
    "unknown UDP probe specification (expected file:/path or text:STRING or "
    "hex:01020304 or template:/path or template-fields)"
)

UDP_FIELDS: tuple[FieldDef, ...] = (
    FieldDef("classification", "string", "packet classification"),
    FieldDef("success", "bool", "is response considered success"),
    FieldDef("sport", "int", "UDP source port"),
    FieldDef("dport", "int", "UDP destination port"),
    FieldDef("icmp_responder", "string", "Source IP of ICMP_UNREACH message"),
    FieldDef("icmp_type", "int", "icmp message type"),
    FieldDef("icmp_code", "int", "icmp message sub type code"),
    FieldDef(
        "icmp_unreach_str",
        "string",
        "for icmp_unreach responses, the string version of icmp_code "
        "(e.g. network-unreach)",
    ),
    FieldDef("udp_pkt_size", "int", "UDP packet length"),
    FieldDef("data", "binary", "UDP payload"),
)

UDP_OFFSET = ETHER_HEADER_LEN + IP_HEADER_LEN
PAYLOAD_OFFSET = UDP_OFFSET + UDP_HEADER_LEN
_MASK32 = 0xFFFFFFFF
_HEX_PAIR = re.compile(r"[0-9a-fA-F]{1,2}")


class TemplateFieldsRequested(Exception):
    """The probe arguments asked for the list of template fields."""


def _parse_hex(text: str) -> bytes:
    out = bytearray()
    for pair in (text[i:i + 2] for i in range(0, len(text) - 1, 2)):
        match = _HEX_PAIR.match(pair)
        if match is None:
            raise ValueError(f"non-hex character: '{pair[0]}'")
        out.append(int(match.group(), 16))
    return bytes(out)


def parse_probe_args(args: Optional[str]) -> tuple[bytes, Optional[PayloadTemplate]]:
    """Payload and optional template described by the probe arguments.

    Accepts ``text:STRING``, ``hex:HEX``, ``file:PATH`` and ``template:PATH``;
    ``template-fields`` raises TemplateFieldsRequested.
    """
    if not args:
        return DEFAULT_PAYLOAD, None
    if args == "template-fields":
        raise TemplateFieldsRequested(template_field_help())
    kind, colon, value = args.partition(":")
    if not colon:
        raise ValueError(UDP_USAGE_ERROR)
    template: Optional[PayloadTemplate] = None
    if kind == "text":
        payload = value.encode("utf-8", "surrogateescape")
    elif kind in ("file", "template"):
        try:
            with open(value, "rb") as handle:
                payload = handle.read(MAX_UDP_PAYLOAD_LEN)
        except OSError:
            raise ValueError(f"could not open UDP data file '{value}'") from None
        if kind == "template":
            template = load_template(payload)
    elif kind == "hex":
        payload = _parse_hex(value)
    else:
        raise ValueError(UDP_USAGE_ERROR)
    if len(payload) > MAX_UDP_PAYLOAD_LEN:
        logger.warning(
            "reducing UDP payload to %d bytes (from %d) to fit on the wire",
            MAX_UDP_PAYLOAD_LEN,
            len(payload),
        )
        payload = payload[:MAX_UDP_PAYLOAD_LEN]
    return payload, template


def build_udp_frame(src_mac: bytes, gw_mac: bytes, dst_port: int, payload: bytes) -> bytearray:
    """A packet buffer holding Ethernet, IP and UDP headers and ``payload``."""
    ip_header = make_ip_header(IPPROTO_UDP, IP_HEADER_LEN + UDP_HEADER_LEN + len(payload))
    content = (
        make_eth_header(src_mac, gw_mac)
        + ip_header.pack()
        + make_udp_header(dst_port, UDP_HEADER_LEN + len(payload))
        + payload
    )
    if len(content) > MAX_PACKET_SIZE:
        raise ValueError("packet larger than the maximum packet size")
    frame = bytearray(MAX_PACKET_SIZE)
    frame[: len(content)] = content
    return frame


def _alt_hex(value: int) -> str:
    return "0000" if value == 0 else "%#04X" % value


class UdpProbe(ProbeModule):
    """Sends UDP datagrams and classifies UDP replies and ICMP unreachables.

    ``is_allowed`` decides whether a host-order address may be scanned.
    """

    name = "udp"
    packet_length = ETHER_HEADER_LEN + IP_HEADER_LEN + UDP_HEADER_LEN + MAX_UDP_PAYLOAD_LEN
    pcap_filter = "udp || icmp"
    pcap_snaplen = 1500
    port_args = True
    fields = UDP_FIELDS
    helptext = (
        "Probe module that sends UDP packets to hosts. Packets can optionally "
        "be templated based on destination host. Specify packet file with "
        "--probe-args=file:/path_to_packet_file and templates with "
        "template:/path_to_template_file."
    )

    def __init__(self, is_allowed: Optional[Callable[[int], bool]] = None) -> None:
        self.is_allowed: Callable[[int], bool] = is_allowed or (lambda _address: True)
        self.config: Optional[ScanConfig] = None
        self.payload: bytes = DEFAULT_PAYLOAD
        self.template: Optional[PayloadTemplate] = None
        self.num_ports = 0

    def _require_config(self) -> ScanConfig:
        if self.config is None:
            raise RuntimeError("probe module used before global initialization")
        return self.config

    def global_initialize(self, config: ScanConfig) -> None:
        self.config = config
        self.num_ports = config.num_source_ports()
        self.payload = DEFAULT_PAYLOAD
        self.template = None
        if not config.probe_args:
            return
        try:
            self.payload, self.template = parse_probe_args(config.probe_args)
        except TemplateFieldsRequested as request:
            sys.stderr.write(str(request))
            raise SystemExit(0) from None
        self.packet_length = PAYLOAD_OFFSET + len(self.payload)
        if self.packet_length > MAX_PACKET_SIZE:
            raise ValueError("packet larger than the maximum packet size")

    def close(self, config=None, send_state=None, recv_state=None) -> None:
        self.payload = DEFAULT_PAYLOAD
        self.template = None

    def thread_initialize(self, src_mac, gw_mac, dst_port, rand=None):
        """Return the packet buffer and a random generator for one thread.

        The destination port comes from the configuration.
        """
        config = self._require_config()
        frame = build_udp_frame(src_mac, gw_mac, config.target_port, self.payload)
        source = rand if rand is not None else (config.rand or random.Random())
        thread_rand = random.Random(source.getrandbits(32))
        return frame, thread_rand

    def make_packet(self, frame, src_ip, dst_ip, ttl, validation, probe_num, rand=None):
        """Fill in ``frame`` for one target; return the packet length."""
        config = self._require_config()
        struct.pack_into("!II", frame, ETHER_HEADER_LEN + 12, src_ip & _MASK32, dst_ip & _MASK32)
        frame[ETHER_HEADER_LEN + 8] = ttl & 0xFF
        sport = get_src_port(self.num_ports, probe_num, validation, config)
        struct.pack_into("!H", frame, UDP_OFFSET, sport)

        if self.template is not None:
            end = PAYLOAD_OFFSET + MAX_UDP_PAYLOAD_LEN
            frame[PAYLOAD_OFFSET:end] = bytes(MAX_UDP_PAYLOAD_LEN)
            payload = self.template.build(
                MAX_UDP_PAYLOAD_LEN, src_ip, dst_ip, sport, rand or random.Random()
            )
            self.packet_length = PAYLOAD_OFFSET + len(payload)
            if not payload:
                raise RuntimeError("UDP payload template generated an empty payload")
            frame[PAYLOAD_OFFSET:PAYLOAD_OFFSET + len(payload)] = payload
            struct.pack_into(
                "!H", frame, ETHER_HEADER_LEN + 2, IP_HEADER_LEN + UDP_HEADER_LEN + len(payload)
            )
            struct.pack_into("!H", frame, UDP_OFFSET + 4, UDP_HEADER_LEN + len(payload))

        struct.pack_into("!H", frame, ETHER_HEADER_LEN + 10, 0)
        checksum = ip_checksum(bytes(frame[ETHER_HEADER_LEN:UDP_OFFSET]))
        struct.pack_into("!H", frame, ETHER_HEADER_LEN + 10, checksum)
        return self.packet_length

    def print_packet(self, packet) -> str:
        packet = bytes(packet)
        sport, dport, _length, checksum = struct.unpack_from("!HHHH", packet, UDP_OFFSET)
        send_ip_pkts = bool(self.config and self.config.send_ip_pkts)
        return (
            f"udp {{ source: {sport} | dest: {dport} | checksum: {_alt_hex(checksum)} }}\n"
            + format_ip_header(IPHeader.unpack(packet[ETHER_HEADER_LEN:]))
            + format_eth_header(packet, send_ip_pkts)
            + "------------------------------------------------------\n"
        )

    def validate_packet(self, ip_data, length, src_ip, validation) -> bool:
        config = self._require_config()
        ip_data = bytes(ip_data)
        if len(ip_data) < IP_HEADER_LEN:
            return PACKET_INVALID
        available = min(length, len(ip_data))
        header = IPHeader.unpack(ip_data)
        hl = header.header_length
        if header.protocol == IPPROTO_UDP:
            if hl + UDP_HEADER_LEN > available:
                return PACKET_INVALID
            _sport, dport = struct.unpack_from("!HH", ip_data, hl)
            if not check_dst_port(dport, self.num_ports, validation, config):
                return PACKET_INVALID
            if not self.is_allowed(src_ip):
                return PACKET_INVALID
            return PACKET_VALID
        if header.protocol == IPPROTO_ICMP:
            # An unreachable carries IP(ICMP(IP(UDP))) of the probe we sent.
            min_len = hl + ICMP_UNREACH_HEADER_SIZE + IP_HEADER_LEN + UDP_HEADER_LEN
            if available < min_len:
                return PACKET_INVALID
            if ip_data[hl] != ICMP_UNREACH:
                return PACKET_INVALID
            inner = IPHeader.unpack(ip_data[hl + ICMP_UNREACH_HEADER_SIZE:])
            if available < inner.header_length - IP_HEADER_LEN + min_len:
                return PACKET_INVALID
            if not self.is_allowed(inner.dst):
                return PACKET_INVALID
            udp_off = hl + ICMP_UNREACH_HEADER_SIZE + inner.header_length
            sport, dport = struct.unpack_from("!HH", ip_data, udp_off)
            if dport != config.target_port:
                return PACKET_INVALID
            if not check_dst_port(sport, self.num_ports, validation, config):
                return PACKET_INVALID
            return PACKET_VALID
        return PACKET_INVALID

    def process_packet(self, packet, fs: FieldSet) -> None:
        packet = bytes(packet)
        header = IPHeader.unpack(packet[ETHER_HEADER_LEN:])
        hl = header.header_length
        inner_off = ETHER_HEADER_LEN + hl
        if header.protocol == IPPROTO_UDP:
            sport, dport, ulen = struct.unpack_from("!HHH", packet, inner_off)
            fs.add("classification", "udp")
            fs.add("success", True)
            fs.add("sport", sport)
            fs.add("dport", dport)
            for name in ("icmp_responder", "icmp_type", "icmp_code", "icmp_unreach_str"):
                fs.add(name, None)
            fs.add("udp_pkt_size", ulen)
            if ulen > UDP_HEADER_LEN:
                data_len = ulen
                overhead = UDP_HEADER_LEN + hl
                max_rlen = len(packet) - overhead
                max_ilen = header.total_length - overhead
                if 0 <= max_rlen < data_len:
                    data_len = max_rlen
                if 0 <= max_ilen < data_len:
                    data_len = max_ilen
                start = inner_off + UDP_HEADER_LEN
                fs.add("data", packet[start:start + data_len])
            else:
                # Some devices reply with a zero UDP length but still send data.
                fs.add("data", None)
        elif header.protocol == IPPROTO_ICMP:
            icmp_type = packet[inner_off]
            icmp_code = packet[inner_off + 1]
            inner = IPHeader.unpack(packet[inner_off + ICMP_UNREACH_HEADER_SIZE:])
            # Report the host we probed rather than the one that answered.
            fs.modify("saddr", make_ip_str(inner.dst))
            fs.add("classification", "icmp-unreach")
            fs.add("success", False)
            fs.add("sport", None)
            fs.add("dport", None)
            fs.add("icmp_responder", make_ip_str(header.src))
            fs.add("icmp_type", icmp_type)
            fs.add("icmp_code", icmp_code)
            if icmp_code <= ICMP_UNREACH_PRECEDENCE_CUTOFF:
                fs.add("icmp_unreach_str", UDP_UNREACH_STRINGS[icmp_code])
            else:
                fs.add("icmp_unreach_str", "unknown")
            fs.add("udp_pkt_size", None)
            fs.add("data", None)
        else:
            fs.add("classification", "other")
            fs.add("success", False)
            for name in (
                "sport", "dport", "icmp_responder", "icmp_type", "icmp_code",
                "icmp_unreach_str", "udp_pkt_size", "data",
            ):
                fs.add(name, None)