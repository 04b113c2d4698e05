"""Probe that sends an SSDP discovery request and parses UPnP replies."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from scanprobe.packet import (
    ETHER_HEADER_LEN,
    IPPROTO_UDP,
    UDP_HEADER_LEN,
    IPHeader,
)
from scanprobe.probe_modules import (
    OUTPUT_TYPE_DYNAMIC,
    PACKET_INVALID,
    PACKET_VALID,
    FieldDef,
    FieldSet,
)
from scanprobe.state import ScanConfig
from scanprobe.udp import UdpProbe, build_udp_frame

UPNP_QUERY = (
    b"M-SEARCH * HTTP/1.1\r\n"
    b"Host:239.255.255.250:1900\r\n"
    b"ST:upnp:rootdevice\r\n"
    b'Man:"ssdp:discover"\r\nMX:3\r\n\r\n'
)

_HEADER_FIELDS = {
    "server": "server",
    "location": "location",
    "usn": "usn",
    "ext": "ext",
    "st": "st",
    "agent": "agent",
    "x-user-agent": "x_user_agent",
    "date": "date",
    "cache-control": "cache_control",
}

_HEADER_ORDER = (
    "server", "location", "usn", "st", "ext",
    "cache_control", "x_user_agent", "agent", "date",
)

UPNP_FIELDS: tuple[FieldDef, ...] = (
    FieldDef("classification", "string", "packet classification"),
    FieldDef("success", "bool", "is response considered success"),
    FieldDef("server", "string", "UPnP server"),
    FieldDef("location", "string", "UPnP location"),
    FieldDef("usn", "string", "UPnP usn"),
    FieldDef("st", "string", "UPnP st"),
    FieldDef("ext", "string", "UPnP ext"),
    FieldDef("cache_control", "string", "UPnP cache-control"),
    FieldDef("x_user_agent", "string", "UPnP x-user-agent"),
    FieldDef("agent", "string", "UPnP agent"),
    FieldDef("date", "string", "UPnP date"),
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
    FieldDef("data", "binary", "UDP payload"),
)


@dataclass
class UpnpResponse:
    """Classification of a reply and the UPnP headers it carried."""

    classification: str
    success: bool
    headers: dict[str, str] = field(default_factory=dict)


def parse_upnp_response(payload: bytes) -> UpnpResponse:
    """Read an SSDP reply: a ``HTTP/1.1 200 OK`` status line then headers."""
    text = bytes(payload).split(b"\0", 1)[0].decode("latin-1")
    classification = "none"
    success = False
    headers: dict[str, str] = {}
    first = True
    for line in text.split("\n"):
        if line.endswith("\r"):
            line = line[:-1]
        if not line:
            continue
        if first:
            if line != "HTTP/1.1 200 OK":
                return UpnpResponse("no-http-header", False, {})
            first = False
            success = True
            classification = "upnp"
            continue
        key, colon, value = line.partition(":")
        if not colon:
            continue
        if value.startswith(" "):
            value = value[1:]
        name = _HEADER_FIELDS.get(key.lower())
        if name is not None:
            headers[name] = value
    return UpnpResponse(classification, success, headers)


class UpnpProbe(UdpProbe):
    """UDP probe carrying an SSDP M-SEARCH for root devices."""

    name = "upnp"
    packet_length = 139
    pcap_filter = "udp || icmp"
    pcap_snaplen = 2048
    port_args = True
    # Not really dynamic, but this steers output away from CSV escaping issues.
    output_type = OUTPUT_TYPE_DYNAMIC
    fields = UPNP_FIELDS
    helptext = (
        "Probe module that sends a TCP SYN packet to a specific port. Possible "
        "classifications are: synack and rst. A SYN-ACK packet is considered a "
        "success and a reset packet is considered a failed response."
    )

    def global_initialize(self, config: ScanConfig) -> None:
        self.config = config
        self.num_ports = config.num_source_ports()

    def close(self, config=None, send_state=None, recv_state=None) -> None:
        """Nothing to release."""

    def thread_initialize(self, src_mac, gw_mac, dst_port, rand=None):
        """Return the packet buffer; no per-thread random state is needed."""
        return build_udp_frame(src_mac, gw_mac, dst_port, UPNP_QUERY), None

    def validate_packet(self, ip_data, length, src_ip, validation) -> bool:
        if not super().validate_packet(ip_data, length, src_ip, validation):
            return PACKET_INVALID
        ip_data = bytes(ip_data)
        header = IPHeader.unpack(ip_data)
        if header.protocol == IPPROTO_UDP:
            hl = header.header_length
            sport, _dport, ulen = struct.unpack_from("!HHH", ip_data, hl)
            if sport != self._require_config().target_port:
                return PACKET_INVALID
            if hl + ulen > length:
                return PACKET_INVALID
        return PACKET_VALID

    def process_packet(self, packet, fs: FieldSet) -> None:
        packet = bytes(packet)
        header = IPHeader.unpack(packet[ETHER_HEADER_LEN:])
        if header.protocol != IPPROTO_UDP:
            fs.add("classification", "other")
            fs.add("success", False)
            for item in UPNP_FIELDS[2:]:
                fs.add(item.name, None)
            return
        udp_off = ETHER_HEADER_LEN + header.header_length
        sport, dport, ulen = struct.unpack_from("!HHH", packet, udp_off)
        start = udp_off + UDP_HEADER_LEN
        body = packet[start:start + max(ulen - UDP_HEADER_LEN, 0)]
        response = parse_upnp_response(body)
        fs.add("classification", response.classification)
        fs.add("success", response.success)
        for name in _HEADER_ORDER:
            fs.add(name, response.headers.get(name))
        fs.add("sport", sport)
        fs.add("dport", dport)
        for name in ("icmp_responder", "icmp_type", "icmp_code", "icmp_unreach_str"):
            fs.add(name, None)
        fs.add("data", body)