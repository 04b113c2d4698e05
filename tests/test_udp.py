import random
import struct

import pytest

from scanprobe.packet import (
    ETHER_HEADER_LEN,
    ETHERTYPE_IP,
    IP_HEADER_LEN,
    IPPROTO_ICMP,
    IPPROTO_UDP,
    UDP_HEADER_LEN,
    IPHeader,
    get_src_port,
    in_checksum,
    make_ip_str,
)
from scanprobe.probe_modules import FieldSet, add_ip_fields
from scanprobe.state import ScanConfig
from scanprobe.udp import (
    DEFAULT_PAYLOAD,
    MAX_UDP_PAYLOAD_LEN,
    PAYLOAD_OFFSET,
    UDP_OFFSET,
    UDP_UNREACH_STRINGS,
    TemplateFieldsRequested,
    UdpProbe,
    parse_probe_args,
)

TARGET = 0xC0000201
OURS = 0xC0000202
ROUTER = 0xC0000203
VALIDATION = (0, 3, 0, 0)
SRC_MAC = bytes([2, 0, 0, 0, 0, 1])
GW_MAC = bytes([2, 0, 0, 0, 0, 2])


@pytest.fixture
def config():
    return ScanConfig(
        target_port=53,
        source_port_first=40000,
        source_port_last=40009,
        probe_args="text:hello",
    )


@pytest.fixture
def probe(config):
    p = UdpProbe()
    p.global_initialize(config)
    return p


def our_port(config, probe_num=0):
    return get_src_port(config.num_source_ports(), probe_num, VALIDATION, config)


def udp_response(sport, dport, data=b"abc", src=TARGET, dst=OURS, total=None):
    udp = struct.pack("!HHHH", sport, dport, UDP_HEADER_LEN + len(data), 0) + data
    length = IP_HEADER_LEN + len(udp) if total is None else total
    ip = IPHeader(protocol=IPPROTO_UDP, total_length=length, src=src, dst=dst, ttl=64)
    return ip.pack() + udp


def icmp_response(icmp_type, code, inner_sport, inner_dport, inner_dst=TARGET):
    inner_udp = struct.pack("!HHHH", inner_sport, inner_dport, UDP_HEADER_LEN, 0)
    inner_ip = IPHeader(protocol=IPPROTO_UDP, total_length=28, src=OURS, dst=inner_dst, ttl=64)
    icmp = struct.pack("!BBHI", icmp_type, code, 0, 0) + inner_ip.pack() + inner_udp
    outer = IPHeader(protocol=IPPROTO_ICMP, total_length=IP_HEADER_LEN + len(icmp),
                     src=ROUTER, dst=OURS, ttl=64)
    return outer.pack() + icmp


def test_parse_default_args():
    assert parse_probe_args(None) == (DEFAULT_PAYLOAD, None)
    assert parse_probe_args("") == (DEFAULT_PAYLOAD, None)


def test_parse_text():
    assert parse_probe_args("text:hello") == (b"hello", None)


def test_parse_hex():
    assert parse_probe_args("hex:0102ff") == (b"\x01\x02\xff", None)


def test_parse_hex_rejects_non_hex():
    with pytest.raises(ValueError, match="non-hex"):
        parse_probe_args("hex:zz")


@pytest.mark.parametrize("args", ["bogus", "other:thing"])
def test_parse_unknown_spec(args):
    with pytest.raises(ValueError, match="unknown UDP probe specification"):
        parse_probe_args(args)


def test_parse_file(tmp_path):
    path = tmp_path / "payload.bin"
    path.write_bytes(b"\x00\x01payload")
    assert parse_probe_args(f"file:{path}") == (b"\x00\x01payload", None)


def test_parse_file_truncated_to_max(tmp_path):
    path = tmp_path / "big.bin"
    path.write_bytes(b"x" * (MAX_UDP_PAYLOAD_LEN + 50))
    payload, _ = parse_probe_args(f"file:{path}")
    assert len(payload) == MAX_UDP_PAYLOAD_LEN


def test_parse_template(tmp_path):
    path = tmp_path / "template.txt"
    path.write_bytes(b"A${DADDR}B")
    payload, template = parse_probe_args(f"template:{path}")
    assert payload == b"A${DADDR}B"
    assert len(template) == 3


def test_parse_missing_file(tmp_path):
    with pytest.raises(ValueError, match="could not open"):
        parse_probe_args(f"file:{tmp_path / 'missing'}")


def test_parse_long_text_truncated():
    payload, _ = parse_probe_args("text:" + "y" * (MAX_UDP_PAYLOAD_LEN + 10))
    assert payload == b"y" * MAX_UDP_PAYLOAD_LEN


def test_template_fields_request():
    with pytest.raises(TemplateFieldsRequested):
        parse_probe_args("template-fields")


def test_global_initialize_template_fields_exits(config, capsys):
    config.probe_args = "template-fields"
    with pytest.raises(SystemExit) as exc:
        UdpProbe().global_initialize(config)
    assert exc.value.code == 0
    assert "RAND_DIGIT: Random digits from 0-9" in capsys.readouterr().err


def test_global_initialize_sets_length(probe, config):
    assert probe.packet_length == PAYLOAD_OFFSET + len(b"hello")
    assert probe.num_ports == config.num_source_ports()


def test_global_initialize_without_args_keeps_max(config):
    config.probe_args = None
    p = UdpProbe()
    p.global_initialize(config)
    assert p.packet_length == PAYLOAD_OFFSET + MAX_UDP_PAYLOAD_LEN
    assert p.payload == DEFAULT_PAYLOAD


def test_thread_initialize_frame(probe, config):
    frame, thread_rand = probe.thread_initialize(SRC_MAC, GW_MAC, 9999, random.Random(1))
    assert frame[0:6] == GW_MAC
    assert frame[6:12] == SRC_MAC
    assert int.from_bytes(frame[12:14], "big") == ETHERTYPE_IP
    header = IPHeader.unpack(bytes(frame[ETHER_HEADER_LEN:]))
    assert header.protocol == IPPROTO_UDP
    assert header.total_length == IP_HEADER_LEN + UDP_HEADER_LEN + 5
    _s, dport, ulen, _c = struct.unpack_from("!HHHH", frame, UDP_OFFSET)
    assert dport == config.target_port
    assert ulen == UDP_HEADER_LEN + 5
    assert bytes(frame[PAYLOAD_OFFSET:PAYLOAD_OFFSET + 5]) == b"hello"
    _, other = probe.thread_initialize(SRC_MAC, GW_MAC, 9999, random.Random(1))
    assert thread_rand.getrandbits(32) == other.getrandbits(32)


def test_make_packet(probe, config):
    frame, thread_rand = probe.thread_initialize(SRC_MAC, GW_MAC, 0, random.Random(2))
    length = probe.make_packet(frame, OURS, TARGET, 33, VALIDATION, 1, thread_rand)
    assert length == probe.packet_length
    header = IPHeader.unpack(bytes(frame[ETHER_HEADER_LEN:]))
    assert (header.src, header.dst, header.ttl) == (OURS, TARGET, 33)
    assert in_checksum(bytes(frame[ETHER_HEADER_LEN:UDP_OFFSET])) == 0
    sport = struct.unpack_from("!H", frame, UDP_OFFSET)[0]
    assert sport == our_port(config, 1)


def test_make_packet_with_template(tmp_path, config):
    path = tmp_path / "template.txt"
    path.write_bytes(b"X${DADDR}Y")
    config.probe_args = f"template:{path}"
    p = UdpProbe()
    p.global_initialize(config)
    frame, thread_rand = p.thread_initialize(SRC_MAC, GW_MAC, 0, random.Random(3))
    length = p.make_packet(frame, OURS, TARGET, 64, VALIDATION, 0, thread_rand)
    expected = b"X" + make_ip_str(TARGET).encode() + b"Y"
    assert length == PAYLOAD_OFFSET + len(expected)
    assert bytes(frame[PAYLOAD_OFFSET:length]) == expected
    assert frame[length] == 0
    header = IPHeader.unpack(bytes(frame[ETHER_HEADER_LEN:]))
    assert header.total_length == IP_HEADER_LEN + UDP_HEADER_LEN + len(expected)
    assert struct.unpack_from("!H", frame, UDP_OFFSET + 4)[0] == UDP_HEADER_LEN + len(expected)
    assert in_checksum(bytes(frame[ETHER_HEADER_LEN:UDP_OFFSET])) == 0


def test_validate_udp_reply(probe, config):
    data = udp_response(config.target_port, our_port(config))
    assert probe.validate_packet(data, len(data), TARGET, VALIDATION) is True


def test_validate_udp_wrong_port(probe, config):
    data = udp_response(config.target_port, config.source_port_last + 1)
    assert probe.validate_packet(data, len(data), TARGET, VALIDATION) is False


def test_validate_udp_truncated(probe, config):
    data = udp_response(config.target_port, our_port(config))
    assert probe.validate_packet(data, IP_HEADER_LEN + 4, TARGET, VALIDATION) is False


def test_validate_udp_disallowed(config):
    p = UdpProbe(is_allowed=lambda address: address != TARGET)
    p.global_initialize(config)
    data = udp_response(config.target_port, our_port(config))
    assert p.validate_packet(data, len(data), TARGET, VALIDATION) is False


def test_validate_icmp_unreach(probe, config):
    data = icmp_response(3, 3, our_port(config), config.target_port)
    assert probe.validate_packet(data, len(data), ROUTER, VALIDATION) is True


def test_validate_icmp_wrong_type(probe, config):
    data = icmp_response(11, 0, our_port(config), config.target_port)
    assert probe.validate_packet(data, len(data), ROUTER, VALIDATION) is False


def test_validate_icmp_target_port_mismatch(probe, config):
    data = icmp_response(3, 3, our_port(config), config.target_port + 1)
    assert probe.validate_packet(data, len(data), ROUTER, VALIDATION) is False


def test_validate_icmp_blocked_destination(config):
    p = UdpProbe(is_allowed=lambda address: address != TARGET)
    p.global_initialize(config)
    data = icmp_response(3, 3, our_port(config), config.target_port)
    assert p.validate_packet(data, len(data), ROUTER, VALIDATION) is False


def test_validate_icmp_too_short(probe, config):
    data = icmp_response(3, 3, our_port(config), config.target_port)
    assert probe.validate_packet(data, len(data) - 1, ROUTER, VALIDATION) is False


def test_validate_other_protocol(probe):
    data = IPHeader(protocol=6, total_length=40, src=TARGET, dst=OURS).pack() + bytes(20)
    assert probe.validate_packet(data, len(data), TARGET, VALIDATION) is False


def test_process_udp_reply(probe):
    ip = udp_response(53, 40003, b"answer")
    fs = FieldSet()
    probe.process_packet(bytes(ETHER_HEADER_LEN) + ip, fs)
    result = fs.as_dict()
    assert result["classification"] == "udp"
    assert result["success"] is True
    assert (result["sport"], result["dport"]) == (53, 40003)
    assert result["udp_pkt_size"] == UDP_HEADER_LEN + len(b"answer")
    assert result["data"] == b"answer"
    assert result["icmp_type"] is None
    assert fs.names == [f.name for f in probe.fields]


def test_process_udp_data_clamped_to_ip_length(probe):
    ip = udp_response(53, 40003, b"answer", total=IP_HEADER_LEN + UDP_HEADER_LEN + 2)
    fs = FieldSet()
    probe.process_packet(bytes(ETHER_HEADER_LEN) + ip, fs)
    assert fs.get("data") == b"an"


def test_process_udp_empty_payload(probe):
    ip = udp_response(53, 40003, b"")
    fs = FieldSet()
    probe.process_packet(bytes(ETHER_HEADER_LEN) + ip, fs)
    assert fs.get("data") is None


def test_process_icmp_unreach(probe, config):
    ip = icmp_response(3, 3, our_port(config), config.target_port)
    fs = FieldSet()
    add_ip_fields(fs, IPHeader.unpack(ip))
    probe.process_packet(bytes(ETHER_HEADER_LEN) + ip, fs)
    assert fs.get("saddr") == make_ip_str(TARGET)
    assert fs.get("icmp_responder") == make_ip_str(ROUTER)
    assert fs.get("classification") == "icmp-unreach"
    assert fs.get("success") is False
    assert fs.get("icmp_unreach_str") == "port unreachable"
    assert fs.get("icmp_unreach_str") == UDP_UNREACH_STRINGS[3]
    assert (fs.get("icmp_type"), fs.get("icmp_code")) == (3, 3)


def test_process_icmp_unknown_code(probe, config):
    ip = icmp_response(3, 40, our_port(config), config.target_port)
    fs = FieldSet()
    add_ip_fields(fs, IPHeader.unpack(ip))
    probe.process_packet(bytes(ETHER_HEADER_LEN) + ip, fs)
    assert fs.get("icmp_unreach_str") == "unknown"


def test_process_other_protocol(probe):
    ip = IPHeader(protocol=6, total_length=40, src=TARGET, dst=OURS).pack() + bytes(20)
    fs = FieldSet()
    probe.process_packet(bytes(ETHER_HEADER_LEN) + ip, fs)
    assert fs.get("classification") == "other"
    assert fs.get("success") is False
    assert fs.get("data") is None


def test_print_packet(probe):
    frame, thread_rand = probe.thread_initialize(SRC_MAC, GW_MAC, 0, random.Random(4))
    probe.make_packet(frame, OURS, TARGET, 64, VALIDATION, 0, thread_rand)
    text = probe.print_packet(frame)
    lines = text.splitlines()
    assert lines[0].startswith("udp { source: ")
    assert f"daddr: {make_ip_str(TARGET)}" in lines[1]
    assert lines[2].startswith("eth { shost: 02:00:00:00:00:01")
    assert lines[-1] == "-" * 54


def test_close_resets(tmp_path, config):
    path = tmp_path / "template.txt"
    path.write_bytes(b"${SPORT}")
    config.probe_args = f"template:{path}"
    p = UdpProbe()
    p.global_initialize(config)
    p.close(config, None, None)
    assert p.template is None
    assert p.payload == DEFAULT_PAYLOAD


def test_use_before_initialize():
    with pytest.raises(RuntimeError):
        UdpProbe().thread_initialize(SRC_MAC, GW_MAC, 0, random.Random(0))