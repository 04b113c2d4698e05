import ipaddress
import re
import sys
from datetime import datetime, timezone

import pytest

from scanprobe.packet import IPHeader
from scanprobe.probe_modules import (
    IP_FIELDS,
    SYS_FIELDS,
    FieldSet,
    ProbeModule,
    add_ip_fields,
    add_system_fields,
    get_probe_module_by_name,
    probe_module_names,
    register_probe_module,
)


class DummyProbe(ProbeModule):
    def __init__(self, name):
        self.name = name

    def make_packet(self, frame, src_ip, dst_ip, ttl, validation, probe_num, rand):
        return frame

    def print_packet(self, packet):
        return "dummy"

    def validate_packet(self, ip_data, length, src_ip, validation):
        return True

    def process_packet(self, packet, fs):
        fs.add("success", True)


def test_fieldset_add_get_and_order():
    fs = FieldSet()
    fs.add("a", 1)
    fs.add("b", "two")
    assert fs.get("b") == "two"
    assert fs.names == ["a", "b"]
    assert fs[0] == 1
    assert len(fs) == 2
    assert fs.as_dict() == {"a": 1, "b": "two"}


def test_fieldset_modify():
    fs = FieldSet()
    fs.add("saddr", "192.0.2.1")
    fs.modify("saddr", "198.51.100.7")
    assert fs.get("saddr") == "198.51.100.7"
    assert len(fs) == 1


def test_fieldset_missing_names():
    fs = FieldSet()
    with pytest.raises(KeyError):
        fs.get("nope")
    with pytest.raises(KeyError):
        fs.modify("nope", 1)
    assert "nope" not in fs


def test_probe_module_is_abstract():
    with pytest.raises(TypeError):
        ProbeModule()


def test_registry_lookup():
    probe = register_probe_module(DummyProbe("dummy-registry"))
    assert get_probe_module_by_name("dummy-registry") is probe
    assert "dummy-registry" in probe_module_names()
    assert get_probe_module_by_name("no-such-probe") is None


def test_registry_rejects_duplicates():
    register_probe_module(DummyProbe("dummy-dup"))
    with pytest.raises(ValueError):
        register_probe_module(DummyProbe("dummy-dup"))


def test_registry_preserves_order():
    register_probe_module(DummyProbe("dummy-order-1"))
    register_probe_module(DummyProbe("dummy-order-2"))
    names = probe_module_names()
    assert names.index("dummy-order-1") < names.index("dummy-order-2")


def test_add_ip_fields():
    src = int(ipaddress.IPv4Address("192.0.2.1"))
    dst = int(ipaddress.IPv4Address("198.51.100.7"))
    header = IPHeader(protocol=17, src=src, dst=dst, ttl=64, ident=54321)
    fs = FieldSet()
    add_ip_fields(fs, header)
    assert fs.names == [f.name for f in IP_FIELDS]
    assert fs.get("saddr") == "192.0.2.1"
    assert fs.get("daddr") == "198.51.100.7"
    assert fs.get("saddr_raw").to_bytes(4, sys.byteorder) == bytes([192, 0, 2, 1])
    assert fs.get("daddr_raw").to_bytes(4, sys.byteorder) == bytes([198, 51, 100, 7])
    assert fs.get("ipid") == 54321
    assert fs.get("ttl") == 64


def test_add_system_fields():
    when = datetime.fromtimestamp(1_600_000_000.25, tz=timezone.utc)
    fs = FieldSet()
    add_system_fields(fs, True, False, when)
    assert fs.names == [f.name for f in SYS_FIELDS]
    assert fs.get("repeat") is True
    assert fs.get("cooldown") is False
    assert fs.get("timestamp_ts") == 1_600_000_000
    assert fs.get("timestamp_us") == 250000
    assert re.fullmatch(
        r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.250[+-]\d{4}", fs.get("timestamp_str")
    )


def test_add_system_fields_defaults_to_now():
    fs = FieldSet()
    before = datetime.now().timestamp()
    add_system_fields(fs, False, True)
    after = datetime.now().timestamp()
    assert int(before) <= fs.get("timestamp_ts") <= after
    assert 0 <= fs.get("timestamp_us") < 1_000_000