"""UDP payload templates: ``${FIELD}`` placeholders filled in for each probe."""

from __future__ import annotations

import enum
import ipaddress
import random
import struct
from dataclasses import dataclass, field
from typing import Optional, Union


class FieldType(enum.IntEnum):
    """Kinds of template field."""

    DATA = 0
    SADDR_N = 1
    SADDR_A = 2
    DADDR_N = 3
    DADDR_A = 4
    SPORT_N = 5
    SPORT_A = 6
    DPORT_N = 7
    DPORT_A = 8
    RAND_BYTE = 9
    RAND_DIGIT = 10
    RAND_ALPHA = 11
    RAND_ALPHANUM = 12


@dataclass(frozen=True)
class TemplateFieldDef:
    """A placeholder name that may appear in a template."""

    name: str
    ftype: FieldType
    desc: str


TEMPLATE_FIELDS: tuple[TemplateFieldDef, ...] = (
    TemplateFieldDef("SADDR_N", FieldType.SADDR_N, "Source IP address in network byte order"),
    TemplateFieldDef("SADDR", FieldType.SADDR_A, "Source IP address in dotted-quad format"),
    TemplateFieldDef("DADDR_N", FieldType.DADDR_N, "Destination IP address in network byte order"),
    TemplateFieldDef("DADDR", FieldType.DADDR_A, "Destination IP address in dotted-quad format"),
    TemplateFieldDef("SPORT_N", FieldType.SPORT_N, "UDP source port in netowrk byte order"),
    TemplateFieldDef("SPORT", FieldType.SPORT_A, "UDP source port in ascii format"),
    TemplateFieldDef("DPORT_N", FieldType.DPORT_N, "UDP destination port in network byte order"),
    TemplateFieldDef("DPORT", FieldType.DPORT_A, "UDP destination port in ascii format"),
    TemplateFieldDef("RAND_BYTE", FieldType.RAND_BYTE, "Random bytes from 0-255"),
    TemplateFieldDef("RAND_DIGIT", FieldType.RAND_DIGIT, "Random digits from 0-9"),
    TemplateFieldDef("RAND_ALPHA", FieldType.RAND_ALPHA, "Random mixed-case letters (a-z)"),
    TemplateFieldDef(
        "RAND_ALPHANUM",
        FieldType.RAND_ALPHANUM,
        "Random mixed-case letters (a-z) and numbers",
    ),
)

CHARSET_ALPHANUM = b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
CHARSET_ALPHA = b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
CHARSET_DIGIT = b"0123456789"
CHARSET_ALL = bytes(range(1, 256)) + b"\x00"

_RANDOM_CHARSETS = {
    FieldType.RAND_DIGIT: CHARSET_DIGIT,
    FieldType.RAND_ALPHA: CHARSET_ALPHA,
    FieldType.RAND_ALPHANUM: CHARSET_ALPHANUM,
    FieldType.RAND_BYTE: CHARSET_ALL,
}


@dataclass
class TemplateField:
    """One piece of a template: literal data or a placeholder."""

    ftype: FieldType
    length: int = 0
    data: Optional[bytes] = None


def random_bytes(count: int, charset: bytes, rand: random.Random) -> bytes:
    """``count`` bytes drawn from ``charset`` using 32-bit words from ``rand``."""
    size = len(charset)
    return bytes(charset[rand.getrandbits(32) % size] for _ in range(count))


def _ipv4(ip: int) -> str:
    return str(ipaddress.IPv4Address(ip & 0xFFFFFFFF))


@dataclass
class PayloadTemplate:
    """A parsed template, ready to be rendered for each target."""

    fields: list[TemplateField] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.fields)

    def build(
        self, max_len: int, src_ip: int, dst_ip: int, sport: int, rand: random.Random
    ) -> bytes:
        """Render the payload; empty if it would not fit within ``max_len``.

        Port placeholders, destination ones included, render ``sport``.
        """
        out = bytearray()
        sport &= 0xFFFF
        for item in self.fields:
            if len(out) + item.length >= max_len:
                return b""
            ftype = item.ftype
            if ftype is FieldType.DATA:
                if item.data and item.length:
                    out += item.data[: item.length]
                continue
            charset = _RANDOM_CHARSETS.get(ftype)
            if charset is not None:
                out += random_bytes(item.length, charset, rand)
                continue
            reserve, chunk = self._render(ftype, src_ip, dst_ip, sport)
            if len(out) + reserve >= max_len:
                return b""
            out += chunk
        return bytes(out)

    @staticmethod
    def _render(ftype: FieldType, src_ip: int, dst_ip: int, sport: int) -> tuple[int, bytes]:
        if ftype is FieldType.SADDR_A:
            return 15, _ipv4(src_ip).encode("ascii")
        if ftype is FieldType.DADDR_A:
            return 15, _ipv4(dst_ip).encode("ascii")
        if ftype is FieldType.SADDR_N:
            return 4, struct.pack("!I", src_ip & 0xFFFFFFFF)
        if ftype is FieldType.DADDR_N:
            return 4, struct.pack("!I", dst_ip & 0xFFFFFFFF)
        if ftype in (FieldType.SPORT_N, FieldType.DPORT_N):
            return 2, struct.pack("!H", sport)
        if ftype in (FieldType.SPORT_A, FieldType.DPORT_A):
            return 5, str(sport).encode("ascii")
        raise ValueError(f"unknown template field type {ftype!r}")


def _atoi(text: str) -> int:
    text = text.lstrip(" \t\n\r\f\v")
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    digits = ""
    for char in text:
        if not char.isdigit() or not char.isascii():
            break
        digits += char
    return sign * int(digits) if digits else 0


def field_lookup(spec: Union[str, bytes]) -> Optional[TemplateField]:
    """Parse ``NAME`` or ``NAME=LENGTH``; None if NAME is not a known field."""
    if isinstance(spec, (bytes, bytearray)):
        spec = bytes(spec).decode("latin-1")
    spec = spec.split("\0", 1)[0]
    name, eq, param = spec.partition("=")
    length = _atoi(param) & 0xFFFFFFFF if eq else 0
    for definition in TEMPLATE_FIELDS:
        if definition.name == name:
            return TemplateField(definition.ftype, length, None)
    return None


def load_template(data: bytes) -> PayloadTemplate:
    """Split ``data`` into literal runs and ``${FIELD}`` placeholders.

    An unknown placeholder is kept as literal text.
    """
    data = bytes(data)
    template = PayloadTemplate()
    dollar: Optional[int] = None
    lbrack: Optional[int] = None
    start = 0
    pos = 0
    while pos < len(data):
        char = data[pos]
        if char == ord("$"):
            if dollar is None or lbrack is None:
                dollar = pos
            pos += 1
            continue
        if char == ord("{"):
            if dollar is not None and lbrack is None:
                lbrack = pos
            pos += 1
            continue
        if char == ord("}"):
            if dollar is None or lbrack is None:
                pos += 1
                continue
            if dollar > start:
                template.fields.append(
                    TemplateField(FieldType.DATA, dollar - start, data[start:dollar])
                )
            found = field_lookup(data[lbrack + 1 : pos])
            if found is not None:
                template.fields.append(found)
                start = pos + 1
            else:
                start = dollar
        elif dollar is not None and lbrack is not None:
            pos += 1
            continue
        dollar = None
        lbrack = None
        pos += 1
    if start < pos:
        template.fields.append(TemplateField(FieldType.DATA, pos - start, data[start:pos]))
    return template


def template_field_help() -> str:
    """Listing of the allowed template fields with their descriptions."""
    lines = ["List of allowed UDP template fields (name: description)\n\n"]
    lines.extend(f"{item.name}: {item.desc}\n" for item in TEMPLATE_FIELDS)
    lines.append("\n")
    return "".join(lines)