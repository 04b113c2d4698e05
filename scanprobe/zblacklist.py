"""Filtering of an address stream against an allow check, dropping duplicates."""

from __future__ import annotations

import logging
import socket
import struct
from typing import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

# One megabyte of text plus newline and terminator.
MAX_LINE_LENGTH = 1024 * 1024 + 2
_DELIMITERS = "\n,\t #"


def extract_address(line: str) -> str:
    """The part of ``line`` before the first newline, comma, tab, space or '#'."""
    cut = min((pos for pos in map(line.find, _DELIMITERS) if pos >= 0), default=len(line))
    return line[:cut]


def _parse(text: str) -> int | None:
    try:
        return struct.unpack("!I", socket.inet_aton(text))[0]
    except (OSError, ValueError):
        return None


def filter_addresses(
    lines: Iterable[str],
    is_allowed: Callable[[int], bool],
    check_duplicates: bool = True,
    ignore_input_errors: bool = False,
) -> Iterator[str]:
    """Yield the input lines whose address may be scanned.

    ``is_allowed`` receives the address as a host-order integer. Lines that
    hold no valid address are passed through unless ``ignore_input_errors``.
    """
    seen: set[int] = set()
    for original in lines:
        if len(original) >= MAX_LINE_LENGTH - 1:
            raise ValueError(
                f"received line longer than max length: {MAX_LINE_LENGTH}"
            )
        text = extract_address(original)
        logger.debug("input value %s", text)
        address = _parse(text)
        if address is None:
            logger.warning("invalid input address: %s", text)
            if not ignore_input_errors:
                yield original
            continue
        if check_duplicates:
            if address in seen:
                logger.debug("%s is a duplicate: skipped", text)
                continue
        else:
            logger.debug("no duplicate checking for %s", text)
        if is_allowed(address):
            if check_duplicates:
                seen.add(address)
            yield original