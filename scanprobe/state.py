"""Scan configuration and the counters kept by the sender and receiver."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Optional

MAX_PACKET_SIZE = 4096
MAC_ADDR_LEN_BYTES = 6
MAXTTL = 255
LOG_INFO = 3


@dataclass
class ScanConfig:
    """Settings that govern one scan, with the scanner's defaults."""

    log_level: int = LOG_INFO
    target_port: int = 0
    # Linux's default ephemeral port range.
    source_port_first: int = 32768
    source_port_last: int = 61000
    max_targets: int = 0xFFFFFFFF
    max_runtime: int = 0
    max_results: int = 0
    iface: Optional[str] = None
    rate: int = -1
    bandwidth: int = 0
    cooldown_secs: int = 0
    senders: int = 1
    pin_cores: list[int] = field(default_factory=list)
    seed_provided: bool = False
    seed: int = 0
    rand: Optional[random.Random] = None
    generator: int = 0
    shard_num: int = 0
    total_shards: int = 1
    packet_streams: int = 1
    probe_module: Any = None
    output_module_name: Optional[str] = None
    output_module: Any = None
    probe_args: Optional[str] = None
    probe_ttl: int = MAXTTL
    output_args: Optional[str] = None
    gw_mac: bytes = bytes(MAC_ADDR_LEN_BYTES)
    hw_mac: bytes = bytes(MAC_ADDR_LEN_BYTES)
    gw_ip: int = 0
    gw_mac_set: bool = False
    hw_mac_set: bool = False
    source_ip_addresses: list[int] = field(default_factory=list)
    send_ip_pkts: bool = False
    output_filename: Optional[str] = None
    blacklist_filename: Optional[str] = None
    whitelist_filename: Optional[str] = None
    list_of_ips_filename: Optional[str] = None
    list_of_ips_count: int = 0
    metadata_filename: Optional[str] = None
    notes: Optional[str] = None
    custom_metadata_str: Optional[str] = None
    destination_cidrs: list[str] = field(default_factory=list)
    raw_output_fields: Optional[str] = None
    output_fields: list[str] = field(default_factory=list)
    output_filter_str: Optional[str] = None
    success_index: int = 0
    app_success_index: int = -1
    log_file: Optional[str] = None
    log_directory: Optional[str] = None
    status_updates_file: Optional[str] = None
    dryrun: bool = False
    quiet: bool = False
    ignore_invalid_hosts: bool = False
    syslog: bool = True
    filter_duplicates: bool = False
    filter_unsuccessful: bool = False
    recv_ready: bool = False
    num_retries: int = 0
    total_allowed: int = 0
    total_disallowed: int = 0
    max_sendto_failures: int = -1
    min_hitrate: float = 0.0
    data_link_size: int = 0

    @property
    def number_source_ips(self) -> int:
        return len(self.source_ip_addresses)

    def num_source_ports(self) -> int:
        """Number of source ports in the configured range."""
        return self.source_port_last - self.source_port_first + 1


@dataclass
class SendState:
    """Counters and timestamps kept by the sending side."""

    start: float = 0.0
    finish: float = 0.0
    sent: int = 0
    tried_sent: int = 0
    blacklisted: int = 0
    whitelisted: int = 0
    warmup: bool = True
    complete: bool = False
    first_scanned: int = 0
    max_targets: int = 0
    sendto_failures: int = 0
    max_index: int = 0
    list_of_ips: Optional[set[int]] = None


@dataclass
class RecvState:
    """Counters and timestamps kept by the receiving side."""

    success_total: int = 0
    success_unique: int = 0
    app_success_total: int = 0
    app_success_unique: int = 0
    cooldown_total: int = 0
    cooldown_unique: int = 0
    failure_total: int = 0
    filter_success: int = 0
    ip_fragments: int = 0
    validation_passed: int = 0
    validation_failed: int = 0
    complete: bool = False
    start: float = 0.0
    finish: float = 0.0
    pcap_recv: int = 0
    pcap_drop: int = 0
    pcap_ifdrop: int = 0