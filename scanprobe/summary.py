"""JSON metadata describing a finished scan."""

from __future__ import annotations

import json
import logging
import math
import socket
from datetime import datetime
from typing import IO, Any, Iterable, Optional, Tuple

from scanprobe.packet import format_mac, make_ip_str
from scanprobe.state import RecvState, ScanConfig, SendState

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

Network = Tuple[int, int]


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).astimezone().strftime(TIME_FORMAT)


def _hitrate(success_unique: int, sent: int) -> float:
    numerator = 100.0 * success_unique
    if sent:
        return numerator / sent
    return math.nan if numerator == 0 else math.inf


def _hostnames() -> dict[str, str]:
    names: dict[str, str] = {}
    try:
        local = socket.gethostname()
    except OSError:
        logger.error("unable to retrieve local hostname")
        return names
    names["local_hostname"] = local
    try:
        names["full_hostname"] = socket.gethostbyname_ex(local)[0]
    except OSError:
        logger.error("unable to retrieve complete hostname")
    return names


def _cidrs(networks: Optional[Iterable[Network]]) -> list[str]:
    if not networks:
        return []
    return [f"{make_ip_str(address)}/{prefix}" for address, prefix in networks]


def build_metadata(
    config: ScanConfig,
    send_state: SendState,
    recv_state: RecvState,
    probe_name: str,
    output_name: str,
    blacklisted: Optional[Iterable[Network]] = None,
    whitelisted: Optional[Iterable[Network]] = None,
) -> dict[str, Any]:
    """Collect the scan's settings and results into a JSON-ready dict.

    ``blacklisted`` and ``whitelisted`` are (host-order address, prefix
    length) pairs.
    """
    obj: dict[str, Any] = {}
    obj.update(_hostnames())
    obj["target_port"] = config.target_port
    obj["source_port_first"] = config.source_port_first
    obj["source_port_last"] = config.source_port_last
    obj["max_targets"] = config.max_targets
    obj["max_runtime"] = config.max_runtime
    obj["max_results"] = config.max_results
    obj["output_results"] = recv_state.filter_success
    if config.iface:
        obj["iface"] = config.iface
    obj["rate"] = config.rate
    obj["bandwidth"] = config.bandwidth
    obj["cooldown_secs"] = config.cooldown_secs
    obj["senders"] = config.senders
    obj["seed"] = config.seed
    obj["seed_provided"] = int(config.seed_provided)
    obj["generator"] = config.generator
    obj["hitrate"] = _hitrate(recv_state.success_unique, send_state.sent)
    obj["shard_num"] = config.shard_num
    obj["total_shards"] = config.total_shards
    obj["min_hitrate"] = float(config.min_hitrate)
    obj["max_sendto_failures"] = config.max_sendto_failures
    obj["syslog"] = int(config.syslog)
    obj["filter_duplicates"] = int(config.filter_duplicates)
    obj["filter_unsuccessful"] = int(config.filter_unsuccessful)
    obj["pcap_recv"] = recv_state.pcap_recv
    obj["pcap_drop"] = recv_state.pcap_drop
    obj["pcap_ifdrop"] = recv_state.pcap_ifdrop
    obj["ip_fragments"] = recv_state.ip_fragments
    obj["blacklist_total_allowed"] = config.total_allowed
    obj["blacklist_total_not_allowed"] = config.total_disallowed
    obj["validation_passed"] = recv_state.validation_passed
    obj["validation_failed"] = recv_state.validation_failed
    obj["first_scanned"] = send_state.first_scanned
    obj["send_to_failures"] = send_state.sendto_failures
    obj["total_sent"] = send_state.sent
    obj["success_total"] = recv_state.success_total
    obj["success_unique"] = recv_state.success_unique
    if config.app_success_index >= 0:
        obj["app_success_total"] = recv_state.app_success_total
        obj["app_success_unique"] = recv_state.app_success_unique
    obj["success_cooldown_total"] = recv_state.cooldown_total
    obj["success_cooldown_unique"] = recv_state.cooldown_unique
    obj["failure_total"] = recv_state.failure_total
    obj["packet_streams"] = config.packet_streams
    obj["probe_module"] = probe_name
    obj["output_module"] = output_name
    obj["send_start_time"] = _format_time(send_state.start)
    obj["send_end_time"] = _format_time(send_state.finish)
    obj["recv_start_time"] = _format_time(recv_state.start)
    obj["recv_end_time"] = _format_time(recv_state.finish)
    if config.output_filter_str:
        obj["output_filter"] = config.output_filter_str
    if config.log_file:
        obj["log_file"] = config.log_file
    if config.log_directory:
        obj["log_directory"] = config.log_directory
    if config.destination_cidrs:
        obj["cli_cidr_destinations"] = list(config.destination_cidrs)
    if config.probe_args:
        obj["probe_args"] = config.probe_args
    if config.probe_ttl:
        obj["probe_ttl"] = config.probe_ttl
    if config.output_args:
        obj["output_args"] = config.output_args
    obj["gateway_mac"] = format_mac(config.gw_mac)
    if config.gw_ip:
        obj["gateway_ip"] = make_ip_str(config.gw_ip)
    obj["source_mac"] = format_mac(config.hw_mac)
    obj["source_ips"] = [make_ip_str(ip) for ip in config.source_ip_addresses]
    if config.output_filename:
        obj["output_filename"] = config.output_filename
    if config.blacklist_filename:
        obj["blacklist_filename"] = config.blacklist_filename
    if config.whitelist_filename:
        obj["whitelist_filename"] = config.whitelist_filename
    if config.list_of_ips_filename:
        obj["list_of_ips_filename"] = config.list_of_ips_filename
        obj["list_of_ips_count"] = config.list_of_ips_count
        obj["list_of_ips_tried_sent"] = send_state.tried_sent
    obj["dryrun"] = int(config.dryrun)
    obj["quiet"] = int(config.quiet)
    obj["log_level"] = config.log_level
    if config.custom_metadata_str:
        try:
            obj["user-metadata"] = json.loads(config.custom_metadata_str)
        except ValueError:
            logger.error("unable to parse user metadata")
    if config.notes:
        obj["notes"] = config.notes
    blocked = _cidrs(blacklisted)
    if blocked:
        obj["blacklisted_networks"] = blocked
    allowed = _cidrs(whitelisted)
    if allowed:
        obj["whitelisted_networks"] = allowed
    return obj


def write_metadata(
    file: IO[str],
    config: ScanConfig,
    send_state: SendState,
    recv_state: RecvState,
    probe_name: str,
    output_name: str,
    blacklisted: Optional[Iterable[Network]] = None,
    whitelisted: Optional[Iterable[Network]] = None,
) -> None:
    """Write the scan metadata to ``file`` as one line of JSON."""
    obj = build_metadata(
        config, send_state, recv_state, probe_name, output_name, blacklisted, whitelisted
    )
    file.write(json.dumps(obj) + "\n")