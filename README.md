# scanprobe

`scanprobe` is a library of the pieces that make up a stateless IPv4 scanner.
A scanner of this kind sends many probes without keeping a record of each one,
and it recognises replies by what they carry. The package uses only the
standard library and needs Python 3.10 or later.

It provides:

- **Configuration and counters** (`scanprobe.state`): `ScanConfig`,
  `SendState` and `RecvState`.
- **Address iteration and sharding** (`scanprobe.shard`): `Cycle`, `Shard`
  and `ShardState`. They walk a cyclic multiplicative group, so every address
  comes up once in a pseudo-random order. The walk can be split across shards
  and threads.
- **Packet headers** (`scanprobe.packet`): Ethernet, IPv4, UDP, TCP and ICMP
  headers, Internet checksums, and the mapping from validation words to source
  ports (`get_src_port`, `check_dst_port`).
- **Probe modules** (`scanprobe.probe_modules`, `scanprobe.udp`,
  `scanprobe.upnp`): the `ProbeModule` interface, a `FieldSet` for results,
  a UDP probe with optional per-target payload templates
  (`scanprobe.udp_template`), and a UPnP/SSDP probe.
- **Address-list filtering** (`scanprobe.zblacklist`): passes a stream of
  lines through an allow check, with optional duplicate suppression.
- **Scan metadata** (`scanprobe.summary`): the JSON summary of a finished
  scan.

## Configuration and counters

`ScanConfig` holds the scan settings. By default the source port range is
32768–61000, there is one sender and one packet stream, and `rate` is `-1`,
meaning "not set".

```python
from scanprobe.state import ScanConfig, SendState, RecvState

config = ScanConfig(target_port=1900)
print(config.num_source_ports())   # 28233
send_state = SendState()
recv_state = RecvState()
```

## Walking the address space

A `Shard` covers one part of the exponents of the cycle's generator.
`lookup_index` maps an index in `0 .. max_index - 1` to the address to scan.
Elements outside that range are skipped and counted in
`shard.state.blacklisted`. `next_ip()` returns `SHARD_DONE` (0) once the
shard is used up.

```python
from scanprobe.shard import Cycle, Shard, SHARD_DONE

cycle = Cycle(generator=3, prime=7, order=6)
shard = Shard(0, 1, 0, 1, 0, cycle, max_index=6, lookup_index=lambda i: i + 1)

addresses = [shard.current_ip()]
while (ip := shard.next_ip()) != SHARD_DONE:
    addresses.append(ip)
print(addresses)   # [1, 3, 2, 6, 4, 5]
shard.finish()     # calls the completion callback, if one was given
```

The constructor raises `ValueError` in these cases: the indices are out of
range, there are more subshards than elements in the cycle, or there are more
subshards than `max_total_targets`.

## Packet headers

```python
from scanprobe.packet import (
    IPPROTO_UDP, ip_checksum, make_eth_header, make_ip_header, make_udp_header,
)

eth = make_eth_header(bytes.fromhex("020000000001"), bytes.fromhex("020000000002"))
ip = make_ip_header(IPPROTO_UDP, 20 + 8 + 4)
ip.src, ip.dst = 0xC0000201, 0xC0000202
ip.checksum = ip_checksum(ip)
udp = make_udp_header(9, 8 + 4)
frame = eth + ip.pack() + udp + b"ping"
```

Addresses are integers in host order. `IPHeader.unpack` parses a header back
out of a buffer. `make_ip_str`, `format_mac`, `format_ip_header` and
`format_eth_header` produce readable descriptions.

## Probe modules

`UdpProbe` builds UDP probes and classifies replies. A UDP reply is a success.
An ICMP unreachable is a failure; for it, `saddr` is rewritten to the host
that was probed. `is_allowed` decides whether a host-order address may be
answered for.

```python
from scanprobe.state import ScanConfig
from scanprobe.udp import UdpProbe

config = ScanConfig(target_port=53, probe_args="text:hello")
probe = UdpProbe(is_allowed=lambda address: True)
probe.global_initialize(config)

frame, rand = probe.thread_initialize(
    bytes.fromhex("020000000001"), bytes.fromhex("020000000002"), 53
)
validation = [0, 1234, 0, 0]   # four 32-bit validation words
length = probe.make_packet(frame, 0xC0000201, 0xC0000202, 64, validation, 0, rand)
print(probe.print_packet(frame[:length]))
```

`probe_args` can take these forms:

- `text:STRING`
- `hex:0102...`
- `file:/path`
- `template:/path`

`parse_probe_args` checks one ahead of time and returns the payload and an
optional template. If you pass `template-fields`, it raises
`TemplateFieldsRequested`. Invalid specifications raise `ValueError`.

`UpnpProbe` sends an SSDP `M-SEARCH` for root devices. `parse_upnp_response`
reads the reply's `HTTP/1.1 200 OK` status line and headers.

Probe modules are not registered automatically. Call
`register_probe_module(UdpProbe())` to make one available through
`get_probe_module_by_name` and `probe_module_names`.

Results go into a `FieldSet`. `add_ip_fields` and `add_system_fields` add the
common fields: addresses, IP id, TTL, the repeat and cooldown flags, and the
arrival timestamp.

## UDP payload templates

In a template, each `${FIELD}` is filled in for every target. Examples are
`${DADDR}`, `${SPORT}` and `${RAND_ALPHA=8}`. An unknown placeholder is kept
as literal text.

```python
import random
from scanprobe.udp_template import load_template, template_field_help

print(template_field_help())
template = load_template(b"hello ${DADDR} from port ${SPORT}\n")
payload = template.build(1472, 0xC0000201, 0xC0000202, 40000, random.Random(1))
# b"hello 192.0.2.2 from port 40000\n"
```

`build` returns an empty result if the payload would not fit within
`max_len`.

## Filtering address lists

```python
from scanprobe.zblacklist import filter_addresses

lines = ["192.0.2.1\n", "192.0.2.1\n", "not-an-address\n", "203.0.113.9 # note\n"]
kept = list(filter_addresses(lines, is_allowed=lambda addr: True))
# ["192.0.2.1\n", "not-an-address\n", "203.0.113.9 # note\n"]
```

For each line, the function reads the address before the first comma, tab,
space or `#`. An allowed address that has not been seen before is passed
through unchanged. Lines without a valid address are also passed through,
unless `ignore_input_errors=True`. A line longer than about one megabyte
raises `ValueError`.

## Scan metadata

`build_metadata` returns the scan's settings, counters, times, source and
gateway addresses, and allowed and blocked networks as a dict.
`write_metadata` writes that dict as one line of JSON. Networks are given as
`(host-order address, prefix length)` pairs.

```python
import io
from scanprobe.summary import write_metadata

buffer = io.StringIO()
write_metadata(buffer, config, send_state, recv_state, "udp", "csv",
               [(0x0A000000, 8)], [])
```

## What the package does not do

`scanprobe` does not open raw sockets, capture traffic, pace or send probes,
or run a receive loop. It provides no command-line program. It also does not
derive validation words from a secret key, or parse source-address ranges.
The caller supplies the validation words, the allow check, and the transport.