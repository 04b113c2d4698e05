"""Building blocks for stateless IPv4 scanning: sharding, packet headers, UDP/UPnP probes, address filtering and scan metadata."""

__version__ = "0.1.0"