"""Well-known port tables used when a socket has no recoverable owner."""

from dataclasses import dataclass

# Port -> canonical daemon name. Entries keyed by (port, protocol) win over
# the bare port entry.
SYSTEM_SERVICES: dict[int, str] = {
    22: "sshd",
    23: "telnetd",
    25: "postfix",
    53: "named",
    67: "dnsmasq",
    68: "dhclient",
    80: "nginx",
    110: "dovecot",
    123: "chronyd",
    137: "nmbd",
    138: "nmbd",
    139: "smbd",
    143: "dovecot",
    161: "snmpd",
    162: "snmpd",
    389: "slapd",
    443: "nginx",
    445: "smbd",
    500: "strongswan",
    514: "rsyslogd",
    587: "postfix",
    636: "slapd",
    993: "dovecot",
    995: "dovecot",
    1194: "openvpn",
    1433: "sqlservr",
    3306: "mysqld",
    4500: "strongswan",
    5432: "postgres",
    6379: "redis-server",
    8080: "nginx",
    8443: "nginx",
    27017: "mongod",
    51820: "wireguard",
    51821: "wg-easy",
    51822: "wireguard",
}

PROTOCOL_SERVICES: dict[tuple[int, str], str] = {
    (53, "udp"): "dnsmasq",
}


@dataclass(frozen=True)
class ImportantPort:
    """A port worth keeping (and attributing) even when it is UDP."""

    service: str
    protocol: str
    keywords: tuple[str, ...]
    canonical_names: tuple[str, ...] = ()


_WIREGUARD = ("wireguard", "wg-easy", "wg-", "wg_")
_IPSEC = ("ipsec", "strongswan", "libreswan")
_OPENVPN = ("openvpn", "ovpn")
_DNS = ("pihole", "pi-hole", "adguard", "dnsmasq", "bind9", "unbound", "coredns")
_DHCP = ("dhcp", "kea", "dnsmasq")

IMPORTANT_PORTS: dict[int, ImportantPort] = {
    51820: ImportantPort("WireGuard", "udp", _WIREGUARD, ("wireguard", "wg-easy")),
    51821: ImportantPort("WireGuard-UI", "tcp", _WIREGUARD, ("wg-easy", "wireguard")),
    51822: ImportantPort("WireGuard", "udp", _WIREGUARD, ("wireguard", "wg-easy")),
    500: ImportantPort("IPsec IKE", "udp", _IPSEC, ("strongswan", "ipsec")),
    4500: ImportantPort("IPsec NAT-T", "udp", _IPSEC, ("strongswan", "ipsec")),
    1194: ImportantPort("OpenVPN", "udp", _OPENVPN, ("openvpn",)),
    1198: ImportantPort("OpenVPN", "udp", _OPENVPN, ("openvpn",)),
    53: ImportantPort("DNS", "udp", _DNS, ("pihole", "adguardhome", "unbound")),
    67: ImportantPort("DHCP", "udp", _DHCP, ("dhcp", "kea")),
    68: ImportantPort("DHCP", "udp", _DHCP, ("dhcp",)),
}

# Owner names too generic to identify a workload on their own
GENERIC_OWNERS = frozenset({
    "unknown",
    "node",
    "python",
    "python3",
    "uvicorn",
    "gunicorn",
    "system",
    "container-service",
})


def infer_owner(port: int, protocol: str) -> str | None:
    """Return the canonical daemon name for a well-known port, if any."""
    return PROTOCOL_SERVICES.get((port, protocol)) or SYSTEM_SERVICES.get(port)


def is_important(port: int, protocol: str) -> bool:
    info = IMPORTANT_PORTS.get(port)
    return info is not None and info.protocol == protocol
