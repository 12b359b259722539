"""Readers for the Linux /proc filesystem.

These are blocking helpers; adapters call them through ``asyncio.to_thread``.
"""

import ipaddress
import logging
import os
import re
from pathlib import Path

from portscope.errors import ParseFailure

logger = logging.getLogger(__name__)

TCP_LISTEN = "0A"
UDP_UNCONN = "07"

_CGROUP_ID_RE = re.compile(r"(?:docker|containerd)[/:-]([a-f0-9]{64})")
_SOCKET_LINK_RE = re.compile(r"^socket:\[(\d+)\]$")


def hex_to_ip_port(hex_addr: str) -> tuple[str, int]:
    """Convert a /proc/net hex ``address:port`` into (ip, port). Handles IPv4 and IPv6."""
    addr_hex, port_hex = hex_addr.split(":")
    port = int(port_hex, 16)
    raw = bytes.fromhex(addr_hex)
    if len(raw) == 4:
        return ".".join(str(b) for b in raw[::-1]), port
    if len(raw) == 16:
        # four host-endian 32-bit words
        words = b"".join(raw[i:i + 4][::-1] for i in range(0, 16, 4))
        groups = [f"{int.from_bytes(words[i:i + 2], 'big'):x}" for i in range(0, 16, 2)]
        return _compress_ipv6(groups), port
    raise ValueError(f"unexpected address length {len(raw)}")


def _compress_ipv6(groups: list[str]) -> str:
    return str(ipaddress.IPv6Address(":".join(groups)))


def parse_proc_net_table(text: str, protocol: str) -> list[dict]:
    """Parse one /proc/net/{tcp,udp}[6] table into listening socket dicts.

    Rows with an unexpected shape are skipped individually.
    """
    sockets = []
    for line in text.splitlines()[1:]:  # skip header
        try:
            sockets.extend(_parse_proc_net_row(line, protocol))
        except ParseFailure as e:
            logger.debug(f"Skipping /proc/net row: {e}")
    return sockets


def _parse_proc_net_row(line: str, protocol: str) -> list[dict]:
    parts = line.split()
    if not parts:
        return []
    if len(parts) < 10:
        raise ParseFailure(line, "too few columns")

    local_hex, remote_hex, state = parts[1], parts[2], parts[3].upper()
    if protocol == "tcp" and state != TCP_LISTEN:
        return []
    if protocol == "udp" and state != UDP_UNCONN:
        return []

    try:
        host_ip, host_port = hex_to_ip_port(local_hex)
        _, remote_port = hex_to_ip_port(remote_hex)
    except (ValueError, IndexError) as e:
        raise ParseFailure(line, f"bad address ({e})")

    if protocol == "udp" and remote_port != 0:
        return []  # connected UDP socket, not a listener
    if not 1 <= host_port <= 65535:
        return []

    return [{
        "protocol": protocol,
        "host_ip": host_ip,
        "host_port": host_port,
        "inode": parts[9],
    }]


def map_inodes_to_pids(proc_root: str = "/proc") -> dict[str, int]:
    """Build ``socket inode -> pid`` by walking /proc/<pid>/fd.

    Processes we cannot read (permissions, exited) are skipped.
    """
    inode_to_pid: dict[str, int] = {}
    root = Path(proc_root)
    try:
        entries = list(root.iterdir())
    except OSError as e:
        logger.debug(f"Cannot list {proc_root}: {e}")
        return inode_to_pid

    for entry in entries:
        if not entry.name.isdigit():
            continue
        fd_dir = entry / "fd"
        try:
            fds = os.listdir(fd_dir)
        except OSError:
            continue
        for fd in fds:
            try:
                link = os.readlink(fd_dir / fd)
            except OSError:
                continue
            match = _SOCKET_LINK_RE.match(link)
            if match:
                inode_to_pid.setdefault(match.group(1), int(entry.name))
    return inode_to_pid


def read_process_name(pid: int, proc_root: str = "/proc") -> str | None:
    try:
        return (Path(proc_root) / str(pid) / "comm").read_text().strip() or None
    except OSError:
        return None


def read_proc_sockets(proc_root: str = "/proc", include_udp: bool = True) -> list[dict]:
    """Read listening sockets from /proc, preferring PID 1's (host) namespace view.

    Returns raw dicts with owner/pid filled in where the inode could be
    mapped to a process.
    """
    root = Path(proc_root)
    net_dir = root / "1" / "net"
    if not (net_dir / "tcp").exists():
        net_dir = root / "net"

    tables = [("tcp", "tcp"), ("tcp6", "tcp")]
    if include_udp:
        tables += [("udp", "udp"), ("udp6", "udp")]

    sockets: list[dict] = []
    read_any = False
    for filename, protocol in tables:
        path = net_dir / filename
        try:
            text = path.read_text()
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            continue
        read_any = True
        sockets.extend(parse_proc_net_table(text, protocol))

    if not read_any:
        raise OSError(f"no readable socket tables under {net_dir}")

    inode_to_pid = map_inodes_to_pids(proc_root) if sockets else {}
    names: dict[int, str | None] = {}
    for sock in sockets:
        pid = inode_to_pid.get(sock.pop("inode"))
        if pid is None:
            continue
        if pid not in names:
            names[pid] = read_process_name(pid, proc_root)
        sock["pid"] = pid
        if names[pid]:
            sock["owner"] = names[pid]
    return sockets


def container_id_from_cgroup(text: str) -> str | None:
    """Extract a 64-hex container id from /proc/<pid>/cgroup content."""
    match = _CGROUP_ID_RE.search(text)
    return match.group(1) if match else None


def read_cgroup_container_id(pid: int, proc_root: str = "/proc") -> str | None:
    try:
        text = (Path(proc_root) / str(pid) / "cgroup").read_text()
    except OSError:
        return None
    return container_id_from_cgroup(text)

