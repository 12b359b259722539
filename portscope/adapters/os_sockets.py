"""OS-level listening socket enumeration for Linux and Windows.

Linux tries, in order:
  1. nsenter -t 1 -n ss -tulpn   host network namespace (needs pid:host + SYS_ADMIN)
  2. ss -tulpn                   local namespace
  3. /proc/net/{tcp,udp}[6]      accepted only with >= min_proc_entries sockets
  4. netstat -tulpn              legacy

The first tier that succeeds wins; its rows are parsed line by line and a
malformed line never aborts the parse. Windows runs ``netstat -ano`` and
only recovers a pid per socket.
"""

import asyncio
import platform
import re
import socket
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import psutil

from portscope.adapters.base import AdapterKind, PlatformAdapter
from portscope.adapters.proc_net import read_proc_sockets
from portscope.adapters.scoring import CompatibilityScorer, Signal
from portscope.cache import AdapterState
from portscope.config import Settings
from portscope.errors import ExternalToolFailure, ParseFailure
from portscope.models import AttributionProvenance, CompatibilityScore, PortRecord, Source
from portscope.normalizer import normalize_many
from portscope.probes import CommandRunner, run_command
from portscope.reconcile import ReconcileContext, ReconciliationEngine
from portscope.well_known import infer_owner

# users:(("sshd",pid=812,fd=3),("sshd",pid=813,fd=3))
_SS_USERS_RE = re.compile(r'\("([^"]+)",pid=(\d+)')
# 812/sshd: or 812/python3
_NETSTAT_PID_RE = re.compile(r"^(\d+)/(\S+)")
_BRACKETED_RE = re.compile(r"^\[(.+)\]:(\d+|\*)$")

MAX_APPLICATIONS = 50


def parse_local_address(addr: str) -> tuple[str, int]:
    """Split ``ip:port`` or ``[ip]:port`` into (ip, port).

    Raises:
        ParseFailure: when the address has no port or the port is out of range.
    """
    match = _BRACKETED_RE.match(addr)
    if match:
        host_ip, port_str = match.groups()
    elif ":" in addr:
        host_ip, port_str = addr.rsplit(":", 1)
    else:
        raise ParseFailure(addr, "local address has no port")

    host_ip = host_ip.split("%", 1)[0]  # 127.0.0.53%lo
    try:
        port = int(port_str)
    except ValueError:
        raise ParseFailure(addr, "port is not numeric")
    if not 1 <= port <= 65535:
        raise ParseFailure(addr, f"port {port} out of range")
    return host_ip or "0.0.0.0", port


def parse_process_annotation(text: str) -> tuple[str | None, list[int]]:
    """Extract (owner, pids) from ss ``users:((...))`` or netstat ``pid/name`` annotations."""
    text = text.strip()
    if not text or text == "-":
        return None, []

    users = _SS_USERS_RE.findall(text)
    if users:
        pids = []
        for _, pid in users:
            if int(pid) not in pids:
                pids.append(int(pid))
        return users[0][0], pids

    match = _NETSTAT_PID_RE.match(text)
    if match:
        return match.group(2).rstrip(":"), [int(match.group(1))]

    return None, []


def _protocol_of(column: str) -> str | None:
    column = column.lower()
    if column.startswith("tcp"):
        return "tcp"
    if column.startswith("udp"):
        return "udp"
    return None


def _is_wildcard_peer(peer: str) -> bool:
    return peer in ("*", "*:*", "0.0.0.0:*", ":::*", "[::]:*") or peer.endswith(":*")


def _entry(protocol: str, host_ip: str, port: int, owner: str | None, pids: list[int], method: str) -> dict:
    entry: dict[str, Any] = {
        "source": Source.OS.value,
        "protocol": protocol,
        "host_ip": host_ip,
        "host_port": port,
        "pids": pids,
        "detection_method": method,
        "attribution_provenance": AttributionProvenance.OBSERVED.value,
    }
    if owner:
        entry["owner"] = owner
    else:
        apply_inferred_owner(entry)
    return entry


def apply_inferred_owner(entry: dict) -> dict:
    """Fill a missing owner from the well-known port table."""
    if entry.get("owner") and entry["owner"] != "unknown":
        return entry
    inferred = infer_owner(entry["host_port"], entry.get("protocol", "tcp"))
    if inferred:
        entry["owner"] = inferred
        entry["attribution_provenance"] = AttributionProvenance.WELL_KNOWN_PORT.value
    else:
        entry["owner"] = "unknown"
    return entry


def _parse_rows(output: str, parse_row: Callable[[list[str]], dict | None], logger: Any = None) -> list[dict]:
    entries = []
    for line in output.splitlines():
        cols = line.split()
        if not cols or _protocol_of(cols[0]) is None:
            continue  # header or blank
        try:
            entry = parse_row(cols)
        except ParseFailure as e:
            if logger:
                logger.debug(f"Skipping row: {e}")
            continue
        if entry:
            entries.append(entry)
    return entries


def parse_ss_output(output: str, method: str = "ss", logger: Any = None) -> list[dict]:
    """Parse ``ss -tulpn`` output.

    Columns: Netid State Recv-Q Send-Q Local Peer [Process]
    """
    def parse_row(cols: list[str]) -> dict | None:
        if len(cols) < 5:
            raise ParseFailure(" ".join(cols), "too few columns")
        protocol = _protocol_of(cols[0])
        state = cols[1].upper()
        peer = cols[5] if len(cols) > 5 else ""
        if protocol == "tcp" and state != "LISTEN":
            return None
        if protocol == "udp" and state != "UNCONN" and not _is_wildcard_peer(peer):
            return None
        host_ip, port = parse_local_address(cols[4])
        owner, pids = parse_process_annotation(" ".join(cols[6:]))
        return _entry(protocol, host_ip, port, owner, pids, method)

    return _parse_rows(output, parse_row, logger)


def parse_netstat_output(output: str, method: str = "netstat", logger: Any = None) -> list[dict]:
    """Parse ``netstat -tulpn`` output.

    Columns: Proto Recv-Q Send-Q Local Foreign [State] PID/Program
    (udp rows have no State column).
    """
    def parse_row(cols: list[str]) -> dict | None:
        if len(cols) < 5:
            raise ParseFailure(" ".join(cols), "too few columns")
        protocol = _protocol_of(cols[0])
        if protocol == "tcp":
            if len(cols) < 6 or cols[5].upper() != "LISTEN":
                return None
            annotation = cols[6:]
        else:
            if not _is_wildcard_peer(cols[4]):
                return None
            annotation = cols[5:]
            if annotation and annotation[0].isalpha() and annotation[0].isupper():
                annotation = annotation[1:]  # some builds print a udp state
        host_ip, port = parse_local_address(cols[3])
        owner, pids = parse_process_annotation(" ".join(annotation))
        return _entry(protocol, host_ip, port, owner, pids, method)

    return _parse_rows(output, parse_row, logger)


def parse_windows_netstat(output: str, method: str = "netstat-windows", logger: Any = None) -> list[dict]:
    """Parse Windows ``netstat -ano`` output.

    Columns: Proto Local Foreign State [PID]. ``netstat -an`` has no PID
    column. Only LISTENING rows are kept and at most the pid is recoverable.
    """
    def parse_row(cols: list[str]) -> dict | None:
        if "LISTENING" not in cols:
            return None
        if len(cols) < 4:
            raise ParseFailure(" ".join(cols), "too few columns")
        protocol = _protocol_of(cols[0])
        host_ip, port = parse_local_address(cols[1])
        pid = int(cols[-1]) if cols[-1].isdigit() else 0
        return _entry(protocol, host_ip, port, None, [pid] if pid > 0 else [], method)

    return _parse_rows(output, parse_row, logger)


@dataclass
class TierOutcome:
    """Outcome of one enumeration tier: records on success, an error otherwise."""

    name: str
    records: list[dict] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.records is not None


Tier = tuple[str, Callable[[], Awaitable[list[dict]]]]


class OSSocketAdapter(PlatformAdapter):
    """Listening sockets straight from the operating system."""

    kind = AdapterKind.OS
    platform = "system"
    platform_name = "Local System"

    def __init__(
        self,
        config: Settings | None = None,
        state: AdapterState | None = None,
        runner: CommandRunner = run_command,
        proc_reader: Callable[..., list[dict]] = read_proc_sockets,
        is_windows: bool | None = None,
    ) -> None:
        super().__init__(config, state)
        self.runner = runner
        self.proc_reader = proc_reader
        self.is_windows = sys.platform == "win32" if is_windows is None else is_windows
        self.engine = ReconciliationEngine()
        self.last_tier: str | None = None

    async def is_compatible(self, config: dict[str, Any] | None = None) -> CompatibilityScore:
        scorer = CompatibilityScorer(
            [Signal("fallback", 10, lambda: True, "Local system collector is always available as fallback")],
            label=self.platform_name,
        )
        return await scorer.evaluate()

    # ---------------------------------------------------------------- ports

    async def list_sockets(self, force_refresh: bool = False) -> list[PortRecord]:
        """All listening sockets seen by the OS, normalized but not reconciled."""
        if self.is_windows:
            raw = await self.cached(
                "windows_ports", self._windows_sockets, self.settings.windows_ports_ttl, force_refresh
            )
        else:
            raw = await self.cached(
                "os_sockets", self._linux_sockets, self.settings.os_ports_ttl, force_refresh
            )
        return normalize_many(raw)

    async def get_ports(self) -> list[PortRecord]:
        sockets = await self.list_sockets()
        context = ReconcileContext(
            include_udp=self.settings.include_udp,
            process_start_times=await self.process_start_times(p.pid for p in sockets),
        )
        return await self.engine.reconcile([], sockets, context)

    async def _linux_sockets(self) -> list[dict]:
        outcomes = []
        for name, tier in self._linux_tiers():
            outcome = await self._run_tier(name, tier)
            outcomes.append(outcome)
            if outcome.ok:
                self.last_tier = name
                self.logger.info(
                    f"{name} tier succeeded: {len(outcome.records)} sockets",
                    extra={"platform": self.platform, "tier": name},
                )
                return outcome.records

        reasons = "; ".join(f"{o.name}: {o.error}" for o in outcomes)
        self.logger.error(f"All socket enumeration tiers failed ({reasons})")
        raise ExternalToolFailure("socket enumeration", f"all tiers failed ({reasons})")

    def _linux_tiers(self) -> list[Tier]:
        return [
            ("nsenter-host", lambda: self._ss_tier(["nsenter", "-t", "1", "-n", "ss", "-tulpn"], "nsenter-host")),
            ("ss", lambda: self._ss_tier(["ss", "-tulpn"], "ss")),
            ("proc", self._proc_tier),
            ("netstat", self._netstat_tier),
        ]

    async def _run_tier(self, name: str, tier: Callable[[], Awaitable[list[dict]]]) -> TierOutcome:
        """Run one tier, converting its failure into a TierOutcome."""
        try:
            return TierOutcome(name, records=await tier())
        except (ExternalToolFailure, OSError) as e:
            self.logger.info(f"{name} tier failed: {e}", extra={"platform": self.platform, "tier": name})
            message = str(e).lower()
            if name == "nsenter-host" and ("permission denied" in message or "not permitted" in message):
                self.logger.warning(
                    "Hint: nsenter needs pid: host and cap_add: [SYS_ADMIN] to read the host network namespace"
                )
            return TierOutcome(name, error=str(e))

    async def _ss_tier(self, argv: list[str], method: str) -> list[dict]:
        result = await self.runner(argv, self.settings.command_timeout)
        result.raise_for_failure(argv[0])
        return parse_ss_output(result.stdout, method, self.logger)

    async def _proc_tier(self) -> list[dict]:
        sockets = await asyncio.to_thread(self.proc_reader, self.settings.proc_root, True)
        distinct = {(s["host_ip"], s["host_port"], s["protocol"]) for s in sockets}
        if len(distinct) < self.settings.min_proc_entries:
            raise ExternalToolFailure(
                "/proc/net",
                f"only {len(distinct)} entries (need {self.settings.min_proc_entries})",
            )
        entries = []
        for sock in sockets:
            entry = {
                "source": Source.OS.value,
                "protocol": sock["protocol"],
                "host_ip": sock["host_ip"],
                "host_port": sock["host_port"],
                "owner": sock.get("owner"),
                "pids": [sock["pid"]] if sock.get("pid") else [],
                "detection_method": "proc",
                "attribution_provenance": AttributionProvenance.OBSERVED.value,
            }
            entries.append(apply_inferred_owner(entry))
        return entries

    async def _netstat_tier(self) -> list[dict]:
        result = await self.runner(["netstat", "-tulpn"], self.settings.command_timeout)
        result.raise_for_failure("netstat")
        return parse_netstat_output(result.stdout, "netstat", self.logger)

    async def _windows_sockets(self) -> list[dict]:
        errors = []
        for argv in (["netstat", "-ano"], ["netstat", "-an"]):
            result = await self.runner(argv, self.settings.command_timeout)
            if result.success:
                self.last_tier = " ".join(argv)
                return parse_windows_netstat(result.stdout, logger=self.logger)
            self.logger.warning(f"Windows \"{' '.join(argv)}\" failed: {result.error}")
            errors.append(f"{' '.join(argv)}: {result.error}")
        raise ExternalToolFailure("netstat", "; ".join(errors))

    async def process_start_times(self, pids) -> dict[int, str]:
        """Map pid -> ISO start time for the given pids, skipping any we cannot see."""
        wanted = sorted({pid for pid in pids if pid})
        if not wanted:
            return {}

        def read() -> dict[int, str]:
            times = {}
            for pid in wanted:
                try:
                    created = psutil.Process(pid).create_time()
                except (psutil.Error, OSError):
                    continue
                times[pid] = datetime.fromtimestamp(created, timezone.utc).isoformat()
            return times

        return await asyncio.to_thread(read)

    # ---------------------------------------------------------------- other facets

    async def get_system_info(self) -> dict[str, Any]:
        return await self.cached("system_info", self._system_info, self.settings.system_info_ttl)

    async def _system_info(self) -> dict[str, Any]:
        def read() -> dict[str, Any]:
            uname = platform.uname()
            memory = psutil.virtual_memory()
            uptime = max(0, int(time.time() - psutil.boot_time()))
            try:
                freq = psutil.cpu_freq()
            except (AttributeError, NotImplementedError, OSError):
                freq = None  # not exposed on every platform
            return {
                "type": "system",
                "hostname": socket.gethostname(),
                "version": uname.release,
                "platform": self.platform,
                "os": {
                    "platform": sys.platform,
                    "release": uname.release,
                    "type": uname.system,
                    "arch": uname.machine,
                },
                "cpu": {
                    "model": uname.processor or "Unknown",
                    "cores": psutil.cpu_count() or 0,
                    "speed": round(freq.current) if freq else 0,
                },
                "memory": {
                    "total": memory.total,
                    "free": memory.available,
                    "usage": round(memory.percent),
                },
                "uptime": uptime,
                "platform_data": {
                    "description": f"{uname.system} {uname.release} ({uname.machine})",
                    "uptime_days": uptime // 86400,
                    "memory_gb": round(memory.total / (1024 ** 3)),
                },
            }

        self.logger.debug("Collecting system info")
        return await asyncio.to_thread(read)

    async def get_applications(self) -> list[dict[str, Any]]:
        def read() -> list[dict[str, Any]]:
            apps = []
            for proc in psutil.process_iter(["pid", "name", "cmdline"]):
                info = proc.info
                command = " ".join(info.get("cmdline") or []) or (info.get("name") or "")
                apps.append({
                    "type": "application",
                    "id": str(info["pid"]),
                    "name": info.get("name") or command or str(info["pid"]),
                    "status": "running",
                    "platform": self.platform,
                    "platform_data": {
                        "type": "process",
                        "pid": info["pid"],
                        "command": command,
                    },
                })
                if len(apps) >= MAX_APPLICATIONS:
                    break
            return apps

        self.logger.debug("Collecting system processes")
        return await asyncio.to_thread(read)
