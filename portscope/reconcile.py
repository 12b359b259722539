"""Merge container-sourced and OS-sourced port records into one attributed set.

Container records are ground truth and seed the result. OS candidates are
then attributed to containers where possible (pid map, cgroup, name match,
important-port keywords) and inserted only when their key is still free.
A final pass claims this service's own port for its own container.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

from portscope.errors import PortscopeError
from portscope.models import AttributionProvenance, ContainerInfo, PortRecord, Source
from portscope.normalizer import normalize, normalize_many
from portscope.well_known import GENERIC_OWNERS, IMPORTANT_PORTS, is_important

logger = logging.getLogger(__name__)

CgroupResolver = Callable[[int], Awaitable[ContainerInfo | None]]


@dataclass
class ReconcileContext:
    """Everything attribution needs besides the records themselves."""

    pid_map: dict[int, ContainerInfo] = field(default_factory=dict)
    containers: list[ContainerInfo] = field(default_factory=list)
    cgroup_resolver: CgroupResolver | None = None
    self_port: int | None = None
    self_container_hint: str | None = None
    include_udp: bool = False
    process_start_times: dict[int, str] = field(default_factory=dict)

    @property
    def running_containers(self) -> list[ContainerInfo]:
        return [c for c in self.containers if c.running]


def _bind_score(record: PortRecord) -> int:
    if record.is_wildcard:
        return 3
    if record.is_loopback:
        return 2
    return 1


def _logical_key(record: PortRecord) -> tuple[str, int, str]:
    if record.owner != "unknown":
        who = record.owner.lower()
    elif record.pid:
        who = f"pid:{record.pid}"
    else:
        who = record.source.value
    return (who, record.host_port, record.protocol.value)


def collapse_os_duplicates(records: Iterable[PortRecord]) -> list[PortRecord]:
    """Collapse OS records that differ only by bind address.

    Records sharing owner, port and protocol keep one entry, preferring the
    wildcard bind, then loopback. Non-OS records pass through untouched.
    """
    passthrough: list[PortRecord] = []
    best: dict[tuple[str, int, str], PortRecord] = {}
    for record in records:
        if record.source != Source.OS:
            passthrough.append(record)
            continue
        key = _logical_key(record)
        current = best.get(key)
        if current is None or _bind_score(record) > _bind_score(current):
            best[key] = record
    return passthrough + list(best.values())


def _image_base(image: str) -> str:
    return image.rsplit("/", 1)[-1].split(":", 1)[0].split("@", 1)[0].lower()


def _names_match(needle: str, container: ContainerInfo) -> bool:
    needle = needle.lower()
    if not needle:
        return False
    for candidate in (container.name.lstrip("/").lower(), container.image.lower(), _image_base(container.image)):
        if candidate and (needle in candidate or candidate in needle):
            return True
    return False


def _unique(matches: list[ContainerInfo]) -> ContainerInfo | None:
    unique = {c.id: c for c in matches}
    return next(iter(unique.values())) if len(unique) == 1 else None


def match_by_name(owner: str, containers: list[ContainerInfo]) -> ContainerInfo | None:
    """Substring-match a process name against container names and images.

    Accepts a single match, else a single exact name match, else nothing.
    """
    matches = [c for c in containers if _names_match(owner, c)]
    found = _unique(matches)
    if found or not matches:
        return found
    owner = owner.lower()
    exact = [c for c in matches if c.name.lstrip("/").lower() == owner or _image_base(c.image) == owner]
    return _unique(exact)


def match_important_port(port: int, protocol: str, containers: list[ContainerInfo]) -> ContainerInfo | None:
    """Find the one container running the service behind an important port."""
    info = IMPORTANT_PORTS.get(port)
    if info is None or info.protocol != protocol:
        return None
    matches = [c for c in containers if any(_names_match(k, c) for k in info.keywords)]
    found = _unique(matches)
    if found or not matches:
        return found
    exact = [
        c for c in matches
        if c.name.lstrip("/").lower() in info.canonical_names or _image_base(c.image) in info.canonical_names
    ]
    return _unique(exact)


def reclassify(
    record: PortRecord,
    container: ContainerInfo,
    provenance: AttributionProvenance,
    target: str | None = None,
) -> PortRecord:
    """Return a copy of ``record`` attributed to ``container``."""
    return record.model_copy(update={
        "source": Source.CONTAINER,
        "owner": container.name.lstrip("/"),
        "container_id": container.id,
        "compose_project": container.compose_project,
        "compose_service": container.compose_service,
        "created": container.created,
        "target": target or f"{container.short_id}:{record.host_port}",
        "attribution_provenance": provenance,
    })


class ReconciliationEngine:
    """Produces one deduplicated, attributed set of port records."""

    async def reconcile(
        self,
        container_records: Iterable[Mapping[str, Any] | PortRecord],
        os_records: Iterable[Mapping[str, Any] | PortRecord],
        context: ReconcileContext | None = None,
    ) -> list[PortRecord]:
        context = context or ReconcileContext()
        merged: dict[tuple, PortRecord] = {}

        for record in normalize_many(container_records):
            merged.setdefault(record.key, record)
        seeded = len(merged)

        attributed = 0
        for candidate in collapse_os_duplicates(normalize_many(os_records)):
            if candidate.key in merged:
                continue
            record = await self._attribute(candidate, context)
            if record.source == Source.CONTAINER:
                attributed += 1
            elif record.created is None and record.pid in context.process_start_times:
                record = record.model_copy(update={"created": context.process_start_times[record.pid]})
            merged.setdefault(record.key, record)

        self._claim_own_port(merged, context)

        results = [normalize(r) for r in merged.values() if self._keep(r, context)]
        results.sort(key=lambda r: (r.host_port, r.protocol.value, r.host_ip, r.container_id or ""))
        logger.debug(
            f"Reconciled {seeded} container records and {len(merged) - seeded} OS candidates "
            f"({attributed} attributed to containers) into {len(results)} ports"
        )
        return results

    async def _attribute(self, record: PortRecord, context: ReconcileContext) -> PortRecord:
        pids = [p for p in [record.pid, *record.pids] if p]

        for pid in pids:
            container = context.pid_map.get(pid)
            if container is not None:
                target = f"{container.short_id}:internal(host-net)" if container.host_network else None
                return reclassify(record, container, AttributionProvenance.RECLASSIFIED_PID, target)

        if context.cgroup_resolver is not None:
            for pid in dict.fromkeys(pids):
                try:
                    container = await context.cgroup_resolver(pid)
                except (PortscopeError, OSError) as e:
                    logger.debug(f"cgroup lookup for pid {pid} failed: {e}")
                    continue
                if container is not None:
                    return reclassify(record, container, AttributionProvenance.RECLASSIFIED_CGROUP)

        running = context.running_containers
        if (
            record.attribution_provenance == AttributionProvenance.OBSERVED
            and record.owner.lower() not in GENERIC_OWNERS
        ):
            container = match_by_name(record.owner, running)
            if container is not None:
                return reclassify(record, container, AttributionProvenance.HEURISTIC)

        container = match_important_port(record.host_port, record.protocol.value, running)
        if container is not None:
            return reclassify(record, container, AttributionProvenance.WELL_KNOWN_PORT)

        return record

    def _claim_own_port(self, merged: dict[tuple, PortRecord], context: ReconcileContext) -> None:
        if not context.self_port or not context.self_container_hint:
            return
        hint = context.self_container_hint.lower()
        own = [c for c in context.running_containers if hint in c.name.lstrip("/").lower()]
        container = _unique(own)
        if container is None:
            return
        for key, record in merged.items():
            if (
                record.source == Source.OS
                and record.host_port == context.self_port
                and record.owner.lower() in GENERIC_OWNERS
            ):
                merged[key] = reclassify(record, container, AttributionProvenance.HEURISTIC)
                logger.debug(f"Claimed own port {record.host_port} for container {container.name}")

    def _keep(self, record: PortRecord, context: ReconcileContext) -> bool:
        if record.source != Source.OS or record.protocol.value == "tcp":
            return True
        return context.include_udp or is_important(record.host_port, record.protocol.value)
