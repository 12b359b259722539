"""Pydantic models for discovered ports."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


WILDCARD_IP = "0.0.0.0"
LOOPBACK_IPS = frozenset({"127.0.0.1", "::1"})


class Source(str, Enum):
    """Where a port record came from."""
    CONTAINER = "container"
    OS = "os"
    HYPERVISOR = "hypervisor"


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class AttributionProvenance(str, Enum):
    """How the owner of a port was established."""
    OBSERVED = "observed"
    RECLASSIFIED_PID = "reclassified-pid"
    RECLASSIFIED_CGROUP = "reclassified-cgroup"
    HEURISTIC = "heuristic"
    WELL_KNOWN_PORT = "well-known-port"


class PortRecord(BaseModel):
    """A single discovered listening endpoint."""

    source: Source = Source.OS
    owner: str = "unknown"
    protocol: Protocol = Protocol.TCP
    host_ip: str = WILDCARD_IP
    host_port: int = Field(ge=1, le=65535)
    pid: int | None = None
    pids: list[int] = Field(default_factory=list)
    target: str | None = None
    container_id: str | None = None
    vm_id: str | None = None
    app_id: str | None = None
    compose_project: str | None = None
    compose_service: str | None = None
    created: str | None = None
    internal: bool = False
    attribution_provenance: AttributionProvenance = AttributionProvenance.OBSERVED
    detection_method: str | None = None

    @property
    def key(self) -> tuple[str, int, str]:
        """Dedup key: published records key on the bind, internal ones on the container."""
        if self.internal:
            return (self.container_id or "", self.host_port, "internal")
        return (self.host_ip, self.host_port, self.protocol.value)

    @property
    def is_wildcard(self) -> bool:
        return self.host_ip == WILDCARD_IP

    @property
    def is_loopback(self) -> bool:
        return self.host_ip in LOOPBACK_IPS


@dataclass
class PortBinding:
    """A published container port (host side plus container side)."""

    host_ip: str
    host_port: int
    container_port: int
    protocol: str = "tcp"


@dataclass
class ContainerInfo:
    """One inspected container, as used for attribution."""

    id: str
    name: str
    image: str = ""
    state: str = "unknown"
    created: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    network_mode: str = ""
    main_pid: int | None = None
    pids: list[int] = field(default_factory=list)
    bindings: list[PortBinding] = field(default_factory=list)
    exposed: list[tuple[int, str]] = field(default_factory=list)  # (port, protocol)

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def host_network(self) -> bool:
        return self.network_mode == "host"

    @property
    def compose_project(self) -> str | None:
        return self.labels.get("com.docker.compose.project")

    @property
    def compose_service(self) -> str | None:
        return self.labels.get("com.docker.compose.service")

    @property
    def running(self) -> bool:
        return self.state == "running"

    def to_application(self) -> dict[str, Any]:
        """Render as an entry of the applications facet."""
        return {
            "type": "application",
            "id": self.id,
            "name": self.name,
            "status": self.state,
            "image": self.image,
            "created": self.created,
            "platform": "docker",
            "platform_data": {
                "type": "container",
                "network_mode": self.network_mode,
                "compose_project": self.compose_project,
                "compose_service": self.compose_service,
                "ports": [
                    {
                        "host_ip": b.host_ip,
                        "host_port": b.host_port,
                        "container_port": b.container_port,
                        "protocol": b.protocol,
                        "internal": False,
                    }
                    for b in self.bindings
                ]
                + [
                    {
                        "host_ip": WILDCARD_IP,
                        "host_port": port,
                        "container_port": port,
                        "protocol": proto,
                        "internal": True,
                    }
                    for port, proto in self.exposed
                ],
            },
        }


@dataclass
class CompatibilityScore:
    """Adapter compatibility score, clamped to 0-100, with the reasons behind it."""

    score: int = 0
    reasons: list[str] = field(default_factory=list)
    raw_score: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "raw_score": self.raw_score,
            "reasons": list(self.reasons),
        }
