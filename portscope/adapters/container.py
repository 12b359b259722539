"""Container runtime (Docker) adapter."""

import asyncio
import os
from typing import Any, Callable

from portscope.adapters.base import AdapterKind, PlatformAdapter
from portscope.adapters.docker_client import DockerClient
from portscope.adapters.os_sockets import OSSocketAdapter
from portscope.adapters.proc_net import read_cgroup_container_id
from portscope.adapters.scoring import CompatibilityScorer, Signal
from portscope.cache import AdapterState
from portscope.config import Settings
from portscope.errors import ConnectionFailure, ExternalToolFailure, PortscopeError
from portscope.models import (
    WILDCARD_IP,
    AttributionProvenance,
    CompatibilityScore,
    ContainerInfo,
    PortBinding,
    PortRecord,
    Source,
)
from portscope.reconcile import ReconcileContext, ReconciliationEngine


def _split_port_key(key: str) -> tuple[int, str] | None:
    """'8080/tcp' -> (8080, 'tcp')."""
    port_str, _, protocol = key.partition("/")
    try:
        return int(port_str), (protocol or "tcp").lower()
    except ValueError:
        return None


def parse_container(data: dict[str, Any], pids: list[int] | None = None) -> ContainerInfo:
    """Build a ContainerInfo from a ``/containers/<id>/json`` payload."""
    config = data.get("Config") or {}
    host_config = data.get("HostConfig") or {}
    state = data.get("State") or {}
    network = data.get("NetworkSettings") or {}

    info = ContainerInfo(
        id=data["Id"],
        name=(data.get("Name") or data["Id"][:12]).lstrip("/"),
        image=config.get("Image") or data.get("Image") or "",
        state=state.get("Status") or "unknown",
        created=data.get("Created"),
        labels=config.get("Labels") or {},
        network_mode=host_config.get("NetworkMode") or "",
        main_pid=state.get("Pid") or None,
        pids=list(pids or []),
    )

    bound: set[tuple[int, str]] = set()
    for key, host_bindings in (network.get("Ports") or {}).items():
        parsed = _split_port_key(key)
        if parsed is None or not host_bindings:
            continue
        container_port, protocol = parsed
        for binding in host_bindings:
            try:
                host_port = int(binding.get("HostPort") or 0)
            except ValueError:
                continue
            if not host_port:
                continue
            info.bindings.append(PortBinding(
                host_ip=binding.get("HostIp") or WILDCARD_IP,
                host_port=host_port,
                container_port=container_port,
                protocol=protocol,
            ))
            bound.add(parsed)

    declared = list(config.get("ExposedPorts") or {}) + list(network.get("Ports") or {})
    for key in declared:
        parsed = _split_port_key(key)
        if parsed is None or parsed in bound or parsed in info.exposed:
            continue
        info.exposed.append(parsed)

    return info


def container_records(infos: list[ContainerInfo]) -> list[dict[str, Any]]:
    """Raw port records for published bindings and internal (exposed) ports."""
    records = []
    for info in infos:
        if not info.running:
            continue
        base = {
            "source": Source.CONTAINER.value,
            "owner": info.name,
            "container_id": info.id,
            "compose_project": info.compose_project,
            "compose_service": info.compose_service,
            "created": info.created,
            "detection_method": "docker-api",
            "attribution_provenance": AttributionProvenance.OBSERVED.value,
        }
        for binding in info.bindings:
            if binding.host_ip.endswith(".255"):
                continue  # broadcast
            records.append({
                **base,
                "protocol": binding.protocol,
                "host_ip": binding.host_ip,
                "host_port": binding.host_port,
                "target": f"{info.short_id}:{binding.container_port}",
                "internal": False,
            })
        for port, protocol in info.exposed:
            records.append({
                **base,
                "protocol": protocol,
                "host_ip": WILDCARD_IP,
                "host_port": port,
                "target": f"{info.short_id}:{port}(internal)",
                "internal": True,
            })
    return records


def build_pid_map(infos: list[ContainerInfo]) -> dict[int, ContainerInfo]:
    """Map host pids to containers: every main pid, plus all pids of host-networked containers."""
    pid_map: dict[int, ContainerInfo] = {}
    for info in infos:
        if not info.running:
            continue
        if info.main_pid:
            pid_map.setdefault(info.main_pid, info)
        if info.host_network:
            for pid in info.pids:
                pid_map.setdefault(pid, info)
    return pid_map


class ContainerRuntimeAdapter(PlatformAdapter):
    """Ports, containers and runtime info from the Docker Engine API.

    Container bindings are reconciled with OS sockets from an inner
    OSSocketAdapter that shares this adapter's state. When the runtime is
    unreachable the ports facet falls back to OS sockets alone.
    """

    kind = AdapterKind.CONTAINER_RUNTIME
    platform = "docker"
    platform_name = "Docker"

    def __init__(
        self,
        config: Settings | None = None,
        state: AdapterState | None = None,
        client: DockerClient | None = None,
        os_adapter: OSSocketAdapter | None = None,
        cgroup_reader: Callable[[int, str], str | None] = read_cgroup_container_id,
    ) -> None:
        super().__init__(config, state)
        self.client = client or DockerClient(
            socket_path=self.settings.docker_socket,
            host=self.settings.docker_host,
            timeout=self.settings.docker_timeout,
        )
        self.os_adapter = os_adapter or OSSocketAdapter(self.settings, self.state)
        self.cgroup_reader = cgroup_reader
        self.engine = ReconciliationEngine()

    async def is_compatible(self, config: dict[str, Any] | None = None) -> CompatibilityScore:
        scorer = CompatibilityScorer(
            [
                Signal(
                    "socket",
                    50,
                    lambda: bool(self.settings.docker_host) or os.path.exists(self.settings.docker_socket),
                    "Docker socket available",
                ),
                Signal("api", 40, self.client.ping, "Docker API responding"),
            ],
            label=self.platform_name,
        )
        return await scorer.evaluate()

    # ---------------------------------------------------------------- containers

    async def inspect_all(self, force_refresh: bool = False) -> list[ContainerInfo]:
        """Inspect every running container concurrently. Failed inspects are skipped."""
        return await self.cached("containers", self._inspect_all, self.settings.containers_ttl, force_refresh)

    async def _inspect_all(self) -> list[ContainerInfo]:
        summaries = await self.client.list_containers(filters={"status": ["running"]})
        results = await asyncio.gather(*(self._inspect_one(s["Id"]) for s in summaries))
        infos = [info for info in results if info is not None]
        self.logger.debug(f"Inspected {len(infos)}/{len(summaries)} running containers")
        return infos

    async def _inspect_one(self, container_id: str) -> ContainerInfo | None:
        try:
            data = await self.client.inspect_container(container_id)
        except PortscopeError as e:
            self.logger.warning(
                f"Failed to inspect container {container_id[:12]}: {e}",
                extra={"platform": self.platform, "container_id": container_id[:12]},
            )
            return None

        try:
            pids = await self.client.list_container_processes(container_id)
        except PortscopeError as e:
            self.logger.debug(f"Cannot list processes of {container_id[:12]}: {e}")
            pids = []
        return parse_container(data, pids)

    async def container_for_pid(self, pid: int) -> ContainerInfo | None:
        """Resolve a host pid to its container through /proc/<pid>/cgroup."""
        container_id = await asyncio.to_thread(self.cgroup_reader, pid, self.settings.proc_root)
        if not container_id:
            return None
        for info in await self.inspect_all():
            if info.id == container_id:
                return info
        try:
            return parse_container(await self.client.inspect_container(container_id))
        except PortscopeError as e:
            self.logger.debug(f"cgroup container {container_id[:12]} for pid {pid} not inspectable: {e}")
            return None

    # ---------------------------------------------------------------- facets

    async def get_ports(self) -> list[PortRecord]:
        return await self.cached("ports", self._ports, self.settings.container_ports_ttl)

    async def _ports(self) -> list[PortRecord]:
        try:
            infos = await self.inspect_all()
        except ConnectionFailure as e:
            self.mark_degraded("container_runtime", str(e))
            return await self.os_adapter.get_ports()

        try:
            os_records = await self.os_adapter.list_sockets()
        except ExternalToolFailure as e:
            self.mark_degraded("os_sockets", str(e))
            os_records = []

        context = ReconcileContext(
            pid_map=build_pid_map(infos),
            containers=infos,
            cgroup_resolver=self.container_for_pid,
            self_port=self.settings.self_port,
            self_container_hint=self.settings.self_container_hint,
            include_udp=self.settings.include_udp,
            process_start_times=await self.os_adapter.process_start_times(r.pid for r in os_records),
        )
        return await self.engine.reconcile(container_records(infos), os_records, context)

    async def get_system_info(self) -> dict[str, Any]:
        return await self.cached("system_info", self._system_info, self.settings.system_info_ttl)

    async def _system_info(self) -> dict[str, Any]:
        info, version = await asyncio.gather(self.client.system_info(), self.client.system_version())
        return {
            "type": "system",
            "hostname": info.get("Name"),
            "version": version.get("Version"),
            "platform": self.platform,
            "os": {
                "platform": info.get("OSType"),
                "release": info.get("KernelVersion"),
                "type": info.get("OperatingSystem"),
                "arch": info.get("Architecture"),
            },
            "cpu": {"cores": info.get("NCPU", 0)},
            "memory": {"total": info.get("MemTotal", 0)},
            "platform_data": {
                "api_version": version.get("ApiVersion"),
                "containers": info.get("Containers", 0),
                "containers_running": info.get("ContainersRunning", 0),
                "containers_stopped": info.get("ContainersStopped", 0),
                "images": info.get("Images", 0),
                "storage_driver": info.get("Driver"),
            },
        }

    async def get_applications(self) -> list[dict[str, Any]]:
        return [info.to_application() for info in await self.inspect_all()]

    async def close(self) -> None:
        await self.client.close()
