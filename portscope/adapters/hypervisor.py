"""Hypervisor/NAS adapter (TrueNAS Scale).

Runs the container runtime and OS socket facets itself and, when an API
key is configured, adds native apps, VMs and LXC instances from the
management API. The management API is optional: when it fails or times
out the facet is marked degraded and everything else still fills in.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import Any

from portscope.adapters.base import AdapterKind, PlatformAdapter
from portscope.adapters.container import ContainerRuntimeAdapter
from portscope.adapters.management import HttpManagementClient, ManagementClient
from portscope.adapters.os_sockets import OSSocketAdapter
from portscope.adapters.scoring import CompatibilityScorer, Signal
from portscope.cache import AdapterState
from portscope.config import Settings
from portscope.errors import ConnectionFailure, PortscopeError, TimeoutFailure
from portscope.models import AttributionProvenance, CompatibilityScore, PortRecord, Source
from portscope.normalizer import normalize_many
from portscope.probes import CommandRunner, run_command

MARKER = "truenas"


def _status(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("state")
    return str(value).lower() if value else "unknown"


def _mib_to_bytes(value: Any) -> int | None:
    return value * 1024 * 1024 if isinstance(value, (int, float)) and value else None


def app_port_mappings(app: dict[str, Any]) -> list[dict[str, Any]]:
    """Port mappings declared by a native app (top level and config)."""
    config = app.get("config")
    mappings = []
    for declared in (app.get("port_mappings"), config.get("port_mappings") if isinstance(config, dict) else None):
        if isinstance(declared, list):
            mappings += declared
    return [
        {
            "host_ip": m.get("host_ip") or "*",
            "host_port": m.get("host_port"),
            "container_port": m.get("container_port"),
            "protocol": m.get("protocol") or "tcp",
        }
        for m in mappings
        if isinstance(m, dict)
    ]


class HypervisorAdapter(PlatformAdapter):
    """TrueNAS Scale: containers + OS sockets + optional management API."""

    kind = AdapterKind.HYPERVISOR
    platform = "truenas"
    platform_name = "TrueNAS Scale"

    MIDDLEWARE_SOCKETS = (
        "/var/run/middlewared.sock",
        "/run/middlewared.sock",
        "/run/middleware/middlewared.sock",
    )
    MARKER_DIRS = ("/usr/local/etc/ix", "/etc/netcli", "/data/truenas-config")
    OS_RELEASE = "/etc/os-release"

    def __init__(
        self,
        config: Settings | None = None,
        state: AdapterState | None = None,
        container_adapter: ContainerRuntimeAdapter | None = None,
        os_adapter: OSSocketAdapter | None = None,
        management_client: ManagementClient | None = None,
        runner: CommandRunner = run_command,
    ) -> None:
        super().__init__(config, state)
        self.runner = runner
        self.os_adapter = os_adapter or OSSocketAdapter(self.settings, self.state, runner=runner)
        self.container_adapter = container_adapter or ContainerRuntimeAdapter(
            self.settings, self.state, os_adapter=self.os_adapter
        )
        self._management = management_client

    @property
    def management_enabled(self) -> bool:
        return bool(self.settings.hypervisor_api_key or self._management is not None)

    # ---------------------------------------------------------------- detection

    async def is_compatible(self, config: dict[str, Any] | None = None) -> CompatibilityScore:
        config = config or {}
        scorer = CompatibilityScorer(
            [
                Signal("kernel", 60, self._kernel_matches, "TrueNAS kernel signature found"),
                Signal("os_release", 40, self._os_release_matches, "TrueNAS OS release identifier found"),
                Signal(
                    "middleware_socket",
                    10,
                    lambda: any(os.path.exists(p) for p in self.MIDDLEWARE_SOCKETS),
                    "Middleware socket found",
                ),
                Signal(
                    "marker_dir",
                    10,
                    lambda: any(os.path.isdir(p) for p in self.MARKER_DIRS),
                    "TrueNAS directory found",
                ),
                Signal(
                    "api_key",
                    20,
                    lambda: bool(config.get("api_key") or self.settings.hypervisor_api_key),
                    "TrueNAS API key provided",
                ),
            ],
            label=self.platform_name,
        )
        return await scorer.evaluate()

    async def _kernel_matches(self) -> bool:
        result = await self.runner(["uname", "-a"], self.settings.command_timeout)
        result.raise_for_failure("uname")
        return MARKER in result.stdout.lower()

    async def _os_release_matches(self) -> bool:
        path = Path(self.OS_RELEASE)
        text = await asyncio.to_thread(path.read_text) if path.exists() else ""
        return MARKER in text.lower()

    # ---------------------------------------------------------------- management API

    def _management_client(self) -> ManagementClient:
        if self._management is None:
            self._management = HttpManagementClient(
                self.settings.hypervisor_api_url,
                self.settings.hypervisor_api_key or "",
                verify_ssl=self.settings.hypervisor_verify_ssl,
                timeout=self.settings.management_system_info_timeout,
            )
        return self._management

    async def management_snapshot(self) -> dict[str, Any] | None:
        """Management API data shared by all facets of one pass.

        Returns None when the API is not configured or the fetch failed; in
        the latter case ``degraded["management"]`` says why.
        """
        if not self.management_enabled:
            return None
        try:
            return await self.cached(
                "management",
                lambda: self.state.flights.run(f"{self.platform}:management", self._fetch_management),
                self.settings.management_ttl,
            )
        except PortscopeError as e:
            self.mark_degraded("management", str(e))
            return None

    async def _fetch_management(self) -> dict[str, Any]:
        """One snapshot fetch. The client is closed before a failure propagates."""
        try:
            return await self._fetch_snapshot(self._management_client())
        except PortscopeError:
            await self._close_management()
            raise

    async def _fetch_snapshot(self, client: ManagementClient) -> dict[str, Any]:
        started = time.monotonic()
        try:
            await asyncio.wait_for(client.connect(), self.settings.management_system_info_timeout)
        except asyncio.TimeoutError:
            raise TimeoutFailure("TrueNAS management API connect", self.settings.management_system_info_timeout)
        try:
            snapshot = await asyncio.wait_for(
                self._fetch_calls(client), self.settings.management_timeout
            )
        except asyncio.TimeoutError:
            raise TimeoutFailure("TrueNAS management API", self.settings.management_timeout)

        duration_ms = (time.monotonic() - started) * 1000
        self.logger.info(
            f"Management API: {len(snapshot['apps'])} apps, {len(snapshot['vms'])} VMs, "
            f"{len(snapshot['instances'])} instances",
            extra={"platform": self.platform, "facet": "management", "duration_ms": round(duration_ms)},
        )
        return snapshot

    async def _fetch_calls(self, client: ManagementClient) -> dict[str, Any]:
        calls = [
            ("system.info", "system_info", self.settings.management_system_info_timeout),
            ("app.query", "apps", self.settings.management_app_query_timeout),
            ("vm.query", "vms", self.settings.management_vm_query_timeout),
            ("virt.instance.query", "instances", self.settings.management_container_query_timeout),
        ]
        outcomes = await asyncio.gather(*(self._call(client, method, timeout) for method, _, timeout in calls))

        snapshot: dict[str, Any] = {"system_info": None, "apps": [], "vms": [], "instances": []}
        failures = []
        for (method, key, _), (data, error) in zip(calls, outcomes):
            if error is None:
                data, error = self._checked(method, key, data)
            if error is not None:
                failures.append(f"{method}: {error}")
            else:
                snapshot[key] = data

        if len(failures) == len(calls):
            raise ConnectionFailure("TrueNAS management API", "; ".join(failures))
        if failures:
            self.mark_degraded("management", f"partial: {'; '.join(failures)}")
        return snapshot

    def _checked(self, method: str, key: str, data: Any) -> tuple[Any, str | None]:
        """Validate a call result's shape: an object for system.info, else a list of objects."""
        if key == "system_info":
            if data is None or isinstance(data, dict):
                return data, None
            return None, f"expected an object, got {type(data).__name__}"
        if data is None:
            return [], None
        if not isinstance(data, list):
            return None, f"expected a list, got {type(data).__name__}"
        items = [item for item in data if isinstance(item, dict)]
        if len(items) != len(data):
            self.logger.warning(f"{method}: ignoring {len(data) - len(items)} malformed entries")
        return items, None

    async def _call(self, client: ManagementClient, method: str, timeout: float) -> tuple[Any, str | None]:
        """Run one timeout-wrapped API call, returning (data, error)."""
        started = time.monotonic()
        try:
            data = await asyncio.wait_for(client.call(method), timeout)
        except asyncio.TimeoutError:
            error = str(TimeoutFailure(method, timeout))
        except PortscopeError as e:
            error = str(e)
        else:
            elapsed = time.monotonic() - started
            if elapsed > timeout * 0.7:
                self.logger.warning(f"{method} took {elapsed:.1f}s (over 70% of its {timeout:g}s timeout)")
            return data, None
        self.logger.warning(f"{method} failed: {error[:100]}")
        return None, error

    async def _close_management(self) -> None:
        if self._management is not None:
            try:
                await self._management.close()
            except PortscopeError as e:
                self.logger.debug(f"Closing management client failed: {e}")

    # ---------------------------------------------------------------- facets

    async def get_system_info(self) -> dict[str, Any]:
        try:
            base = await self.container_adapter.get_system_info()
        except PortscopeError as e:
            self.mark_degraded("container_runtime", str(e))
            base = await self.os_adapter.get_system_info()

        info = {**base, "platform": self.platform}
        snapshot = await self.management_snapshot()
        if snapshot and snapshot["system_info"]:
            return {**info, **snapshot["system_info"], "platform": self.platform, "enhanced": True}
        return {
            **info,
            "enhanced": False,
            "platform_data": {
                **(info.get("platform_data") or {}),
                "api_key_required_for": ["vms", "native_apps", "detailed_system_info"],
            },
        }

    async def get_applications(self) -> list[dict[str, Any]]:
        try:
            apps = await self.container_adapter.get_applications()
        except PortscopeError as e:
            self.mark_degraded("container_runtime", str(e))
            apps = []

        snapshot = await self.management_snapshot()
        for app in (snapshot or {}).get("apps", []):
            apps.append({
                "type": "application",
                "id": app.get("id"),
                "name": app.get("name"),
                "status": _status(app.get("state") or app.get("status")),
                "version": app.get("version") or "N/A",
                "image": app.get("image") or "N/A",
                "created": app.get("started"),
                "platform": self.platform,
                "platform_data": {
                    "type": "truenas_app",
                    "catalog": app.get("catalog"),
                    "ports": app_port_mappings(app),
                },
            })
        return apps

    async def get_vms(self) -> list[dict[str, Any]]:
        snapshot = await self.management_snapshot()
        if not snapshot:
            return []

        vms = []
        for vm in snapshot["vms"]:
            vms.append({
                "type": "vm",
                "id": vm.get("id"),
                "name": vm.get("name"),
                "status": _status(vm.get("status")),
                "vcpus": vm.get("vcpus"),
                "memory": _mib_to_bytes(vm.get("memory")),
                "autostart": vm.get("autostart"),
                "platform": self.platform,
                "platform_data": {"type": "vm", "devices": vm.get("devices") or []},
            })
        for instance in snapshot["instances"]:
            image = instance.get("image") or {}
            vms.append({
                "type": "vm",
                "id": instance.get("id"),
                "name": instance.get("name"),
                "status": _status(instance.get("status")),
                "vcpus": instance.get("cpu"),
                "memory": _mib_to_bytes(instance.get("memory")),
                "autostart": instance.get("autostart"),
                "platform": self.platform,
                "platform_data": {
                    "type": "lxc",
                    "os": image.get("os", "unknown") if isinstance(image, dict) else "unknown",
                    "storage_pool": instance.get("storage_pool"),
                },
            })
        return vms

    async def get_ports(self) -> list[PortRecord]:
        """Container-runtime ports overlaid with ports declared by native apps.

        A native app mapping replaces an OS-sourced record on the same key but
        never a container-sourced one.
        """
        ports = await self.container_adapter.get_ports()
        snapshot = await self.management_snapshot()
        if not snapshot:
            return ports

        declared = []
        for app in snapshot["apps"]:
            for mapping in app_port_mappings(app):
                declared.append({
                    "source": Source.HYPERVISOR.value,
                    "owner": app.get("name") or "unknown",
                    "app_id": app.get("id") or app.get("name"),
                    "protocol": mapping["protocol"],
                    "host_ip": mapping["host_ip"],
                    "host_port": mapping["host_port"],
                    "target": f"{app.get('name')}:{mapping['container_port']}",
                    "detection_method": "management-api",
                    "attribution_provenance": AttributionProvenance.OBSERVED.value,
                })

        by_key = {p.key: p for p in ports}
        for record in normalize_many(declared):
            existing = by_key.get(record.key)
            if existing is None or existing.source == Source.OS:
                by_key[record.key] = record
        return sorted(by_key.values(), key=lambda r: (r.host_port, r.protocol.value, r.host_ip))

    async def close(self) -> None:
        await self.container_adapter.close()
        await self._close_management()
