"""Tests for the TrueNAS hypervisor adapter and its management API facet."""

import asyncio

import httpx
import pytest

from portscope.adapters.container import ContainerRuntimeAdapter
from portscope.adapters.hypervisor import HypervisorAdapter, app_port_mappings
from portscope.adapters.management import HttpManagementClient
from portscope.adapters.os_sockets import OSSocketAdapter
from portscope.cache import AdapterState
from portscope.collector import FACETS, Collector
from portscope.errors import ConnectionFailure
from portscope.models import Source
from tests.fakes import FakeDockerClient, FakeManagementClient, FakeRunner, docker_inspect, ok

APPS = [
    {
        "id": "jellyfin",
        "name": "jellyfin",
        "state": "RUNNING",
        "version": "1.2.0",
        "catalog": "community",
        "port_mappings": [{"host_port": 30013, "container_port": 8096, "protocol": "tcp"}],
    },
]
VMS = [{"id": 1, "name": "haos", "status": {"state": "RUNNING"}, "vcpus": 2, "memory": 4096, "autostart": True}]
INSTANCES = [{"id": "debian", "name": "debian", "status": "STOPPED", "cpu": "1", "memory": 512, "image": {"os": "Debian"}}]

HYPERVISOR_SS = """\
tcp LISTEN 0 4096 0.0.0.0:30013 0.0.0.0:*
tcp LISTEN 0 4096 0.0.0.0:22 0.0.0.0:* users:(("sshd",pid=812,fd=3))
"""


def full_management(**kwargs):
    return FakeManagementClient(
        responses={
            "system.info": {"hostname": "nas", "version": "TrueNAS-SCALE-24.10.1", "physmem": 68719476736},
            "app.query": APPS,
            "vm.query": VMS,
            "virt.instance.query": INSTANCES,
        },
        **kwargs,
    )


def make_hypervisor(settings, management=None, docker=None, uname="Linux nas 6.6.44-production+truenas #1 SMP"):
    state = AdapterState()
    runner = FakeRunner({"uname": ok(uname), "nsenter": ok(HYPERVISOR_SS)})
    os_adapter = OSSocketAdapter(settings, state, runner=runner, proc_reader=lambda root, udp=True: [], is_windows=False)
    docker = docker or FakeDockerClient([docker_inspect("d" * 64, "nginx", ports={"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}]})])
    container_adapter = ContainerRuntimeAdapter(
        settings, state, client=docker, os_adapter=os_adapter, cgroup_reader=lambda pid, root: None
    )
    return HypervisorAdapter(
        settings,
        state,
        container_adapter=container_adapter,
        os_adapter=os_adapter,
        management_client=management,
        runner=runner,
    )


class TestHypervisorCompatibility:
    """Tests for TrueNAS detection signals."""

    @pytest.mark.asyncio
    async def test_all_signals(self, settings, tmp_path):
        os_release = tmp_path / "os-release"
        os_release.write_text('NAME="TrueNAS SCALE"\n')
        sock = tmp_path / "middlewared.sock"
        sock.touch()
        adapter = make_hypervisor(settings)
        adapter.OS_RELEASE = str(os_release)
        adapter.MIDDLEWARE_SOCKETS = (str(sock),)
        adapter.MARKER_DIRS = (str(tmp_path),)

        score = await adapter.is_compatible({"api_key": "1-abc"})

        assert score.score == 100
        assert score.raw_score == 140
        assert len(score.reasons) == 5

    @pytest.mark.asyncio
    async def test_plain_linux_scores_zero(self, settings, tmp_path):
        adapter = make_hypervisor(settings, uname="Linux host 6.1.0-18-amd64 #1 SMP Debian")
        adapter.OS_RELEASE = str(tmp_path / "missing")
        adapter.MIDDLEWARE_SOCKETS = (str(tmp_path / "missing.sock"),)
        adapter.MARKER_DIRS = (str(tmp_path / "missing-dir"),)

        score = await adapter.is_compatible()

        assert score.score == 0


class TestManagementFacet:
    """Tests for the optional management API data."""

    @pytest.mark.asyncio
    async def test_enhanced_system_info(self, settings):
        adapter = make_hypervisor(settings, full_management())

        info = await adapter.get_system_info()

        assert info["enhanced"] is True
        assert info["version"] == "TrueNAS-SCALE-24.10.1"
        assert info["platform"] == "truenas"
        assert adapter.state.degraded == {}

    @pytest.mark.asyncio
    async def test_applications_include_native_apps(self, settings):
        adapter = make_hypervisor(settings, full_management())

        apps = await adapter.get_applications()

        names = {app["name"]: app for app in apps}
        assert set(names) == {"nginx", "jellyfin"}
        assert names["jellyfin"]["status"] == "running"
        assert names["jellyfin"]["platform_data"]["ports"][0]["host_port"] == 30013

    @pytest.mark.asyncio
    async def test_vms_include_lxc_instances(self, settings):
        adapter = make_hypervisor(settings, full_management())

        vms = await adapter.get_vms()

        assert [(vm["name"], vm["status"]) for vm in vms] == [("haos", "running"), ("debian", "stopped")]
        assert vms[0]["memory"] == 4096 * 1024 * 1024
        assert vms[1]["platform_data"]["type"] == "lxc"
        assert vms[1]["platform_data"]["os"] == "Debian"

    @pytest.mark.asyncio
    async def test_snapshot_shared_between_facets(self, settings):
        management = full_management(delays={"system.info": 0.01})
        adapter = make_hypervisor(settings, management)

        await asyncio.gather(adapter.get_system_info(), adapter.get_applications(), adapter.get_vms())

        assert sorted(management.calls) == ["app.query", "system.info", "virt.instance.query", "vm.query"]
        assert management.connects == 1

    @pytest.mark.asyncio
    async def test_overall_timeout_degrades(self, settings):
        """A slow management API marks the facet degraded; the rest still fills in."""
        settings.management_timeout = 0.05
        management = full_management(delays={"system.info": 5})
        adapter = make_hypervisor(settings, management)

        info = await adapter.get_system_info()
        ports = await adapter.get_ports()

        assert info["enhanced"] is False
        assert info["hostname"] == "nas"
        assert "timeout" in adapter.state.degraded["management"]
        assert management.closed
        assert {p.host_port for p in ports} == {22, 8080, 30013}

    @pytest.mark.asyncio
    async def test_single_call_timeout_is_partial(self, settings):
        settings.management_vm_query_timeout = 0.01
        adapter = make_hypervisor(settings, full_management(delays={"vm.query": 1}))

        vms = await adapter.get_vms()

        assert [vm["name"] for vm in vms] == ["debian"]
        assert "vm.query timeout" in adapter.state.degraded["management"]
        assert adapter.state.degraded["management"].startswith("partial")

    @pytest.mark.asyncio
    async def test_all_calls_failing(self, settings):
        error = ConnectionFailure("nas", "401 Unauthorized")
        management = FakeManagementClient(errors={
            "system.info": error, "app.query": error, "vm.query": error, "virt.instance.query": error,
        })
        adapter = make_hypervisor(settings, management)

        assert await adapter.get_vms() == []
        assert "401" in adapter.state.degraded["management"]
        assert management.closed

    @pytest.mark.asyncio
    async def test_without_api_key(self, settings):
        adapter = make_hypervisor(settings, management=None)

        info = await adapter.get_system_info()

        assert info["enhanced"] is False
        assert "vms" in info["platform_data"]["api_key_required_for"]
        assert await adapter.get_vms() == []


class TestMalformedManagementData:
    """Unexpected management API payloads degrade the facet instead of failing the pass."""

    @pytest.mark.asyncio
    async def test_html_responses_degrade_collection(self, settings):
        def login_page(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html><body>Sign in</body></html>", headers={"content-type": "text/html"})

        management = HttpManagementClient("http://localhost", "1-key", transport=httpx.MockTransport(login_page))
        adapter = make_hypervisor(settings, management)

        result = await Collector([adapter], settings).collect_all()

        assert result["platform"] == "truenas"
        assert result["errors"] == {facet: None for facet in FACETS}
        assert "not JSON" in result["degraded"]["management"]
        assert result["systemInfo"]["enhanced"] is False
        assert {p["host_port"] for p in result["ports"]} == {22, 8080, 30013}
        assert result["vms"] == []
        assert not management.connected

    @pytest.mark.asyncio
    async def test_wrong_shapes_are_partial(self, settings):
        management = FakeManagementClient(responses={
            "system.info": ["not", "an", "object"],
            "app.query": {"error": "unexpected"},
            "vm.query": [1, "haos", {"id": 1, "name": "haos", "status": "RUNNING"}],
            "virt.instance.query": None,
        })
        adapter = make_hypervisor(settings, management)

        info = await adapter.get_system_info()
        apps = await adapter.get_applications()
        vms = await adapter.get_vms()
        ports = await adapter.get_ports()

        degraded = adapter.state.degraded["management"]
        assert degraded.startswith("partial")
        assert "system.info: expected an object" in degraded
        assert "app.query: expected a list" in degraded
        assert info["enhanced"] is False
        assert [a["name"] for a in apps] == ["nginx"]
        assert [vm["name"] for vm in vms] == ["haos"]
        assert all(p.source != Source.HYPERVISOR for p in ports)

    def test_port_mappings_not_a_list(self):
        assert app_port_mappings({"port_mappings": 30013, "config": "broken"}) == []


class TestHypervisorPorts:
    """Tests for the hypervisor ports facet."""

    @pytest.mark.asyncio
    async def test_native_app_claims_os_socket(self, settings):
        adapter = make_hypervisor(settings, full_management())

        ports = await adapter.get_ports()
        by_port = {p.host_port: p for p in ports}

        assert by_port[30013].source == Source.HYPERVISOR
        assert by_port[30013].app_id == "jellyfin"
        assert by_port[30013].owner == "jellyfin"
        assert by_port[8080].source == Source.CONTAINER
        assert by_port[22].source == Source.OS

    @pytest.mark.asyncio
    async def test_container_records_not_replaced(self, settings):
        apps = [{"id": "nginx", "name": "nginx", "port_mappings": [{"host_port": 8080, "container_port": 80}]}]
        management = FakeManagementClient(responses={"system.info": {}, "app.query": apps})
        adapter = make_hypervisor(settings, management)

        ports = await adapter.get_ports()

        assert [p.source for p in ports if p.host_port == 8080] == [Source.CONTAINER]

    @pytest.mark.asyncio
    async def test_runtime_down_still_collects(self, settings):
        adapter = make_hypervisor(settings, full_management(), docker=FakeDockerClient(unreachable=True))

        info = await adapter.get_system_info()
        apps = await adapter.get_applications()

        assert info["enhanced"] is True
        assert [a["name"] for a in apps] == ["jellyfin"]
        assert "container_runtime" in adapter.state.degraded

    def test_app_port_mappings_merges_config(self):
        app = {
            "port_mappings": [{"host_port": 1, "container_port": 1}],
            "config": {"port_mappings": [{"host_port": 2, "container_port": 2, "protocol": "udp", "host_ip": "10.0.0.2"}]},
        }
        assert app_port_mappings(app) == [
            {"host_ip": "*", "host_port": 1, "container_port": 1, "protocol": "tcp"},
            {"host_ip": "10.0.0.2", "host_port": 2, "container_port": 2, "protocol": "udp"},
        ]


class TestClose:
    @pytest.mark.asyncio
    async def test_close_releases_clients(self, settings):
        docker = FakeDockerClient()
        management = full_management()
        await make_hypervisor(settings, management, docker=docker).close()
        assert docker.closed
        assert management.closed
