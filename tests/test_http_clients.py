"""Tests for the Docker Engine and management API HTTP clients."""

import asyncio
import json

import httpx
import pytest

from portscope.adapters.docker_client import DockerClient
from portscope.adapters.management import HttpManagementClient
from portscope.errors import ConnectionFailure

TOP = {
    "Titles": ["UID", "PID", "PPID", "C", "STIME", "TTY", "TIME", "CMD"],
    "Processes": [
        ["root", "1234", "1200", "0", "10:00", "?", "00:00:00", "nginx: master process"],
        ["101", "1240", "1234", "0", "10:00", "?", "00:00:00", "nginx: worker process"],
        ["101", "not-a-pid"],
    ],
}


class RecordingHandler:
    """httpx.MockTransport handler that serves canned routes and records requests."""

    def __init__(self, routes: dict[str, object], fail: Exception | None = None):
        self.routes = routes
        self.fail = fail
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail is not None:
            raise self.fail
        if request.url.path not in self.routes:
            return httpx.Response(404, json={"message": "page not found"})
        body = self.routes[request.url.path]
        if isinstance(body, str):
            return httpx.Response(200, text=body)
        return httpx.Response(200, json=body)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def docker_client(handler: RecordingHandler, **kwargs) -> DockerClient:
    return DockerClient(transport=httpx.MockTransport(handler), **kwargs)


class TestDockerClient:
    """Tests for DockerClient."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_connect_once(self):
        handler = RecordingHandler({"/_ping": "OK", "/containers/json": [], "/info": {"Name": "nas"}})
        client = docker_client(handler)

        containers, info = await asyncio.gather(client.list_containers(), client.system_info())

        assert containers == []
        assert info["Name"] == "nas"
        assert handler.paths().count("/_ping") == 1
        assert client.connected
        await client.close()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_filters_are_json_encoded(self):
        handler = RecordingHandler({"/_ping": "OK", "/containers/json": []})
        client = docker_client(handler)

        await client.list_containers(filters={"status": ["running"]})

        params = handler.requests[-1].url.params
        assert json.loads(params["filters"]) == {"status": ["running"]}
        assert params["all"] == "0"

    @pytest.mark.asyncio
    async def test_top_pids(self):
        handler = RecordingHandler({"/_ping": "OK", "/containers/abc/top": TOP})
        assert await docker_client(handler).list_container_processes("abc") == [1234, 1240]

    @pytest.mark.asyncio
    async def test_unreachable(self):
        handler = RecordingHandler({}, fail=httpx.ConnectError("No such file or directory"))
        client = docker_client(handler, socket_path="/run/missing.sock")

        with pytest.raises(ConnectionFailure, match="unix:///run/missing.sock"):
            await client.ping()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        handler = RecordingHandler({"/_ping": "OK"})
        with pytest.raises(ConnectionFailure, match="404"):
            await docker_client(handler).inspect_container("gone")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        handler = RecordingHandler({"/_ping": "OK", "/info": "<html>proxy error</html>"})
        with pytest.raises(ConnectionFailure, match="not JSON"):
            await docker_client(handler).system_info()

    @pytest.mark.asyncio
    async def test_tcp_host(self):
        handler = RecordingHandler({"/_ping": "OK", "/version": {"Version": "27.1.1"}})
        client = docker_client(handler, host="tcp://docker.lan:2375")

        version = await client.system_version()

        assert version["Version"] == "27.1.1"
        assert handler.requests[0].url.host == "docker.lan"
        assert client.endpoint == "tcp://docker.lan:2375"


class TestHttpManagementClient:
    """Tests for the management REST client."""

    @pytest.mark.asyncio
    async def test_call_maps_method_to_path(self):
        handler = RecordingHandler({"/api/v2.0/core/ping": "pong", "/api/v2.0/vm/query": [{"id": 1}]})
        client = HttpManagementClient("https://nas.lan/", "1-secret", transport=httpx.MockTransport(handler))

        assert await client.call("vm.query") == [{"id": 1}]
        assert handler.paths() == ["/api/v2.0/core/ping", "/api/v2.0/vm/query"]
        assert handler.requests[-1].headers["Authorization"] == "Bearer 1-secret"

    @pytest.mark.asyncio
    async def test_args_encoded(self):
        handler = RecordingHandler({"/api/v2.0/core/ping": "pong", "/api/v2.0/app/query": []})
        client = HttpManagementClient("https://nas.lan", "k", transport=httpx.MockTransport(handler))

        await client.call("app.query", [[["state", "=", "RUNNING"]]])

        assert json.loads(handler.requests[-1].url.params["args"]) == [[["state", "=", "RUNNING"]]]

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        handler = RecordingHandler({}, fail=httpx.ConnectTimeout("timed out"))
        client = HttpManagementClient("https://nas.lan", "k", transport=httpx.MockTransport(handler))

        with pytest.raises(ConnectionFailure):
            await client.connect()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_login_page_instead_of_json(self):
        handler = RecordingHandler({"/api/v2.0/core/ping": "pong", "/api/v2.0/vm/query": "<html>Sign in</html>"})
        client = HttpManagementClient("http://localhost", "k", transport=httpx.MockTransport(handler))

        with pytest.raises(ConnectionFailure, match="vm.query: response is not JSON"):
            await client.call("vm.query")

    @pytest.mark.asyncio
    async def test_unauthorized_call(self):
        handler = RecordingHandler({"/api/v2.0/core/ping": "pong"})
        client = HttpManagementClient("https://nas.lan", "bad", transport=httpx.MockTransport(handler))

        with pytest.raises(ConnectionFailure, match="system.info"):
            await client.call("system.info")
