"""Minimal async Docker Engine API client over httpx."""

import asyncio
import json
import logging
from typing import Any

import httpx

from portscope.errors import ConnectionFailure

logger = logging.getLogger(__name__)


class DockerClient:
    """Talks to the Docker Engine API on a unix socket or a tcp host.

    The underlying connection is opened lazily on first use and reused
    afterwards. Concurrent first calls share one connect attempt.
    """

    def __init__(
        self,
        socket_path: str = "/var/run/docker.sock",
        host: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.socket_path = socket_path
        self.host = host
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._connecting: asyncio.Task | None = None

    @property
    def endpoint(self) -> str:
        return self.host or f"unix://{self.socket_path}"

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _build_client(self) -> httpx.AsyncClient:
        transport = self._transport
        base_url = "http://docker"
        if self.host and not self.host.startswith("unix://"):
            base_url = self.host.replace("tcp://", "http://", 1)
        elif transport is None:
            uds = self.host[len("unix://"):] if self.host else self.socket_path
            transport = httpx.AsyncHTTPTransport(uds=uds)
        return httpx.AsyncClient(base_url=base_url, transport=transport, timeout=self.timeout)

    async def connect(self) -> None:
        """Open the connection if needed, collapsing concurrent attempts into one."""
        if self._client is not None:
            return
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._open())
        task = self._connecting
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._connecting is task:
                self._connecting = None

    async def _open(self) -> None:
        client = self._build_client()
        try:
            response = await client.get("/_ping")
            response.raise_for_status()
        except httpx.HTTPError as e:
            await client.aclose()
            raise ConnectionFailure(self.endpoint, str(e) or type(e).__name__) from e
        self._client = client
        logger.info(f"Connected to Docker at {self.endpoint}")

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        await self.connect()
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectionFailure(f"{self.endpoint}{path}", str(e) or type(e).__name__) from e
        try:
            return response.json()
        except ValueError as e:
            raise ConnectionFailure(f"{self.endpoint}{path}", f"response is not JSON: {e}") from e

    async def ping(self) -> bool:
        await self.connect()
        return True

    async def list_containers(self, filters: dict[str, list[str]] | None = None, all: bool = False) -> list[dict]:
        params: dict[str, Any] = {"all": "1" if all else "0"}
        if filters:
            params["filters"] = json.dumps(filters)
        return await self._get("/containers/json", params)

    async def inspect_container(self, container_id: str) -> dict:
        return await self._get(f"/containers/{container_id}/json")

    async def list_container_processes(self, container_id: str) -> list[int]:
        """Host pids of the processes running inside a container."""
        top = await self._get(f"/containers/{container_id}/top")
        titles = top.get("Titles") or []
        if "PID" not in titles:
            return []
        index = titles.index("PID")
        pids = []
        for row in top.get("Processes") or []:
            try:
                pids.append(int(row[index]))
            except (IndexError, TypeError, ValueError):
                continue
        return pids

    async def system_info(self) -> dict:
        return await self._get("/info")

    async def system_version(self) -> dict:
        return await self._get("/version")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
