"""Hypervisor management API clients."""

import asyncio
import json
import logging
from typing import Any, Protocol

import httpx

from portscope.errors import ConnectionFailure

logger = logging.getLogger(__name__)


class ManagementClient(Protocol):
    """What the hypervisor adapter needs from a management API connection."""

    @property
    def connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def call(self, method: str, args: list[Any] | None = None) -> Any: ...

    async def close(self) -> None: ...


class HttpManagementClient:
    """REST client for the v2.0 management API.

    A dotted method maps to a path: ``vm.query`` -> ``GET /api/v2.0/vm/query``.
    Calls authenticate with a bearer API key.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        verify_ssl: bool = True,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._connecting: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
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
        client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v2.0",
            headers={"Authorization": f"Bearer {self.api_key}"},
            verify=self.verify_ssl,
            timeout=self.timeout,
            transport=self._transport,
        )
        try:
            response = await client.get("/core/ping")
            response.raise_for_status()
        except httpx.HTTPError as e:
            await client.aclose()
            raise ConnectionFailure(self.base_url, str(e) or type(e).__name__) from e
        self._client = client
        logger.info(f"Connected to management API at {self.base_url}")

    async def call(self, method: str, args: list[Any] | None = None) -> Any:
        await self.connect()
        path = "/" + method.replace(".", "/")
        params = {"args": json.dumps(args)} if args else None
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectionFailure(f"{self.base_url} {method}", str(e) or type(e).__name__) from e
        try:
            return response.json()
        except ValueError as e:
            raise ConnectionFailure(f"{self.base_url} {method}", f"response is not JSON: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
