"""Platform adapter interface."""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from portscope.cache import AdapterState
from portscope.config import Settings, settings as default_settings
from portscope.models import CompatibilityScore, PortRecord

T = TypeVar("T")


class AdapterKind(str, Enum):
    """Adapter variants, in ascending tie-break priority."""

    OS = "os"
    CONTAINER_RUNTIME = "container_runtime"
    HYPERVISOR = "hypervisor"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]


_PRIORITY = {
    AdapterKind.OS: 0,
    AdapterKind.CONTAINER_RUNTIME: 1,
    AdapterKind.HYPERVISOR: 2,
}


class PlatformAdapter(ABC):
    """A source of the four facets (system info, applications, ports, VMs).

    Adapters are chosen by compatibility score. An adapter may compose
    others (the hypervisor adapter runs container and OS facets itself); in
    that case the inner adapters share the outer adapter's state.
    """

    kind: AdapterKind = AdapterKind.OS
    platform: str = "generic"
    platform_name: str = "Generic Platform"

    def __init__(
        self,
        config: Settings | None = None,
        state: AdapterState | None = None,
    ) -> None:
        self.settings = config or default_settings
        self.state = state or AdapterState(cache_disabled=self.settings.disable_cache)
        self.logger = logging.getLogger(f"portscope.adapters.{self.platform}")
        self.detection: dict[str, Any] | None = None

    @abstractmethod
    async def is_compatible(self, config: dict[str, Any] | None = None) -> CompatibilityScore:
        """Score how well this adapter fits the current host (0-100)."""

    @abstractmethod
    async def get_system_info(self) -> dict[str, Any] | None:
        """Basic host information."""

    @abstractmethod
    async def get_applications(self) -> list[dict[str, Any]]:
        """Running applications (processes, containers, native apps)."""

    @abstractmethod
    async def get_ports(self) -> list[PortRecord]:
        """Deduplicated, attributed listening ports."""

    async def get_vms(self) -> list[dict[str, Any]]:
        """Virtual machines. Most platforms have none."""
        return []

    async def close(self) -> None:
        """Release connections held by this adapter."""

    async def cached(
        self,
        operation: str,
        producer: Callable[[], Awaitable[T]],
        ttl: float | None = None,
        force_refresh: bool = False,
    ) -> T:
        """Cache ``producer()`` under ``<platform>:<operation>``."""
        if ttl is None:
            ttl = self.settings.default_cache_ttl
        return await self.state.cached(self.platform, operation, producer, ttl, force_refresh)

    def clear_cache(self, operation: str | None = None) -> None:
        if operation is None:
            self.state.cache.clear()
            self.state.cached_degraded.clear()
        else:
            self.state.invalidate(self.platform, operation)

    def mark_degraded(self, facet: str, reason: str) -> None:
        self.logger.warning(f"{facet} degraded: {reason}", extra={"platform": self.platform, "facet": facet})
        self.state.degraded[facet] = reason

    def __repr__(self) -> str:
        return f"<{type(self).__name__} platform={self.platform}>"
