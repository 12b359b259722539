"""Collector orchestrator: pick an adapter and run a full collection pass."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from portscope.adapters.base import PlatformAdapter
from portscope.adapters.container import ContainerRuntimeAdapter
from portscope.adapters.hypervisor import HypervisorAdapter
from portscope.adapters.os_sockets import OSSocketAdapter
from portscope.adapters.scoring import describe_scores, select_adapter
from portscope.cache import SingleFlight
from portscope.config import Settings, settings as default_settings
from portscope.models import CompatibilityScore

logger = logging.getLogger(__name__)

FACETS = ("systemInfo", "applications", "ports", "vms")


@dataclass
class DetectionResult:
    """Outcome of scoring every registered adapter."""

    platform: str
    platform_name: str
    score: int
    reasons: list[str] = field(default_factory=list)
    scores: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "platformName": self.platform_name,
            "score": self.score,
            "reasons": list(self.reasons),
            "scores": self.scores,
        }


class Collector:
    """Scores adapters, activates the winner and collects the four facets.

    ``collect_all()`` never raises. Each facet that fails comes back empty
    with an error string, and concurrent callers share one in-flight pass
    per adapter.
    """

    def __init__(self, adapters: list[PlatformAdapter] | None = None, config: Settings | None = None):
        self.settings = config or default_settings
        self.adapters: list[PlatformAdapter] = list(adapters or [])
        self.active: PlatformAdapter | None = None
        self.detection: DetectionResult | None = None
        self._flights = SingleFlight()

    @classmethod
    def default(cls, config: Settings | None = None) -> "Collector":
        """A collector with every built-in adapter, each with its own state."""
        config = config or default_settings
        return cls(
            [HypervisorAdapter(config), ContainerRuntimeAdapter(config), OSSocketAdapter(config)],
            config,
        )

    def register(self, adapter: PlatformAdapter) -> None:
        self.adapters.append(adapter)

    async def detect(self, config: dict[str, Any] | None = None) -> DetectionResult | None:
        """Score all adapters concurrently and activate the best one."""
        if not self.adapters:
            logger.warning("No adapters registered")
            return None

        scores = await asyncio.gather(*(self._score(a, config) for a in self.adapters))
        scored = list(zip(self.adapters, scores))
        adapter, score = select_adapter(scored)

        self.active = adapter
        self.detection = DetectionResult(
            platform=adapter.platform,
            platform_name=adapter.platform_name,
            score=score.score,
            reasons=score.reasons,
            scores=describe_scores(scored),
        )
        adapter.detection = self.detection.to_dict()
        logger.info(
            f"Selected {adapter.platform_name} adapter (score {score.score}/100)",
            extra={"platform": adapter.platform},
        )
        return self.detection

    async def _score(self, adapter: PlatformAdapter, config: dict[str, Any] | None) -> CompatibilityScore:
        try:
            return await adapter.is_compatible(config)
        except Exception as e:
            logger.warning(f"{adapter.platform_name} compatibility check failed: {e}")
            return CompatibilityScore(score=0, reasons=[f"check failed: {e}"])

    async def collect_all(self) -> dict[str, Any]:
        """Collect system info, applications, ports and VMs from the active adapter."""
        if self.active is None:
            await self._flights.run("detect", self.detect)
        adapter = self.active
        if adapter is None:
            return self._empty_result("No platform adapter available")

        return await adapter.state.flights.run(
            f"{adapter.platform}:collect_all", lambda: self._collect(adapter)
        )

    async def _collect(self, adapter: PlatformAdapter) -> dict[str, Any]:
        started = time.monotonic()
        adapter.state.degraded.clear()
        logger.info(f"Starting collection with {adapter.platform_name}", extra={"platform": adapter.platform})

        outcomes = await asyncio.gather(
            adapter.get_system_info(),
            adapter.get_applications(),
            adapter.get_ports(),
            adapter.get_vms(),
            return_exceptions=True,
        )

        result = self._empty_result(None, adapter)
        for facet, outcome in zip(FACETS, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"{facet} collection failed: {outcome}",
                    extra={"platform": adapter.platform, "facet": facet},
                )
                result["errors"][facet] = str(outcome) or type(outcome).__name__
                continue
            if facet == "ports":
                outcome = [record.model_dump(mode="json") for record in outcome]
            result[facet] = outcome

        result["degraded"] = dict(adapter.state.degraded)
        duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Collection finished: {len(result['ports'])} ports, {len(result['applications'])} applications, "
            f"{len(result['vms'])} VMs",
            extra={"platform": adapter.platform, "duration_ms": round(duration_ms)},
        )
        return result

    def _empty_result(self, error: str | None, adapter: PlatformAdapter | None = None) -> dict[str, Any]:
        return {
            "platform": adapter.platform if adapter else None,
            "platformName": adapter.platform_name if adapter else None,
            "systemInfo": None,
            "applications": [],
            "ports": [],
            "vms": [],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "errors": {facet: error for facet in FACETS},
            "degraded": {},
        }

    async def close(self) -> None:
        for adapter in self.adapters:
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Error closing {adapter.platform_name} adapter: {e}")
