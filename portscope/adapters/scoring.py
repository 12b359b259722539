"""Compatibility scoring and adapter selection."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from portscope.models import CompatibilityScore

if TYPE_CHECKING:
    from portscope.adapters.base import PlatformAdapter

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100

SignalCheck = Callable[[], bool | Awaitable[bool]]


@dataclass
class Signal:
    """One environment check and the weight it adds when it passes."""

    name: str
    weight: int
    check: SignalCheck
    reason: str | None = None  # reason text when the signal passes

    async def evaluate(self) -> bool:
        result = self.check()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


def clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, int(value)))


class CompatibilityScorer:
    """Sums the weights of passing signals into a 0-100 score.

    A signal whose check raises contributes nothing; the error is logged
    rather than propagated.
    """

    def __init__(self, signals: Sequence[Signal], label: str = "adapter") -> None:
        self.signals = list(signals)
        self.label = label

    async def evaluate(self) -> CompatibilityScore:
        outcomes = await asyncio.gather(
            *(self._safe_evaluate(signal) for signal in self.signals)
        )

        raw = 0
        reasons: list[str] = []
        for signal, passed in zip(self.signals, outcomes):
            if passed:
                raw += signal.weight
                reasons.append(f"{signal.reason or signal.name} (+{signal.weight})")

        score = CompatibilityScore(score=clamp_score(raw), reasons=reasons, raw_score=raw)
        level = logging.INFO if score.score > 0 else logging.DEBUG
        logger.log(
            level,
            f"{self.label} compatibility score: {score.score}/100"
            + (f" (raw {raw})" if raw != score.score else "")
            + (f". Reasons: {'; '.join(reasons)}" if reasons else ""),
        )
        return score

    async def _safe_evaluate(self, signal: Signal) -> bool:
        try:
            return await signal.evaluate()
        except Exception as e:
            logger.warning(f"{self.label}: signal '{signal.name}' check failed: {e}")
            return False


def select_adapter(
    scored: Sequence[tuple["PlatformAdapter", CompatibilityScore]],
) -> tuple["PlatformAdapter", CompatibilityScore] | None:
    """Pick the highest score; break ties hypervisor > container runtime > OS."""
    if not scored:
        return None
    return max(
        scored,
        key=lambda pair: (clamp_score(pair[1].score), pair[0].kind.priority),
    )


def describe_scores(scored: Sequence[tuple["PlatformAdapter", CompatibilityScore]]) -> dict[str, Any]:
    return {adapter.platform: score.to_dict() for adapter, score in scored}
