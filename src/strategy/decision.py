from __future__ import annotations

import logging
from typing import Optional, Union

from src.models.schemas import MarketSnapshot, OrderIntent, Skip
from src.strategy.advisor import ExternalAdvisor
from src.strategy.heuristic import analyze_trend

logger = logging.getLogger(__name__)

HEURISTIC = "heuristic"
ADVISOR = "advisor"

Decision = Union[OrderIntent, Skip]


class DecisionSource:
    """Turns a snapshot into an ``OrderIntent`` or a ``Skip``.

    ``forced`` exists for demos and tests: the heuristic path ignores the
    confidence floor and the neutral band and always emits an order.
    """

    def __init__(
        self,
        trade_size: float,
        min_confidence: float = 50.0,
        advisor: Optional[ExternalAdvisor] = None,
        forced: bool = False,
    ) -> None:
        if trade_size <= 0:
            raise ValueError("trade_size must be positive")
        self.trade_size = trade_size
        self.min_confidence = min_confidence
        self.advisor = advisor
        self.forced = forced

    async def request_decision(self, snapshot: MarketSnapshot, mode: str = HEURISTIC) -> Decision:
        if mode == ADVISOR:
            if self.advisor is None:
                raise ValueError("advisor mode requested but no advisor configured")
            return await self.advisor.decide(snapshot)
        if mode == HEURISTIC:
            if self.forced:
                return self.forced_decision(snapshot)
            return self.heuristic_decision(snapshot)
        raise ValueError(f"Unknown decision mode: {mode}")

    def _intent(self, snapshot: MarketSnapshot, side: str, reason: str) -> OrderIntent:
        return OrderIntent(
            market_symbol=snapshot.pair,
            side=side,
            type="LIMIT",
            quantity=self.trade_size / snapshot.price,
            price=snapshot.price,
            reason=reason,
        )

    def heuristic_decision(self, snapshot: MarketSnapshot) -> Decision:
        analysis = analyze_trend(snapshot)
        reason = f"trend={analysis.trend} confidence={analysis.confidence:.1f} score={analysis.score:.2f} signals={analysis.signals}"
        logger.info("Heuristic %s: %s", snapshot.pair, reason)

        if analysis.trend == "neutral":
            return Skip(reason=reason)
        if analysis.confidence < self.min_confidence:
            return Skip(reason=f"{reason}; below confidence floor {self.min_confidence:.1f}")
        side = "BUY" if analysis.trend == "bullish" else "SELL"
        return self._intent(snapshot, side, reason)

    def forced_decision(self, snapshot: MarketSnapshot) -> OrderIntent:
        analysis = analyze_trend(snapshot)
        if analysis.trend == "bullish":
            side = "BUY"
        elif analysis.trend == "bearish":
            side = "SELL"
        else:
            side = "BUY" if snapshot.price_change_percent >= 0 else "SELL"
        reason = f"forced; trend={analysis.trend} confidence={analysis.confidence:.1f}"
        logger.warning("Forced decision for %s: %s %s", snapshot.pair, side, reason)
        return self._intent(snapshot, side, reason)
