from __future__ import annotations

from typing import Dict, List

from src.models.schemas import Candle, MarketSnapshot, TrendAnalysis

TREND_THRESHOLD_PCT = 2.0
CONFIDENCE_PER_PCT = 20.0
IMBALANCE_THRESHOLD = 0.1
VOLUME_GROWTH = 1.1
BULLISH_SCORE = 0.6
BEARISH_SCORE = 0.4


def price_action_signal(change_pct: float, threshold: float = TREND_THRESHOLD_PCT) -> int:
    if change_pct > threshold:
        return 1
    if change_pct < -threshold:
        return -1
    return 0


def volume_signal(candles: List[Candle], change_pct: float) -> int:
    """Rising volume confirms the direction of the price move."""
    volumes = [c.volume or 0.0 for c in candles]
    if len(volumes) < 2 or change_pct == 0:
        return 0
    half = len(volumes) // 2
    earlier = sum(volumes[:half]) / half
    later = sum(volumes[half:]) / (len(volumes) - half)
    if later <= earlier * VOLUME_GROWTH:
        return 0
    return 1 if change_pct > 0 else -1


def order_book_signal(imbalance: float, threshold: float = IMBALANCE_THRESHOLD) -> int:
    if imbalance > threshold:
        return 1
    if imbalance < -threshold:
        return -1
    return 0


def volatility_signal(high: float, low: float, close: float) -> int:
    """Where the close sits inside the window's range: top third up, bottom third down."""
    span = high - low
    if span <= 0:
        return 0
    position = (close - low) / span
    if position > 2 / 3:
        return 1
    if position < 1 / 3:
        return -1
    return 0


def analyze_trend(snapshot: MarketSnapshot) -> TrendAnalysis:
    """Weighted-majority vote across four independent signals.

    Each signal votes bullish (1.0), neutral (0.5) or bearish (0.0); the mean is the
    score. Above 0.6 is bullish, below 0.4 bearish. Confidence scales with the size of
    the price move.
    """
    change = snapshot.price_change_percent
    ohlcv = snapshot.ohlcv
    signals: Dict[str, int] = {
        "price_action": price_action_signal(change),
        "volume": volume_signal(ohlcv.candles, change),
        "order_book": order_book_signal(snapshot.depth.imbalance()),
        "volatility": volatility_signal(ohlcv.high, ohlcv.low, ohlcv.close),
    }
    score = sum((vote + 1) / 2 for vote in signals.values()) / len(signals)

    if score > BULLISH_SCORE:
        trend = "bullish"
    elif score < BEARISH_SCORE:
        trend = "bearish"
    else:
        trend = "neutral"

    confidence = min(100.0, abs(change) * CONFIDENCE_PER_PCT)
    return TrendAnalysis(trend=trend, confidence=confidence, score=score, signals=signals)
