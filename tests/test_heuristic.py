import asyncio
from datetime import datetime, timedelta

import pytest

from src.models.schemas import OHLCV, Candle, MarketSnapshot, OrderBookDepth, OrderBookLevel, OrderIntent, Skip
from src.strategy.decision import DecisionSource
from src.strategy.heuristic import (
    analyze_trend,
    order_book_signal,
    price_action_signal,
    volatility_signal,
    volume_signal,
)

TS = datetime(2024, 1, 1)


def make_snapshot(change_pct=3.0, volumes=(10, 10, 20, 30), bid_size=100.0, ask_size=50.0, open_=1.0):
    close = open_ * (1 + change_pct / 100)
    candles = [
        Candle(time=TS + timedelta(hours=i), open=open_, high=max(open_, close), low=min(open_, close), close=close, volume=v)
        for i, v in enumerate(volumes)
    ]
    return MarketSnapshot(
        pair="XPR_XMD",
        price=close,
        price_change_percent=change_pct,
        volume=sum(volumes),
        timestamp=TS,
        depth=OrderBookDepth(
            bids=[OrderBookLevel(price=close * 0.99, size=bid_size)],
            asks=[OrderBookLevel(price=close * 1.01, size=ask_size)],
            timestamp=TS,
        ),
        trades=[],
        ohlcv=OHLCV(
            open=open_,
            high=max(open_, close),
            low=min(open_, close),
            close=close,
            volume=sum(volumes),
            price_change_percent=change_pct,
            candles=candles,
        ),
    )


def test_price_action_thresholds():
    assert price_action_signal(2.5) == 1
    assert price_action_signal(-2.5) == -1
    assert price_action_signal(2.0) == 0
    assert price_action_signal(-1.0) == 0


def test_volume_confirms_direction():
    snap = make_snapshot()
    assert volume_signal(snap.ohlcv.candles, 3.0) == 1
    assert volume_signal(snap.ohlcv.candles, -3.0) == -1
    assert volume_signal(list(reversed(snap.ohlcv.candles)), 3.0) == 0
    assert volume_signal(snap.ohlcv.candles[:1], 3.0) == 0


def test_order_book_and_volatility_signals():
    assert order_book_signal(0.3) == 1
    assert order_book_signal(-0.3) == -1
    assert order_book_signal(0.05) == 0
    assert volatility_signal(high=2.0, low=1.0, close=1.9) == 1
    assert volatility_signal(high=2.0, low=1.0, close=1.1) == -1
    assert volatility_signal(high=1.0, low=1.0, close=1.0) == 0


def test_bullish_snapshot_yields_confident_bullish_trend():
    analysis = analyze_trend(make_snapshot(change_pct=3.0))
    assert analysis.trend == "bullish"
    assert analysis.confidence > 50
    assert analysis.signals["price_action"] == 1
    assert analysis.signals["volume"] == 1
    assert analysis.signals["order_book"] == 1


def test_bearish_snapshot():
    analysis = analyze_trend(make_snapshot(change_pct=-4.0, bid_size=20, ask_size=100))
    assert analysis.trend == "bearish"
    assert analysis.score < 0.4


def test_flat_market_is_neutral():
    analysis = analyze_trend(make_snapshot(change_pct=0.0, volumes=(10, 10, 10, 10), bid_size=50, ask_size=50))
    assert analysis.trend == "neutral"


def test_heuristic_decision_buys_on_bullish_trend():
    source = DecisionSource(trade_size=50.0)
    snap = make_snapshot(change_pct=3.0)
    decision = asyncio.run(source.request_decision(snap))

    assert isinstance(decision, OrderIntent)
    assert decision.side == "BUY"
    assert decision.price == snap.price
    assert decision.notional == pytest.approx(50.0)


def test_heuristic_skips_neutral_and_low_confidence():
    source = DecisionSource(trade_size=50.0, min_confidence=90)
    neutral = make_snapshot(change_pct=0.0, volumes=(10, 10, 10, 10), bid_size=50, ask_size=50)
    assert isinstance(asyncio.run(source.request_decision(neutral)), Skip)

    weak = asyncio.run(source.request_decision(make_snapshot(change_pct=3.0)))
    assert isinstance(weak, Skip)
    assert "confidence floor" in weak.reason


def test_forced_mode_always_decides():
    source = DecisionSource(trade_size=50.0, min_confidence=99, forced=True)
    quiet = make_snapshot(change_pct=-0.5, volumes=(10, 10, 10, 10), bid_size=50, ask_size=50)
    decision = asyncio.run(source.request_decision(quiet))

    assert isinstance(decision, OrderIntent)
    assert decision.side == "SELL"
    assert decision.reason.startswith("forced")


def test_default_is_not_forced():
    assert DecisionSource(trade_size=1.0).forced is False


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        asyncio.run(DecisionSource(trade_size=1.0).request_decision(make_snapshot(), mode="oracle"))
