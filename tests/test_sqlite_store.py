from datetime import datetime

from src.data.sqlite_store import SQLiteStore
from src.models.schemas import OHLCV, CycleOutcome, MarketSnapshot, OrderBookDepth, OrderBookLevel, OrderIntent


def make_snapshot(ts, price):
    return MarketSnapshot(
        pair="XPR_XMD",
        price=price,
        price_change_percent=1.5,
        volume=100,
        timestamp=ts,
        depth=OrderBookDepth(
            bids=[OrderBookLevel(price=price * 0.99, size=1)],
            asks=[],
            timestamp=ts,
        ),
        ohlcv=OHLCV(open=price, high=price, low=price, close=price, volume=100, price_change_percent=1.5),
    )


def test_snapshots_and_price_history(tmp_path):
    store = SQLiteStore(str(tmp_path / "nested" / "agent.db"))

    assert store.insert_snapshot(make_snapshot(datetime(2024, 1, 1, 0), 0.05)) is True
    assert store.insert_snapshot(make_snapshot(datetime(2024, 1, 1, 1), 0.051)) is True

    history = store.fetch_price_history("XPR_XMD")
    assert history == [(datetime(2024, 1, 1, 1), 0.051), (datetime(2024, 1, 1, 0), 0.05)]
    assert store.fetch_price_history("XBTC_XMD") == []

    # invalid snapshot skipped
    bad = make_snapshot(datetime(2024, 1, 1, 2), 0.05).model_dump()
    bad["price"] = -1
    assert store.insert_snapshot(bad) is False

    store.close()


def test_outcomes_are_journaled(tmp_path):
    store = SQLiteStore(str(tmp_path / "agent.db"))

    store.record_outcome(CycleOutcome(pair="XPR_XMD", ts=datetime(2024, 1, 1), status="skipped", reason="neutral"))
    intent = OrderIntent(market_symbol="XPR_XMD", side="BUY", quantity=990, price=0.05)
    store.record_outcome(
        CycleOutcome(
            pair="XPR_XMD",
            ts=datetime(2024, 1, 1, 1),
            status="confirmed",
            intent=intent,
            transaction_id="abc123",
            ordinal_order_id="9001",
        )
    )

    rows = store.fetch_orders("XPR_XMD")
    assert len(rows) == 2
    assert rows[0][2:8] == ("confirmed", "BUY", 990.0, 0.05, "abc123", "9001")
    assert rows[1][2] == "skipped"
    assert rows[1][3] is None
    assert store.fetch_orders("XBTC_XMD") == []

    store.close()
