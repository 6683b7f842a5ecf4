import asyncio
from datetime import datetime

import pytest

from src.api.advisor_client import AdvisorHTTPError
from src.data.market_gateway import MarketDataGateway
from src.data.sqlite_store import SQLiteStore
from src.errors import InvalidDecisionFormatError, UntrustedMarketError
from src.execution.retry import RetryPolicy
from src.execution.risk import RiskEngine
from src.execution.submitter import OrderSubmitter
from src.execution.tracker import ConfirmationTracker
from src.models.schemas import OrderIntent, Skip
from src.pipeline import PairLocks, TradingPipeline

NOW = datetime(2024, 1, 2)


class FakeDex:
    def __init__(self, open_orders=0):
        self.open_orders = open_orders

    def get_order_depth(self, symbol):
        return {"bids": [[0.0499, 100]], "asks": [[0.0501, 100]]}

    def get_recent_trades(self, symbol):
        return [{"price": 0.05, "amount": 10, "order_side": 1}]

    def get_ohlcv(self, symbol, interval, from_ms, to_ms):
        return [{"time": to_ms - 3_600_000, "open": 0.049, "high": 0.051, "low": 0.048, "close": 0.05, "volume": 500}]

    def get_balances(self, account):
        return [{"currency": "XMD", "amount": 1000}, {"currency": "XPR", "amount": 5000}]

    def get_markets(self):
        return [
            {
                "market_id": 1,
                "symbol": "XPR_XMD",
                "bid_token": {"code": "XMD", "contract": "xmd.token", "precision": 6},
                "ask_token": {"code": "XPR", "contract": "eosio.token", "precision": 4},
            }
        ]

    def get_open_orders(self, account, symbol):
        return [{}] * self.open_orders

    def get_order_lifecycle(self, ordinal_order_id):
        return {"ordinal_order_id": ordinal_order_id, "status": "create", "quantity_init": 990, "quantity_curr": 990}


class FakeChain:
    def __init__(self, ordinal="9001", confirmed=True):
        self.ordinal = ordinal
        self.confirmed = confirmed
        self.transacts = []

    def _payload(self):
        inline = []
        if self.ordinal:
            inline = [{"act": {"name": "lognewordr", "data": {"ordinal_order_id": self.ordinal}}}]
        return {
            "transaction_id": "abc123",
            "processed": {
                "block_num": 42,
                "action_traces": [
                    {"act": {"name": "transfer"}},
                    {"act": {"name": "placeorder"}, "inline_traces": inline},
                ],
            },
        }

    def transact(self, actions, blocks_behind, expire_seconds):
        self.transacts.append(actions)
        return self._payload()

    def get_transaction(self, transaction_id):
        return self._payload()["processed"] if self.confirmed else {}


class FixedDecisions:
    def __init__(self, decision):
        self.decision = decision
        self.calls = 0

    async def request_decision(self, snapshot, mode="heuristic"):
        self.calls += 1
        if isinstance(self.decision, Exception):
            raise self.decision
        if isinstance(self.decision, OrderIntent):
            return self.decision.model_copy()
        return self.decision


async def no_sleep(_seconds):
    return None


def big_buy():
    return OrderIntent(market_symbol="XPR_XMD", side="BUY", type="LIMIT", quantity=20000, price=0.05, reason="bullish")


def make_pipeline(decision, dex=None, chain=None, store=None, confirm=True):
    dex = dex or FakeDex()
    chain = chain or FakeChain()
    pipeline = TradingPipeline(
        account="alice",
        gateway=MarketDataGateway(dex, ["XPR_XMD"], clock=lambda: NOW),
        decisions=FixedDecisions(decision),
        risk=RiskEngine(),
        submitter=OrderSubmitter(chain),
        tracker=ConfirmationTracker(chain, dex, policy=RetryPolicy(max_attempts=2, delay=0.01), sleep=no_sleep),
        store=store,
        confirm=confirm,
        clock=lambda: NOW,
    )
    return pipeline, chain


def test_buy_is_clamped_submitted_and_confirmed(tmp_path):
    store = SQLiteStore(str(tmp_path / "agent.db"))
    pipeline, chain = make_pipeline(big_buy(), store=store)

    outcome = asyncio.run(pipeline.run_cycle("xpr_xmd"))

    assert outcome.status == "confirmed"
    assert outcome.intent.quantity == pytest.approx(990.0)
    assert outcome.transaction_id == "abc123"
    assert outcome.ordinal_order_id == "9001"
    assert outcome.lifecycle.remaining_quantity == 990

    transfer, place = chain.transacts[0]
    assert transfer["data"]["quantity"] == "49.500000 XMD"
    assert place["data"]["quantity"] == "49500000"
    assert place["data"]["price"] == "50000"

    assert store.fetch_orders("XPR_XMD")[0][2] == "confirmed"
    assert store.fetch_price_history("XPR_XMD")[0][1] == 0.05
    store.close()


def test_untrusted_pair_never_reaches_decisions():
    pipeline, chain = make_pipeline(big_buy())
    with pytest.raises(UntrustedMarketError):
        asyncio.run(pipeline.run_cycle("FOO_BAR"))
    assert pipeline.decisions.calls == 0
    assert chain.transacts == []


def test_skip_submits_nothing():
    pipeline, chain = make_pipeline(Skip(reason="neutral trend"))
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "skipped"
    assert outcome.reason == "neutral trend"
    assert chain.transacts == []


def test_malformed_decision_is_rejected():
    pipeline, chain = make_pipeline(InvalidDecisionFormatError("garbage"))
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "rejected"
    assert chain.transacts == []


def test_advisor_transport_failure_fails_the_cycle():
    pipeline, chain = make_pipeline(AdvisorHTTPError("502 from advisor"))
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "failed"
    assert "502 from advisor" in outcome.reason
    assert outcome.intent is None
    assert chain.transacts == []


def test_price_deviation_is_rejected():
    intent = OrderIntent(market_symbol="XPR_XMD", side="BUY", quantity=100, price=0.06)
    pipeline, chain = make_pipeline(intent)
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "rejected"
    assert "deviates" in outcome.reason
    assert chain.transacts == []


def test_open_order_limit_rejects():
    pipeline, chain = make_pipeline(big_buy(), dex=FakeDex(open_orders=1))
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "rejected"
    assert chain.transacts == []


def test_unconfirmed_is_reported_with_transaction_id_and_not_resubmitted():
    pipeline, chain = make_pipeline(big_buy(), chain=FakeChain(confirmed=False))
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "unconfirmed"
    assert outcome.transaction_id == "abc123"
    assert len(chain.transacts) == 1


def test_missing_correlation_id_still_confirms():
    pipeline, _ = make_pipeline(big_buy(), chain=FakeChain(ordinal=None))
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "confirmed"
    assert outcome.ordinal_order_id is None
    assert outcome.lifecycle is None


def test_confirmation_can_be_disabled():
    pipeline, _ = make_pipeline(big_buy(), confirm=False)
    outcome = asyncio.run(pipeline.run_cycle("XPR_XMD"))
    assert outcome.status == "submitted"
    assert outcome.ordinal_order_id == "9001"


def test_cycles_for_one_pair_are_serialized():
    pipeline, _ = make_pipeline(Skip(reason="x"))
    active = {"now": 0, "max": 0}
    original = pipeline._run_locked

    async def tracked(pair):
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        await asyncio.sleep(0)
        try:
            return await original(pair)
        finally:
            active["now"] -= 1

    pipeline._run_locked = tracked

    async def run_both():
        return await asyncio.gather(pipeline.run_cycle("XPR_XMD"), pipeline.run_cycle("XPR_XMD"))

    outcomes = asyncio.run(run_both())
    assert [o.status for o in outcomes] == ["skipped", "skipped"]
    assert active["max"] == 1


def test_pair_locks_are_per_pair():
    async def fetch():
        locks = PairLocks()
        return await locks.get_lock("A"), await locks.get_lock("A"), await locks.get_lock("B")

    a1, a2, b = asyncio.run(fetch())
    assert a1 is a2
    assert a1 is not b
