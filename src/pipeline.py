"""One decision cycle per pair: snapshot, decide, size, submit, confirm.

Cycles for the same pair are serialized by a per-pair ``asyncio.Lock`` so two
overlapping triggers can never size orders against the same balance snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from src.api.advisor_client import AdvisorHTTPError
from src.data.market_gateway import MarketDataGateway
from src.data.sqlite_store import SQLiteStore
from src.errors import (
    ChainSubmissionError,
    InvalidDecisionFormatError,
    MarketDataError,
    OpenOrderLimitError,
    RiskRejectedError,
    UnconfirmedError,
)
from src.execution.order_builder import serialize_order
from src.execution.risk import RiskEngine
from src.execution.submitter import OrderSubmitter
from src.execution.tracker import ConfirmationTracker, find_ordinal_order_id
from src.models.schemas import CycleOutcome, OrderIntent, Skip
from src.strategy.decision import HEURISTIC, DecisionSource

logger = logging.getLogger(__name__)


class PairLocks:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    async def get_lock(self, pair: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(pair)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[pair] = lock
            return lock


class TradingPipeline:
    def __init__(
        self,
        account: str,
        gateway: MarketDataGateway,
        decisions: DecisionSource,
        risk: RiskEngine,
        submitter: OrderSubmitter,
        tracker: ConfirmationTracker,
        store: Optional[SQLiteStore] = None,
        mode: str = HEURISTIC,
        max_orders_per_market: int = 1,
        confirm: bool = True,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.account = account
        self.gateway = gateway
        self.decisions = decisions
        self.risk = risk
        self.submitter = submitter
        self.tracker = tracker
        self.store = store
        self.mode = mode
        self.max_orders_per_market = max_orders_per_market
        self.confirm = confirm
        self.clock = clock
        self.locks = PairLocks()

    def _outcome(self, pair: str, status: str, reason: str = "", **kwargs) -> CycleOutcome:
        outcome = CycleOutcome(pair=pair, ts=self.clock(), status=status, reason=reason, **kwargs)
        if status in ("rejected", "failed", "unconfirmed"):
            logger.warning("Cycle %s %s: %s", pair, status, reason)
        else:
            logger.info("Cycle %s %s: %s", pair, status, reason)
        if self.store is not None:
            self.store.record_outcome(outcome)
        return outcome

    async def run_cycle(self, pair: str) -> CycleOutcome:
        """Run one cycle. ``UntrustedMarketError`` propagates; all else is an outcome."""
        symbol = self.gateway.ensure_trusted(pair)
        lock = await self.locks.get_lock(symbol)
        if lock.locked():
            logger.info("Cycle for %s already in flight; waiting", symbol)
        async with lock:
            return await self._run_locked(symbol)

    async def _run_locked(self, pair: str) -> CycleOutcome:
        try:
            snapshot = await self.gateway.get_market_snapshot(pair)
        except MarketDataError as exc:
            return self._outcome(pair, "failed", f"market data: {exc}")
        if self.store is not None:
            self.store.insert_snapshot(snapshot)

        try:
            decision = await self.decisions.request_decision(snapshot, self.mode)
        except InvalidDecisionFormatError as exc:
            return self._outcome(pair, "rejected", f"invalid decision: {exc}")
        except AdvisorHTTPError as exc:
            return self._outcome(pair, "failed", f"advisor: {exc}")
        if isinstance(decision, Skip):
            return self._outcome(pair, "skipped", decision.reason)

        intent: OrderIntent = decision
        try:
            open_orders = await self.gateway.count_open_orders(self.account, pair)
            if open_orders >= self.max_orders_per_market:
                raise OpenOrderLimitError(
                    f"{open_orders} open orders on {pair} (max {self.max_orders_per_market})"
                )
            balances = await self.gateway.get_balances(self.account)
            market = await self.gateway.get_market(pair)
            self.risk.validate_and_clamp(intent, balances, snapshot.price)
            order = serialize_order(intent, market, self.account)
        except MarketDataError as exc:
            return self._outcome(pair, "failed", f"pre-trade data: {exc}", intent=intent)
        except RiskRejectedError as exc:
            return self._outcome(pair, "rejected", str(exc), intent=intent)

        try:
            record = await self.submitter.submit(order, market)
        except ChainSubmissionError as exc:
            return self._outcome(pair, "failed", f"submission: {exc}", intent=intent)

        # Broadcast happened: from here on nothing may re-submit.
        transaction_id = record.transaction_id
        if not self.confirm:
            return self._outcome(
                pair,
                "submitted",
                "confirmation disabled",
                intent=intent,
                transaction_id=transaction_id,
                ordinal_order_id=find_ordinal_order_id(record),
            )

        try:
            confirmed = await self.tracker.confirm(transaction_id)
        except UnconfirmedError as exc:
            return self._outcome(pair, "unconfirmed", str(exc), intent=intent, transaction_id=transaction_id)

        ordinal_order_id = find_ordinal_order_id(confirmed) or find_ordinal_order_id(record)
        lifecycle = None
        if ordinal_order_id is None:
            logger.warning("No %s correlation id in %s; skipping lifecycle tracking", pair, transaction_id)
        else:
            lifecycle = await self.tracker.get_lifecycle(ordinal_order_id)

        return self._outcome(
            pair,
            "confirmed",
            intent.reason,
            intent=intent,
            transaction_id=transaction_id,
            ordinal_order_id=ordinal_order_id,
            lifecycle=lifecycle,
        )
