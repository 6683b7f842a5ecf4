from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Set

import schedule

from src.api.advisor_client import AdvisorClient
from src.api.chain_client import RpcChainClient
from src.api.dex_client import DexClient
from src.config import Settings
from src.data.market_gateway import MarketDataGateway
from src.data.sqlite_store import SQLiteStore
from src.errors import UntrustedMarketError
from src.execution.risk import RiskEngine
from src.execution.submitter import OrderSubmitter
from src.execution.tracker import ConfirmationTracker
from src.models.schemas import CycleOutcome
from src.pipeline import TradingPipeline
from src.strategy.advisor import ExternalAdvisor
from src.strategy.decision import ADVISOR, DecisionSource

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_pipeline(settings: Settings, store: SQLiteStore | None = None) -> TradingPipeline:
    if not settings.account:
        raise SystemExit("PROTON_USERNAME must be set")

    dex = DexClient(base_url=settings.dex_api_url)
    chain = RpcChainClient(settings.chain_rpc_url, signer_url=settings.signer_url)

    advisor = None
    if settings.decision_mode == ADVISOR:
        if not settings.advisor_api_key:
            raise SystemExit("ADVISOR_API_KEY must be set for advisor mode")
        advisor = ExternalAdvisor(
            AdvisorClient(settings.advisor_api_key, base_url=settings.advisor_api_url, model=settings.advisor_model),
            min_trade_size=settings.min_trade_size,
            max_trade_size=settings.max_trade_size,
        )

    return TradingPipeline(
        account=settings.account,
        gateway=MarketDataGateway(dex, settings.allowed_markets),
        decisions=DecisionSource(
            trade_size=settings.max_trade_size,
            advisor=advisor,
            forced=settings.force_decision,
        ),
        risk=RiskEngine(
            max_balance_pct=settings.max_balance_pct,
            safety_margin=settings.safety_margin,
            max_price_deviation=settings.max_price_deviation,
            min_order_value=settings.min_trade_size,
            max_order_value=settings.max_trade_size,
        ),
        submitter=OrderSubmitter(chain),
        tracker=ConfirmationTracker(chain, dex),
        store=store,
        mode=settings.decision_mode,
        max_orders_per_market=settings.max_orders_per_market,
    )


async def run_pairs(pipeline: TradingPipeline, pairs: List[str], kill_switch_path: str) -> List[CycleOutcome]:
    if os.path.exists(kill_switch_path):
        logger.warning("Kill switch engaged; skipping cycle")
        return []

    outcomes = []
    for pair in pairs:
        try:
            outcomes.append(await pipeline.run_cycle(pair))
        except UntrustedMarketError as exc:
            logger.error("Refusing to trade %s: %s", pair, exc)
    return outcomes


def log_task_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Scheduled cycle crashed: %r", exc, exc_info=exc)


async def run_loop(pipeline: TradingPipeline, settings: Settings) -> None:  # pragma: no cover - runtime path
    pending: Set[asyncio.Task] = set()

    def trigger() -> None:
        task = asyncio.ensure_future(run_pairs(pipeline, settings.allowed_markets, settings.kill_switch_path))
        pending.add(task)
        task.add_done_callback(pending.discard)
        task.add_done_callback(log_task_failure)

    logger.info("Starting scheduled run (every %d seconds)", settings.agent_delay)
    schedule.every(settings.agent_delay).seconds.do(trigger)
    trigger()
    while True:
        schedule.run_pending()
        await asyncio.sleep(1)


def main() -> None:
    settings = Settings.from_env()
    store = SQLiteStore(settings.db_path)
    pipeline = build_pipeline(settings, store=store)
    try:
        if os.getenv("AGENT_LOOP", "0") == "1":
            asyncio.run(run_loop(pipeline, settings))
        else:
            outcomes = asyncio.run(run_pairs(pipeline, settings.allowed_markets, settings.kill_switch_path))
            for outcome in outcomes:
                logger.info("%s -> %s %s", outcome.pair, outcome.status, outcome.transaction_id or "")
    finally:
        store.close()


if __name__ == "__main__":
    main()
