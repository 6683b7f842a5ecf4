"""External advisor: prompt construction and the strict response grammar.

The advisor is an untrusted text source. A reply is either exactly

    USE DEX placeOrder <PAIR> <buy|sell> <market|limit> <quantity>
    USE DEX skip

or it is rejected. Nothing is salvaged from a reply that does not match.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Union

from src.api.advisor_client import AdvisorClient
from src.errors import InvalidDecisionFormatError
from src.models.schemas import MarketSnapshot, OrderIntent, Skip

logger = logging.getLogger(__name__)

PROMPT_DECIMALS = 4

PLACE_ORDER_RE = re.compile(
    r"USE DEX placeOrder (?P<pair>[A-Z0-9]+_[A-Z0-9]+) (?P<side>buy|sell) (?P<type>market|limit) (?P<quantity>[1-9][0-9]*)"
)
SKIP_RE = re.compile(r"USE DEX skip")

SYSTEM_PROMPT = (
    "You are a trading assistant for a spot DEX. Respond with exactly one line and no other text: "
    "either 'USE DEX placeOrder <PAIR> <buy|sell> <market|limit> <quantity>' where quantity is a whole "
    "number of the base asset, or 'USE DEX skip'."
)


@dataclass(frozen=True)
class PlaceOrder:
    pair: str
    side: str
    type: str
    quantity: int


AdvisorReply = Union[PlaceOrder, Skip]


def round_numbers(obj: Any, places: int = PROMPT_DECIMALS) -> Any:
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, float):
        return round(obj, places)
    if isinstance(obj, list):
        return [round_numbers(item, places) for item in obj]
    if isinstance(obj, dict):
        return {key: round_numbers(value, places) for key, value in obj.items()}
    return obj


def parse_reply(text: str, expected_pair: str) -> AdvisorReply:
    if not isinstance(text, str):
        raise InvalidDecisionFormatError(f"Advisor reply is not text: {text!r}")
    reply = text.strip()

    if SKIP_RE.fullmatch(reply):
        return Skip(reason="advisor skipped")

    match = PLACE_ORDER_RE.fullmatch(reply)
    if match is None:
        raise InvalidDecisionFormatError(f"Advisor reply does not match grammar: {text[:120]!r}")
    if match["pair"] != expected_pair:
        raise InvalidDecisionFormatError(f"Advisor named pair {match['pair']}, expected {expected_pair}")

    return PlaceOrder(
        pair=match["pair"],
        side=match["side"].upper(),
        type=match["type"].upper(),
        quantity=int(match["quantity"]),
    )


def snapshot_context(snapshot: MarketSnapshot, levels: int = 5, trades: int = 10) -> Dict[str, Any]:
    depth = snapshot.depth
    context = {
        "pair": snapshot.pair,
        "price": snapshot.price,
        "price_change_percent_24h": snapshot.price_change_percent,
        "volume_24h": snapshot.volume,
        "ohlcv_24h": snapshot.ohlcv.model_dump(include={"open", "high", "low", "close", "volume"}),
        "spread": depth.spread,
        "bids": [lvl.model_dump(include={"price", "size"}) for lvl in depth.bids[:levels]],
        "asks": [lvl.model_dump(include={"price", "size"}) for lvl in depth.asks[:levels]],
        "recent_trades": [
            {"price": t.price, "quantity": t.quantity, "side": t.side} for t in snapshot.trades[:trades]
        ],
    }
    return round_numbers(context)


def build_prompt(snapshot: MarketSnapshot, min_trade_size: float, max_trade_size: float) -> str:
    data = json.dumps(snapshot_context(snapshot), indent=2)
    quote = snapshot.pair.split("_")[-1]
    return (
        f"Based on the following market data, decide whether to place one order on {snapshot.pair}.\n\n"
        f"Data:\n{data}\n\n"
        "Constraints:\n"
        f"- The maximum trade size is {max_trade_size} {quote}.\n"
        f"- The minimum trade size is {min_trade_size} {quote}.\n"
        "- Only suggest a trade that is likely to improve the portfolio; otherwise skip.\n\n"
        f"Reply with exactly 'USE DEX placeOrder {snapshot.pair} <buy|sell> <market|limit> <quantity>' "
        "or 'USE DEX skip'. Do not include any additional text."
    )


class ExternalAdvisor:
    def __init__(self, client: AdvisorClient, min_trade_size: float, max_trade_size: float) -> None:
        self.client = client
        self.min_trade_size = min_trade_size
        self.max_trade_size = max_trade_size

    async def decide(self, snapshot: MarketSnapshot) -> Union[OrderIntent, Skip]:
        prompt = build_prompt(snapshot, self.min_trade_size, self.max_trade_size)
        text = await asyncio.to_thread(self.client.complete, SYSTEM_PROMPT, prompt)
        logger.info("Advisor reply for %s: %r", snapshot.pair, text)

        reply = parse_reply(text, snapshot.pair)
        if isinstance(reply, Skip):
            return reply
        return OrderIntent(
            market_symbol=reply.pair,
            side=reply.side,
            type=reply.type,
            quantity=float(reply.quantity),
            price=snapshot.price,
            reason="external advisor",
        )
