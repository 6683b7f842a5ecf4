from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Side = Literal["BUY", "SELL"]
OrderType = Literal["MARKET", "LIMIT"]


class OrderBookLevel(BaseModel):
    price: float = Field(ge=0)
    size: float = Field(ge=0)
    count: Optional[int] = None


class OrderBookDepth(BaseModel):
    bids: List[OrderBookLevel] = Field(default_factory=list)
    asks: List[OrderBookLevel] = Field(default_factory=list)
    timestamp: datetime

    @model_validator(mode="after")
    def _sort_sides(self) -> "OrderBookDepth":
        self.bids = sorted(self.bids, key=lambda lvl: lvl.price, reverse=True)
        self.asks = sorted(self.asks, key=lambda lvl: lvl.price)
        return self

    @property
    def best_bid(self) -> Optional[OrderBookLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[OrderBookLevel]:
        return self.asks[0] if self.asks else None

    @property
    def spread(self) -> Optional[float]:
        """Relative spread against the best ask; None if a side is empty."""
        if not self.bids or not self.asks or self.asks[0].price == 0:
            return None
        return (self.asks[0].price - self.bids[0].price) / self.asks[0].price

    def imbalance(self) -> float:
        """(bid size - ask size) / total size, in [-1, 1]."""
        bid_size = sum(lvl.size for lvl in self.bids)
        ask_size = sum(lvl.size for lvl in self.asks)
        total = bid_size + ask_size
        if total == 0:
            return 0.0
        return (bid_size - ask_size) / total


class RecentTrade(BaseModel):
    price: float = Field(ge=0)
    quantity: float = Field(ge=0)
    side: Optional[Side] = None
    timestamp: Optional[datetime] = None


class Candle(BaseModel):
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None

    @field_validator("time", mode="before")
    @classmethod
    def _parse_time(cls, v: int | float | str | datetime):
        if isinstance(v, (int, float)):
            return datetime.fromtimestamp(v / 1000, tz=timezone.utc).replace(tzinfo=None)
        return v

    @field_validator("time")
    @classmethod
    def _naive_utc(cls, v: datetime):
        if v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class OHLCV(BaseModel):
    open: float
    high: float
    low: float
    close: float
    volume: float
    price_change_percent: float
    candles: List[Candle] = Field(default_factory=list)


class MarketSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    pair: str
    price: float = Field(gt=0)
    price_change_percent: float
    volume: float = Field(ge=0)
    timestamp: datetime
    depth: OrderBookDepth
    trades: List[RecentTrade] = Field(default_factory=list)
    ohlcv: OHLCV


class TokenInfo(BaseModel):
    code: str
    contract: str
    precision: int = Field(ge=0, le=18)
    multiplier: Optional[int] = None

    @model_validator(mode="after")
    def _default_multiplier(self) -> "TokenInfo":
        if self.multiplier is None:
            self.multiplier = 10 ** self.precision
        return self


class Market(BaseModel):
    """A tradable pair: base ("ask") token priced in quote ("bid") token."""

    market_id: int
    symbol: str
    base: TokenInfo
    quote: TokenInfo


class OrderIntent(BaseModel):
    market_symbol: str
    side: Side
    type: OrderType = "LIMIT"
    quantity: float = Field(gt=0)
    price: float = Field(gt=0)
    stop_price: Optional[float] = None
    reason: str = ""

    @field_validator("side", "type", mode="before")
    @classmethod
    def _upper(cls, v: str):
        return v.upper() if isinstance(v, str) else v

    @property
    def notional(self) -> float:
        return self.quantity * self.price


class Skip(BaseModel):
    reason: str = ""


class TrendAnalysis(BaseModel):
    trend: Literal["bullish", "bearish", "neutral"]
    confidence: float = Field(ge=0, le=100)
    score: float
    signals: Dict[str, int] = Field(default_factory=dict)


class SerializedOrder(BaseModel):
    account: str
    market_id: int
    side: Literal[1, 2]
    type: Literal[1, 2, 3]
    quantity: str
    price: str
    fill_type: int
    trigger_price: str = "0"

    @field_validator("quantity", "price", "trigger_price")
    @classmethod
    def _integer_string(cls, v: str):
        if not v.isdigit():
            raise ValueError("chain amounts must be non-negative integer strings")
        return v


class Balance(BaseModel):
    currency: str
    amount: float = Field(ge=0)
    contract: Optional[str] = None
    decimals: Optional[int] = None


class Action(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account: str = ""
    name: str = ""
    authorization: List[Dict[str, str]] = Field(default_factory=list)
    data: Any = None


class ActionTrace(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action_ordinal: Optional[int] = None
    creator_action_ordinal: Optional[int] = None
    receiver: Optional[str] = None
    act: Action = Field(default_factory=Action)
    inline_traces: List["ActionTrace"] = Field(default_factory=list)

    def walk(self) -> Iterator["ActionTrace"]:
        """Depth-first, self first."""
        yield self
        for child in self.inline_traces:
            yield from child.walk()


ActionTrace.model_rebuild()


def _nest_flat_traces(traces: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # Flat nodeos traces carry ordinals; rebuild the tree from creator ordinals.
    if not traces or any(t.get("inline_traces") for t in traces):
        return traces
    if not all("action_ordinal" in t for t in traces):
        return traces
    by_ordinal = {t["action_ordinal"]: dict(t, inline_traces=[]) for t in traces}
    roots: List[Dict[str, Any]] = []
    for ordinal in sorted(by_ordinal):
        node = by_ordinal[ordinal]
        parent = by_ordinal.get(node.get("creator_action_ordinal") or 0)
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent["inline_traces"].append(node)
    return roots


class TransactionRecord(BaseModel):
    transaction_id: str = Field(min_length=1)
    block_num: Optional[int] = None
    processed: bool = False
    action_traces: List[ActionTrace] = Field(default_factory=list)

    def walk(self) -> Iterator[ActionTrace]:
        for trace in self.action_traces:
            yield from trace.walk()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TransactionRecord":
        """Accepts both a ``transact`` result and a history ``get_transaction`` reply."""
        processed = payload.get("processed")
        if isinstance(processed, dict):
            traces = processed.get("action_traces") or []
            return cls(
                transaction_id=payload.get("transaction_id") or processed.get("id") or "",
                block_num=processed.get("block_num"),
                processed=True,
                action_traces=_nest_flat_traces(traces),
            )

        traces = payload.get("traces") or payload.get("action_traces") or []
        block_num = payload.get("block_num")
        return cls(
            transaction_id=payload.get("transaction_id") or payload.get("id") or "",
            block_num=block_num,
            processed=block_num is not None and bool(traces),
            action_traces=_nest_flat_traces(traces),
        )


class OrderLifecycle(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ordinal_order_id: str
    status: str
    filled_quantity: float = 0.0
    remaining_quantity: float = 0.0
    average_price: float = 0.0
    trades: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _status_text(cls, v: Any):
        return str(v) if v is not None else v


CycleStatus = Literal["skipped", "rejected", "failed", "submitted", "confirmed", "unconfirmed"]


class CycleOutcome(BaseModel):
    pair: str
    ts: datetime
    status: CycleStatus
    reason: str = ""
    intent: Optional[OrderIntent] = None
    transaction_id: Optional[str] = None
    ordinal_order_id: Optional[str] = None
    lifecycle: Optional[OrderLifecycle] = None
