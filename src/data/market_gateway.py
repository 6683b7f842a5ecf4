"""Market Data Gateway.

Pulls depth, recent trades and candles for one trusted pair and folds them into a
``MarketSnapshot``. Upstream payloads are untyped; everything passes through the
normalizers below before it reaches a pydantic model.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from src.api.dex_client import DexClient, DexHTTPError
from src.errors import InsufficientDataError, MarketDataError, UntrustedMarketError
from src.models.schemas import (
    OHLCV,
    Balance,
    Candle,
    Market,
    MarketSnapshot,
    OrderBookDepth,
    OrderBookLevel,
    RecentTrade,
    TokenInfo,
)

logger = logging.getLogger(__name__)

PRICE_KEYS = ("price", "level", "p")
SIZE_KEYS = ("size", "quantity", "amount", "q")
SIDE_SIZE_KEYS = {"bids": ("bid",), "asks": ("ask",)}


def _coerce_number(raw: Any, field: str, context: str) -> float:
    if raw is None:
        logger.warning("Missing %s in %s; defaulting to 0", field, context)
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Non-numeric %s=%r in %s; defaulting to 0", field, raw, context)
        return 0.0
    if not math.isfinite(value) or value < 0:
        logger.warning("Invalid %s=%r in %s; defaulting to 0", field, raw, context)
        return 0.0
    return value


def _first_present(entry: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return None


def normalize_level(entry: Any, side: str) -> OrderBookLevel:
    """Map one provider level onto ``{price, size}``. Never drops a level."""
    context = f"{side} level"
    if isinstance(entry, (list, tuple)):
        price = entry[0] if len(entry) > 0 else None
        size = entry[1] if len(entry) > 1 else None
        return OrderBookLevel(
            price=_coerce_number(price, "price", context),
            size=_coerce_number(size, "size", context),
        )

    if not isinstance(entry, dict):
        logger.warning("Unexpected %s shape %r; defaulting to zero level", context, entry)
        return OrderBookLevel(price=0.0, size=0.0)

    size = _first_present(entry, SIZE_KEYS + SIDE_SIZE_KEYS.get(side, ()))
    count = entry.get("count")
    return OrderBookLevel(
        price=_coerce_number(_first_present(entry, PRICE_KEYS), "price", context),
        size=_coerce_number(size, "size", context),
        count=int(count) if isinstance(count, (int, float)) and math.isfinite(count) else None,
    )


def normalize_depth(data: Any, ts: datetime) -> OrderBookDepth:
    if not isinstance(data, dict):
        raise MarketDataError(f"Order book payload has unexpected shape: {type(data).__name__}")
    if "bids" not in data or "asks" not in data:
        raise MarketDataError("Order book payload is missing bids or asks")

    sides: Dict[str, List[OrderBookLevel]] = {}
    for side in ("bids", "asks"):
        raw_levels = data.get(side) or []
        if not isinstance(raw_levels, list):
            raise MarketDataError(f"Order book {side} is not a list")
        sides[side] = [normalize_level(entry, side) for entry in raw_levels]
    return OrderBookDepth(bids=sides["bids"], asks=sides["asks"], timestamp=ts)


def _trade_side(raw: Any) -> Optional[str]:
    if raw in (1, "1") or (isinstance(raw, str) and raw.upper() in {"BUY", "BID"}):
        return "BUY"
    if raw in (2, "2") or (isinstance(raw, str) and raw.upper() in {"SELL", "ASK"}):
        return "SELL"
    return None


def _parse_ts(raw: Any) -> Optional[datetime]:
    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(raw / 1000, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            logger.warning("Unusable trade timestamp %r", raw)
            return None
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).replace(tzinfo=None)
        except ValueError:
            return None
    return None


def normalize_trades(data: Any) -> List[RecentTrade]:
    """Most recent first. An empty list is a valid answer."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise MarketDataError(f"Recent trades payload has unexpected shape: {type(data).__name__}")

    trades = []
    for entry in data:
        if not isinstance(entry, dict):
            logger.warning("Skipping malformed trade entry %r", entry)
            continue
        trades.append(
            RecentTrade(
                price=_coerce_number(entry.get("price"), "price", "trade"),
                quantity=_coerce_number(_first_present(entry, ("quantity", "ask_amount", "amount")), "quantity", "trade"),
                side=_trade_side(_first_present(entry, ("order_side", "side"))),
                timestamp=_parse_ts(_first_present(entry, ("block_time", "timestamp", "time"))),
            )
        )
    trades.sort(key=lambda t: t.timestamp or datetime.min, reverse=True)
    return trades


def _valid_candle(entry: Any) -> Optional[Candle]:
    if not isinstance(entry, dict):
        return None
    data = dict(entry)
    if "time" not in data and "timestamp" in data:
        data["time"] = data["timestamp"]
    volume = data.get("volume")
    try:
        if volume is None or math.isnan(float(volume)):
            return None
        return Candle.model_validate(data)
    except (TypeError, ValueError, OverflowError, OSError, ValidationError):
        return None


def aggregate_ohlcv(raw_candles: Sequence[Any], now: datetime, window: timedelta = timedelta(hours=24)) -> OHLCV:
    """Fold the candles inside ``window`` into one OHLCV summary."""
    since = now - window
    candles: List[Candle] = []
    dropped = 0
    for entry in raw_candles or []:
        candle = _valid_candle(entry)
        if candle is None:
            dropped += 1
            continue
        if candle.time < since:
            continue
        candles.append(candle)

    if dropped:
        logger.warning("Dropped %d candles with missing or NaN fields", dropped)
    if not candles:
        raise InsufficientDataError(f"No valid candles since {since.isoformat()}")

    candles.sort(key=lambda c: c.time)
    open_ = candles[0].open
    close = candles[-1].close
    change = (close - open_) / open_ * 100 if open_ else 0.0
    return OHLCV(
        open=open_,
        high=max(c.high for c in candles),
        low=min(c.low for c in candles),
        close=close,
        volume=sum(c.volume or 0.0 for c in candles),
        price_change_percent=change,
        candles=candles,
    )


def _epoch_ms(ts: datetime) -> int:
    # Naive datetimes are UTC throughout.
    return int(ts.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _token(raw: Dict[str, Any]) -> TokenInfo:
    return TokenInfo(
        code=raw["code"],
        contract=raw["contract"],
        precision=int(raw["precision"]),
        multiplier=int(raw["multiplier"]) if raw.get("multiplier") else None,
    )


class MarketDataGateway:
    """Builds snapshots, balances and market descriptors from the DEX API."""

    def __init__(
        self,
        client: DexClient,
        trusted_markets: Iterable[str],
        timeout: float = 5.0,
        window: timedelta = timedelta(hours=24),
        interval: str = "60",
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.client = client
        self.trusted_markets = frozenset(m.upper() for m in trusted_markets)
        self.timeout = timeout
        self.window = window
        self.interval = interval
        self.clock = clock
        self._markets: Dict[str, Market] = {}

    def ensure_trusted(self, pair: str) -> str:
        symbol = pair.upper()
        if symbol not in self.trusted_markets:
            raise UntrustedMarketError(f"{pair} is not a trusted market")
        return symbol

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except DexHTTPError as exc:
            raise MarketDataError(str(exc)) from exc

    async def get_market_snapshot(self, pair: str) -> MarketSnapshot:
        symbol = self.ensure_trusted(pair)
        now = self.clock()
        to_ms = _epoch_ms(now)
        from_ms = _epoch_ms(now - self.window)

        fetches = asyncio.gather(
            self._call(self.client.get_order_depth, symbol),
            self._call(self.client.get_recent_trades, symbol),
            self._call(self.client.get_ohlcv, symbol, self.interval, from_ms, to_ms),
        )
        try:
            depth_raw, trades_raw, candles_raw = await asyncio.wait_for(fetches, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise MarketDataError(f"Market data for {symbol} timed out after {self.timeout}s") from exc

        try:
            depth = normalize_depth(depth_raw, now)
            trades = normalize_trades(trades_raw)
            ohlcv = aggregate_ohlcv(candles_raw, now, self.window)
            price = trades[0].price if trades and trades[0].price > 0 else ohlcv.close
            snapshot = MarketSnapshot(
                pair=symbol,
                price=price,
                price_change_percent=ohlcv.price_change_percent,
                volume=ohlcv.volume,
                timestamp=now,
                depth=depth,
                trades=trades,
                ohlcv=ohlcv,
            )
        except (ValidationError, ValueError, TypeError, OverflowError, OSError) as exc:
            raise MarketDataError(f"Market data for {symbol} failed validation: {exc}") from exc

        logger.info(
            "Snapshot %s price=%.6f change=%.2f%% volume=%.2f bids=%d asks=%d trades=%d",
            symbol,
            snapshot.price,
            snapshot.price_change_percent,
            snapshot.volume,
            len(depth.bids),
            len(depth.asks),
            len(trades),
        )
        return snapshot

    async def get_balances(self, account: str) -> List[Balance]:
        raw = await self._call(self.client.get_balances, account)
        balances = []
        for entry in raw or []:
            if not isinstance(entry, dict):
                continue
            currency = entry.get("currency") or entry.get("token_code") or entry.get("code")
            if not currency:
                logger.warning("Skipping balance entry without currency: %r", entry)
                continue
            balances.append(
                Balance(
                    currency=str(currency).upper(),
                    amount=_coerce_number(entry.get("amount"), "amount", f"{currency} balance"),
                    contract=entry.get("contract"),
                    decimals=entry.get("decimals"),
                )
            )
        return balances

    async def get_market(self, pair: str) -> Market:
        """Token identity rarely changes; resolved once per process."""
        symbol = self.ensure_trusted(pair)
        if symbol not in self._markets:
            raw_markets = await self._call(self.client.get_markets)
            for entry in raw_markets:
                try:
                    market = Market(
                        market_id=int(entry["market_id"]),
                        symbol=str(entry["symbol"]).upper(),
                        base=_token(entry["ask_token"]),
                        quote=_token(entry["bid_token"]),
                    )
                except (KeyError, TypeError, ValueError, ValidationError):
                    logger.warning("Skipping malformed market entry %r", entry.get("symbol") if isinstance(entry, dict) else entry)
                    continue
                self._markets[market.symbol] = market
        if symbol not in self._markets:
            raise MarketDataError(f"Market {symbol} not listed by the exchange")
        return self._markets[symbol]

    async def count_open_orders(self, account: str, pair: str) -> int:
        symbol = self.ensure_trusted(pair)
        orders = await self._call(self.client.get_open_orders, account, symbol)
        return len(orders or [])
