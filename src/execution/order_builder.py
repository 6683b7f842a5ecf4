"""Fixed-point encoding of orders for the exchange contract.

Chain amounts are integers: ``floor(value * 10**precision)``. Flooring never rounds an
order up, so decoding gives back at most the original value and never less than one
precision step below it.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Union

from src.errors import RiskRejectedError
from src.models.schemas import Market, OrderIntent, SerializedOrder, TokenInfo

EXCHANGE_ACCOUNT = "dex"
PERMISSION = "active"

SIDE_CODES = {"BUY": 1, "SELL": 2}
TYPE_CODES = {"MARKET": 1, "LIMIT": 2, "STOP_LIMIT": 3}
FILL_CODES = {"GTC": 0, "IOC": 1, "POST_ONLY": 2}

Number = Union[int, float, str, Decimal]


def _decimal(value: Number) -> Decimal:
    # str() keeps the shortest float repr so 0.1 stays 0.1
    return value if isinstance(value, Decimal) else Decimal(str(value))


def to_chain_units(value: Number, precision: int) -> int:
    amount = _decimal(value)
    if amount < 0:
        raise ValueError(f"Cannot encode negative amount {value}")
    scaled = amount.scaleb(precision)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_chain_units(units: Union[int, str], precision: int) -> Decimal:
    return Decimal(int(units)).scaleb(-precision)


def format_asset(units: Union[int, str], token: TokenInfo) -> str:
    """``"12.345600 XMD"``: exactly ``precision`` decimals and the symbol code."""
    amount = from_chain_units(units, token.precision)
    return f"{amount:.{token.precision}f} {token.code}"


def symbol_descriptor(token: TokenInfo) -> Dict[str, str]:
    return {"sym": f"{token.precision},{token.code}", "contract": token.contract}


def funding_token(side: int, market: Market) -> TokenInfo:
    """BUY spends the quote token, SELL spends the base token."""
    return market.quote if side == SIDE_CODES["BUY"] else market.base


def serialize_order(intent: OrderIntent, market: Market, account: str) -> SerializedOrder:
    if intent.market_symbol.upper() != market.symbol:
        raise ValueError(f"Intent for {intent.market_symbol} cannot use market {market.symbol}")

    side = SIDE_CODES[intent.side]
    if intent.side == "BUY":
        quantity = to_chain_units(_decimal(intent.quantity) * _decimal(intent.price), market.quote.precision)
    else:
        quantity = to_chain_units(intent.quantity, market.base.precision)
    if quantity == 0:
        raise RiskRejectedError(
            f"{intent.side} {intent.quantity} {market.symbol} rounds to zero at chain precision"
        )

    order_type = "STOP_LIMIT" if intent.stop_price is not None else intent.type
    trigger = to_chain_units(intent.stop_price, market.quote.precision) if intent.stop_price is not None else 0
    return SerializedOrder(
        account=account,
        market_id=market.market_id,
        side=side,
        type=TYPE_CODES[order_type],
        quantity=str(quantity),
        price=str(to_chain_units(intent.price, market.quote.precision)),
        fill_type=FILL_CODES["IOC"] if intent.type == "MARKET" else FILL_CODES["GTC"],
        trigger_price=str(trigger),
    )


def build_actions(
    order: SerializedOrder,
    market: Market,
    exchange_account: str = EXCHANGE_ACCOUNT,
    permission: str = PERMISSION,
) -> List[Dict[str, Any]]:
    """Transfer the funding amount to the exchange, then place the order."""
    authorization = [{"actor": order.account, "permission": permission}]
    token = funding_token(order.side, market)
    transfer = {
        "account": token.contract,
        "name": "transfer",
        "authorization": authorization,
        "data": {
            "from": order.account,
            "to": exchange_account,
            "quantity": format_asset(order.quantity, token),
            "memo": "",
        },
    }
    place = {
        "account": exchange_account,
        "name": "placeorder",
        "authorization": [dict(a) for a in authorization],
        "data": {
            "market_id": order.market_id,
            "account": order.account,
            "order_type": order.type,
            "order_side": order.side,
            "quantity": order.quantity,
            "price": order.price,
            "bid_symbol": symbol_descriptor(market.quote),
            "ask_symbol": symbol_descriptor(market.base),
            "trigger_price": order.trigger_price,
            "fill_type": order.fill_type,
            "referrer": "",
        },
    }
    return [transfer, place]
