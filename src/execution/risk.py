from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional, Tuple

from src.errors import InsufficientBalanceError, PriceDeviationError
from src.models.schemas import Balance, OrderIntent

logger = logging.getLogger(__name__)


def split_pair(symbol: str) -> Tuple[str, str]:
    base, _, quote = symbol.upper().partition("_")
    if not base or not quote:
        raise ValueError(f"Market symbol must look like BASE_QUOTE: {symbol}")
    return base, quote


class RiskEngine:
    """Sizing policy: percentage-of-balance cap, then absolute bounds.

    The cap applies to the balance that funds the order: the quote balance for a
    BUY (notional in quote), the base balance for a SELL (quantity in base). The
    absolute floor and ceiling are expressed in quote currency. Clamping only ever
    reduces quantity and always applies the safety margin.
    """

    def __init__(
        self,
        max_balance_pct: float = 0.05,
        safety_margin: float = 0.99,
        max_price_deviation: float = 0.05,
        min_order_value: float = 1.0,
        max_order_value: float = 1000.0,
    ) -> None:
        if not 0 < max_balance_pct <= 1:
            raise ValueError("max_balance_pct must be in (0, 1]")
        if not 0 < safety_margin <= 1:
            raise ValueError("safety_margin must be in (0, 1]")
        if max_price_deviation <= 0:
            raise ValueError("max_price_deviation must be positive")
        if min_order_value < 0 or max_order_value <= min_order_value:
            raise ValueError("order value bounds must satisfy 0 <= min < max")
        self.max_balance_pct = max_balance_pct
        self.safety_margin = safety_margin
        self.max_price_deviation = max_price_deviation
        self.min_order_value = min_order_value
        self.max_order_value = max_order_value

    def check_price(self, intent: OrderIntent, current_price: float) -> float:
        if current_price <= 0:
            raise PriceDeviationError(f"{intent.market_symbol}: current price {current_price} is not usable")
        deviation = abs(intent.price - current_price) / current_price
        if deviation > self.max_price_deviation:
            logger.warning(
                "Rejected %s %s: price %.8f deviates %.2f%% from market %.8f (limit %.2f%%)",
                intent.side,
                intent.market_symbol,
                intent.price,
                deviation * 100,
                current_price,
                self.max_price_deviation * 100,
            )
            raise PriceDeviationError(
                f"{intent.market_symbol}: price {intent.price} deviates {deviation:.2%} from {current_price} "
                f"(max {self.max_price_deviation:.2%})"
            )
        return deviation

    def _clamp(self, intent: OrderIntent, allowed_quantity: float, reason: str) -> None:
        before = intent.quantity
        intent.quantity = allowed_quantity * self.safety_margin
        logger.info(
            "Clamped %s %s quantity %.8f -> %.8f (%s)",
            intent.side,
            intent.market_symbol,
            before,
            intent.quantity,
            reason,
        )

    def validate_and_clamp(
        self, intent: OrderIntent, balances: Iterable[Balance], current_price: float
    ) -> OrderIntent:
        """Validate ``intent`` in place and return it. Quantity is never increased."""
        self.check_price(intent, current_price)

        base, quote = split_pair(intent.market_symbol)
        by_currency: Dict[str, Balance] = {b.currency.upper(): b for b in balances}
        funding_currency = quote if intent.side == "BUY" else base
        funding: Optional[Balance] = by_currency.get(funding_currency)
        if funding is None or funding.amount <= 0:
            logger.warning(
                "Rejected %s %s: no %s balance available",
                intent.side,
                intent.market_symbol,
                funding_currency,
            )
            raise InsufficientBalanceError(f"No {funding_currency} balance to fund {intent.side} {intent.market_symbol}")

        cap = funding.amount * self.max_balance_pct
        if intent.side == "BUY":
            allowed = cap / intent.price
            requested = intent.notional
        else:
            allowed = cap
            requested = intent.quantity
        if intent.quantity > allowed:
            self._clamp(
                intent,
                allowed,
                f"{requested:.8f} {funding_currency} exceeds {self.max_balance_pct:.0%} of "
                f"{funding.amount:.8f} {funding_currency} balance = {cap:.8f}",
            )

        if intent.notional > self.max_order_value:
            self._clamp(
                intent,
                self.max_order_value / intent.price,
                f"notional {intent.notional:.8f} {quote} exceeds max order value {self.max_order_value} {quote}",
            )

        if intent.notional < self.min_order_value:
            logger.warning(
                "Rejected %s %s: notional %.8f %s below minimum %s %s (funding balance %.8f %s)",
                intent.side,
                intent.market_symbol,
                intent.notional,
                quote,
                self.min_order_value,
                quote,
                funding.amount,
                funding_currency,
            )
            raise InsufficientBalanceError(
                f"{intent.market_symbol}: notional {intent.notional:.8f} {quote} below minimum {self.min_order_value}"
            )

        return intent
