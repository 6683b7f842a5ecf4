import logging

import pytest

from src.errors import InsufficientBalanceError, PriceDeviationError
from src.execution.risk import RiskEngine, split_pair
from src.models.schemas import Balance, OrderIntent

BALANCES = [Balance(currency="XMD", amount=1000), Balance(currency="XPR", amount=5000)]


def make_intent(side="BUY", quantity=20000.0, price=0.05):
    return OrderIntent(market_symbol="XPR_XMD", side=side, type="LIMIT", quantity=quantity, price=price)


def test_split_pair():
    assert split_pair("xpr_xmd") == ("XPR", "XMD")
    with pytest.raises(ValueError):
        split_pair("XPRXMD")


def test_buy_clamped_to_five_percent_of_quote_balance(caplog):
    engine = RiskEngine()
    intent = make_intent()

    with caplog.at_level(logging.INFO):
        result = engine.validate_and_clamp(intent, BALANCES, current_price=0.05)

    assert result is intent
    assert intent.quantity == pytest.approx(990.0)
    assert intent.notional <= 50 * 0.99 + 1e-9
    assert "20000.00000000 -> 990.00000000" in caplog.text
    assert "XMD balance" in caplog.text


def test_sell_clamped_against_base_balance():
    engine = RiskEngine()
    intent = make_intent(side="SELL", quantity=1000.0, price=0.05)

    engine.validate_and_clamp(intent, BALANCES, current_price=0.05)
    assert intent.quantity == pytest.approx(250 * 0.99)


def test_order_within_cap_is_untouched():
    engine = RiskEngine()
    intent = make_intent(quantity=500.0)

    engine.validate_and_clamp(intent, BALANCES, current_price=0.05)
    assert intent.quantity == 500.0


@pytest.mark.parametrize("quantity", [1001.0, 5000.0, 20000.0, 1e7])
def test_clamping_never_increases_and_respects_cap(quantity):
    engine = RiskEngine()
    intent = make_intent(quantity=quantity)

    engine.validate_and_clamp(intent, BALANCES, current_price=0.05)
    assert intent.quantity < quantity
    assert intent.notional <= 1000 * 0.05 * 0.99 + 1e-9


@pytest.mark.parametrize("price", [0.0526, 0.0474, 0.1, 0.01])
def test_price_deviation_rejects_without_clamping(price, caplog):
    engine = RiskEngine()
    intent = make_intent(price=price)

    with caplog.at_level(logging.WARNING):
        with pytest.raises(PriceDeviationError):
            engine.validate_and_clamp(intent, BALANCES, current_price=0.05)
    assert intent.quantity == 20000.0
    assert "deviates" in caplog.text


def test_price_within_deviation_is_accepted():
    engine = RiskEngine()
    intent = make_intent(quantity=100.0, price=0.052)
    engine.validate_and_clamp(intent, BALANCES, current_price=0.05)
    assert intent.quantity == 100.0


def test_absolute_ceiling_applies_after_percentage_cap():
    engine = RiskEngine(max_order_value=20.0)
    intent = make_intent()

    engine.validate_and_clamp(intent, BALANCES, current_price=0.05)
    assert intent.notional == pytest.approx(20.0 * 0.99)


def test_below_minimum_is_rejected():
    engine = RiskEngine(min_order_value=10.0)
    small_balance = [Balance(currency="XMD", amount=100)]

    with pytest.raises(InsufficientBalanceError):
        engine.validate_and_clamp(make_intent(), small_balance, current_price=0.05)


def test_missing_or_empty_balance_is_rejected():
    engine = RiskEngine()
    with pytest.raises(InsufficientBalanceError):
        engine.validate_and_clamp(make_intent(side="SELL"), [Balance(currency="XMD", amount=1000)], 0.05)
    with pytest.raises(InsufficientBalanceError):
        engine.validate_and_clamp(make_intent(), [Balance(currency="XMD", amount=0)], 0.05)


def test_constructor_validates_limits():
    with pytest.raises(ValueError):
        RiskEngine(max_balance_pct=0)
    with pytest.raises(ValueError):
        RiskEngine(safety_margin=1.5)
    with pytest.raises(ValueError):
        RiskEngine(min_order_value=10, max_order_value=5)
