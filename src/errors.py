from __future__ import annotations

from typing import Optional


class AgentError(Exception):
    """Base class for every failure raised by the trading pipeline."""


class UntrustedMarketError(AgentError):
    """Pair is not on the trusted allow-list. Fatal."""


class MarketDataError(AgentError):
    """Upstream market data failed, timed out or was malformed. Retry next cycle."""


class InsufficientDataError(MarketDataError):
    """No usable candles left after filtering."""


class InvalidDecisionFormatError(AgentError):
    """Decision source output does not match the response grammar."""


class RiskRejectedError(AgentError):
    """Order intentionally not placed by the risk engine."""


class InsufficientBalanceError(RiskRejectedError):
    pass


class PriceDeviationError(RiskRejectedError):
    pass


class OpenOrderLimitError(RiskRejectedError):
    pass


class ChainSubmissionError(AgentError):
    """Submission failed before a transaction id came back; broadcast is unlikely but not ruled out."""


class UnconfirmedError(AgentError):
    """Broadcast succeeded but confirmation is unknown. Never re-submit."""

    def __init__(self, message: str, transaction_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id


class LifecycleNotFoundError(AgentError):
    """The indexer has not seen the order yet. Informational."""
