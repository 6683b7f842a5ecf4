from __future__ import annotations

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

DEFAULT_TRUSTED_MARKETS = ("XPR_XMD", "XDOGE_XMD", "XBTC_XMD")


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip().upper() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings. Build with ``Settings.from_env()``."""

    dex_api_url: str = "https://dex.api.mainnet.metalx.com/dex/v1"
    chain_rpc_url: str = "https://rpc.api.mainnet.metalx.com"
    signer_url: Optional[str] = None
    account: Optional[str] = None

    advisor_api_url: str = "https://api.x.ai/v1"
    advisor_api_key: Optional[str] = None
    advisor_model: str = "grok-beta"

    trusted_markets: List[str] = Field(default_factory=lambda: list(DEFAULT_TRUSTED_MARKETS))
    markets_to_avoid: List[str] = Field(default_factory=list)

    decision_mode: str = "heuristic"
    force_decision: bool = False

    max_balance_pct: float = Field(default=0.05, gt=0, le=1)
    safety_margin: float = Field(default=0.99, gt=0, le=1)
    max_price_deviation: float = Field(default=0.05, gt=0)
    min_trade_size: float = Field(default=1.0, ge=0)
    max_trade_size: float = Field(default=1000.0, gt=0)
    max_orders_per_market: int = Field(default=1, ge=1)

    agent_delay: int = Field(default=3600, ge=1)
    db_path: str = "data/agent.db"
    kill_switch_path: str = "data/stop.trading"

    @field_validator("decision_mode")
    @classmethod
    def _known_mode(cls, v: str) -> str:
        value = v.lower()
        if value not in {"heuristic", "advisor"}:
            raise ValueError("decision_mode must be heuristic or advisor")
        return value

    @property
    def allowed_markets(self) -> List[str]:
        avoid = set(self.markets_to_avoid)
        return [m for m in self.trusted_markets if m not in avoid]

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()

        values = {
            "dex_api_url": os.getenv("DEX_API_URL"),
            "chain_rpc_url": os.getenv("CHAIN_RPC_URL"),
            "signer_url": os.getenv("SIGNER_URL"),
            "account": os.getenv("PROTON_USERNAME"),
            "advisor_api_url": os.getenv("ADVISOR_API_URL"),
            "advisor_api_key": os.getenv("ADVISOR_API_KEY") or os.getenv("XAI_API_KEY"),
            "advisor_model": os.getenv("ADVISOR_MODEL"),
            "decision_mode": os.getenv("DECISION_MODE"),
            "max_balance_pct": os.getenv("MAX_BALANCE_PCT"),
            "safety_margin": os.getenv("SAFETY_MARGIN"),
            "max_price_deviation": os.getenv("MAX_PRICE_DEVIATION"),
            "min_trade_size": os.getenv("MIN_TRADE_SIZE"),
            "max_trade_size": os.getenv("MAX_TRADE_SIZE"),
            "max_orders_per_market": os.getenv("MAX_ORDERS_PER_MARKET"),
            "agent_delay": os.getenv("AGENT_DELAY"),
            "db_path": os.getenv("DB_PATH"),
            "kill_switch_path": os.getenv("KILL_SWITCH_PATH"),
        }
        if os.getenv("TRUSTED_MARKETS"):
            values["trusted_markets"] = _split(os.getenv("TRUSTED_MARKETS"))
        if os.getenv("MARKETS_TO_AVOID"):
            values["markets_to_avoid"] = _split(os.getenv("MARKETS_TO_AVOID"))
        if os.getenv("FORCE_DECISION") is not None:
            values["force_decision"] = os.getenv("FORCE_DECISION") == "1"

        return cls.model_validate({k: v for k, v in values.items() if v is not None})
