from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from src.api.chain_client import ChainClient, ChainRPCError
from src.errors import ChainSubmissionError
from src.execution.order_builder import build_actions
from src.models.schemas import Market, SerializedOrder, TransactionRecord

logger = logging.getLogger(__name__)

BLOCKS_BEHIND = 3
EXPIRE_SECONDS = 30


class OrderSubmitter:
    """Broadcasts transfer + placeorder as one transaction. Never retries."""

    def __init__(self, chain: ChainClient, blocks_behind: int = BLOCKS_BEHIND, expire_seconds: int = EXPIRE_SECONDS):
        self.chain = chain
        self.blocks_behind = blocks_behind
        self.expire_seconds = expire_seconds

    async def submit(self, order: SerializedOrder, market: Market) -> TransactionRecord:
        actions = build_actions(order, market)
        logger.info(
            "Submitting %s market_id=%d side=%d type=%d quantity=%s price=%s transfer=%s",
            market.symbol,
            order.market_id,
            order.side,
            order.type,
            order.quantity,
            order.price,
            actions[0]["data"]["quantity"],
        )
        try:
            result = await asyncio.to_thread(self.chain.transact, actions, self.blocks_behind, self.expire_seconds)
        except ChainRPCError as exc:
            # A signer timeout can arrive after the push; the chain is the only authority then.
            raise ChainSubmissionError(
                f"transact failed for {market.symbol}: {exc} "
                "(a transport timeout may hide a broadcast; check the account history before retrying)"
            ) from exc

        if not isinstance(result, dict) or not result.get("transaction_id"):
            raise ChainSubmissionError(f"transact for {market.symbol} returned no transaction id")
        try:
            record = TransactionRecord.from_payload(result)
        except ValidationError as exc:
            raise ChainSubmissionError(f"transact for {market.symbol} returned an unreadable result") from exc

        logger.info("Broadcast %s transaction %s", market.symbol, record.transaction_id)
        return record
