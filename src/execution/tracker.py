from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from src.api.chain_client import ChainClient, ChainRPCError
from src.api.dex_client import DexClient, DexHTTPError
from src.errors import LifecycleNotFoundError, UnconfirmedError
from src.execution.retry import RetryExhausted, RetryPolicy, retry_async
from src.models.schemas import OrderLifecycle, TransactionRecord

logger = logging.getLogger(__name__)

PLACE_ORDER_ACTION = "placeorder"
CORRELATION_FIELD = "ordinal_order_id"


class _NotYetProcessed(Exception):
    pass


def find_ordinal_order_id(record: TransactionRecord) -> Optional[str]:
    """Correlation id from the inline traces under the ``placeorder`` action.

    The top-level ``placeorder`` trace itself is not searched; only what it spawned.
    """
    for trace in record.walk():
        if trace.act.name != PLACE_ORDER_ACTION:
            continue
        for child in trace.inline_traces:
            for node in child.walk():
                data = node.act.data
                if isinstance(data, dict) and data.get(CORRELATION_FIELD):
                    return str(data[CORRELATION_FIELD])
    return None


def lifecycle_from_raw(raw: Dict[str, Any], ordinal_order_id: str) -> OrderLifecycle:
    data = dict(raw)
    data[CORRELATION_FIELD] = str(data.get(CORRELATION_FIELD) or ordinal_order_id)
    # indexer reports initial and current quantity instead of fill totals
    if "filled_quantity" not in data and "quantity_init" in data:
        initial = float(data.get("quantity_init") or 0)
        current = float(data.get("quantity_curr") or 0)
        data["filled_quantity"] = initial - current
        data["remaining_quantity"] = current
    if "average_price" not in data and "price" in data:
        data["average_price"] = data["price"]
    return OrderLifecycle.model_validate(data)


class ConfirmationTracker:
    def __init__(
        self,
        chain: ChainClient,
        dex: DexClient,
        policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self.dex = dex
        self.policy = policy
        self.sleep = sleep

    async def _fetch_processed(self, transaction_id: str) -> TransactionRecord:
        try:
            payload: Any = await asyncio.to_thread(self.chain.get_transaction, transaction_id)
            record = TransactionRecord.from_payload(dict(payload or {}, transaction_id=transaction_id))
        except (ValidationError, TypeError, ValueError) as exc:
            raise _NotYetProcessed(f"unreadable transaction payload: {exc}") from exc
        except ChainRPCError as exc:
            # Lookups fail while the history node catches up.
            raise _NotYetProcessed(str(exc)) from exc
        if not record.processed:
            raise _NotYetProcessed(f"{transaction_id} not processed yet")
        return record

    async def confirm(self, transaction_id: str) -> TransactionRecord:
        """Poll until processed; ``UnconfirmedError`` once the retry budget is spent."""
        try:
            record = await retry_async(
                lambda: self._fetch_processed(transaction_id),
                self.policy,
                retry_on=(_NotYetProcessed,),
                sleep=self.sleep,
                label=f"confirm {transaction_id}",
            )
        except RetryExhausted as exc:
            logger.warning("Transaction %s unconfirmed after %d attempts: %s", transaction_id, exc.attempts, exc.last_error)
            raise UnconfirmedError(
                f"{transaction_id} broadcast but unconfirmed after {exc.attempts} attempts",
                transaction_id=transaction_id,
            ) from exc
        logger.info("Transaction %s confirmed in block %s", transaction_id, record.block_num)
        return record

    async def get_lifecycle(self, ordinal_order_id: str) -> Optional[OrderLifecycle]:
        """Best effort; ``None`` while the indexer has not seen the order."""
        try:
            raw = await asyncio.to_thread(self.dex.get_order_lifecycle, ordinal_order_id)
            lifecycle = lifecycle_from_raw(raw, ordinal_order_id)
        except LifecycleNotFoundError:
            logger.info("Order %s not indexed yet", ordinal_order_id)
            return None
        except (DexHTTPError, ValidationError, ValueError) as exc:
            logger.warning("Lifecycle lookup for %s failed: %s", ordinal_order_id, exc)
            return None
        logger.info(
            "Order %s status=%s filled=%s remaining=%s",
            ordinal_order_id,
            lifecycle.status,
            lifecycle.filled_quantity,
            lifecycle.remaining_quantity,
        )
        return lifecycle
