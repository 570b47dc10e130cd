"""Broker order payloads for strategy entries and their bracket legs."""

import uuid
from typing import Any, Optional

from autoentry.data.models import Direction, EntryType, Strategy

MAX_TAG_LENGTH = 40
# leaves room for the longest exit leg prefix
CORRELATION_TAG_LENGTH = MAX_TAG_LENGTH - len("TGT_")

_ORDER_TYPES = {
    EntryType.MARKET: "MARKET",
    EntryType.LIMIT: "LIMIT",
    EntryType.STOP: "SL",
    EntryType.STOP_LIMIT: "SL",
}


def transaction_type(direction: Direction) -> str:
    return "BUY" if direction == Direction.LONG else "SELL"


def exit_transaction_type(direction: Direction) -> str:
    return "SELL" if direction == Direction.LONG else "BUY"


def product_for(analysis_type: str) -> str:
    """``I`` for intraday analyses, ``D`` (delivery) otherwise."""
    return "I" if str(analysis_type).lower() == "intraday" else "D"


def correlation_tag(strategy_id: str) -> str:
    """Tag shared by the entry order and its bracket legs; long strategy ids are shortened."""
    suffix = uuid.uuid4().hex[:8]
    room = CORRELATION_TAG_LENGTH - len("BRC__") - len(suffix)
    return f"BRC_{strategy_id[:room]}_{suffix}"


def order_quantity(strategy: Strategy, custom_quantity: Optional[Any] = None) -> int:
    quantity = custom_quantity if custom_quantity is not None else strategy.quantity
    try:
        return max(1, int(quantity))
    except (TypeError, ValueError, OverflowError):
        return max(1, int(strategy.quantity))


def build_entry_payload(
    strategy: Strategy,
    instrument: str,
    analysis_type: str,
    tag: str,
    custom_quantity: Optional[Any] = None,
) -> dict[str, Any]:
    """
    Build the entry order for ``strategy``.

    Market entries go at price 0. Limit entries rest at the entry price.
    Stop entries become ``SL`` orders triggered and priced at the entry price.
    """
    order_type = _ORDER_TYPES[strategy.entry_type]
    is_stop = order_type == "SL"
    return {
        "instrument_token": instrument,
        "quantity": order_quantity(strategy, custom_quantity),
        "product": product_for(analysis_type),
        "validity": "DAY",
        "price": 0.0 if order_type == "MARKET" else float(strategy.entry_price),
        "trigger_price": float(strategy.entry_price) if is_stop else 0.0,
        "tag": tag,
        "order_type": order_type,
        "transaction_type": transaction_type(strategy.direction),
        "disclosed_quantity": 0,
        "is_amo": False,
    }


def build_exit_legs(
    instrument: str,
    quantity: int,
    product: str,
    exit_side: str,
    stop_loss: float,
    target: float,
    tag: str,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Stop-loss and target legs placed once the entry fills."""
    common = {
        "instrument_token": instrument,
        "quantity": int(quantity),
        "product": product,
        "validity": "DAY",
        "transaction_type": exit_side,
        "disclosed_quantity": 0,
        "is_amo": False,
    }
    stop_leg = dict(common, order_type="SL", price=float(stop_loss),
                    trigger_price=float(stop_loss), tag=f"SL_{tag}")
    target_leg = dict(common, order_type="LIMIT", price=float(target),
                      trigger_price=0.0, tag=f"TGT_{tag}")
    return stop_leg, target_leg
