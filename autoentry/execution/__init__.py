"""
Order execution: entry placement, deferred brackets and order status sync.
"""
from .brackets import BracketManager, BracketStatus, BracketStore, PendingBracket
from .coordinator import ExecutionResult, OrderExecutionCoordinator
from .payload import build_entry_payload, build_exit_legs

__all__ = [
    "BracketManager",
    "BracketStatus",
    "BracketStore",
    "PendingBracket",
    "ExecutionResult",
    "OrderExecutionCoordinator",
    "build_entry_payload",
    "build_exit_legs",
]
