"""
Analysis persistence with an expected-version conditional update.

The analysis row carries the order lock (``order_processing`` plus its start
time) and the placed order records. Every mutation goes through
``update``: read the row, apply a mutator, then write it back only if the
version is unchanged. Lost races are retried with a short exponential
backoff and surface as ``ConcurrencyConflictError`` once the retries run out.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from autoentry.errors import ConcurrencyConflictError, PersistenceError
from autoentry.utils.time import ensure_aware, format_market_time, now_utc, parse_timestamp

from .sqlite import SQLiteStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class OrderStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


OPEN_ORDER_STATUSES = frozenset({OrderStatus.ACTIVE, OrderStatus.PARTIALLY_FILLED})


@dataclass
class OrderRecord:
    """Orders placed for one strategy execution."""
    order_ids: list[str]
    correlation_tag: str
    status: OrderStatus
    quantity: int
    price: float
    transaction_type: str
    placed_at: datetime
    strategy_id: str = ""
    order_type: str = "SINGLE"              # BRACKET or SINGLE
    entry_filled: bool = False
    stop_loss_order_id: Optional[str] = None
    target_order_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_ids": list(self.order_ids),
            "correlation_tag": self.correlation_tag,
            "status": self.status.value,
            "quantity": self.quantity,
            "price": self.price,
            "transaction_type": self.transaction_type,
            "placed_at": format_market_time(self.placed_at),
            "strategy_id": self.strategy_id,
            "order_type": self.order_type,
            "entry_filled": self.entry_filled,
            "stop_loss_order_id": self.stop_loss_order_id,
            "target_order_id": self.target_order_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderRecord":
        return cls(
            order_ids=list(data.get("order_ids") or []),
            correlation_tag=data.get("correlation_tag", ""),
            status=OrderStatus(data.get("status", OrderStatus.ACTIVE.value)),
            quantity=int(data.get("quantity", 0)),
            price=float(data.get("price", 0.0)),
            transaction_type=data.get("transaction_type", ""),
            placed_at=parse_timestamp(data.get("placed_at")) or now_utc(),
            strategy_id=data.get("strategy_id", ""),
            order_type=data.get("order_type", "SINGLE"),
            entry_filled=bool(data.get("entry_filled", False)),
            stop_loss_order_id=data.get("stop_loss_order_id"),
            target_order_id=data.get("target_order_id"),
        )


@dataclass
class Analysis:
    """Persisted analysis owning the strategies and the order lock."""
    id: str
    user_id: str
    instrument: str
    symbol: str = ""
    analysis_type: str = "swing"            # swing or intraday
    strategies: list[dict[str, Any]] = field(default_factory=list)
    placed_orders: list[OrderRecord] = field(default_factory=list)
    order_processing: bool = False
    order_processing_started_at: Optional[datetime] = None
    last_order_processing_result: Optional[str] = None
    expires_at: Optional[datetime] = None
    version: int = 0

    def get_strategy(self, strategy_id: str) -> Optional[dict[str, Any]]:
        for strategy in self.strategies:
            if str(strategy.get("id")) == str(strategy_id):
                return strategy
        return None

    @property
    def has_active_order(self) -> bool:
        return any(o.status in OPEN_ORDER_STATUSES for o in self.placed_orders)

    @property
    def has_open_position(self) -> bool:
        return any(o.entry_filled and o.status in OPEN_ORDER_STATUSES for o in self.placed_orders)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_aware(self.expires_at) <= (now or now_utc())

    def lock_age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if not self.order_processing or self.order_processing_started_at is None:
            return None
        return ((now or now_utc()) - ensure_aware(self.order_processing_started_at)).total_seconds()

    def lock_is_fresh(self, stale_after_seconds: float, now: Optional[datetime] = None) -> bool:
        """True while another execution holds a lock younger than ``stale_after_seconds``."""
        if not self.order_processing:
            return False
        age = self.lock_age_seconds(now)
        return age is None or age < stale_after_seconds

    def find_order(self, correlation_tag: str) -> Optional[OrderRecord]:
        for order in self.placed_orders:
            if order.correlation_tag == correlation_tag:
                return order
        return None


class _VersionConflict(Exception):
    """Row version changed between read and conditional write."""


class AnalysisStore(SQLiteStore):
    """SQLite-based analysis persistence layer."""

    table = "analyses"

    def __init__(self, db_path: str = "autoentry.db", cas_retries: int = 5,
                 cas_backoff_seconds: float = 0.05):
        self.cas_retries = cas_retries
        self.cas_backoff_seconds = cas_backoff_seconds
        super().__init__(db_path)

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS analyses (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    instrument TEXT NOT NULL,
                    symbol TEXT,
                    analysis_type TEXT NOT NULL,
                    strategies TEXT NOT NULL,
                    placed_orders TEXT NOT NULL,
                    order_processing INTEGER NOT NULL DEFAULT 0,
                    order_processing_started_at TEXT,
                    last_order_processing_result TEXT,
                    expires_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_analyses_user_id ON analyses(user_id)
            """)
            conn.commit()

    def save(self, analysis: Analysis) -> Analysis:
        """Insert or fully replace an analysis row. Intended for setup, not for lock changes."""
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO analyses (
                        id, user_id, instrument, symbol, analysis_type, strategies,
                        placed_orders, order_processing, order_processing_started_at,
                        last_order_processing_result, expires_at, version, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, self._to_row(analysis) + (analysis.version, now_utc().isoformat()))
                conn.commit()
        logger.info("Analysis saved", analysis_id=analysis.id, version=analysis.version)
        return analysis

    def get(self, analysis_id: str) -> Optional[Analysis]:
        """Get an analysis by ID."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM analyses WHERE id = ?", (analysis_id,)).fetchone()
        return self._row_to_analysis(row) if row else None

    def compare_and_set(self, analysis: Analysis, expected_version: int) -> bool:
        """
        Write ``analysis`` only if the stored version still equals ``expected_version``.

        Returns:
            True if the row was written, False on a version conflict
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE analyses SET
                    user_id = ?, instrument = ?, symbol = ?, analysis_type = ?,
                    strategies = ?, placed_orders = ?, order_processing = ?,
                    order_processing_started_at = ?, last_order_processing_result = ?,
                    expires_at = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
            """, self._to_row(analysis)[1:] + (now_utc().isoformat(), analysis.id, expected_version))
            conn.commit()
            written = cursor.rowcount == 1

        if written:
            analysis.version = expected_version + 1
        return written

    def update(self, analysis_id: str, mutator: Callable[[Analysis], T]) -> T:
        """
        Apply ``mutator`` to the current analysis and persist it conditionally.

        The mutator edits the analysis in place and returns a value that is
        passed back to the caller. It may be called several times if
        concurrent writers win the race, so it must not have side effects
        outside the analysis.

        Raises:
            PersistenceError: analysis does not exist
            ConcurrencyConflictError: every conditional write lost
        """
        retryer = Retrying(
            stop=stop_after_attempt(self.cas_retries),
            wait=wait_exponential(multiplier=self.cas_backoff_seconds, max=1.0),
            retry=retry_if_exception_type(_VersionConflict),
            reraise=True,
        )
        try:
            return retryer(self._try_update, analysis_id, mutator)
        except _VersionConflict:
            logger.error("Conditional update exhausted retries", analysis_id=analysis_id,
                         attempts=self.cas_retries)
            raise ConcurrencyConflictError(
                f"Analysis {analysis_id} kept changing during update",
                analysis_id=analysis_id, attempts=self.cas_retries,
            ) from None

    def _try_update(self, analysis_id: str, mutator: Callable[[Analysis], T]) -> T:
        analysis = self.get(analysis_id)
        if analysis is None:
            raise PersistenceError(f"Analysis {analysis_id} not found",
                                   operation="update", target="analyses")
        expected = analysis.version
        result = mutator(analysis)
        if not self.compare_and_set(analysis, expected):
            logger.debug("Version conflict, retrying", analysis_id=analysis_id,
                         expected_version=expected)
            raise _VersionConflict()
        return result

    def clear_stale_lock(self, analysis_id: str, stale_after_seconds: float,
                         now: Optional[datetime] = None) -> bool:
        """Release a lock older than ``stale_after_seconds``. Returns True if one was cleared."""
        def _clear(analysis: Analysis) -> bool:
            age = analysis.lock_age_seconds(now)
            if not analysis.order_processing:
                return False
            if age is not None and age < stale_after_seconds:
                return False
            analysis.order_processing = False
            analysis.order_processing_started_at = None
            analysis.last_order_processing_result = "stale_lock_cleared"
            return True

        cleared = self.update(analysis_id, _clear)
        if cleared:
            logger.warning("Stale order lock cleared", analysis_id=analysis_id,
                           stale_after_seconds=stale_after_seconds)
        return cleared

    def list_ids(self) -> list[str]:
        with self._get_connection() as conn:
            return [row["id"] for row in conn.execute("SELECT id FROM analyses ORDER BY id")]

    @staticmethod
    def _to_row(analysis: Analysis) -> tuple:
        return (
            analysis.id,
            analysis.user_id,
            analysis.instrument,
            analysis.symbol,
            analysis.analysis_type,
            json.dumps(analysis.strategies),
            json.dumps([o.to_dict() for o in analysis.placed_orders]),
            1 if analysis.order_processing else 0,
            format_market_time(analysis.order_processing_started_at)
            if analysis.order_processing_started_at else None,
            analysis.last_order_processing_result,
            format_market_time(analysis.expires_at) if analysis.expires_at else None,
        )

    @staticmethod
    def _row_to_analysis(row: sqlite3.Row) -> Analysis:
        """Convert database row to Analysis object."""
        return Analysis(
            id=row["id"],
            user_id=row["user_id"],
            instrument=row["instrument"],
            symbol=row["symbol"] or "",
            analysis_type=row["analysis_type"],
            strategies=json.loads(row["strategies"]),
            placed_orders=[OrderRecord.from_dict(o) for o in json.loads(row["placed_orders"])],
            order_processing=bool(row["order_processing"]),
            order_processing_started_at=parse_timestamp(row["order_processing_started_at"]),
            last_order_processing_result=row["last_order_processing_result"],
            expires_at=parse_timestamp(row["expires_at"]),
            version=row["version"],
        )
