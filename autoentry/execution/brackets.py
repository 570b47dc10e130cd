"""
Deferred bracket orders.

An entry with both a stop-loss and a target is submitted alone. Its exit
legs are stored as a pending bracket and placed when the broker reports the
entry filled. Pending brackets that never see a fill expire.
"""

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import structlog

from autoentry.broker.base import BrokerClient, raise_for_response
from autoentry.errors import BrokerError, ConcurrencyConflictError, PersistenceError
from autoentry.persistence.analysis_store import Analysis, AnalysisStore, OrderStatus
from autoentry.persistence.sqlite import SQLiteStore
from autoentry.utils.time import now_utc, parse_timestamp

from .payload import build_exit_legs

logger = structlog.get_logger(__name__)

FILLED_STATUSES = frozenset({"complete", "filled"})
FAILED_STATUSES = frozenset({"rejected", "cancelled", "canceled"})


class BracketStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class PendingBracket:
    """Exit legs waiting for their entry order to fill."""
    order_id: str
    analysis_id: str
    strategy_id: str
    correlation_tag: str
    instrument: str
    quantity: int
    stop_loss: float
    target: float
    exit_transaction_type: str
    product: str
    expires_at: datetime
    status: BracketStatus = BracketStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    created_at: Optional[datetime] = None


class BracketStore(SQLiteStore):
    """SQLite-based pending bracket persistence layer."""

    table = "pending_brackets"

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_brackets (
                    order_id TEXT PRIMARY KEY,
                    analysis_id TEXT NOT NULL,
                    strategy_id TEXT NOT NULL,
                    correlation_tag TEXT NOT NULL,
                    instrument TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    stop_loss REAL NOT NULL,
                    target REAL NOT NULL,
                    exit_transaction_type TEXT NOT NULL,
                    product TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_brackets_status ON pending_brackets(status)
            """)
            conn.commit()

    def add(self, bracket: PendingBracket) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO pending_brackets (
                        order_id, analysis_id, strategy_id, correlation_tag, instrument,
                        quantity, stop_loss, target, exit_transaction_type, product,
                        status, attempts, error, expires_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    bracket.order_id, bracket.analysis_id, bracket.strategy_id,
                    bracket.correlation_tag, bracket.instrument, bracket.quantity,
                    bracket.stop_loss, bracket.target, bracket.exit_transaction_type,
                    bracket.product, bracket.status.value, bracket.attempts, bracket.error,
                    bracket.expires_at.isoformat(),
                    (bracket.created_at or now_utc()).isoformat(),
                ))
                conn.commit()

    def get(self, order_id: str) -> Optional[PendingBracket]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM pending_brackets WHERE order_id = ?",
                               (order_id,)).fetchone()
        return self._row_to_bracket(row) if row else None

    def set_status(self, order_id: str, status: BracketStatus,
                   error: Optional[str] = None) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE pending_brackets SET status = ?, error = ?, attempts = attempts + 1
                WHERE order_id = ?
            """, (status.value, error, order_id))
            conn.commit()

    def expire_before(self, now: datetime) -> list[str]:
        """Mark pending brackets whose expiry has passed. Returns their order ids."""
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT order_id FROM pending_brackets WHERE status = ? AND expires_at <= ?",
                    (BracketStatus.PENDING.value, now.isoformat()),
                ).fetchall()
                order_ids = [row["order_id"] for row in rows]
                conn.executemany(
                    "UPDATE pending_brackets SET status = ? WHERE order_id = ?",
                    [(BracketStatus.EXPIRED.value, oid) for oid in order_ids],
                )
                conn.commit()
        return order_ids

    @staticmethod
    def _row_to_bracket(row: sqlite3.Row) -> PendingBracket:
        return PendingBracket(
            order_id=row["order_id"],
            analysis_id=row["analysis_id"],
            strategy_id=row["strategy_id"],
            correlation_tag=row["correlation_tag"],
            instrument=row["instrument"],
            quantity=row["quantity"],
            stop_loss=row["stop_loss"],
            target=row["target"],
            exit_transaction_type=row["exit_transaction_type"],
            product=row["product"],
            status=BracketStatus(row["status"]),
            attempts=row["attempts"],
            error=row["error"],
            expires_at=parse_timestamp(row["expires_at"]),
            created_at=parse_timestamp(row["created_at"]),
        )


class BracketManager:
    """Places exit legs on entry fills and keeps the order records in step."""

    def __init__(self, broker: BrokerClient, store: BracketStore,
                 analysis_store: AnalysisStore, expiry_hours: int = 24):
        self.broker = broker
        self.store = store
        self.analysis_store = analysis_store
        self.expiry_hours = expiry_hours
        self._lock = threading.Lock()

    def register(self, order_id: str, analysis_id: str, strategy_id: str,
                 correlation_tag: str, instrument: str, quantity: int,
                 stop_loss: float, target: float, exit_transaction_type: str,
                 product: str, now: Optional[datetime] = None) -> PendingBracket:
        now = now or now_utc()
        bracket = PendingBracket(
            order_id=order_id,
            analysis_id=analysis_id,
            strategy_id=strategy_id,
            correlation_tag=correlation_tag,
            instrument=instrument,
            quantity=quantity,
            stop_loss=stop_loss,
            target=target,
            exit_transaction_type=exit_transaction_type,
            product=product,
            expires_at=now + timedelta(hours=self.expiry_hours),
            created_at=now,
        )
        self.store.add(bracket)
        logger.info("Pending bracket registered", order_id=order_id, analysis_id=analysis_id,
                    strategy_id=strategy_id, correlation_tag=correlation_tag)
        return bracket

    def handle_order_update(self, order_id: str, status: str) -> Optional[BracketStatus]:
        """
        Apply a broker order update to the pending bracket for ``order_id``.

        Returns:
            The bracket's status afterwards, or None when no bracket is registered
        """
        status = str(status).lower()
        with self._lock:
            bracket = self.store.get(order_id)
            if bracket is None:
                logger.debug("Order update without pending bracket", order_id=order_id,
                             status=status)
                return None
            if bracket.status != BracketStatus.PENDING:
                logger.debug("Bracket already handled", order_id=order_id,
                             bracket_status=bracket.status.value)
                return bracket.status

            if status in FILLED_STATUSES:
                return self._place_exit_legs(bracket)
            if status in FAILED_STATUSES:
                self.store.set_status(order_id, BracketStatus.FAILED, error=f"entry {status}")
                self._update_record(bracket, lambda record: setattr(
                    record, "status", OrderStatus.CANCELLED))
                logger.warning("Entry order not filled, bracket dropped", order_id=order_id,
                               analysis_id=bracket.analysis_id, status=status)
                return BracketStatus.FAILED
            return BracketStatus.PENDING

    def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        """
        Expire pending brackets past their expiry and cancel their entry orders.

        Returns:
            Order ids of the expired brackets
        """
        with self._lock:
            expired = self.store.expire_before(now or now_utc())
            for order_id in expired:
                bracket = self.store.get(order_id)
                if bracket is not None:
                    self._expire(bracket)
        if expired:
            logger.info("Pending brackets expired", order_ids=expired)
        return expired

    def _expire(self, bracket: PendingBracket) -> None:
        try:
            raise_for_response(self.broker.cancel_orders(bracket.correlation_tag), "cancel_orders")
        except BrokerError as e:
            logger.warning("Expired entry could not be cancelled", order_id=bracket.order_id,
                           correlation_tag=bracket.correlation_tag, error=str(e))
        try:
            self._update_record(bracket, lambda record: setattr(
                record, "status", OrderStatus.CANCELLED))
        except (ConcurrencyConflictError, PersistenceError) as e:
            logger.error("Order record not cancelled for expired bracket",
                         order_id=bracket.order_id, analysis_id=bracket.analysis_id,
                         error=str(e))

    def _place_exit_legs(self, bracket: PendingBracket) -> BracketStatus:
        stop_leg, target_leg = build_exit_legs(
            instrument=bracket.instrument,
            quantity=bracket.quantity,
            product=bracket.product,
            exit_side=bracket.exit_transaction_type,
            stop_loss=bracket.stop_loss,
            target=bracket.target,
            tag=bracket.correlation_tag,
        )
        leg_ids: list[Optional[str]] = []
        error: Optional[BrokerError] = None
        for leg in (stop_leg, target_leg):
            try:
                data = raise_for_response(self.broker.place_order(leg), "place_order") or {}
            except BrokerError as e:
                error = e
                break
            leg_ids.append(data.get("order_id"))
        stop_id, target_id = (leg_ids + [None, None])[:2]

        # the entry filled whatever happened to the legs; a placed leg stays live
        def _record_fill(record) -> None:
            record.entry_filled = True
            record.stop_loss_order_id = stop_id
            record.target_order_id = target_id
            record.order_ids.extend(i for i in leg_ids if i)

        self._update_record(bracket, _record_fill)

        if error is not None:
            self.store.set_status(bracket.order_id, BracketStatus.FAILED, error=str(error))
            logger.error("Bracket exit legs failed", order_id=bracket.order_id,
                         analysis_id=bracket.analysis_id, strategy_id=bracket.strategy_id,
                         stop_loss_order_id=stop_id, target_order_id=target_id,
                         error=str(error))
            return BracketStatus.FAILED

        self.store.set_status(bracket.order_id, BracketStatus.PROCESSED)
        logger.info("Bracket exit legs placed", order_id=bracket.order_id,
                    analysis_id=bracket.analysis_id, strategy_id=bracket.strategy_id,
                    stop_loss_order_id=stop_id, target_order_id=target_id)
        return BracketStatus.PROCESSED

    def _update_record(self, bracket: PendingBracket, change) -> None:
        def _mutate(analysis: Analysis) -> bool:
            record = analysis.find_order(bracket.correlation_tag)
            if record is None:
                return False
            change(record)
            return True

        if not self.analysis_store.update(bracket.analysis_id, _mutate):
            logger.warning("Order record missing for bracket", order_id=bracket.order_id,
                           analysis_id=bracket.analysis_id,
                           correlation_tag=bracket.correlation_tag)
