"""
Integration tests for deferred bracket exit legs.
"""

from datetime import timedelta

import pytest

from autoentry.broker.base import BrokerResponse
from autoentry.execution.brackets import BracketStatus
from autoentry.persistence.analysis_store import OrderStatus


def _place_entry(coordinator):
    result = coordinator.execute_strategy("A1", "S1", "U1")
    assert result.success
    return result.data["order_id"], result.data["correlation_tag"]


class TestBracketRegistration:
    """Entries with stop-loss and target register a pending bracket."""

    def test_pending_after_entry(self, coordinator, analysis, bracket_manager, broker):
        order_id, tag = _place_entry(coordinator)

        bracket = bracket_manager.store.get(order_id)
        assert bracket.status == BracketStatus.PENDING
        assert bracket.correlation_tag == tag
        assert bracket.exit_transaction_type == "SELL"
        assert bracket.stop_loss == 95.0
        assert bracket.target == 110.0
        assert len(broker.placed) == 1


class TestOrderUpdates:
    """Broker callbacks drive the bracket."""

    def test_fill_places_exit_legs(self, coordinator, analysis, analysis_store,
                                   bracket_manager, broker):
        order_id, tag = _place_entry(coordinator)

        status = bracket_manager.handle_order_update(order_id, "COMPLETE")

        assert status == BracketStatus.PROCESSED
        assert len(broker.placed) == 3
        stop_leg, target_leg = broker.placed[1], broker.placed[2]
        assert stop_leg["transaction_type"] == "SELL"
        assert stop_leg["order_type"] == "SL"
        assert stop_leg["trigger_price"] == 95.0
        assert stop_leg["tag"] == f"SL_{tag}"[:40]
        assert target_leg["transaction_type"] == "SELL"
        assert target_leg["order_type"] == "LIMIT"
        assert target_leg["price"] == 110.0

        record = analysis_store.get("A1").find_order(tag)
        assert record.entry_filled is True
        assert record.stop_loss_order_id == stop_leg["order_id"]
        assert record.target_order_id == target_leg["order_id"]
        assert record.order_ids == [order_id, stop_leg["order_id"], target_leg["order_id"]]
        assert analysis_store.get("A1").has_open_position

    def test_repeated_fill_is_noop(self, coordinator, analysis, bracket_manager, broker):
        order_id, _ = _place_entry(coordinator)
        bracket_manager.handle_order_update(order_id, "complete")

        assert bracket_manager.handle_order_update(order_id, "complete") == BracketStatus.PROCESSED
        assert len(broker.placed) == 3

    def test_open_keeps_pending(self, coordinator, analysis, bracket_manager, broker):
        order_id, _ = _place_entry(coordinator)

        assert bracket_manager.handle_order_update(order_id, "open") == BracketStatus.PENDING
        assert len(broker.placed) == 1

    def test_rejection_drops_bracket(self, coordinator, analysis, analysis_store,
                                     bracket_manager, broker):
        order_id, tag = _place_entry(coordinator)

        status = bracket_manager.handle_order_update(order_id, "rejected")

        assert status == BracketStatus.FAILED
        assert bracket_manager.store.get(order_id).error == "entry rejected"
        assert analysis_store.get("A1").find_order(tag).status == OrderStatus.CANCELLED
        assert len(broker.placed) == 1

    def test_leg_failure_marks_failed(self, coordinator, analysis, analysis_store,
                                      bracket_manager, broker):
        order_id, tag = _place_entry(coordinator)
        broker.fail_next("Order rejected by RMS", "rejected")

        assert bracket_manager.handle_order_update(order_id, "filled") == BracketStatus.FAILED
        assert bracket_manager.store.get(order_id).attempts == 1
        record = analysis_store.get("A1").find_order(tag)
        assert record.entry_filled is True
        assert record.order_ids == [order_id]

    def test_unknown_order(self, bracket_manager):
        assert bracket_manager.handle_order_update("PAPER999999", "complete") is None


class TestPartialLegFailure:
    """A rejected target leg leaves the placed stop leg recorded."""

    @pytest.fixture
    def reject_target(self, broker, monkeypatch):
        place = broker.place_order

        def _place(payload):
            if str(payload.get("tag", "")).startswith("TGT_"):
                return BrokerResponse.fail("Order rejected by RMS", "rejected")
            return place(payload)

        monkeypatch.setattr(broker, "place_order", _place)

    def test_stop_leg_recorded(self, coordinator, analysis, analysis_store, bracket_manager,
                               broker, reject_target):
        order_id, tag = _place_entry(coordinator)

        assert bracket_manager.handle_order_update(order_id, "complete") == BracketStatus.FAILED

        stop_leg = broker.placed[1]
        assert stop_leg["tag"] == f"SL_{tag}"
        assert broker.orders[stop_leg["order_id"]]["status"] == "open"
        record = analysis_store.get("A1").find_order(tag)
        assert record.entry_filled is True
        assert record.stop_loss_order_id == stop_leg["order_id"]
        assert record.target_order_id is None
        assert record.order_ids == [order_id, stop_leg["order_id"]]
        assert analysis_store.get("A1").has_open_position
        assert "rejected" in bracket_manager.store.get(order_id).error


class TestExpiry:
    """Unfilled brackets expire and take their entry with them."""

    def test_expire_stale(self, bracket_manager, market_now):
        bracket_manager.register(
            order_id="E1", analysis_id="A1", strategy_id="S1", correlation_tag="BRC_S1_x",
            instrument="X", quantity=1, stop_loss=95.0, target=110.0,
            exit_transaction_type="SELL", product="D", now=market_now,
        )

        assert bracket_manager.expire_stale(market_now + timedelta(hours=23)) == []
        assert bracket_manager.expire_stale(market_now + timedelta(hours=25)) == ["E1"]
        assert bracket_manager.store.get("E1").status == BracketStatus.EXPIRED
        assert bracket_manager.handle_order_update("E1", "complete") == BracketStatus.EXPIRED

    def test_expiry_cancels_entry_and_record(self, coordinator, analysis, analysis_store,
                                             bracket_manager, broker, market_now):
        order_id, tag = _place_entry(coordinator)
        # registration is stamped with wall-clock time
        later = bracket_manager.store.get(order_id).expires_at + timedelta(seconds=1)

        assert bracket_manager.expire_stale(later) == [order_id]

        assert broker.orders[order_id]["status"] == "cancelled"
        stored = analysis_store.get("A1")
        assert stored.find_order(tag).status == OrderStatus.CANCELLED
        assert not stored.has_active_order
