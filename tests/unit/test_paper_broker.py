"""Unit tests for the in-memory paper broker."""

from autoentry.broker import PaperBroker


class TestPaperBroker:
    """Scripted responses and order bookkeeping."""

    def test_order_details(self):
        broker = PaperBroker()
        order_id = broker.place_order({"tag": "BRC_S1_a", "quantity": 1}).data["order_id"]

        details = broker.get_order_details(order_id)

        assert details.success
        assert details.data["status"] == "open"
        assert details.data["tag"] == "BRC_S1_a"
        assert broker.get_order_details("PAPER999999").error_code == "rejected"

    def test_cancel_by_tag(self):
        broker = PaperBroker()
        kept = broker.place_order({"tag": "other"}).data["order_id"]
        cancelled = broker.place_order({"tag": "BRC_S1_a"}).data["order_id"]

        assert broker.cancel_orders("BRC_S1_a").data == {"order_ids": [cancelled]}
        assert broker.orders[kept]["status"] == "open"

    def test_queued_failures(self):
        broker = PaperBroker()
        broker.fail_next("slow", "timeout", times=2)

        assert broker.place_order({}).error_code == "timeout"
        assert broker.place_order({}).error_code == "timeout"
        assert broker.place_order({}).success

    def test_disconnected(self):
        broker = PaperBroker(connected=False)

        assert not broker.is_connected()
        assert broker.get_quote("X").error_code == "auth_expired"
        assert broker.get_candles("X", "1d", 10).error_code == "auth_expired"
        assert broker.place_order({}).error_code == "auth_expired"

    def test_candles_limited_to_count(self):
        broker = PaperBroker()
        broker.set_candles("X", "5m", list(range(10)))

        assert broker.get_candles("X", "5m", 3).data == [7, 8, 9]
        assert not broker.get_candles("X", "1h", 3).success
