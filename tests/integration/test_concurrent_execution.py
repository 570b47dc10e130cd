"""
Concurrent execution requests for the same analysis place exactly one order.
"""

import threading

import pytest


@pytest.mark.parametrize("callers", [2, 4])
def test_single_order_under_contention(coordinator, analysis, analysis_store, broker, callers):
    barrier = threading.Barrier(callers)
    results = []
    results_lock = threading.Lock()

    def _execute():
        barrier.wait()
        result = coordinator.execute_strategy("A1", "S1", "U1")
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=_execute) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == callers
    successes = [r for r in results if r.success]
    assert len(successes) == 1
    assert all(r.error == "orders_already_placed" for r in results if not r.success)

    stored = analysis_store.get("A1")
    assert len(stored.placed_orders) == 1
    assert stored.order_processing is False
    assert len(broker.placed) == 1
