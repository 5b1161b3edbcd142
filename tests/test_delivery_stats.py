from datetime import date, timedelta

import pytest

from retail_ops.errors import WorkerNotFound
from retail_ops.services.delivery_stats_service import DeliveryStats, DeliveryStatsService
from retail_ops.services.order_service import OrderLifecycleService

TODAY = date(2025, 3, 12)


@pytest.fixture
def lifecycle(db_session, fixed_clock):
    return OrderLifecycleService(db_session, clock=fixed_clock)


@pytest.fixture
def stats_service(db_session):
    return DeliveryStatsService(db_session)


def test_stats_count_orders_by_status(lifecycle, stats_service, make_person, make_order):
    worker = make_person()
    orders = [make_order(address=f"Calle {i}") for i in range(3)]
    for order in orders:
        lifecycle.assign(order.id, worker.id)

    for status in ("out_for_delivery", "delivered"):
        lifecycle.transition(orders[0].id, status)
    for status in ("out_for_delivery", "delivered", "confirmed"):
        lifecycle.transition(orders[1].id, status)
    for status in ("out_for_delivery", "failed"):
        lifecycle.transition(orders[2].id, status)

    stats = stats_service.compute_stats(worker.id, TODAY)

    assert stats.total == 3
    assert stats.completed == 2
    assert stats.efficiency == pytest.approx(0.6667)
    assert stats.counts["failed"] == 1
    assert stats.counts["pending"] == 0


def test_stats_ignore_orders_reassigned_away(lifecycle, stats_service, make_person, make_order):
    worker = make_person()
    backup = make_person()
    kept, moved = make_order(address="A"), make_order(address="B")
    lifecycle.assign(kept.id, worker.id)
    lifecycle.assign(moved.id, worker.id)
    lifecycle.assign(moved.id, backup.id, route_date=TODAY + timedelta(days=1))

    assert stats_service.compute_stats(worker.id, TODAY).total == 1
    assert stats_service.compute_stats(backup.id, TODAY).total == 0
    assert stats_service.compute_stats(backup.id, TODAY + timedelta(days=1)).total == 1


def test_stats_with_no_routes_have_zero_efficiency(stats_service, make_person):
    worker = make_person()
    stats = stats_service.compute_stats(worker.id, TODAY)
    assert stats.total == 0
    assert stats.efficiency == 0.0


def test_stats_for_unknown_worker(stats_service, db_session):
    with pytest.raises(WorkerNotFound):
        stats_service.compute_stats("ghost", TODAY)


def test_stats_serialization():
    stats = DeliveryStats("w-1", TODAY, {"delivered": 1, "confirmed": 1, "failed": 2})
    payload = stats.to_dict()
    assert payload["date"] == "2025-03-12"
    assert payload["completed"] == 2
    assert payload["efficiency"] == 0.5
