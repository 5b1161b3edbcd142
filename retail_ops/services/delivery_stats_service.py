"""
Per-worker, per-day delivery figures derived from routes and their orders.

Read-only: nothing here changes order, route or load state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from retail_ops.errors import WorkerNotFound
from retail_ops.models import DeliveryRoute, Order, OrderStatus, Person, RouteStatus
from retail_ops.store import with_store_retry

COMPLETED_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CONFIRMED)


@dataclass
class DeliveryStats:
    worker_id: str
    route_date: date
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def completed(self) -> int:
        return sum(self.counts.get(status.value, 0) for status in COMPLETED_STATUSES)

    @property
    def efficiency(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total, 4)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "date": self.route_date.isoformat(),
            "total": self.total,
            "completed": self.completed,
            "efficiency": self.efficiency,
            "by_status": dict(self.counts),
        }


class DeliveryStatsService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def compute_stats(self, worker_id: str, route_date: date) -> DeliveryStats:
        worker = with_store_retry(lambda: self.db.get(Person, worker_id), session=self.db)
        if worker is None:
            raise WorkerNotFound()

        # A route cancelled by reassignment no longer belongs to this worker
        query = (
            self.db.query(Order.status, func.count(Order.id))
            .join(DeliveryRoute, DeliveryRoute.order_id == Order.id)
            .filter(
                DeliveryRoute.delivery_worker_id == worker_id,
                DeliveryRoute.route_date == route_date,
                Order.delivery_assigned_to == worker_id,
                or_(
                    DeliveryRoute.status != RouteStatus.CANCELLED,
                    Order.status.in_([OrderStatus.CANCELLED, OrderStatus.FAILED]),
                ),
            )
            .group_by(Order.status)
        )
        rows = with_store_retry(query.all, session=self.db)

        counts = {status.value: 0 for status in OrderStatus}
        for status, count in rows:
            counts[OrderStatus(status).value] = int(count)

        stats = DeliveryStats(worker_id=worker_id, route_date=route_date, counts=counts)
        self.logger.debug(
            "Delivery stats computed",
            extra={"worker_id": worker_id, "total": stats.total, "completed": stats.completed},
        )
        return stats
