from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import case, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from retail_ops.config import Config
from retail_ops.errors import (
    InvalidTransition,
    OrderNotFound,
    ScheduleConflict,
    ValidationError,
    WorkerInactive,
    WorkerNotFound,
)
from retail_ops.models import (
    ACTIVE_ROUTE_STATUSES,
    TERMINAL_ORDER_STATUSES,
    DeliveryRoute,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusChange,
    Person,
    RouteStatus,
)
from retail_ops.observability import increment_counter, record_event
from retail_ops.policy import Role, normalize_role
from retail_ops.store import commit_or_unavailable, with_store_retry

CENT = Decimal("0.01")

# Route outcome once the order reaches a terminal status
_ROUTE_STATUS_ON_TERMINAL = {
    OrderStatus.CONFIRMED: RouteStatus.COMPLETED,
    OrderStatus.RETURNED: RouteStatus.COMPLETED,
    OrderStatus.CANCELLED: RouteStatus.CANCELLED,
    OrderStatus.FAILED: RouteStatus.CANCELLED,
}


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AssignmentResult:
    route: DeliveryRoute
    order: Order
    created: bool
    previous_worker_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def idempotent(self) -> bool:
        return not self.created and self.previous_worker_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignment": self.route.to_dict(),
            "order_status": OrderStatus(self.order.status).value,
            "created": self.created,
            "reassigned": self.previous_worker_id is not None,
            "warnings": list(self.warnings),
        }


class OrderLifecycleService:
    """
    Owns every status change of an order together with its delivery route and the
    assigned worker's ``current_load``. Nothing else should touch those three.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.clock = clock or _utcnow
        self.logger = logging.getLogger(__name__)
        try:
            self.business_tz = ZoneInfo(getattr(config, "BUSINESS_TIMEZONE", "UTC"))
        except ZoneInfoNotFoundError:
            self.business_tz = timezone.utc

    def today(self) -> date:
        return self.clock().astimezone(self.business_tz).date()

    # ------------------------------------------------------------------
    # Sales capture
    # ------------------------------------------------------------------
    def create_order(self, payload: Dict[str, Any], seller=None) -> Order:
        """Capture a sale. ``seller`` is the caller's PersonContext, when known."""
        customer_name = str(payload.get("customer_name") or "").strip()
        if not customer_name:
            raise ValidationError("Customer name is required")

        items = self._build_items(payload.get("items"))
        amount = sum((item.subtotal for item in items), Decimal("0")).quantize(CENT)

        order = Order(
            amount=amount,
            status=OrderStatus.PENDING,
            sale_type=payload.get("sale_type"),
            site=payload.get("site") or (seller.site_ref if seller else None),
            seller_id=seller.person_id if seller else None,
            seller_name=(seller.full_name if seller else None) or payload.get("seller"),
            seller_role=seller.role.value if seller else None,
            customer_name=customer_name,
            customer_document=payload.get("customer_document"),
            customer_phone=payload.get("customer_phone"),
            payment_method=payload.get("payment_method"),
            delivery_address=payload.get("delivery_address"),
            delivery_geo_lat=payload.get("delivery_geo_lat"),
            delivery_geo_lng=payload.get("delivery_geo_lng"),
            notes=payload.get("notes"),
            delivery_date=self._parse_date(payload.get("delivery_date")),
            status_changed_at=self.clock(),
        )
        order.items = items
        self.db.add(order)
        commit_or_unavailable(self.db)

        increment_counter("orders_created_total", labels={"site": order.site or "unknown"})
        record_event("order_created", {"order_id": order.id, "amount": float(order.amount)})
        self.logger.info("Order %s captured", order.id, extra={"items": len(items)})
        return order

    def get_order(self, order_id: int) -> Order:
        order = with_store_retry(lambda: self.db.get(Order, order_id), session=self.db)
        if order is None:
            raise OrderNotFound()
        return order

    def list_orders(self, status: Optional[str] = None, limit: int = 50) -> List[Order]:
        query = self.db.query(Order)
        if status:
            try:
                wanted = OrderStatus(str(status).strip().lower())
            except ValueError:
                raise ValidationError(f"Unknown order status '{status}'") from None
            query = query.filter(Order.status == wanted)
        query = query.order_by(desc(Order.created_at), desc(Order.id)).limit(max(1, min(limit, 200)))
        return with_store_retry(query.all, session=self.db)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------
    def assign(
        self,
        order_id: int,
        worker_id: str,
        route_date: Optional[date] = None,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> AssignmentResult:
        window_start, window_end = self._validate_window(window_start, window_end)
        route_date = route_date or self.today()

        order = self._lock_order(order_id)
        worker = self.db.get(Person, worker_id)
        if worker is None:
            self.db.rollback()
            raise WorkerNotFound()
        if not worker.active or normalize_role(worker.role) != Role.LOGISTICA:
            self.db.rollback()
            raise WorkerInactive()

        existing = self._route_for_day(order.id, route_date)
        # A cancelled route is never the live assignment: revive it below or reject
        if (
            existing is not None
            and existing.delivery_worker_id == worker.id
            and (existing.is_active or existing.status == RouteStatus.COMPLETED)
        ):
            self.db.commit()
            increment_counter("order_assignments_total", labels={"result": "idempotent"})
            return AssignmentResult(route=existing, order=order, created=False)

        status = OrderStatus(order.status)
        if status not in (OrderStatus.PENDING, OrderStatus.ASSIGNED, OrderStatus.OUT_FOR_DELIVERY):
            self.db.rollback()
            increment_counter("order_assignments_total", labels={"result": "rejected"})
            raise InvalidTransition(status.value, OrderStatus.ASSIGNED.value)

        if window_start is not None:
            self._check_window_overlap(
                worker.id, route_date, window_start, window_end,
                exclude_route_id=existing.id if existing is not None else None,
            )

        route_status = (
            RouteStatus.IN_PROGRESS if status == OrderStatus.OUT_FOR_DELIVERY else RouteStatus.PENDING
        )
        created = existing is None
        previous_worker_id: Optional[str] = None

        if created:
            route = DeliveryRoute(
                order_id=order.id,
                delivery_worker_id=worker.id,
                route_date=route_date,
                status=route_status,
                window_start=window_start,
                window_end=window_end,
            )
            self.db.add(route)
            try:
                self.db.flush()
            except IntegrityError:
                # Lost the race on (order_id, route_date): hand back the winner's route
                self.db.rollback()
                winner = self._route_for_day(order.id, route_date)
                if winner is None:
                    raise
                increment_counter("order_assignments_total", labels={"result": "idempotent"})
                self.logger.info("Concurrent assignment resolved to route %s", winner.id)
                return AssignmentResult(route=winner, order=self.db.get(Order, order.id), created=False)
        else:
            route = existing
            if route.is_active:
                previous_worker_id = route.delivery_worker_id
                self._release_load(route.delivery_worker_id)
            route.delivery_worker_id = worker.id
            route.status = route_status
            route.completed_at = None
            if window_start is not None:
                route.window_start, route.window_end = window_start, window_end

        for stale in self._active_routes(order.id):
            if stale.id == route.id:
                continue
            stale.status = RouteStatus.CANCELLED
            self._release_load(stale.delivery_worker_id)
            previous_worker_id = stale.delivery_worker_id

        self._acquire_load(worker.id)

        if status == OrderStatus.PENDING:
            self._record_status(order, OrderStatus.ASSIGNED, actor_id, "Delivery assigned")
        order.delivery_assigned_to = worker.id
        order.updated_at = self.clock()

        warnings = self._same_address_warnings(order, worker.id)
        commit_or_unavailable(self.db)

        result_label = "reassigned" if previous_worker_id else "created"
        increment_counter("order_assignments_total", labels={"result": result_label})
        record_event(
            "order_assigned",
            {"order_id": order.id, "route_id": route.id, "route_date": route_date.isoformat()},
        )
        self.logger.info(
            "Order %s assigned for %s", order.id, route_date.isoformat(),
            extra={"route_id": route.id, "reassigned": previous_worker_id is not None},
        )
        return AssignmentResult(
            route=route,
            order=order,
            created=created,
            previous_worker_id=previous_worker_id,
            warnings=warnings,
        )

    def get_assignment(self, order_id: int, route_date: Optional[date] = None) -> Optional[DeliveryRoute]:
        route_date = route_date or self.today()
        return with_store_retry(lambda: self._route_for_day(order_id, route_date), session=self.db)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    def transition(
        self,
        order_id: int,
        to_status: OrderStatus | str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        target = self._parse_status(to_status)
        order = self._lock_order(order_id)
        current = OrderStatus(order.status)

        if not order.can_transition(target):
            self._reject(current, target)
        if target == OrderStatus.ASSIGNED:
            self._reject(current, target, "Orders are assigned by choosing a delivery worker")

        now = self.clock()
        self._record_status(order, target, actor_id, reason)
        if target == OrderStatus.DELIVERED:
            order.delivered_at = now
        elif target == OrderStatus.CONFIRMED:
            order.confirmed_at = now

        for route in self._active_routes(order.id):
            if target == OrderStatus.OUT_FOR_DELIVERY:
                route.status = RouteStatus.IN_PROGRESS
            elif target in TERMINAL_ORDER_STATUSES:
                route.status = _ROUTE_STATUS_ON_TERMINAL[target]
                if route.status == RouteStatus.COMPLETED:
                    route.completed_at = now
                self._release_load(route.delivery_worker_id)

        commit_or_unavailable(self.db)
        increment_counter(
            "order_transitions_total", labels={"from": current.value, "to": target.value}
        )
        self.logger.info("Order %s moved %s -> %s", order.id, current.value, target.value)
        return order

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _reject(self, current: OrderStatus, target: OrderStatus, message: Optional[str] = None) -> None:
        self.db.rollback()
        increment_counter(
            "order_transitions_rejected_total", labels={"from": current.value, "to": target.value}
        )
        raise InvalidTransition(current.value, target.value, message=message)

    def _record_status(
        self,
        order: Order,
        target: OrderStatus,
        actor_id: Optional[str],
        reason: Optional[str],
    ) -> None:
        now = self.clock()
        self.db.add(
            OrderStatusChange(
                order_id=order.id,
                from_status=OrderStatus(order.status).value,
                to_status=target.value,
                actor_id=actor_id,
                reason=reason,
                created_at=now,
            )
        )
        order.status = target
        order.status_changed_at = now
        order.updated_at = now

    def _lock_order(self, order_id: int) -> Order:
        order = (
            self.db.query(Order)
            .filter(Order.id == order_id)
            .with_for_update()
            .first()
        )
        if order is None:
            self.db.rollback()
            raise OrderNotFound()
        return order

    def _route_for_day(self, order_id: int, route_date: date) -> Optional[DeliveryRoute]:
        return (
            self.db.query(DeliveryRoute)
            .filter_by(order_id=order_id, route_date=route_date)
            .first()
        )

    def _active_routes(self, order_id: int) -> List[DeliveryRoute]:
        return (
            self.db.query(DeliveryRoute)
            .filter(
                DeliveryRoute.order_id == order_id,
                DeliveryRoute.status.in_(list(ACTIVE_ROUTE_STATUSES)),
            )
            .all()
        )

    def _acquire_load(self, worker_id: str) -> None:
        self.db.query(Person).filter(Person.id == worker_id).update(
            {Person.current_load: Person.current_load + 1},
            synchronize_session=False,
        )

    def _release_load(self, worker_id: str) -> None:
        self.db.query(Person).filter(Person.id == worker_id).update(
            {Person.current_load: case((Person.current_load > 0, Person.current_load - 1), else_=0)},
            synchronize_session=False,
        )

    def _check_window_overlap(
        self,
        worker_id: str,
        route_date: date,
        window_start: datetime,
        window_end: datetime,
        exclude_route_id: Optional[int] = None,
    ) -> None:
        others = (
            self.db.query(DeliveryRoute)
            .filter(
                DeliveryRoute.delivery_worker_id == worker_id,
                DeliveryRoute.route_date == route_date,
                DeliveryRoute.status.in_(list(ACTIVE_ROUTE_STATUSES)),
            )
            .all()
        )
        for other in others:
            if other.id == exclude_route_id or not other.window_start or not other.window_end:
                continue
            if window_start < other.window_end and other.window_start < window_end:
                self.db.rollback()
                raise ScheduleConflict()

    def _same_address_warnings(self, order: Order, worker_id: str) -> List[str]:
        if not order.delivery_address:
            return []
        duplicate = (
            self.db.query(Order.id)
            .filter(
                Order.delivery_assigned_to == worker_id,
                Order.status.in_([OrderStatus.ASSIGNED, OrderStatus.OUT_FOR_DELIVERY]),
                Order.delivery_address == order.delivery_address,
                Order.id != order.id,
            )
            .first()
        )
        if duplicate:
            return ["Another active delivery for this worker goes to the same address."]
        return []

    def _validate_window(self, window_start: Optional[datetime], window_end: Optional[datetime]):
        if window_start is None and window_end is None:
            return None, None
        if window_start is None or window_end is None:
            raise ValidationError("Delivery window needs both start and end")
        window_start, window_end = self._as_local(window_start), self._as_local(window_end)
        if not window_end > window_start:
            raise ValidationError("Delivery window end must be after its start")
        return window_start, window_end

    def _as_local(self, value: datetime) -> datetime:
        # Windows are stored as naive business-local wall time
        if value.tzinfo is not None:
            return value.astimezone(self.business_tz).replace(tzinfo=None)
        return value

    def _build_items(self, raw_items: Any) -> List[OrderItem]:
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("Include at least one product")
        if len(raw_items) > self.config.MAX_ORDER_ITEMS:
            raise ValidationError(f"At most {self.config.MAX_ORDER_ITEMS} products per order")

        items: List[OrderItem] = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                raise ValidationError("Each item must be an object")
            name = str(raw.get("product_name") or "").strip()
            if not name:
                raise ValidationError("Each item needs a product name")
            quantity = raw.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError("Invalid quantity")
            try:
                unit_price = _money(raw.get("unit_price"))
            except (InvalidOperation, ValueError, TypeError):
                raise ValidationError("Invalid price") from None
            if not unit_price.is_finite() or unit_price < 0:
                raise ValidationError("Invalid price")
            items.append(
                OrderItem(
                    product_code=raw.get("product_code") or None,
                    product_name=name,
                    quantity=quantity,
                    unit_price=unit_price,
                    subtotal=_money(unit_price * quantity),
                )
            )
        return items

    @staticmethod
    def _parse_status(value: OrderStatus | str) -> OrderStatus:
        if isinstance(value, OrderStatus):
            return value
        try:
            return OrderStatus(str(value).strip().lower())
        except ValueError:
            raise InvalidTransition(message=f"Unknown order status '{value}'") from None

    @staticmethod
    def _parse_date(value: Any) -> Optional[date]:
        if value in (None, ""):
            return None
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value))
        except ValueError:
            raise ValidationError("Dates must use YYYY-MM-DD") from None

