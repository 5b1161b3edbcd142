# retail_ops/models.py
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Boolean,
    Text,
    UniqueConstraint,
    CheckConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Single shared Base so every table lands in the same metadata
from retail_ops.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    FAILED = "failed"


class RouteStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.RETURNED, OrderStatus.FAILED}
)
ACTIVE_ROUTE_STATUSES = frozenset({RouteStatus.PENDING, RouteStatus.IN_PROGRESS})


class Person(Base):
    __tablename__ = 'people'
    __table_args__ = (
        CheckConstraint('current_load >= 0', name='ck_people_current_load_non_negative'),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(64), unique=True)
    username = Column(String(120), unique=True, nullable=False)
    email = Column(String(255), unique=True)
    full_name = Column(String(255), nullable=False)
    role = Column(String(80))
    privilege_level = Column(Integer, default=1, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    site_id = Column(String(64))
    password_hash = Column(String(255))
    phone = Column(String(40))
    current_load = Column(Integer, default=0, nullable=False)
    max_load = Column(Integer, default=10, nullable=False)
    last_password_change_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    routes = relationship("DeliveryRoute", back_populates="worker")

    def __repr__(self) -> str:
        return f"<Person {self.username} role={self.role!r} active={self.active}>"


class Order(Base):
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True,
               values_callable=lambda enum: [member.value for member in enum]),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    sale_type = Column(String(20))
    site = Column(String(80))
    seller_id = Column(String(36), ForeignKey('people.id'))
    seller_name = Column(String(255))
    seller_role = Column(String(40))
    customer_name = Column(String(255), nullable=False)
    customer_document = Column(String(64))
    customer_phone = Column(String(40))
    payment_method = Column(String(40))
    delivery_address = Column(String(512))
    delivery_geo_lat = Column(Float)
    delivery_geo_lng = Column(Float)
    notes = Column(Text)
    delivery_date = Column(Date)
    delivery_assigned_to = Column(String(36), ForeignKey('people.id'))
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    status_changed_at = Column(DateTime)
    delivered_at = Column(DateTime)
    confirmed_at = Column(DateTime)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    routes = relationship("DeliveryRoute", back_populates="order")
    status_changes = relationship(
        "OrderStatusChange", back_populates="order", order_by="OrderStatusChange.id"
    )
    seller = relationship("Person", foreign_keys=[seller_id])
    delivery_worker = relationship("Person", foreign_keys=[delivery_assigned_to])

    # Operator override to CANCELLED is always allowed from a non-terminal status
    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.ASSIGNED, OrderStatus.CANCELLED},
        OrderStatus.ASSIGNED: {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED},
        OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED, OrderStatus.FAILED, OrderStatus.CANCELLED},
        OrderStatus.DELIVERED: {OrderStatus.CONFIRMED, OrderStatus.RETURNED, OrderStatus.CANCELLED},
    }

    @property
    def is_terminal(self) -> bool:
        return OrderStatus(self.status) in TERMINAL_ORDER_STATUSES

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return new_status in allowed

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": float(self.amount or 0),
            "status": OrderStatus(self.status).value,
            "site": self.site,
            "seller": self.seller_name,
            "seller_role": self.seller_role,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "payment_method": self.payment_method,
            "delivery_address": self.delivery_address,
            "delivery_geo_lat": self.delivery_geo_lat,
            "delivery_geo_lng": self.delivery_geo_lng,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "delivery_assigned_to": self.delivery_assigned_to,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "items": [item.to_dict() for item in self.items],
        }


class OrderItem(Base):
    __tablename__ = 'order_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False)
    product_code = Column(String(64))
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "product_code": self.product_code,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": float(self.unit_price),
            "subtotal": float(self.subtotal),
        }


class DeliveryRoute(Base):
    __tablename__ = 'delivery_routes'
    __table_args__ = (
        UniqueConstraint('order_id', 'route_date', name='uq_delivery_routes_order_day'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False)
    delivery_worker_id = Column(String(36), ForeignKey('people.id'), nullable=False)
    route_date = Column(Date, nullable=False)
    status = Column(
        SAEnum(RouteStatus, name="route_status", native_enum=False, validate_strings=True,
               values_callable=lambda enum: [member.value for member in enum]),
        default=RouteStatus.PENDING,
        nullable=False,
    )
    window_start = Column(DateTime)
    window_end = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime)

    order = relationship("Order", back_populates="routes")
    worker = relationship("Person", back_populates="routes")

    @property
    def is_active(self) -> bool:
        return RouteStatus(self.status) in ACTIVE_ROUTE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "delivery_user_id": self.delivery_worker_id,
            "route_date": self.route_date.isoformat() if self.route_date else None,
            "status": RouteStatus(self.status).value,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class OrderStatusChange(Base):
    __tablename__ = 'order_status_changes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False)
    from_status = Column(String(32), nullable=False)
    to_status = Column(String(32), nullable=False)
    actor_id = Column(String(36))
    reason = Column(Text)
    created_at = Column(DateTime, default=_utcnow)

    order = relationship("Order", back_populates="status_changes")
