from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from flask import Blueprint, g, jsonify, request

from retail_ops.database import get_db
from retail_ops.errors import ValidationError
from retail_ops.services.delivery_stats_service import DeliveryStatsService
from retail_ops.services.order_service import OrderLifecycleService

orders_bp = Blueprint("orders", __name__)


def _get_order_service() -> OrderLifecycleService:
    return OrderLifecycleService(get_db())


def _actor_id() -> Optional[str]:
    context = getattr(g, "person_context", None)
    return context.person_id if context else None


def _parse_date(value: Any, field_name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field_name} must use YYYY-MM-DD") from None


def _parse_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp") from None


@orders_bp.route("/api/orders", methods=["POST"])
def create_order():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object")
    order = _get_order_service().create_order(payload, seller=getattr(g, "person_context", None))
    return jsonify({"ok": True, "order": order.to_dict()}), 201


@orders_bp.route("/api/orders", methods=["GET"])
def list_orders():
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        raise ValidationError("limit must be an integer") from None
    orders = _get_order_service().list_orders(status=request.args.get("status"), limit=limit)
    return jsonify({"ok": True, "orders": [order.to_dict() for order in orders]})


@orders_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def get_order(order_id: int):
    order = _get_order_service().get_order(order_id)
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.route("/api/orders/<int:order_id>/assign", methods=["GET"])
def get_assignment(order_id: int):
    route_date = _parse_date(request.args.get("date"), "date")
    route = _get_order_service().get_assignment(order_id, route_date)
    return jsonify({"ok": True, "assignment": route.to_dict() if route else None})


@orders_bp.route("/api/orders/<int:order_id>/assign", methods=["POST"])
def assign_order(order_id: int):
    payload = request.get_json(silent=True) or {}
    worker_id = payload.get("delivery_user_id") or payload.get("worker_id")
    if not worker_id:
        raise ValidationError("delivery_user_id is required")

    result = _get_order_service().assign(
        order_id,
        str(worker_id),
        route_date=_parse_date(payload.get("date"), "date"),
        window_start=_parse_datetime(payload.get("window_start"), "window_start"),
        window_end=_parse_datetime(payload.get("window_end"), "window_end"),
        actor_id=_actor_id(),
    )
    body = {"ok": True, **result.to_dict()}
    return jsonify(body), 201 if result.created else 200


@orders_bp.route("/api/orders/<int:order_id>/transition", methods=["POST"])
def transition_order(order_id: int):
    payload = request.get_json(silent=True) or {}
    to_status = payload.get("status") or payload.get("to_status")
    if not to_status:
        raise ValidationError("status is required")
    order = _get_order_service().transition(
        order_id, to_status, actor_id=_actor_id(), reason=payload.get("reason")
    )
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.route("/api/delivery/<worker_id>/stats", methods=["GET"])
def delivery_stats(worker_id: str):
    route_date = _parse_date(request.args.get("date"), "date") or _get_order_service().today()
    stats = DeliveryStatsService(get_db()).compute_stats(worker_id, route_date)
    return jsonify({"ok": True, "stats": stats.to_dict()})
