from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from retail_ops.database import get_db
from retail_ops.errors import ValidationError
from retail_ops.models import Person
from retail_ops.policy import normalize_role
from retail_ops.services.account_service import AccountService
from retail_ops.store import with_store_retry

people_bp = Blueprint("people", __name__)


def _serialize_person(person: Person) -> Dict[str, Any]:
    return {
        "id": person.id,
        "user_id": person.user_id,
        "username": person.username,
        "email": person.email,
        "full_name": person.full_name,
        "role": normalize_role(person.role).value,
        "role_label": person.role,
        "site_id": person.site_id,
        "active": person.active,
        "current_load": person.current_load,
        "max_load": person.max_load,
    }


@people_bp.route("/api/people", methods=["GET"])
def list_people():
    db = get_db()
    query = db.query(Person).order_by(Person.full_name)
    if request.args.get("active") is not None:
        query = query.filter(Person.active == (request.args["active"].lower() in {"1", "true", "yes"}))
    people = with_store_retry(query.all, session=db)

    wanted_role = request.args.get("role")
    if wanted_role:
        role = normalize_role(wanted_role)
        people = [person for person in people if normalize_role(person.role) == role]
    return jsonify({"ok": True, "people": [_serialize_person(person) for person in people]})


@people_bp.route("/api/people", methods=["POST"])
def create_person():
    payload = request.get_json(silent=True) or {}
    max_load = payload.get("max_load")
    if max_load is not None and (isinstance(max_load, bool) or not isinstance(max_load, int) or max_load < 0):
        raise ValidationError("max_load must be a non-negative integer")

    person = AccountService(get_db()).provision_person(
        username=payload.get("username") or "",
        full_name=payload.get("full_name") or "",
        role=payload.get("role") or "",
        password=payload.get("password"),
        email=payload.get("email"),
        site_id=payload.get("site_id"),
        user_id=payload.get("user_id"),
        max_load=max_load,
    )
    return jsonify({"ok": True, "person": _serialize_person(person)}), 201


@people_bp.route("/api/people/<person_id>/deactivate", methods=["POST"])
def deactivate_person(person_id: str):
    person = AccountService(get_db()).set_active(person_id, False)
    return jsonify({"ok": True, "person": _serialize_person(person)})


@people_bp.route("/api/people/<person_id>/activate", methods=["POST"])
def activate_person(person_id: str):
    person = AccountService(get_db()).set_active(person_id, True)
    return jsonify({"ok": True, "person": _serialize_person(person)})
