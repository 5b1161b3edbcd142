from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, g, jsonify, request

from retail_ops.config import Config
from retail_ops.database import get_db
from retail_ops.errors import InvalidToken, ValidationError
from retail_ops.models import Person
from retail_ops.policy import normalize_role
from retail_ops.services.account_service import AccountService
from retail_ops.services.authorizer import Authorizer, PersonContext
from retail_ops.services.token_service import TokenService

auth_bp = Blueprint("auth", __name__)


def _current_context() -> PersonContext:
    context = getattr(g, "person_context", None)
    if context is None:
        raise InvalidToken("No session")
    return context


def _set_session_cookie(response, token: str, tokens: TokenService):
    response.set_cookie(
        Config.SESSION_COOKIE_NAME,
        token,
        max_age=tokens.max_age_seconds,
        httponly=True,
        secure=Config.SESSION_COOKIE_SECURE,
        samesite="Lax",
        path="/",
    )
    return response


def _serialize_person(person: Person) -> Dict[str, Any]:
    return {
        "id": person.id,
        "username": person.username,
        "full_name": person.full_name,
        "role": normalize_role(person.role).value,
        "role_label": person.role,
        "site_id": person.site_id,
    }


@auth_bp.route("/api/auth/login", methods=["POST"])
def login():
    payload = request.get_json(silent=True) or {}
    username = payload.get("username") or payload.get("email")
    if not username:
        raise ValidationError("Username is required")

    tokens = TokenService()
    person, token = AccountService(get_db(), token_service=tokens).login(
        username, payload.get("password") or ""
    )
    authorizer = Authorizer(get_db(), token_service=tokens)
    response = jsonify(
        {
            "ok": True,
            "person": _serialize_person(person),
            "home_path": authorizer.home_path(normalize_role(person.role)),
        }
    )
    return _set_session_cookie(response, token, tokens)


@auth_bp.route("/api/auth/logout", methods=["POST"])
def logout():
    response = jsonify({"ok": True})
    response.delete_cookie(Config.SESSION_COOKIE_NAME, path="/")
    return response


@auth_bp.route("/api/auth/refresh-role", methods=["GET", "POST"])
def refresh_role():
    context = _current_context()
    tokens = TokenService()
    token = Authorizer(get_db(), token_service=tokens).refresh_token(context)
    response = jsonify({"ok": True, "role": context.role.value})
    return _set_session_cookie(response, token, tokens)


@auth_bp.route("/api/auth/change-password", methods=["POST"])
def change_password():
    context = _current_context()
    payload = request.get_json(silent=True) or {}
    AccountService(get_db()).change_password(
        context.person_id,
        payload.get("current_password") or "",
        payload.get("new_password") or "",
    )
    return jsonify({"ok": True})


@auth_bp.route("/api/me", methods=["GET"])
def me():
    context = _current_context()
    authorizer = Authorizer(get_db())
    return jsonify(
        {
            "ok": True,
            "person": {
                "id": context.person_id,
                "username": context.username,
                "full_name": context.full_name,
                "site_id": context.site_ref,
            },
            "role": context.role.value,
            "capabilities": sorted(authorizer.policy.capabilities_for(context.role)),
            "home_path": authorizer.home_path(context.role),
            "financial_access": authorizer.has_financial_access(context.person_id),
        }
    )
