"""
HTTP surface: session enforcement, route guards and the order endpoints.

Requests authenticate with a Bearer token; the login test covers the cookie.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from retail_ops.main import app
from retail_ops.services.authorizer import Authorizer
from retail_ops.services.token_service import TokenService


@pytest.fixture
def client(db_session):
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client


def _auth(person, issued_at=None):
    token = TokenService().issue(person.id, person.role, issued_at=issued_at)
    return {"Authorization": f"Bearer {token}"}


def _order_payload(**overrides):
    payload = {
        "customer_name": "Rosa Choque",
        "customer_phone": "70000000",
        "delivery_address": "Av. Cristo Redentor 45",
        "items": [{"product_name": "Colchon", "quantity": 1, "unit_price": 899.5}],
    }
    payload.update(overrides)
    return payload


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["components"]["database"]["status"] == "UP"


def test_protected_route_without_session(client):
    response = client.get("/api/orders")
    assert response.status_code == 401
    assert response.get_json() == {"ok": False, "error": "invalid_token", "message": "No session"}


def test_expired_session_is_rejected(client, make_person):
    person = make_person(role="asesor")
    headers = _auth(person, issued_at=datetime.now(timezone.utc) - timedelta(days=45))
    response = client.get("/api/me", headers=headers)
    assert response.status_code == 401
    assert response.get_json()["error"] == "expired_token"


def test_disabled_person_is_refused(client, make_person):
    person = make_person(role="asesor", active=False)
    response = client.get("/api/me", headers=_auth(person))
    assert response.status_code == 403
    assert response.get_json()["error"] == "user_disabled"


def test_login_sets_session_cookie(client, make_person):
    make_person(role="Promotora", username="promo1", password="clave123")

    response = client.post("/api/auth/login", json={"username": "promo1", "password": "clave123"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["person"]["role"] == "promotor"
    assert body["home_path"] == "/dashboard/promotores"
    cookie = "; ".join(response.headers.getlist("Set-Cookie"))
    assert "fenix_session=" in cookie
    assert "HttpOnly" in cookie


def test_login_with_wrong_password(client, make_person):
    make_person(username="promo2", password="clave123")
    response = client.post("/api/auth/login", json={"username": "promo2", "password": "nope"})
    assert response.status_code == 401
    assert response.get_json()["error"] == "invalid_credentials"


def test_me_reports_role_home_and_financial_access(client, make_person):
    person = make_person(role="Gerencia", id="finance-controller-1")
    body = client.get("/api/me", headers=_auth(person)).get_json()
    assert body["role"] == "admin"
    assert body["capabilities"] == ["*"]
    assert body["home_path"] == "/dashboard"
    assert body["financial_access"] is True


def test_refresh_role_reissues_cookie_from_stored_role(client, make_person, db_session):
    person = make_person(role="asesor")
    headers = _auth(person)
    person.role = "Jefe de tienda"
    db_session.commit()

    response = client.get("/api/auth/refresh-role", headers=headers)

    assert response.get_json()["role"] == "lider"
    assert "fenix_session=" in response.headers.get("Set-Cookie", "")


def test_guard_denies_before_routing(client, make_person):
    asesor = make_person(role="vendedora")
    lider = make_person(role="lider")

    denied = client.get("/dashboard/sales-report", headers=_auth(asesor))
    assert denied.status_code == 403
    assert denied.get_json()["capability"] == "view:sales-report"

    # Allowed through the guard; there is simply no page here
    assert client.get("/dashboard/sales-report", headers=_auth(lider)).status_code == 404


def test_financial_control_needs_listed_person(client, make_person):
    admin = make_person(role="admin")
    controller = make_person(role="asesor", id="finance-controller-1")

    denied = client.get("/dashboard/financial-control", headers=_auth(admin))
    assert denied.status_code == 403
    assert denied.get_json()["capability"] == "view:financial-control"
    # Through the guard; no page is served here
    assert client.get("/dashboard/financial-control", headers=_auth(controller)).status_code == 404


def test_promotor_is_confined_to_own_pages(client, make_person):
    promotor = make_person(role="promotora")
    assert client.get("/dashboard/inventario", headers=_auth(promotor)).status_code == 403
    assert client.get("/dashboard/inventario", headers=_auth(make_person(role="lider"))).status_code == 404


def test_admin_metrics_requires_admin(client, make_person):
    assert client.get("/admin/metrics", headers=_auth(make_person(role="asesor"))).status_code == 403
    response = client.get("/admin/metrics", headers=_auth(make_person(role="admin")))
    assert response.status_code == 200
    assert "counters" in response.get_json()


def test_store_outage_answers_503_not_denial(client, make_person, monkeypatch):
    person = make_person(role="asesor")

    def store_down(self, subject_id):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(Authorizer, "_find_person", store_down)
    response = client.get("/api/me", headers=_auth(person))

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.get_json()["error"] == "store_unavailable"


def test_order_delivery_flow(client, make_person):
    coordinator = make_person(role="coordinadora")
    seller = make_person(role="vendedora", site_id="norte")
    driver = make_person(role="repartidor")

    created = client.post("/api/orders", json=_order_payload(), headers=_auth(seller))
    assert created.status_code == 201
    order = created.get_json()["order"]
    assert order["status"] == "pending"
    assert order["site"] == "norte"
    assert order["amount"] == 899.5

    assign_url = f"/api/orders/{order['id']}/assign"
    first = client.post(assign_url, json={"delivery_user_id": driver.id, "date": "2025-03-12"},
                        headers=_auth(coordinator))
    assert first.status_code == 201
    again = client.post(assign_url, json={"delivery_user_id": driver.id, "date": "2025-03-12"},
                        headers=_auth(coordinator))
    assert again.status_code == 200
    assert again.get_json()["assignment"]["id"] == first.get_json()["assignment"]["id"]

    # Drivers move status but cannot assign
    refused = client.post(assign_url, json={"delivery_user_id": driver.id}, headers=_auth(driver))
    assert refused.status_code == 403
    assert refused.get_json()["capability"] == "assign:orders"

    transition_url = f"/api/orders/{order['id']}/transition"
    for status in ("out_for_delivery", "delivered"):
        step = client.post(transition_url, json={"status": status}, headers=_auth(driver))
        assert step.status_code == 200
    confirmed = client.post(transition_url, json={"status": "confirmed"}, headers=_auth(coordinator))
    assert confirmed.get_json()["order"]["status"] == "confirmed"

    late = client.post(transition_url, json={"status": "out_for_delivery"}, headers=_auth(coordinator))
    assert late.status_code == 409
    assert late.get_json()["error"] == "invalid_transition"

    stats = client.get(f"/api/delivery/{driver.id}/stats?date=2025-03-12", headers=_auth(driver))
    assert stats.get_json()["stats"]["completed"] == 1
    assert stats.get_json()["stats"]["efficiency"] == 1.0

    assignment = client.get(f"{assign_url}?date=2025-03-12", headers=_auth(driver)).get_json()
    assert assignment["assignment"]["status"] == "completed"


def test_promotor_cannot_list_orders(client, make_person):
    response = client.get("/api/orders", headers=_auth(make_person(role="promotor")))
    assert response.status_code == 403


def test_invalid_order_payload_is_400(client, make_person):
    seller = make_person(role="asesor")
    response = client.post("/api/orders", json=_order_payload(items=[]), headers=_auth(seller))
    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"


def test_people_admin_endpoints(client, make_person):
    admin = make_person(role="admin")
    created = client.post(
        "/api/people",
        json={"username": "nuevo.chofer", "full_name": "Nuevo Chofer", "role": "Delivery", "password": "clave123"},
        headers=_auth(admin),
    )
    assert created.status_code == 201
    person = created.get_json()["person"]
    assert person["role"] == "logistica"

    listed = client.get("/api/people?role=logistica", headers=_auth(admin)).get_json()["people"]
    assert [p["username"] for p in listed] == ["nuevo.chofer"]

    deactivated = client.post(f"/api/people/{person['id']}/deactivate", headers=_auth(admin))
    assert deactivated.get_json()["person"]["active"] is False

    lider = make_person(role="lider")
    assert client.get("/api/people", headers=_auth(lider)).status_code == 403


def test_duplicate_person_is_400(client, make_person):
    admin = make_person(role="admin")
    make_person(email="dup@tienda.bo")
    response = client.post(
        "/api/people",
        json={"username": "otro", "full_name": "Otro", "role": "asesor", "email": "dup@tienda.bo"},
        headers=_auth(admin),
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"
