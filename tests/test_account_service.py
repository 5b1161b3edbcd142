import pytest
from werkzeug.security import check_password_hash

from retail_ops.errors import InvalidCredentials, PersonDisabled, PersonNotFound, ValidationError
from retail_ops.models import Person
from retail_ops.observability.metrics import counter_value
from retail_ops.policy import Role
from retail_ops.services.account_service import AccountService, normalize_login_input
from retail_ops.services.token_service import TokenService


class _StubConfig:
    MIN_PASSWORD_LENGTH = 8
    DEFAULT_MAX_LOAD = 4


@pytest.fixture
def tokens():
    return TokenService(secret="unit-secret")


@pytest.fixture
def accounts(db_session, tokens):
    return AccountService(db_session, token_service=tokens)


def test_normalize_login_input_strips_accents_and_noise():
    assert normalize_login_input("  José.Pérez@Tienda.BO ") == "jose.perez@tienda.bo"
    assert normalize_login_input(None) == ""


def test_login_issues_token_for_stored_role(accounts, tokens, make_person):
    person = make_person(role="Vendedora", password="s3creto", username="ana.rojas")

    found, token = accounts.login("Ana.Rojas", "s3creto")

    assert found.id == person.id
    identity = tokens.authenticate(token)
    assert identity.subject_id == person.id
    assert identity.claimed_role == Role.ASESOR
    assert counter_value("logins_total", {"result": "ok"}) == 1


def test_login_by_email(accounts, make_person):
    make_person(password="s3creto", email="rutas@tienda.bo")
    person, _ = accounts.login("RUTAS@tienda.bo", "s3creto")
    assert person.email == "rutas@tienda.bo"


def test_login_failures(accounts, make_person):
    make_person(password="s3creto", username="activo")
    make_person(password="s3creto", username="inactivo", active=False)
    make_person(username="sinclave")

    with pytest.raises(PersonNotFound):
        accounts.login("nadie", "s3creto")
    with pytest.raises(PersonDisabled):
        accounts.login("inactivo", "s3creto")
    with pytest.raises(InvalidCredentials):
        accounts.login("activo", "otra")
    with pytest.raises(InvalidCredentials):
        accounts.login("activo", "")
    # No stored hash means no password login at all
    with pytest.raises(InvalidCredentials):
        accounts.login("sinclave", "s3creto")


def test_change_password(accounts, db_session, make_person):
    person = make_person(password="viejo123")

    with pytest.raises(InvalidCredentials):
        accounts.change_password(person.id, "equivocado", "nuevo1234")
    with pytest.raises(ValidationError):
        accounts.change_password(person.id, "viejo123", "123")

    accounts.change_password(person.id, "viejo123", "nuevo1234")
    db_session.refresh(person)
    assert check_password_hash(person.password_hash, "nuevo1234")
    assert person.last_password_change_at is not None


def test_provision_person_normalizes_and_rejects_duplicates(db_session, tokens):
    accounts = AccountService(db_session, token_service=tokens, config=_StubConfig)
    person = accounts.provision_person("  Carlos.Repartidor ", "Carlos Vaca", "REPARTIDOR", password="larga-clave")

    assert person.username == "carlos.repartidor"
    assert person.max_load == 4
    assert person.current_load == 0

    with pytest.raises(ValidationError):
        accounts.provision_person("carlos.repartidor", "Otro", "asesor")
    with pytest.raises(ValidationError):
        accounts.provision_person("nuevo", "Nuevo", "asesor", password="corta")
    with pytest.raises(ValidationError):
        accounts.provision_person("", "Sin usuario", "asesor")


def test_set_active_toggles_flag(accounts, db_session, make_person):
    person = make_person()
    accounts.set_active(person.id, False)
    assert db_session.get(Person, person.id).active is False
    with pytest.raises(PersonNotFound):
        accounts.set_active("missing", True)


def test_provision_person_rejects_taken_email_and_user_id(accounts, make_person):
    make_person(email="caja@tienda.bo", user_id="auth-77")

    with pytest.raises(ValidationError, match="Email"):
        accounts.provision_person("cajera2", "Cajera Dos", "asesor", email="CAJA@tienda.bo")
    with pytest.raises(ValidationError, match="User id"):
        accounts.provision_person("cajera3", "Cajera Tres", "asesor", user_id="auth-77")


def test_provision_person_maps_constraint_race_to_validation_error(accounts, db_session, make_person, monkeypatch):
    make_person(user_id="auth-88")
    # The pre-check ran before the other writer committed
    monkeypatch.setattr(accounts, "_find_by_user_id", lambda user_id: None)

    with pytest.raises(ValidationError, match="already exists"):
        accounts.provision_person("tardio", "Llego Tarde", "asesor", user_id="auth-88")
    assert db_session.query(Person).filter_by(username="tardio").count() == 0
