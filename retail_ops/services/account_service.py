from __future__ import annotations

import logging
import re
import unicodedata
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from retail_ops.config import Config
from retail_ops.errors import InvalidCredentials, PersonDisabled, PersonNotFound, ValidationError
from retail_ops.models import Person
from retail_ops.observability import increment_counter, record_event
from retail_ops.services.token_service import TokenService
from retail_ops.store import commit_or_unavailable, with_store_retry


def normalize_login_input(raw: object) -> str:
    """Lowercase, strip accents and drop anything that cannot be part of a username/email."""
    text = str(raw or "").strip().lower()
    text = "".join(
        ch for ch in unicodedata.normalize("NFKD", text) if not unicodedata.combining(ch)
    )
    return re.sub(r"[^a-z0-9@._+-]", "", text)


class AccountService:
    """Credential checks and admin provisioning for the ``people`` table."""

    def __init__(
        self,
        db_session: Session,
        token_service: Optional[TokenService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.tokens = token_service or TokenService()
        self.config = config
        self.logger = logging.getLogger(__name__)

    def login(self, username: str, password: str) -> Tuple[Person, str]:
        if not password:
            raise InvalidCredentials()
        person = self._find_by_login(username)
        if person is None:
            increment_counter("logins_total", labels={"result": "not_found"})
            raise PersonNotFound()
        if not person.active:
            increment_counter("logins_total", labels={"result": "disabled"})
            raise PersonDisabled()
        if not person.password_hash or not check_password_hash(person.password_hash, password):
            increment_counter("logins_total", labels={"result": "bad_password"})
            raise InvalidCredentials()

        token = self.tokens.issue(person.id, person.role)
        increment_counter("logins_total", labels={"result": "ok"})
        self.logger.info("Login succeeded", extra={"person_id": person.id})
        return person, token

    def change_password(self, person_id: str, current_password: str, new_password: str) -> None:
        if len(new_password or "") < self.config.MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"New password must have at least {self.config.MIN_PASSWORD_LENGTH} characters"
            )
        person = self.db.get(Person, person_id)
        if person is None:
            raise PersonNotFound()
        if not person.password_hash or not check_password_hash(person.password_hash, current_password or ""):
            raise InvalidCredentials("Current password is invalid")

        person.password_hash = generate_password_hash(new_password)
        person.last_password_change_at = datetime.now(timezone.utc)
        commit_or_unavailable(self.db)
        record_event("password_changed", {"person_id": person.id})

    def provision_person(
        self,
        username: str,
        full_name: str,
        role: str,
        password: Optional[str] = None,
        email: Optional[str] = None,
        site_id: Optional[str] = None,
        user_id: Optional[str] = None,
        max_load: Optional[int] = None,
    ) -> Person:
        username_norm = normalize_login_input(username)
        if not username_norm or not (full_name or "").strip():
            raise ValidationError("Username and full name are required")
        if password is not None and len(password) < self.config.MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must have at least {self.config.MIN_PASSWORD_LENGTH} characters"
            )
        email_norm = normalize_login_input(email) or None
        if self._find_by_login(username_norm) is not None:
            raise ValidationError("Username already exists")
        if email_norm and self._find_by_login(email_norm) is not None:
            raise ValidationError("Email already exists")
        if user_id and self._find_by_user_id(user_id) is not None:
            raise ValidationError("User id already exists")

        person = Person(
            username=username_norm,
            email=email_norm,
            full_name=full_name.strip(),
            role=(role or "").strip() or None,
            site_id=site_id,
            user_id=user_id,
            password_hash=generate_password_hash(password) if password else None,
            max_load=max_load if max_load is not None else self.config.DEFAULT_MAX_LOAD,
            current_load=0,
            active=True,
        )
        self.db.add(person)
        try:
            commit_or_unavailable(self.db)
        except IntegrityError as exc:
            # Another writer took the username, email or user id first
            raise ValidationError("Person already exists") from exc
        record_event("person_provisioned", {"person_id": person.id, "role": person.role})
        return person

    def set_active(self, person_id: str, active: bool) -> Person:
        person = self.db.get(Person, person_id)
        if person is None:
            raise PersonNotFound()
        person.active = active
        commit_or_unavailable(self.db)
        self.logger.info(
            "Person %s", "activated" if active else "deactivated", extra={"person_id": person.id}
        )
        return person

    def _find_by_login(self, raw_login: str) -> Optional[Person]:
        login = normalize_login_input(raw_login)
        if not login:
            return None
        return with_store_retry(
            lambda: self.db.query(Person)
            .filter(or_(func.lower(Person.username) == login, func.lower(Person.email) == login))
            .first(),
            session=self.db,
        )

    def _find_by_user_id(self, user_id: str) -> Optional[Person]:
        return with_store_retry(
            lambda: self.db.query(Person).filter(Person.user_id == user_id).first(),
            session=self.db,
        )
