from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from retail_ops.errors import Forbidden, PersonDisabled, PersonNotFound
from retail_ops.models import Person
from retail_ops.observability import increment_counter, record_event
from retail_ops.policy import (
    ADMIN_WILDCARD,
    AuthorizationPolicy,
    Capability,
    Role,
    default_policy,
    normalize_role,
)
from retail_ops.services.token_service import Identity, TokenService
from retail_ops.store import with_store_retry


@dataclass(frozen=True)
class PersonContext:
    person_id: str
    role: Role
    site_ref: Optional[str] = None
    full_name: Optional[str] = None
    username: Optional[str] = None


class Authorizer:
    """Answers "who is this, and may they do C?" for one request."""

    def __init__(
        self,
        db_session: Session,
        policy: Optional[AuthorizationPolicy] = None,
        token_service: Optional[TokenService] = None,
    ) -> None:
        self.db = db_session
        self.policy = policy or default_policy()
        self.tokens = token_service or TokenService()
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def authenticate(self, token: Optional[str]) -> Identity:
        return self.tokens.authenticate(token)

    def resolve_identity(self, subject_id: str) -> PersonContext:
        person = with_store_retry(lambda: self._find_person(subject_id), session=self.db)
        if person is None:
            increment_counter("auth_failures_total", labels={"reason": "person_not_found"})
            raise PersonNotFound()
        if not person.active:
            increment_counter("auth_failures_total", labels={"reason": "user_disabled"})
            raise PersonDisabled()
        return PersonContext(
            person_id=person.id,
            role=normalize_role(person.role),
            site_ref=person.site_id,
            full_name=person.full_name,
            username=person.username,
        )

    def refresh_token(self, context: PersonContext) -> str:
        """Re-issue a session token carrying the role currently stored for the person."""
        return self.tokens.issue(context.person_id, context.role)

    normalize_role = staticmethod(normalize_role)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------
    def authorize(self, role: Role, capability: str) -> bool:
        capabilities = self.policy.capabilities_for(normalize_role(role))
        return ADMIN_WILDCARD in capabilities or capability in capabilities

    def require(self, role: Role, capability: str) -> None:
        if not self.authorize(role, capability):
            increment_counter("authz_denials_total", labels={"capability": capability})
            raise Forbidden(capability)

    def authorize_route(
        self,
        role: Role,
        path: str,
        method: Optional[str] = None,
        person_id: Optional[str] = None,
    ) -> bool:
        role = normalize_role(role)
        if self.policy.is_public(path) or self.policy.is_session_only(path):
            return True
        if self.policy.is_financial_path(path):
            # Role plays no part here, admins included
            allowed = self.has_financial_access(person_id)
            if not allowed:
                record_event("authz_financial_denied", {"path": path, "person_id": person_id})
            return allowed
        if not self.policy.within_confinement(role, path):
            record_event("authz_confined_route", {"path": path, "role": role.value})
            self.logger.info("Role %s is confined away from %s", role.value, path)
            return False
        rule = self.policy.rule_for(path, method)
        if rule is None:
            decision = self.policy.default_allow_unmapped
            record_event(
                "authz_unmapped_route",
                {"path": path, "method": method, "role": role.value, "allowed": decision},
            )
            self.logger.info(
                "No route rule for %s; applying default %s",
                path,
                "allow" if decision else "deny",
            )
            return decision
        return self.authorize(role, rule.capability)

    def required_capability(self, path: str, method: Optional[str] = None) -> Optional[str]:
        if self.policy.is_financial_path(path):
            return Capability.VIEW_FINANCIAL_CONTROL
        rule = self.policy.rule_for(path, method)
        return rule.capability if rule else None

    def home_path(self, role: Role) -> str:
        return self.policy.home_paths.get(normalize_role(role), self.policy.default_home)

    def has_financial_access(self, person_id: Optional[str]) -> bool:
        return bool(person_id) and person_id in self.policy.financial_control_ids

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _find_person(self, subject_id: str) -> Optional[Person]:
        return (
            self.db.query(Person)
            .filter(or_(Person.id == subject_id, Person.user_id == subject_id))
            .first()
        )
