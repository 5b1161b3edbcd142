from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from retail_ops.config import Config
from retail_ops.errors import ExpiredToken, InvalidToken
from retail_ops.observability import increment_counter
from retail_ops.policy import Role, normalize_role

ALGORITHM = "HS256"


@dataclass(frozen=True)
class Identity:
    subject_id: str
    claimed_role: Role
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class TokenService:
    """Issues and verifies the signed session token carried in the session cookie."""

    def __init__(
        self,
        secret: Optional[str] = None,
        session_days: Optional[int] = None,
        algorithm: str = ALGORITHM,
    ) -> None:
        self.secret = secret or Config.JWT_SECRET
        self.session_days = Config.SESSION_DAYS if session_days is None else session_days
        self.algorithm = algorithm
        self.logger = logging.getLogger(__name__)

    @property
    def max_age_seconds(self) -> int:
        return int(timedelta(days=self.session_days).total_seconds())

    def issue(
        self,
        subject_id: str,
        role: Role | str,
        issued_at: Optional[datetime] = None,
        **extra_claims,
    ) -> str:
        issued_at = issued_at or datetime.now(timezone.utc)
        payload = {
            **extra_claims,
            "sub": str(subject_id),
            "role": normalize_role(role).value,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + timedelta(days=self.session_days)).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def authenticate(self, token: Optional[str]) -> Identity:
        if not token:
            raise InvalidToken("No session")
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            increment_counter("auth_failures_total", labels={"reason": "expired_token"})
            raise ExpiredToken() from exc
        except jwt.InvalidTokenError as exc:
            increment_counter("auth_failures_total", labels={"reason": "invalid_token"})
            self.logger.info("Rejected session token: %s", exc.__class__.__name__)
            raise InvalidToken() from exc

        subject_id = str(claims.get("sub") or "").strip()
        if not subject_id:
            raise InvalidToken()
        return Identity(
            subject_id=subject_id,
            claimed_role=normalize_role(claims.get("role")),
            issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
