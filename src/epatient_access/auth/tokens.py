"""Signed bearer tokens for ordinary sessions and emergency grants.

Both kinds are HS256 JWTs distinguished by the ``typ`` claim. Ordinary tokens
carry the session id (``sid``); emergency tokens carry the grant id (``gid``)
and the patient the grant is bound to (``pid``).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

import jwt

from ..errors import Expired, Unauthorized
from ..models import EmergencyGrant, Role, UserSession
from ..secrets import MaskedSecret

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["typ", "sub", "role", "iat", "exp"]


class TokenKind(Enum):
    SESSION = "session"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class SessionPrincipal:
    identity_id: str
    role: Role
    session_id: UUID
    expires_at: datetime
    kind: TokenKind = TokenKind.SESSION


@dataclass(frozen=True)
class GrantPrincipal:
    doctor_id: str
    patient_id: str
    grant_id: UUID
    expires_at: datetime
    kind: TokenKind = TokenKind.EMERGENCY

    @property
    def identity_id(self) -> str:
        return self.doctor_id

    @property
    def role(self) -> Role:
        return Role.DOCTOR


Principal = SessionPrincipal | GrantPrincipal


class TokenSigner:
    def __init__(
        self,
        signing_key: MaskedSecret | str,
        issuer: str = "epatient-access",
        clock: Callable[[], datetime] | None = None,
    ):
        if isinstance(signing_key, MaskedSecret):
            signing_key = signing_key.get_value()
        self._key = signing_key
        self._issuer = issuer
        self._clock = clock or (lambda: datetime.now(UTC))

    def _encode(self, claims: dict, issued_at: datetime, expires_at: datetime) -> str:
        payload = {
            **claims,
            "iss": self._issuer,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(payload, self._key, algorithm=JWT_ALGORITHM)

    def mint_session(self, session: UserSession) -> str:
        return self._encode(
            {
                "typ": TokenKind.SESSION.value,
                "sub": session.identity_id,
                "role": session.role.value,
                "sid": str(session.session_id),
            },
            session.issued_at,
            session.expires_at,
        )

    def mint_grant(self, grant: EmergencyGrant) -> str:
        return self._encode(
            {
                "typ": TokenKind.EMERGENCY.value,
                "sub": grant.doctor_id,
                "role": Role.DOCTOR.value,
                "gid": str(grant.grant_id),
                "pid": grant.patient_id,
            },
            grant.granted_at,
            grant.expires_at,
        )

    def decode(self, token: str) -> Principal:
        """Verify signature and expiry and return the principal the token names.

        Expiry is checked against the signer's clock rather than wall time.

        Raises:
            Unauthorized: malformed token, bad signature or unknown kind.
            Expired: the token's ``exp`` has passed.
        """
        if not token:
            raise Unauthorized("Missing token")
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[JWT_ALGORITHM],
                issuer=self._issuer,
                options={"verify_exp": False, "require": REQUIRED_CLAIMS},
            )
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: %s", type(e).__name__)
            raise Unauthorized("Invalid token") from e

        expires_at = datetime.fromtimestamp(claims["exp"], UTC)
        if self._clock() >= expires_at:
            raise Expired("Token has expired")

        try:
            kind = TokenKind(claims["typ"])
            if kind is TokenKind.SESSION:
                return SessionPrincipal(
                    identity_id=claims["sub"],
                    role=Role(claims["role"]),
                    session_id=UUID(claims["sid"]),
                    expires_at=expires_at,
                )
            return GrantPrincipal(
                doctor_id=claims["sub"],
                patient_id=claims["pid"],
                grant_id=UUID(claims["gid"]),
                expires_at=expires_at,
            )
        except (KeyError, ValueError) as e:
            raise Unauthorized("Invalid token") from e
