"""Audit trail records and the redaction applied before anything is stored."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

SECRET_PATTERNS = [
    "otp",
    "code",
    "sample",
    "proof",
    "token",
    "secret",
    "password",
    "template",
    "signature",
]

IDENTIFIER_PATTERNS = [
    "mobile",
    "email",
    "identifier",
]

REDACTED = "[REDACTED]"


class AuditAction(Enum):
    LOGIN = "LOGIN"
    OPERATOR_LOGIN = "OPERATOR_LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    PATIENT_REGISTRATION = "PATIENT_REGISTRATION"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    OTP_GENERATED = "OTP_GENERATED"
    BIOMETRIC_REGISTRATION = "BIOMETRIC_REGISTRATION"
    BIOMETRIC_VERIFICATION_FAILED = "BIOMETRIC_VERIFICATION_FAILED"
    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"
    EMERGENCY_ACCESS_DENIED = "EMERGENCY_ACCESS_DENIED"
    EMERGENCY_SESSION_REVOKED = "EMERGENCY_SESSION_REVOKED"
    EMERGENCY_SESSION_EXPIRED = "EMERGENCY_SESSION_EXPIRED"
    PATIENT_DATA_ACCESSED = "PATIENT_DATA_ACCESSED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ENCOUNTER_CREATED = "ENCOUNTER_CREATED"
    DOCUMENT_UPLOADED = "DOCUMENT_UPLOADED"


class ActorRole(Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    OPERATOR = "OPERATOR"
    SYSTEM = "SYSTEM"


def mask_identifier(value: str) -> str:
    """Keep just enough of a mobile number or email to correlate entries."""
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) <= 4:
        return "*" * len(value)
    return f"{value[:2]}{'*' * (len(value) - 4)}{value[-2:]}"


def sanitize_details(details: dict[str, Any] | None) -> dict[str, Any]:
    """Redact secrets and mask contact identifiers in an audit payload.

    Keys are matched case-insensitively against ``SECRET_PATTERNS`` (value
    replaced outright) and ``IDENTIFIER_PATTERNS`` (value partially masked).
    Nested dicts and lists of dicts are sanitized recursively.
    """
    if not details:
        return {}

    sanitized: dict[str, Any] = {}
    for key, value in details.items():
        key_lower = key.lower()
        if any(pattern in key_lower for pattern in SECRET_PATTERNS):
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = sanitize_details(value)
        elif isinstance(value, list):
            sanitized[key] = [sanitize_details(v) if isinstance(v, dict) else v for v in value]
        elif isinstance(value, str) and any(p in key_lower for p in IDENTIFIER_PATTERNS):
            sanitized[key] = mask_identifier(value)
        else:
            sanitized[key] = value
    return sanitized


@dataclass(frozen=True)
class AuditEntry:
    """One sealed, immutable line of the audit trail."""

    entry_id: UUID
    action: AuditAction
    actor_role: ActorRole
    created_at: datetime
    actor_id: str | None = None
    patient_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    sequence: int | None = None
    previous_hash: str | None = None
    entry_hash: str | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "AuditEntry":
        return cls(
            entry_id=row["entry_id"],
            action=AuditAction(row["action"]),
            actor_role=ActorRole(row["actor_role"]),
            created_at=row["created_at"],
            actor_id=row.get("actor_id"),
            patient_id=row.get("patient_id"),
            details=row.get("details") or {},
            sequence=row.get("sequence"),
            previous_hash=row.get("previous_hash"),
            entry_hash=row.get("entry_hash"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": str(self.entry_id),
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
            "action": self.action.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value,
            "patient_id": self.patient_id,
            "details": self.details,
            "entry_hash": self.entry_hash,
        }


@dataclass
class AuditFilters:
    """Independent, AND-combined filters for audit queries."""

    patient_id: str | None = None
    actor_id: str | None = None
    actor_role: ActorRole | None = None
    action: AuditAction | None = None
    start: datetime | None = None
    end: datetime | None = None
    search: str | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, entry: AuditEntry) -> bool:
        if self.patient_id is not None and entry.patient_id != self.patient_id:
            return False
        if self.actor_id is not None and entry.actor_id != self.actor_id:
            return False
        if self.actor_role is not None and entry.actor_role is not self.actor_role:
            return False
        if self.action is not None and entry.action is not self.action:
            return False
        if self.start is not None and entry.created_at < self.start:
            return False
        if self.end is not None and entry.created_at > self.end:
            return False
        if self.search:
            haystack = json.dumps(entry.details, default=str).lower()
            if self.search.lower() not in haystack:
                return False
        return True


@dataclass
class AuditStats:
    total: int
    by_action: dict[str, int]
    by_role: dict[str, int]
    emergency_grants: int
    denials: int
