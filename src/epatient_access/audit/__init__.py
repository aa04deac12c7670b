"""Tamper-evident audit trail for access decisions."""

from .context import AuditContext, audit_context, create_cli_context, get_audit_context
from .integrity import AuditChain, IntegrityReport, IntegrityStatus, IntegrityViolation
from .models import (
    ActorRole,
    AuditAction,
    AuditEntry,
    AuditFilters,
    AuditStats,
    mask_identifier,
    sanitize_details,
)
from .trail import AuditTrail

__all__ = [
    "ActorRole",
    "AuditAction",
    "AuditChain",
    "AuditContext",
    "AuditEntry",
    "AuditFilters",
    "AuditStats",
    "AuditTrail",
    "IntegrityReport",
    "IntegrityStatus",
    "IntegrityViolation",
    "audit_context",
    "create_cli_context",
    "get_audit_context",
    "mask_identifier",
    "sanitize_details",
]
