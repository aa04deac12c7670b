"""Append-only audit trail of authentication events and access decisions."""

import csv
import io
import json
import logging
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from ..models import Role
from .context import get_audit_context
from .integrity import AuditChain, IntegrityReport
from .models import (
    ActorRole,
    AuditAction,
    AuditEntry,
    AuditFilters,
    AuditStats,
    sanitize_details,
)

if TYPE_CHECKING:
    from ..storage.base import AccessStore

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "sequence",
    "created_at",
    "action",
    "actor_id",
    "actor_role",
    "patient_id",
    "details",
    "entry_hash",
]

DENIAL_ACTIONS = {
    AuditAction.LOGIN_FAILED,
    AuditAction.EMERGENCY_ACCESS_DENIED,
    AuditAction.PERMISSION_DENIED,
    AuditAction.BIOMETRIC_VERIFICATION_FAILED,
    AuditAction.REGISTRATION_FAILED,
}


def _json_safe(details: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(details, default=str))


def actor_role_for(role: Role | ActorRole | None) -> ActorRole:
    if role is None:
        return ActorRole.SYSTEM
    if isinstance(role, ActorRole):
        return role
    return ActorRole(role.value)


class AuditTrail:
    """Writes and reads the hash-chained audit trail.

    ``append`` never buffers or drops: if storage rejects the write the error
    propagates, so the enclosing operation fails with it.
    """

    def __init__(
        self,
        store: "AccessStore",
        clock: Callable[[], datetime] | None = None,
        chain: AuditChain | None = None,
        csv_delimiter: str = ",",
    ):
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._chain = chain or AuditChain()
        self._csv_delimiter = csv_delimiter

    async def append(
        self,
        action: AuditAction,
        *,
        actor_id: str | None = None,
        actor_role: Role | ActorRole | None = None,
        patient_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        payload = sanitize_details(details)
        ctx = get_audit_context().as_details()
        if ctx:
            payload["context"] = ctx

        entry = AuditEntry(
            entry_id=uuid4(),
            action=action,
            actor_role=actor_role_for(actor_role),
            created_at=self._clock(),
            actor_id=actor_id,
            patient_id=patient_id,
            details=_json_safe(payload),
        )
        sealed = await self._store.append_audit(entry, self._chain)
        logger.debug("Audit entry %d appended: %s", sealed.sequence, action.value)
        return sealed

    async def query(self, filters: AuditFilters | None = None) -> list[AuditEntry]:
        return await self._store.query_audit(filters or AuditFilters())

    async def export_csv(self, patient_id: str) -> bytes:
        """Flat CSV of every entry concerning ``patient_id``, newest first."""
        entries = await self._store.query_audit(AuditFilters(patient_id=patient_id))

        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=self._csv_delimiter)
        writer.writerow(CSV_COLUMNS)
        for entry in entries:
            writer.writerow(
                [
                    entry.sequence,
                    entry.created_at.isoformat(),
                    entry.action.value,
                    entry.actor_id or "",
                    entry.actor_role.value,
                    entry.patient_id or "",
                    json.dumps(entry.details, sort_keys=True),
                    entry.entry_hash or "",
                ]
            )
        return buffer.getvalue().encode("utf-8")

    async def verify_integrity(self) -> IntegrityReport:
        entries = [entry async for entry in self._store.audit_chain()]
        report = self._chain.verify(entries)
        if report.is_valid:
            logger.info("Audit chain verified: %d entries", report.total_entries)
        else:
            logger.error(
                "Audit chain verification found %d violations", len(report.violations)
            )
        return report

    async def stats(self, patient_id: str | None = None) -> AuditStats:
        entries = await self._store.query_audit(AuditFilters(patient_id=patient_id))
        by_action = Counter(e.action.value for e in entries)
        by_role = Counter(e.actor_role.value for e in entries)
        return AuditStats(
            total=len(entries),
            by_action=dict(by_action),
            by_role=dict(by_role),
            emergency_grants=by_action.get(AuditAction.EMERGENCY_ACCESS.value, 0),
            denials=sum(1 for e in entries if e.action in DENIAL_ACTIONS),
        )
