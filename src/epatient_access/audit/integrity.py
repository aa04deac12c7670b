"""SHA-256 hash chain sealing and verification for audit entries."""

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum

from .models import AuditEntry


class IntegrityStatus(Enum):
    VALID = "valid"
    CHAIN_BROKEN = "chain_broken"
    HASH_MISMATCH = "hash_mismatch"
    SEQUENCE_GAP = "sequence_gap"


@dataclass
class IntegrityViolation:
    sequence: int | None
    entry_id: str
    status: IntegrityStatus
    expected_hash: str | None = None
    actual_hash: str | None = None
    message: str = ""


@dataclass
class IntegrityReport:
    total_entries: int
    verified_entries: int
    violations: list[IntegrityViolation] = field(default_factory=list)
    first_entry_hash: str | None = None
    last_entry_hash: str | None = None
    verification_time: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_valid(self) -> bool:
        return len(self.violations) == 0

    def to_dict(self) -> dict:
        return {
            "total_entries": self.total_entries,
            "verified_entries": self.verified_entries,
            "is_valid": self.is_valid,
            "violation_count": len(self.violations),
            "violations": [
                {
                    "sequence": v.sequence,
                    "entry_id": v.entry_id,
                    "status": v.status.value,
                    "message": v.message,
                }
                for v in self.violations[:100]
            ],
            "first_entry_hash": self.first_entry_hash,
            "last_entry_hash": self.last_entry_hash,
            "verification_time": self.verification_time.isoformat(),
        }


class AuditChain:
    """Links each audit entry to its predecessor by hash.

    Altering, removing or reordering any stored entry changes every hash after
    it, which ``verify`` reports.
    """

    GENESIS_HASH = "0" * 64

    def compute_entry_hash(self, entry: AuditEntry, previous_hash: str) -> str:
        hash_input = {
            "sequence": entry.sequence,
            "entry_id": str(entry.entry_id),
            "created_at": entry.created_at.isoformat(),
            "action": entry.action.value,
            "actor_id": entry.actor_id,
            "actor_role": entry.actor_role.value,
            "patient_id": entry.patient_id,
            "details": entry.details,
            "previous_hash": previous_hash,
        }
        canonical = json.dumps(hash_input, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def seal(self, entry: AuditEntry, previous_hash: str, sequence: int) -> AuditEntry:
        """Assign the next sequence number and chain hashes to a draft entry."""
        numbered = replace(entry, sequence=sequence, previous_hash=previous_hash)
        return replace(numbered, entry_hash=self.compute_entry_hash(numbered, previous_hash))

    def verify(self, entries: Iterable[AuditEntry]) -> IntegrityReport:
        """Recompute the chain over entries given in ascending sequence order."""
        violations: list[IntegrityViolation] = []
        expected_previous = self.GENESIS_HASH
        expected_sequence = 1
        total = 0
        verified = 0
        first_hash = None
        last_hash = None

        for entry in entries:
            total += 1
            if first_hash is None:
                first_hash = entry.entry_hash
            last_hash = entry.entry_hash
            ok = True

            if entry.sequence != expected_sequence:
                violations.append(
                    IntegrityViolation(
                        sequence=entry.sequence,
                        entry_id=str(entry.entry_id),
                        status=IntegrityStatus.SEQUENCE_GAP,
                        message=f"Expected sequence {expected_sequence}, found {entry.sequence}",
                    )
                )
                ok = False

            if entry.previous_hash != expected_previous:
                violations.append(
                    IntegrityViolation(
                        sequence=entry.sequence,
                        entry_id=str(entry.entry_id),
                        status=IntegrityStatus.CHAIN_BROKEN,
                        expected_hash=expected_previous,
                        actual_hash=entry.previous_hash,
                        message="Previous hash does not link to the preceding entry",
                    )
                )
                ok = False

            recomputed = self.compute_entry_hash(entry, entry.previous_hash or "")
            if recomputed != entry.entry_hash:
                violations.append(
                    IntegrityViolation(
                        sequence=entry.sequence,
                        entry_id=str(entry.entry_id),
                        status=IntegrityStatus.HASH_MISMATCH,
                        expected_hash=recomputed,
                        actual_hash=entry.entry_hash,
                        message="Entry content does not match its stored hash",
                    )
                )
                ok = False

            if ok:
                verified += 1
            expected_previous = entry.entry_hash or ""
            expected_sequence = (entry.sequence or expected_sequence) + 1

        return IntegrityReport(
            total_entries=total,
            verified_entries=verified,
            violations=violations,
            first_entry_hash=first_hash,
            last_entry_hash=last_hash,
        )
