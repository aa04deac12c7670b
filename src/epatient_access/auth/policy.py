"""Who may read a patient's records.

Access rules by role:

- PATIENT: only their own records.
- DOCTOR: only patients they hold an ACTIVE emergency grant for.
- OPERATOR: only patients with an encounter at the operator's facility.

``decide`` is a pure function over already-gathered facts. ``can_access``
and ``authorize`` gather those facts from storage on every call, so a grant
revoked or expired a moment ago is never honoured from a cache.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from ..audit.models import AuditAction
from ..audit.trail import AuditTrail
from ..errors import Unauthorized
from ..models import EmergencyGrant, Role
from ..storage.base import AccessStore
from .tokens import GrantPrincipal, Principal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    identity_id: str
    role: Role
    facility_id: str | None = None
    bound_patient_id: str | None = None


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str


def decide(
    actor: Actor,
    target_patient_id: str,
    *,
    active_grants: Iterable[EmergencyGrant] = (),
    facility_member: bool = False,
    now: datetime,
) -> AccessDecision:
    if actor.role is Role.PATIENT:
        if actor.identity_id == target_patient_id:
            return AccessDecision(True, "own record")
        return AccessDecision(False, "patients may only access their own records")

    if actor.role is Role.DOCTOR:
        if actor.bound_patient_id is not None and actor.bound_patient_id != target_patient_id:
            return AccessDecision(False, "emergency token is bound to a different patient")
        for grant in active_grants:
            if (
                grant.doctor_id == actor.identity_id
                and grant.patient_id == target_patient_id
                and grant.is_active(now)
            ):
                return AccessDecision(True, f"emergency grant {grant.grant_id}")
        return AccessDecision(False, "no active emergency grant for this patient")

    if actor.role is Role.OPERATOR:
        if actor.facility_id and facility_member:
            return AccessDecision(True, f"encounter at facility {actor.facility_id}")
        return AccessDecision(False, "patient has no encounter at the operator's facility")

    return AccessDecision(False, "unknown role")


class AccessPolicy:
    def __init__(
        self,
        store: AccessStore,
        audit: AuditTrail,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._audit = audit
        self._clock = clock or (lambda: datetime.now(UTC))

    async def actor_for(self, principal: Principal) -> Actor:
        """Build the acting identity for a validated token."""
        if isinstance(principal, GrantPrincipal):
            return Actor(
                identity_id=principal.doctor_id,
                role=Role.DOCTOR,
                bound_patient_id=principal.patient_id,
            )
        facility_id = None
        if principal.role is Role.OPERATOR:
            identity = await self._store.get_identity(principal.identity_id)
            facility_id = identity.facility_id if identity else None
        return Actor(
            identity_id=principal.identity_id, role=principal.role, facility_id=facility_id
        )

    async def evaluate(self, actor: Actor, target_patient_id: str) -> AccessDecision:
        now = self._clock()
        grants: list[EmergencyGrant] = []
        facility_member = False
        if actor.role is Role.DOCTOR:
            grants = await self._store.find_active_grants(
                actor.identity_id, target_patient_id, now
            )
        elif actor.role is Role.OPERATOR and actor.facility_id:
            facility_member = await self._store.has_encounter_at(
                target_patient_id, actor.facility_id
            )
        return decide(
            actor,
            target_patient_id,
            active_grants=grants,
            facility_member=facility_member,
            now=now,
        )

    async def can_access(
        self, actor: Actor, target_patient_id: str, resource: str = "patient_record"
    ) -> bool:
        return (await self.evaluate(actor, target_patient_id)).allowed

    async def authorize(
        self, actor: Actor, target_patient_id: str, resource: str = "patient_record"
    ) -> AccessDecision:
        """Evaluate, audit the decision, and raise Unauthorized on denial."""
        decision = await self.evaluate(actor, target_patient_id)
        action = (
            AuditAction.PATIENT_DATA_ACCESSED if decision.allowed else AuditAction.PERMISSION_DENIED
        )
        await self._audit.append(
            action,
            actor_id=actor.identity_id,
            actor_role=actor.role,
            patient_id=target_patient_id,
            details={"resource": resource, "decision_reason": decision.reason},
        )
        if not decision.allowed:
            logger.info(
                "Access denied: %s %s -> patient %s (%s)",
                actor.role.value,
                actor.identity_id,
                target_patient_id,
                decision.reason,
            )
            raise Unauthorized("Access to this patient's records is not permitted")
        return decision
