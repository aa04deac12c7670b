"""Credential verification by one-time code or biometric comparison."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from ..errors import NoCandidate, NoMatch, NoReferenceEnrolled, NotFound, ValidationError
from ..models import AccessMethod, BiometricType, ChallengePurpose, Role
from ..storage.base import AccessStore
from .biometrics import BiometricMatcher
from .challenges import ChallengeStore

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.9


@dataclass(frozen=True)
class VerificationResult:
    identity_id: str | None
    method: AccessMethod
    purpose: ChallengePurpose | None = None
    confidence: float | None = None


class CredentialVerifier:
    def __init__(
        self,
        store: AccessStore,
        challenges: ChallengeStore,
        matcher: BiometricMatcher,
        match_threshold: float = DEFAULT_MATCH_THRESHOLD,
    ):
        self._store = store
        self._challenges = challenges
        self._matcher = matcher
        self._threshold = match_threshold

    async def verify_code(
        self, identifier: str, code: str, purpose: ChallengePurpose
    ) -> VerificationResult:
        """Redeem a one-time code and resolve who it was issued to.

        REGISTRATION codes prove control of the identifier only, so the result
        carries no identity id.
        """
        await self._challenges.redeem(identifier, code, purpose)

        if purpose is ChallengePurpose.REGISTRATION:
            return VerificationResult(identity_id=None, method=AccessMethod.OTP, purpose=purpose)

        identity = await self._store.find_identity(identifier.strip())
        if identity is None or not identity.is_active:
            raise NotFound("Account not found")
        return VerificationResult(
            identity_id=identity.identity_id, method=AccessMethod.OTP, purpose=purpose
        )

    async def verify_biometric(
        self, identifier: str, biometric_type: BiometricType, sample: bytes | str
    ) -> VerificationResult:
        identity = await self._store.find_identity(identifier.strip()) if identifier else None
        # Unknown identifiers read as a failed match so callers cannot probe for accounts.
        if identity is None or not identity.is_active:
            raise NoMatch("Biometric verification failed")

        handle = identity.biometric_refs.get(biometric_type)
        if handle is None:
            raise NoReferenceEnrolled(f"No {biometric_type.value.lower()} reference enrolled")

        result = self._matcher.compare(handle, sample)
        if not result.passes(self._threshold):
            logger.info("Biometric %s comparison failed", biometric_type.value)
            raise NoMatch("Biometric verification failed")

        return VerificationResult(
            identity_id=identity.identity_id,
            method=AccessMethod(biometric_type.value),
            confidence=result.confidence,
        )

    async def identify_by_biometric_scan(
        self, biometric_type: BiometricType, sample: bytes | str
    ) -> VerificationResult:
        """Find the enrolled patient whose reference matches ``sample``.

        This is a linear scan over every enrolled reference of the type; cost
        grows with the number of enrolled patients.
        """
        candidates = await self._store.list_biometric_candidates(biometric_type)
        if not candidates:
            raise NoCandidate(f"No patients have a {biometric_type.value.lower()} enrolled")

        for candidate in candidates:
            result = self._matcher.compare(candidate.biometric_refs[biometric_type], sample)
            if result.passes(self._threshold):
                logger.info(
                    "Biometric scan matched over %d candidates", len(candidates)
                )
                return VerificationResult(
                    identity_id=candidate.identity_id,
                    method=AccessMethod(biometric_type.value),
                    confidence=result.confidence,
                )

        raise NoMatch("No enrolled patient matches the biometric sample")

    async def enroll_biometric(
        self, identity_id: str, biometric_type: BiometricType, sample: bytes | str
    ) -> str:
        identity = await self._store.get_identity(identity_id)
        if identity is None:
            raise NotFound("Identity not found")
        if identity.role is not Role.PATIENT:
            raise ValidationError("Only patients can enroll biometric references")

        handle = self._matcher.enroll(sample)
        await self._store.set_biometric_reference(identity_id, biometric_type, handle)
        logger.info("Enrolled %s reference for %s", biometric_type.value, identity_id)
        return handle


class ProofSubject(Enum):
    """Whose identity an authentication method establishes."""

    REQUESTER = "requester"
    PATIENT = "patient"


class AuthMethod(ABC):
    method: AccessMethod
    subject: ProofSubject

    @abstractmethod
    async def verify(self, identifier: str | None, payload: bytes | str) -> str:
        """Verify ``payload`` and return the identity id it proves."""


class OtpMethod(AuthMethod):
    """The requester proves who they are with a code sent to their phone."""

    method = AccessMethod.OTP
    subject = ProofSubject.REQUESTER

    def __init__(
        self,
        verifier: CredentialVerifier,
        purpose: ChallengePurpose = ChallengePurpose.EMERGENCY_ACCESS,
    ):
        self._verifier = verifier
        self._purpose = purpose

    async def verify(self, identifier: str | None, payload: bytes | str) -> str:
        if not identifier:
            raise ValidationError("Identifier is required for code verification")
        try:
            code = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            raise ValidationError("Verification proof is malformed") from e
        result = await self._verifier.verify_code(identifier, code, self._purpose)
        return result.identity_id


class BiometricMethod(AuthMethod):
    """The patient is identified by a biometric sample taken at the bedside.

    With an identifier the sample is checked against that patient's
    reference; without one every enrolled patient is scanned.
    """

    subject = ProofSubject.PATIENT

    def __init__(self, verifier: CredentialVerifier, biometric_type: BiometricType):
        self._verifier = verifier
        self._type = biometric_type
        self.method = AccessMethod(biometric_type.value)

    async def verify(self, identifier: str | None, payload: bytes | str) -> str:
        if identifier:
            result = await self._verifier.verify_biometric(identifier, self._type, payload)
        else:
            result = await self._verifier.identify_by_biometric_scan(self._type, payload)
        return result.identity_id


def default_methods(verifier: CredentialVerifier) -> dict[AccessMethod, AuthMethod]:
    return {
        AccessMethod.OTP: OtpMethod(verifier),
        AccessMethod.FINGERPRINT: BiometricMethod(verifier, BiometricType.FINGERPRINT),
        AccessMethod.IRIS: BiometricMethod(verifier, BiometricType.IRIS),
    }
