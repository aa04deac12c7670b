"""One-time code challenges with expiry, supersession and attempt limits."""

import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from ..config import ChallengeConfig
from ..errors import AlreadyConsumed, Expired, Mismatch, NotFound, ValidationError
from ..models import Challenge, ChallengePurpose, ChallengeState
from ..storage.base import AccessStore

logger = logging.getLogger(__name__)

# How many superseded challenges are checked to tell "replaced" apart from "wrong".
SUPERSEDED_LOOKBACK = 3


@dataclass(frozen=True)
class IssuedChallenge:
    challenge: Challenge
    code: str = field(repr=False)


def default_code_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=2, memory_cost=19456, parallelism=1, hash_len=32, salt_len=16)


class ChallengeStore:
    """Issues and redeems one-time codes.

    Only an argon2 hash of each code is stored. Issuing a code for an
    (identifier, purpose) pair supersedes any code still pending for it, so at
    most one code per pair can ever succeed.
    """

    def __init__(
        self,
        store: AccessStore,
        config: ChallengeConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        hasher: PasswordHasher | None = None,
    ):
        self._store = store
        self._config = config or ChallengeConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._hasher = hasher or default_code_hasher()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self._config.ttl_minutes)

    def _generate_code(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self._config.code_length))

    def _matches(self, challenge: Challenge, code: str) -> bool:
        try:
            return self._hasher.verify(challenge.code_hash, code)
        except (VerificationError, InvalidHashError):
            return False

    async def issue(self, identifier: str, purpose: ChallengePurpose) -> IssuedChallenge:
        if not identifier or not identifier.strip():
            raise ValidationError("Identifier is required")

        code = self._generate_code()
        now = self._clock()
        challenge = Challenge(
            challenge_id=uuid4(),
            identifier=identifier.strip(),
            purpose=purpose,
            code_hash=self._hasher.hash(code),
            state=ChallengeState.PENDING,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        await self._store.replace_challenge(challenge)
        logger.info("Issued %s challenge %s", purpose.value, challenge.challenge_id)
        return IssuedChallenge(challenge=challenge, code=code)

    async def redeem(self, identifier: str, code: str, purpose: ChallengePurpose) -> Challenge:
        """Check ``code`` against the latest challenge and mark it consumed.

        Raises:
            ValidationError: code is empty.
            NotFound: no outstanding challenge for the pair.
            Expired: past its TTL, out of attempts, or the code was superseded.
            Mismatch: wrong code; one attempt is used up.
            AlreadyConsumed: the code was already used, possibly by a concurrent caller.
        """
        if not code or not code.strip():
            raise ValidationError("Code is required")
        code = code.strip()

        challenges = await self._store.list_challenges(identifier.strip(), purpose)
        if not challenges:
            raise NotFound("No code has been requested; request a new code")

        latest = challenges[0]
        now = self._clock()

        if latest.state is ChallengeState.CONSUMED:
            if self._matches(latest, code):
                raise AlreadyConsumed("Code has already been used")
            raise NotFound("No pending code; request a new code")
        if latest.state is ChallengeState.EXHAUSTED:
            raise Expired("Too many incorrect attempts; request a new code")
        if latest.state is not ChallengeState.PENDING:
            raise NotFound("No pending code; request a new code")
        if latest.is_expired(now):
            raise Expired("Code has expired; request a new code")

        if not self._matches(latest, code):
            superseded = [c for c in challenges[1:] if c.state is ChallengeState.SUPERSEDED]
            if any(self._matches(c, code) for c in superseded[:SUPERSEDED_LOOKBACK]):
                raise Expired("Code was replaced by a newer one")

            updated = await self._store.record_failed_attempt(
                latest.challenge_id, self._config.max_attempts
            )
            attempts = updated.attempts if updated else self._config.max_attempts
            remaining = max(0, self._config.max_attempts - attempts)
            logger.info(
                "Wrong code for challenge %s (%d attempts remaining)",
                latest.challenge_id,
                remaining,
            )
            raise Mismatch(f"Incorrect code, {remaining} attempts remaining")

        if not await self._store.consume_challenge(latest.challenge_id, now):
            raise AlreadyConsumed("Code has already been used")

        logger.info("Challenge %s consumed", latest.challenge_id)
        return replace(latest, state=ChallengeState.CONSUMED, consumed_at=now)

    async def consume(self, identifier: str, code: str, purpose: ChallengePurpose) -> bool:
        """Atomic check-and-mark; True for exactly one caller holding the valid code."""
        try:
            await self.redeem(identifier, code, purpose)
        except (NotFound, Expired, Mismatch, AlreadyConsumed, ValidationError):
            return False
        return True

    async def purge_expired(self, now: datetime | None = None) -> int:
        removed = await self._store.delete_expired_challenges(now or self._clock())
        if removed:
            logger.info("Removed %d expired challenges", removed)
        return removed
