"""Background task that closes expired grants, sessions and challenges.

Nothing depends on the sweeper for correctness: expiry is also evaluated
whenever a grant, session or challenge is read. The sweeper keeps stored
state and the audit trail in step with time.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from .auth.challenges import ChallengeStore
from .auth.session_manager import SessionManager

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


@dataclass(frozen=True)
class SweepResult:
    swept_at: datetime
    grants_expired: int
    sessions_ended: int
    challenges_removed: int

    @property
    def total(self) -> int:
        return self.grants_expired + self.sessions_ended + self.challenges_removed


class ExpirySweeper:
    def __init__(
        self,
        sessions: SessionManager,
        challenges: ChallengeStore,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], datetime] | None = None,
    ):
        self._sessions = sessions
        self._challenges = challenges
        self._interval = interval
        self._clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_result: SweepResult | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_result(self) -> SweepResult | None:
        return self._last_result

    async def run_once(self) -> SweepResult:
        now = self._clock()
        expired = await self._sessions.expire_stale_grants(now)
        ended = await self._sessions.end_expired_sessions(now)
        removed = await self._challenges.purge_expired(now)

        result = SweepResult(
            swept_at=now,
            grants_expired=len(expired),
            sessions_ended=ended,
            challenges_removed=removed,
        )
        self._last_result = result
        if result.total:
            logger.info(
                "Sweep closed %d grants, %d sessions, %d challenges",
                result.grants_expired,
                result.sessions_ended,
                result.challenges_removed,
            )
        return result

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Expiry sweeper started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Expiry sweep failed; retrying next tick")
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
