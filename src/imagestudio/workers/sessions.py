"""Per-client studio sessions.

Each browser tab identifies itself with a session id and gets its own slot
state and reference uploads; sessions share only the blob store and the
hosted endpoint.

Sessions are kept in least-recently-used order. Every lookup evicts idle
sessions (no generating slot, no upload in flight) that have not been used
for ``idle_ttl_seconds``, and the oldest idle sessions beyond ``max_sessions``.
Busy sessions are never evicted.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

import structlog

from imagestudio.services.reference_uploads import ReferenceImageTracker
from imagestudio.workers.generation_orchestrator import GenerationOrchestrator

logger = structlog.get_logger(__name__)

DEFAULT_SESSION_ID = "default"


@dataclass
class StudioSession:
    session_id: str
    orchestrator: GenerationOrchestrator
    reference_tracker: ReferenceImageTracker
    last_used: float = field(default=0.0, compare=False)

    @property
    def is_busy(self) -> bool:
        return (
            self.orchestrator.has_active_generations or self.reference_tracker.is_uploading
        )

    def release(self) -> None:
        """Drop slots and references of an idle session."""
        self.orchestrator.clear_all()
        self.reference_tracker.clear()

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()
        await self.reference_tracker.shutdown()


class SessionRegistry:
    """Creates sessions on first use and evicts them once idle."""

    def __init__(
        self,
        orchestrator_factory: Callable[[], GenerationOrchestrator],
        tracker_factory: Callable[[], ReferenceImageTracker],
        idle_ttl_seconds: float = 60 * 60,
        max_sessions: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._orchestrator_factory = orchestrator_factory
        self._tracker_factory = tracker_factory
        self.idle_ttl_seconds = idle_ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: OrderedDict[str, StudioSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str = DEFAULT_SESSION_ID) -> StudioSession:
        now = self._clock()
        session = self._sessions.get(session_id)
        if session is None:
            session = StudioSession(
                session_id=session_id,
                orchestrator=self._orchestrator_factory(),
                reference_tracker=self._tracker_factory(),
            )
            self._sessions[session_id] = session
            logger.info("session.created", session_id=session_id)
        else:
            self._sessions.move_to_end(session_id)
        session.last_used = now

        self.evict_idle(now)
        return session

    def evict_idle(self, now: float | None = None) -> int:
        """Evict expired idle sessions, then idle sessions over capacity.

        Returns:
            Number of sessions evicted
        """
        if now is None:
            now = self._clock()

        evicted = 0
        for session in list(self._sessions.values()):
            if now - session.last_used < self.idle_ttl_seconds:
                # Remaining sessions were used more recently
                break
            if not session.is_busy:
                self._evict(session, reason="idle")
                evicted += 1

        # The most recently used session is never evicted for capacity
        for session in list(self._sessions.values())[:-1]:
            if len(self._sessions) <= self.max_sessions:
                break
            if not session.is_busy:
                self._evict(session, reason="capacity")
                evicted += 1

        return evicted

    def _evict(self, session: StudioSession, reason: str) -> None:
        del self._sessions[session.session_id]
        session.release()
        logger.info(
            "session.evicted",
            session_id=session.session_id,
            reason=reason,
            session_count=len(self._sessions),
        )

    async def shutdown_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.shutdown()
        logger.info("session.shutdown_complete", session_count=len(self._sessions))
        self._sessions.clear()
