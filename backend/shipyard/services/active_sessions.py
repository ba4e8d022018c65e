"""
Active Sessions - concurrency ceiling for live /message streams

Each stream owns one row of active_sessions. Rows are deleted when the stream
ends and reaped after SESSION_INACTIVITY_MINUTES without activity. Creation
is refused (never queued) once MAX_ACTIVE_CONNECTIONS live rows exist.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.core.config import settings
from shipyard.core.database import AsyncSessionLocal
from shipyard.core.logging_config import logger
from shipyard.models.active_session import ActiveSession


SessionFactory = Callable[[], AsyncSession]


@dataclass
class SessionGrant:
    """Result of create_or_refresh_session"""
    can_proceed: bool
    session_id: Optional[str] = None
    active_count: int = 0


class ActiveSessionService:
    """
    Session bookkeeping on its own database sessions.

    The cleanup/count/insert sequence spans several awaits, so it runs under
    a lock to keep two requests from both taking the last slot.
    """

    def __init__(
        self,
        session_factory: SessionFactory = AsyncSessionLocal,
        max_connections: Optional[int] = None,
        inactivity_minutes: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.max_connections = max_connections or settings.MAX_ACTIVE_CONNECTIONS
        self.inactivity = timedelta(minutes=inactivity_minutes or settings.SESSION_INACTIVITY_MINUTES)
        self._lock = asyncio.Lock()

    def _cutoff(self) -> datetime:
        return datetime.utcnow() - self.inactivity

    async def create_or_refresh_session(
        self,
        user_id: str,
        trace_id: str,
        application_id: Optional[str] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionGrant:
        async with self._lock:
            await self.cleanup_expired_sessions()

            active = await self.get_active_session_count()
            if active >= self.max_connections:
                logger.warning(
                    f"Active session ceiling reached ({active}/{self.max_connections})",
                    extra={"event_type": "concurrency_rejected", "active_sessions": active}
                )
                return SessionGrant(can_proceed=False, active_count=active)

            # trace ids repeat across iterations, so every request gets its own row
            row = ActiveSession(
                user_id=user_id,
                trace_id=trace_id,
                application_id=application_id,
                request_id=request_id,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:500] or None,
            )
            async with self.session_factory() as db:
                db.add(row)
                await db.commit()

            return SessionGrant(can_proceed=True, session_id=row.id, active_count=active + 1)

    async def update_session_activity(self, session_id: str, trace_id: Optional[str] = None) -> None:
        """Refresh last_active_at; trace_id re-labels a promoted temporary trace"""
        values = {"last_active_at": datetime.utcnow()}
        if trace_id:
            values["trace_id"] = trace_id
        async with self.session_factory() as db:
            await db.execute(update(ActiveSession).where(ActiveSession.id == session_id).values(**values))
            await db.commit()

    async def end_session(self, session_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(delete(ActiveSession).where(ActiveSession.id == session_id))
            await db.commit()

    async def end_sessions_for_trace(self, trace_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(delete(ActiveSession).where(ActiveSession.trace_id == trace_id))
            await db.commit()

    async def cleanup_expired_sessions(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(ActiveSession).where(ActiveSession.last_active_at < self._cutoff())
            )
            await db.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Reaped {removed} inactive session(s)")
        return removed

    async def get_active_session_count(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(ActiveSession.id)).where(ActiveSession.last_active_at > self._cutoff())
            )
            return result.scalar() or 0

    async def get_sessions_for_application(self, application_id: str) -> List[ActiveSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ActiveSession).where(
                    ActiveSession.application_id == application_id,
                    ActiveSession.last_active_at > self._cutoff(),
                )
            )
            return list(result.scalars().all())


class ActiveSessionSweeper:
    """Background task that periodically reaps inactive sessions"""

    def __init__(self, service: ActiveSessionService, interval_seconds: Optional[int] = None):
        self.service = service
        self.interval = interval_seconds or settings.SESSION_CLEANUP_INTERVAL_SECONDS
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self.running:
            logger.warning("[SessionSweeper] Already running")
            return
        self.running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"[SessionSweeper] Started - interval {self.interval}s, window {self.service.inactivity}")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("[SessionSweeper] Stopped")

    async def _cleanup_loop(self):
        while self.running:
            try:
                await self.service.cleanup_expired_sessions()
            except Exception as e:
                logger.error(f"[SessionSweeper] Error in cleanup loop: {e}", exc_info=True)

            await asyncio.sleep(self.interval)


_active_session_service: Optional[ActiveSessionService] = None


def get_active_session_service() -> ActiveSessionService:
    global _active_session_service
    if _active_session_service is None:
        _active_session_service = ActiveSessionService()
    return _active_session_service
