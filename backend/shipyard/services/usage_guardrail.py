"""
Usage Guardrail
===============
Daily message quota, app creation limits and the concurrency ceiling.

Quota window: the UTC calendar day. Usage is the number of user prompts
stored for the caller's applications since the last UTC midnight, and the
quota resets at the next UTC midnight.

Every check fails open: if the database cannot answer, the request is let
through and the failure is logged.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.core.config import settings
from shipyard.core.logging_config import logger
from shipyard.core.security import UserIdentity
from shipyard.models.application import Application
from shipyard.models.message_limit import CustomMessageLimit
from shipyard.models.prompt import Prompt, PromptKind
from shipyard.services.active_sessions import ActiveSessionService


def utc_day_start(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def next_reset_time(now: Optional[datetime] = None) -> datetime:
    return utc_day_start(now) + timedelta(days=1)


@dataclass
class UsageCheck:
    """Result of a daily quota check, including the response headers"""
    allowed: bool
    limit: int
    usage: int
    reset_at: datetime
    reason: Optional[str] = None

    @property
    def remaining(self) -> int:
        """Messages left after the one being sent, never negative"""
        return max(0, self.limit - self.usage - 1)

    @property
    def reset_iso(self) -> str:
        return self.reset_at.replace(tzinfo=timezone.utc).isoformat()

    def build_headers(self, reserve: bool = True) -> Dict[str, str]:
        """x-dailylimit-* headers; reserve counts the message being sent"""
        pending = 1 if reserve and self.allowed else 0
        return {
            "x-dailylimit-limit": str(self.limit),
            "x-dailylimit-remaining": str(self.remaining if reserve else max(0, self.limit - self.usage)),
            "x-dailylimit-usage": str(self.usage + pending),
            "x-dailylimit-reset": self.reset_iso,
        }

    @property
    def headers(self) -> Dict[str, str]:
        return self.build_headers()


@dataclass
class AppsLimitCheck:
    allowed: bool
    scope: Optional[str] = None  # "user" or "platform"
    limit: Optional[int] = None
    current_usage: int = 0
    reason: Optional[str] = None


class UsageGuardrail:
    """Gatekeeper run before any upstream call"""

    def __init__(self, db: AsyncSession, sessions: Optional[ActiveSessionService] = None):
        self.db = db
        self.sessions = sessions

    async def get_daily_limit(self, user_id: str) -> int:
        result = await self.db.execute(
            select(CustomMessageLimit.daily_limit).where(CustomMessageLimit.user_id == user_id)
        )
        override = result.scalar_one_or_none()
        return override if override is not None else settings.DAILY_MESSAGE_LIMIT

    async def get_usage_today(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Prompt.id))
            .join(Application, Prompt.app_id == Application.id)
            .where(
                Application.owner_id == user_id,
                Prompt.kind == PromptKind.USER.value,
                Prompt.created_at >= utc_day_start(),
            )
        )
        return result.scalar() or 0

    async def check_and_reserve(self, user: UserIdentity) -> UsageCheck:
        """
        Check the caller's daily quota.

        The returned headers already count the message being sent.
        """
        reset_at = next_reset_time()
        limit = settings.DAILY_MESSAGE_LIMIT

        try:
            limit = await self.get_daily_limit(user.user_id)
            usage = await self.get_usage_today(user.user_id)
        except Exception as e:
            logger.error(f"Error checking daily message limit for user {user.user_id}: {e}")
            await self._reset_session()
            return UsageCheck(allowed=True, limit=limit, usage=0, reset_at=reset_at)

        if user.is_elevated:
            return UsageCheck(allowed=True, limit=limit, usage=usage, reset_at=reset_at)

        if usage >= limit:
            logger.warning(f"Daily message limit reached for user {user.user_id} ({usage}/{limit})")
            return UsageCheck(
                allowed=False,
                limit=limit,
                usage=usage,
                reset_at=reset_at,
                reason=f"Daily message limit of {limit} reached",
            )

        return UsageCheck(allowed=True, limit=limit, usage=usage, reset_at=reset_at)

    async def check_apps_limit(self, user: UserIdentity) -> AppsLimitCheck:
        """Per-user live app cap and platform-wide daily creation cap, for new builds"""
        if user.is_elevated:
            return AppsLimitCheck(allowed=True)

        try:
            result = await self.db.execute(
                select(func.count(Application.id)).where(
                    Application.owner_id == user.user_id,
                    Application.deleted_at.is_(None),
                )
            )
            user_apps = result.scalar() or 0
            if user_apps >= settings.USER_APPS_LIMIT:
                return AppsLimitCheck(
                    allowed=False,
                    scope="user",
                    limit=settings.USER_APPS_LIMIT,
                    current_usage=user_apps,
                    reason=f"You have reached the limit of {settings.USER_APPS_LIMIT} apps",
                )

            result = await self.db.execute(
                select(func.count(Application.id)).where(Application.created_at >= utc_day_start())
            )
            platform_apps = result.scalar() or 0
            if platform_apps >= settings.DAILY_APPS_LIMIT:
                return AppsLimitCheck(
                    allowed=False,
                    scope="platform",
                    limit=settings.DAILY_APPS_LIMIT,
                    current_usage=platform_apps,
                    reason="The platform has reached its daily app creation limit",
                )
        except Exception as e:
            logger.error(f"Error checking apps limit for user {user.user_id}: {e}")
            await self._reset_session()
            return AppsLimitCheck(allowed=True)

        return AppsLimitCheck(allowed=True, current_usage=user_apps)

    async def check_concurrency(self) -> bool:
        """Non-blocking: False as soon as the ceiling is reached"""
        if self.sessions is None:
            return True
        try:
            active = await self.sessions.get_active_session_count()
        except Exception as e:
            logger.error(f"Error counting active sessions: {e}")
            return True
        return active < self.sessions.max_connections

    async def _reset_session(self) -> None:
        try:
            await self.db.rollback()
        except Exception as e:
            logger.debug(f"Rollback after failed limit query also failed: {e}")
