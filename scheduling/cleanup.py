"""
Idle cleanup.

The only path to ABANDONED: active conversations idle past the cutoff,
outside the exempt stages, are deactivated in one bulk update that also
bumps their version.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.flows.engine import CLEANUP_EXEMPT_STAGES
from database.repositories import ConversationRepository

logger = logging.getLogger(__name__)


class IdleCleanup:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cutoff_hours: int = 24):
        self.session_factory = session_factory
        self.cutoff = timedelta(hours=cutoff_hours)

    async def run(self, now: Optional[datetime] = None) -> int:
        """Abandon idle conversations. Returns how many were swept."""
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            swept = await ConversationRepository(session).abandon_idle(
                now - self.cutoff, [s.value for s in CLEANUP_EXEMPT_STAGES]
            )
            await session.commit()
        if swept:
            logger.info(f"Idle cleanup abandoned {swept} conversation(s)")
        return swept
