import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from api.models import LocationFix, Session, SessionContext, utc_now
from lib.database import Database

logger = logging.getLogger(__name__)

class SessionService:
    """Rolling conversation window and last known position per sender.

    A session that has not been touched for ``timeout_minutes`` reads as
    absent; rows are only removed by ``clear_expired_sessions``.
    """

    def __init__(
        self,
        db: Database,
        timeout_minutes: int = 30,
        max_messages: int = 3,
        location_max_age_hours: int = 24,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db
        self.timeout = timedelta(minutes=timeout_minutes)
        self.max_messages = max_messages
        self.location_max_age = timedelta(hours=location_max_age_hours)
        self.clock = clock

    def _is_expired(self, session: Session) -> bool:
        return self.clock() - session.updated_at > self.timeout

    async def get_session(self, phone_number: str) -> Optional[Session]:
        """Current session, or None when there is none or it timed out"""
        row = await self.db.get_latest_session(phone_number)
        if not row:
            return None

        session = Session(**row)
        if self._is_expired(session):
            logger.debug(f"Session {session.id} for {phone_number} expired")
            return None
        return session

    async def get_context(self, phone_number: str) -> SessionContext:
        session = await self.get_session(phone_number)
        if not session:
            return SessionContext()
        return SessionContext(messages=session.messages, last_ai_response=session.last_ai_response)

    async def update_session(self, phone_number: str, message: Optional[str], ai_response: str) -> None:
        """Record one exchange.

        ``message=None`` only replaces the last reply (MORE expansions). A new
        session is started when there is no current one and a message is given.
        """
        now = self.clock().isoformat()
        session = await self.get_session(phone_number)

        if not session:
            if message is None:
                logger.info(f"No active session for {phone_number}, nothing to update")
                return
            await self.db.insert_session({
                'phone_number': phone_number,
                'messages': [message],
                'last_ai_response': ai_response,
                'created_at': now,
                'updated_at': now
            })
            logger.info(f"Started new session for {phone_number}")
            return

        messages = list(session.messages)
        if message is not None:
            messages.append(message)
            messages = messages[-self.max_messages:]

        await self.db.update_session(session.id, {
            'messages': messages,
            'last_ai_response': ai_response,
            'updated_at': now
        })

    async def save_location(self, phone_number: str, lat: float, lon: float) -> None:
        await self.db.upsert_location_fix({
            'phone_number': phone_number,
            'lat': lat,
            'lon': lon,
            'captured_at': self.clock().isoformat()
        })
        logger.info(f"Saved location for {phone_number}: {lat}, {lon}")

    async def get_last_location(self, phone_number: str) -> Optional[LocationFix]:
        row = await self.db.get_location_fix(phone_number)
        if not row:
            return None

        fix = LocationFix(**row)
        if self.clock() - fix.captured_at > self.location_max_age:
            logger.debug(f"Location fix for {phone_number} is older than {self.location_max_age}")
            return None
        return fix

    async def clear_expired_sessions(self) -> int:
        cutoff = (self.clock() - self.timeout).isoformat()
        deleted = await self.db.delete_sessions_before(cutoff)
        logger.info(f"Cleared {deleted} expired sessions")
        return deleted
