"""Session management service."""

from intake.models.session import ChatMessage, IntakeSession, utc_now
from intake.models.triage import SessionStatus
from intake.agents.router import initial_medical_data
from intake.config.database import get_sessions_collection
from typing import Optional, List
import uuid
import logging

logger = logging.getLogger(__name__)


class SessionService:
    """Service for managing intake sessions."""

    async def create_session(self, user_id: str, name: Optional[str] = None) -> IntakeSession:
        """
        Create a new intake session starting at the vitals stage.

        Args:
            user_id: User identifier from JWT
            name: Optional display name for the session

        Returns:
            Created IntakeSession
        """
        session = IntakeSession(
            user_id=user_id,
            name=name,
            status=SessionStatus.NOT_STARTED,
            medical_data=initial_medical_data(),
        )
        return await self.insert_session(session)

    async def insert_session(self, session: IntakeSession) -> IntakeSession:
        collection = await get_sessions_collection()
        await collection.insert_one(session.model_dump())

        logger.info(f"Created session {session.session_id} for user {session.user_id}")
        return session

    async def get_session(
        self, session_id: str, user_id: Optional[str] = None
    ) -> Optional[IntakeSession]:
        """
        Get a session by ID.

        Args:
            session_id: Session identifier
            user_id: When given, only a session owned by this user is returned

        Returns:
            IntakeSession or None if not found
        """
        query = {"session_id": session_id}
        if user_id is not None:
            query["user_id"] = user_id

        collection = await get_sessions_collection()
        doc = await collection.find_one(query)

        if doc:
            return IntakeSession(**doc)
        return None

    async def update_session(self, session: IntakeSession) -> bool:
        """
        Write the full session record back.

        Args:
            session: IntakeSession to store

        Returns:
            True if successful
        """
        session = session.model_copy(update={"updated_at": utc_now()})

        collection = await get_sessions_collection()
        result = await collection.update_one(
            {"session_id": session.session_id},
            {"$set": session.model_dump(exclude={"session_id"})},
        )

        if result.modified_count > 0:
            logger.info(f"Updated session {session.session_id}")
            return True
        return False

    async def add_message(self, session_id: str, message: ChatMessage) -> bool:
        """
        Append a message to a session.

        Args:
            session_id: Session identifier
            message: Message to append

        Returns:
            True if successful
        """
        collection = await get_sessions_collection()
        result = await collection.update_one(
            {"session_id": session_id},
            {
                "$push": {"messages": message.model_dump()},
                "$inc": {"message_count": 1},
                "$set": {"updated_at": utc_now()},
            },
        )

        return result.modified_count > 0

    async def get_user_sessions(
        self, user_id: str, limit: int = 10, offset: int = 0
    ) -> List[IntakeSession]:
        collection = await get_sessions_collection()
        cursor = (
            collection.find({"user_id": user_id})
            .sort("created_at", -1)
            .skip(offset)
            .limit(limit)
        )

        sessions = []
        async for doc in cursor:
            sessions.append(IntakeSession(**doc))

        return sessions

    async def reset_session(self, session: IntakeSession, fresh: IntakeSession) -> IntakeSession:
        """
        Abandon ``session`` and store ``fresh`` as a new session for the same user.

        Args:
            session: Session being reset
            fresh: Re-initialized session state

        Returns:
            The newly stored session (with a new session_id)
        """
        collection = await get_sessions_collection()
        await collection.update_one(
            {"session_id": session.session_id},
            {"$set": {"status": SessionStatus.ABANDONED, "updated_at": utc_now()}},
        )
        logger.info(f"Abandoned session {session.session_id} on reset")

        new_session = fresh.model_copy(update={"session_id": str(uuid.uuid4())})
        return await self.insert_session(new_session)

    async def complete_session(self, session_id: str) -> bool:
        """
        Mark a session as ready for booking.

        Args:
            session_id: Session identifier

        Returns:
            True if successful
        """
        collection = await get_sessions_collection()
        result = await collection.update_one(
            {"session_id": session_id},
            {
                "$set": {
                    "status": SessionStatus.READY,
                    "completed_at": utc_now(),
                    "updated_at": utc_now(),
                }
            },
        )

        if result.modified_count > 0:
            logger.info(f"Completed session {session_id}")
            return True
        return False


# Global service instance
_session_service: SessionService = None


def get_session_service() -> SessionService:
    """Get or create SessionService instance."""
    global _session_service
    if _session_service is None:
        _session_service = SessionService()
    return _session_service
