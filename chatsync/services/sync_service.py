import asyncio
import logging
from typing import Callable, Dict, Optional

from chatsync.config import Settings, get_settings
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.group_repository import GroupRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.profile_repository import ProfileRepository
from chatsync.repositories.watermark_repository import WatermarkRepository
from chatsync.schemas.profile import SenderProfile
from chatsync.services.permissions import MembershipPermission
from chatsync.sync.session import SyncSession


logger = logging.getLogger(__name__)


class SyncService:
    """
    Keeps one SyncSession per connected profile.

    Sessions are reference counted. Every open WebSocket and every in-flight
    HTTP request holds one reference. When the last WebSocket goes away the
    session stops at once; after an HTTP request it lingers for
    `idle_seconds` so follow-up calls find the same conversations open.
    """

    def __init__(
        self,
        session_factory: Callable[[SenderProfile], SyncSession],
        profiles,
        idle_seconds: float = 0.0,
    ) -> None:
        self._session_factory = session_factory
        self._profiles = profiles
        self.idle_seconds = idle_seconds
        self._sessions: Dict[str, SyncSession] = {}
        self._refs: Dict[str, int] = {}
        self._expiry: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_database(cls, db, bus, settings: Optional[Settings] = None) -> "SyncService":
        settings = settings or get_settings()
        messages = MessageRepository(db, bus)
        watermarks = WatermarkRepository(db)
        profiles = ProfileRepository(db)
        groups = GroupRepository(db, bus)
        conversations = ConversationRepository(db)
        permissions = MembershipPermission(groups)

        def factory(profile: SenderProfile) -> SyncSession:
            return SyncSession(
                profile,
                messages=messages,
                watermarks=watermarks,
                profiles=profiles,
                memberships=groups,
                conversations=conversations,
                permissions=permissions,
                bus=bus,
                settings=settings,
            )

        return cls(factory, profiles, idle_seconds=settings.SESSION_IDLE_SECONDS)

    def get(self, user_id: str) -> Optional[SyncSession]:
        return self._sessions.get(user_id)

    async def acquire(self, user_id: str) -> SyncSession:
        async with self._lock:
            expiry = self._expiry.pop(user_id, None)
            if expiry is not None:
                expiry.cancel()
            session = self._sessions.get(user_id)
            if session is None:
                profile = await self._profiles.get_profile(user_id)
                if profile is None:
                    raise LookupError(f"Unknown profile {user_id}")
                session = self._session_factory(profile)
                await session.start()
                self._sessions[user_id] = session
            self._refs[user_id] = self._refs.get(user_id, 0) + 1
            return session

    async def release(self, user_id: str, linger: bool = False) -> None:
        async with self._lock:
            remaining = self._refs.get(user_id, 0) - 1
            if remaining > 0:
                self._refs[user_id] = remaining
                return
            self._refs.pop(user_id, None)
            if linger and self.idle_seconds > 0 and user_id in self._sessions:
                self._expiry[user_id] = asyncio.create_task(self._expire(user_id))
                return
            session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.stop()

    async def _expire(self, user_id: str) -> None:
        await asyncio.sleep(self.idle_seconds)
        async with self._lock:
            if self._expiry.get(user_id) is not asyncio.current_task():
                return
            del self._expiry[user_id]
            if self._refs.get(user_id):
                return
            session = self._sessions.pop(user_id, None)
        if session is not None:
            logger.debug("Idle session for %s expired", user_id)
            await session.stop()

    async def shutdown(self) -> None:
        for task in self._expiry.values():
            task.cancel()
        self._expiry.clear()
        for user_id in list(self._sessions):
            session = self._sessions.pop(user_id)
            await session.stop()
        self._refs.clear()
        logger.info("Sync service stopped")
