import asyncio
import logging
from typing import Dict, Optional, Set

from chatsync.schemas.profile import SenderProfile
from chatsync.sync.errors import EnrichmentFailure
from chatsync.sync.interfaces import ProfileLookup
from chatsync.sync.store import ConversationStore


logger = logging.getLogger(__name__)


class ProfileEnrichmentPatcher:
    """
    Fills in `sender_profile` for messages that arrived without one.

    Lookups are memoized per sender for the lifetime of the store, and concurrent
    requests for the same sender share one in-flight task. A sender whose lookup
    keeps failing is given up on until the conversation is reopened; its messages
    stay on the placeholder identity.
    """

    def __init__(
        self,
        store: ConversationStore,
        lookup: ProfileLookup,
        max_attempts: int = 3,
        retry_delay: float = 0.2,
    ) -> None:
        self._store = store
        self._lookup = lookup
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._profiles: Dict[str, SenderProfile] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._given_up: Set[str] = set()

    def cached(self, sender_id: str) -> Optional[SenderProfile]:
        return self._profiles.get(sender_id)

    def gave_up_on(self, sender_id: str) -> bool:
        return sender_id in self._given_up

    def schedule(self, sender_id: str) -> Optional[asyncio.Task]:
        if sender_id in self._profiles:
            self._store.patch_profile(sender_id, self._profiles[sender_id])
            return None
        if sender_id in self._given_up:
            return None
        task = self._inflight.get(sender_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch(sender_id))
            self._inflight[sender_id] = task
            task.add_done_callback(lambda _t, s=sender_id: self._inflight.pop(s, None))
        return task

    async def resolve(self, sender_id: str) -> Optional[SenderProfile]:
        if sender_id in self._profiles:
            return self._profiles[sender_id]
        task = self.schedule(sender_id)
        if task is None:
            return self._profiles.get(sender_id)
        return await task

    def close(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

    async def _fetch(self, sender_id: str) -> Optional[SenderProfile]:
        for attempt in range(1, self._max_attempts + 1):
            try:
                profile = await self._lookup_once(sender_id)
            except EnrichmentFailure as exc:
                logger.warning("%s", exc)
                if not exc.retryable:
                    break
            else:
                self._profiles[sender_id] = profile
                if not self._store.closed:
                    self._store.patch_profile(sender_id, profile)
                return profile
            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_delay * attempt)
        self._given_up.add(sender_id)
        logger.info("Giving up on profile %s after %d attempt(s)", sender_id, attempt)
        return None

    async def _lookup_once(self, sender_id: str) -> SenderProfile:
        try:
            profile = await self._lookup.get_profile(sender_id)
        except Exception as exc:
            raise EnrichmentFailure(sender_id, str(exc) or type(exc).__name__) from exc
        if profile is None:
            raise EnrichmentFailure(sender_id, "not found", retryable=False)
        return profile
