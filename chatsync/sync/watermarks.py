import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from chatsync.schemas.message import EPOCH, ConversationRef, as_utc, utcnow
from chatsync.sync.interfaces import WatermarkStore


logger = logging.getLogger(__name__)


class ReadWatermarkTracker:

    def __init__(self, store: WatermarkStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock
        self._cache: Dict[Tuple[ConversationRef, str], datetime] = {}

    def peek(self, ref: ConversationRef, user_id: str) -> datetime:
        return self._cache.get((ref, user_id), EPOCH)

    async def get_watermark(self, ref: ConversationRef, user_id: str) -> datetime:
        key = (ref, user_id)
        if key in self._cache:
            return self._cache[key]
        stored = await self._store.get(ref, user_id)
        value = as_utc(stored) if stored is not None else EPOCH
        # a mark_read may have landed while we were loading
        self._cache[key] = max(value, self._cache.get(key, EPOCH))
        return self._cache[key]

    async def mark_read(self, ref: ConversationRef, user_id: str, at: Optional[datetime] = None) -> datetime:
        at = as_utc(at) if at is not None else self._clock()
        key = (ref, user_id)
        current = await self.get_watermark(ref, user_id)
        # never moves backwards, whichever of two concurrent calls lands last
        if at <= current:
            return current
        self._cache[key] = at
        stored = as_utc(await self._store.advance(ref, user_id, at))
        if stored > self._cache[key]:
            self._cache[key] = stored
        logger.debug("Watermark for %s/%s -> %s", ref, user_id, self._cache[key].isoformat())
        return self._cache[key]

    async def mark_all_read(self, refs: Iterable[ConversationRef], user_id: str) -> List[datetime]:
        at = self._clock()
        return [await self.mark_read(ref, user_id, at) for ref in refs]
