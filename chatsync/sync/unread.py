import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from chatsync.schemas.message import ConversationKind, ConversationRef, Message, UnreadCounts
from chatsync.sync.errors import RecomputeFailure
from chatsync.sync.interfaces import UnreadCounter
from chatsync.sync.watermarks import ReadWatermarkTracker


logger = logging.getLogger(__name__)

CountsListener = Callable[[UnreadCounts], object]

COUNTED_KINDS = (ConversationKind.DIRECT, ConversationKind.GROUP)


class UnreadAggregator:
    """
    Cached unread counts per conversation, summed per class and overall.

    `recompute` replaces a count from a full query; `apply_delta` bumps it by one
    per pushed message so the query only has to run on membership changes,
    reconnects and the periodic drift correction. Sector conversations are never
    counted.
    """

    def __init__(self, user_id: str, counter: UnreadCounter, watermarks: ReadWatermarkTracker) -> None:
        self.user_id = user_id
        self._counter = counter
        self._watermarks = watermarks
        self._counts: Dict[ConversationRef, int] = {}
        # ids already inside a count, so redelivered pushes are not counted twice
        self._delta_ids: Dict[ConversationRef, Set[str]] = {}
        # bumped when a count is reset, so a recompute that started earlier is dropped
        self._generation: Dict[ConversationRef, int] = {}
        self._external: Dict[str, int] = {}
        self._listeners: List[CountsListener] = []
        self._last_emitted: Optional[UnreadCounts] = None
        self._pending: Set[asyncio.Task] = set()

    def count(self, ref: ConversationRef) -> int:
        return self._counts.get(ref, 0)

    def conversations(self) -> List[ConversationRef]:
        return list(self._counts)

    async def recompute(self, ref: ConversationRef) -> int:
        if ref.kind not in COUNTED_KINDS:
            return 0
        generation = self._generation.get(ref, 0)
        pushed_before = set(self._delta_ids.get(ref, ()))
        try:
            since = await self._watermarks.get_watermark(ref, self.user_id)
            ids = await self._counter.unread_ids(ref, self.user_id, since)
        except Exception as exc:
            # keep the stale count rather than flashing "all read"
            logger.warning("%s", RecomputeFailure(ref, exc))
            return self._counts.get(ref, 0)
        if self._generation.get(ref, 0) != generation or self._watermarks.peek(ref, self.user_id) > since:
            logger.debug("Dropping recompute of %s, read while it ran", ref)
            return self._counts.get(ref, 0)
        counted = set(ids)
        # pushes handled while the query ran that it did not see
        counted.update(self._delta_ids.get(ref, set()) - pushed_before)
        self._delta_ids[ref] = counted
        self._counts[ref] = len(counted)
        self._emit()
        return len(counted)

    def apply_delta(self, ref: ConversationRef, message: Message) -> bool:
        if ref.kind not in COUNTED_KINDS:
            return False
        if message.sender_id == self.user_id:
            return False
        if message.created_at <= self._watermarks.peek(ref, self.user_id):
            return False
        counted = self._delta_ids.setdefault(ref, set())
        if message.id in counted:
            return False
        counted.add(message.id)
        self._counts[ref] = self._counts.get(ref, 0) + 1
        self._emit()
        return True

    def clear(self, ref: ConversationRef) -> None:
        self._generation[ref] = self._generation.get(ref, 0) + 1
        self._delta_ids.pop(ref, None)
        if self._counts.get(ref):
            self._counts[ref] = 0
            self._emit()
        else:
            self._counts.setdefault(ref, 0)

    def forget(self, ref: ConversationRef) -> None:
        self._generation[ref] = self._generation.get(ref, 0) + 1
        self._delta_ids.pop(ref, None)
        if self._counts.pop(ref, None):
            self._emit()

    def set_external(self, name: str, count: int) -> None:
        self._external[name] = max(0, int(count))
        self._emit()

    def total(self, kind: ConversationKind) -> int:
        return sum(count for ref, count in self._counts.items() if ref.kind is kind)

    def grand_total(self) -> int:
        return sum(self.total(kind) for kind in COUNTED_KINDS) + sum(self._external.values())

    def snapshot(self) -> UnreadCounts:
        return UnreadCounts(
            direct=self.total(ConversationKind.DIRECT),
            group=self.total(ConversationKind.GROUP),
            external=sum(self._external.values()),
            total=self.grand_total(),
        )

    def subscribe(self, listener: CountsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _emit(self) -> None:
        counts = self.snapshot()
        if counts == self._last_emitted:
            return
        self._last_emitted = counts
        for listener in list(self._listeners):
            try:
                result = listener(counts)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception:
                logger.exception("Counts listener failed")

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Counts listener failed", exc_info=task.exception())
