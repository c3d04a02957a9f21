import asyncio
import itertools
import logging
from datetime import timedelta
from typing import Callable, List, Optional, Set, Tuple

from chatsync.schemas.message import ConversationRef, Message
from chatsync.schemas.profile import SenderProfile


logger = logging.getLogger(__name__)

MessagesListener = Callable[[List[Message]], object]

INSERTED = "inserted"
MERGED = "merged"
DUPLICATE = "duplicate"


class ConversationStore:
    """
    Ordered in-memory log of one open conversation.

    Entries are kept sorted by (created_at, insertion sequence). A provisional
    entry that is merged with its authoritative row keeps its sequence number,
    so messages sharing a timestamp never swap places.

    Matching an incoming row against the log (strongest first):
      1. same id - redelivery, nothing to do
      2. same client_message_id as a provisional entry
      3. rows without a client_message_id only: provisional entry with the same
         sender and content created within `dedup_window` of the row
    """

    def __init__(self, ref: ConversationRef, dedup_window: timedelta = timedelta(seconds=5)) -> None:
        self.ref = ref
        self.dedup_window = dedup_window
        self.closed = False
        self._entries: List[Tuple[int, Message]] = []
        self._seq = itertools.count()
        self._listeners: List[MessagesListener] = []
        self._pending: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: str) -> bool:
        return self._index_of(message_id) is not None

    def messages(self) -> List[Message]:
        return [message for _, message in self._entries]

    def get(self, message_id: str) -> Optional[Message]:
        index = self._index_of(message_id)
        return None if index is None else self._entries[index][1]

    def insert(self, message: Message) -> Message:
        self._entries.append((next(self._seq), message))
        self._changed()
        return message

    def merge(self, incoming: Message) -> Tuple[str, Message]:
        """Insert `incoming` or fold it into the entry it duplicates."""
        existing = self.get(incoming.id)
        if existing is not None:
            return DUPLICATE, existing

        index = self.find_provisional(incoming)
        if index is None:
            return INSERTED, self.insert(incoming)

        seq, provisional = self._entries[index]
        merged = incoming
        if incoming.sender_profile is None and provisional.sender_profile is not None:
            merged = incoming.model_copy(update={"sender_profile": provisional.sender_profile})
        self._entries[index] = (seq, merged)
        logger.debug("Reconciled %s -> %s in %s", provisional.id, merged.id, self.ref)
        self._changed()
        return MERGED, merged

    def find_provisional(self, incoming: Message) -> Optional[int]:
        if incoming.client_message_id:
            for index, (_, message) in enumerate(self._entries):
                if message.is_provisional and message.client_message_id == incoming.client_message_id:
                    return index
            return None
        for index, (_, message) in enumerate(self._entries):
            if (
                message.is_provisional
                and message.sender_id == incoming.sender_id
                and message.content == incoming.content
                and abs(message.created_at - incoming.created_at) <= self.dedup_window
            ):
                return index
        return None

    def remove(self, message_id: str) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        del self._entries[index]
        self._changed()
        return True

    def patch_profile(self, sender_id: str, profile: SenderProfile) -> int:
        patched = 0
        for index, (seq, message) in enumerate(self._entries):
            if message.sender_id == sender_id and message.sender_profile is None:
                self._entries[index] = (seq, message.model_copy(update={"sender_profile": profile}))
                patched += 1
        if patched:
            self._changed()
        return patched

    def subscribe(self, listener: MessagesListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def close(self) -> None:
        self.closed = True
        self._entries = []
        self._listeners = []

    def _index_of(self, message_id: str) -> Optional[int]:
        for index, (_, message) in enumerate(self._entries):
            if message.id == message_id:
                return index
        return None

    def _changed(self) -> None:
        self._entries.sort(key=lambda entry: (entry[1].created_at, entry[0]))
        if not self._listeners:
            return
        snapshot = self.messages()
        for listener in list(self._listeners):
            try:
                result = listener(snapshot)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception:
                logger.exception("Messages listener failed for %s", self.ref)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Messages listener failed for %s", self.ref, exc_info=task.exception())
