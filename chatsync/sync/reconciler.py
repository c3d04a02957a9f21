import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from chatsync.schemas.message import Message
from chatsync.sync.enrichment import ProfileEnrichmentPatcher
from chatsync.sync.interfaces import HistorySource
from chatsync.sync.store import INSERTED, ConversationStore


logger = logging.getLogger(__name__)


class PushReconciler:

    def __init__(
        self,
        store: ConversationStore,
        viewer_id: str,
        history: HistorySource,
        enricher: Optional[ProfileEnrichmentPatcher] = None,
    ) -> None:
        self.store = store
        self._viewer_id = viewer_id
        self._history = history
        self._enricher = enricher

    def on_event(self, row: Dict[str, Any]) -> Optional[Message]:
        """
        Apply one pushed row. Returns the message only when it was new to the
        store; own echoes and redeliveries return None.
        """
        if self.store.closed:
            return None
        try:
            incoming = Message.from_row(row, self._viewer_id)
        except (KeyError, ValueError, ValidationError) as exc:
            logger.warning("Dropping malformed row for %s: %s", self.store.ref, exc)
            return None
        if incoming.conversation != self.store.ref:
            logger.debug("Row for %s routed to %s, ignoring", incoming.conversation, self.store.ref)
            return None

        outcome, message = self.store.merge(incoming)
        if outcome != INSERTED:
            return None
        if message.sender_profile is None and self._enricher is not None:
            self._enricher.schedule(message.sender_id)
        return message

    async def resync(self) -> int:
        """Re-read the full history and merge it. Returns the number of new entries."""
        rows = await self._history.history(self.store.ref, self._viewer_id)
        inserted = 0
        for row in rows:
            if self.on_event(row) is not None:
                inserted += 1
        logger.debug("Resynced %s: %d row(s), %d new", self.store.ref, len(rows), inserted)
        return inserted
