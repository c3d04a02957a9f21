import asyncio
import logging
import uuid
from typing import Callable, Optional, Sequence

from chatsync.schemas.message import Message, as_utc, new_temp_id, utcnow
from chatsync.schemas.profile import SenderProfile
from chatsync.sync.errors import SendFailure
from chatsync.sync.interfaces import ActivityMarker, DurableStore
from chatsync.sync.store import ConversationStore


logger = logging.getLogger(__name__)


def compose_content(content: str, attachments: Sequence[str] = ()) -> str:
    body = (content or "").strip()
    links = [link.strip() for link in attachments if link and link.strip()]
    if not body and not links:
        raise ValueError("Message content cannot be empty")
    return "\n".join([body, *links]) if body else "\n".join(links)


class OptimisticSendCoordinator:
    """
    Shows a message before the backend confirms it.

    The provisional entry is only ever removed here (on failure). Turning it into
    the authoritative entry is left to the reconciler when the write's own push
    echo arrives, matched on `client_message_id`.
    """

    def __init__(
        self,
        durable: DurableStore,
        profile: SenderProfile,
        activity: Optional[ActivityMarker] = None,
        timeout: float = 10.0,
        clock: Callable = utcnow,
    ) -> None:
        self._durable = durable
        self._profile = profile
        self._activity = activity
        self._timeout = timeout
        self._clock = clock

    async def send(self, store: ConversationStore, content: str, attachments: Sequence[str] = ()) -> Message:
        body = compose_content(content, attachments)
        ref = store.ref
        provisional = Message(
            id=new_temp_id(),
            conversation=ref,
            sender_id=self._profile.id,
            content=body,
            created_at=self._clock(),
            receiver_id=ref.row_fields().get("receiver_id"),
            client_message_id=uuid.uuid4().hex,
            sender_profile=self._profile,
        )
        store.insert(provisional)

        row = {
            **ref.row_fields(),
            "sender_id": self._profile.id,
            "content": body,
            "client_message_id": provisional.client_message_id,
        }
        try:
            saved = await asyncio.wait_for(self._durable.insert(ref, row), timeout=self._timeout)
        except asyncio.TimeoutError:
            store.remove(provisional.id)
            logger.warning("Send to %s timed out after %.1fs", ref, self._timeout)
            raise SendFailure(provisional) from None
        except Exception as exc:
            store.remove(provisional.id)
            logger.warning("Send to %s failed: %s", ref, exc)
            raise SendFailure(provisional, exc) from exc

        if self._activity is not None:
            created_at = saved.get("created_at") or provisional.created_at
            try:
                await self._activity.touch(ref, self._profile.id, as_utc(created_at))
            except Exception:
                logger.warning("Could not advance last activity for %s", ref, exc_info=True)
        return provisional
