import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Set

from chatsync.config import Settings, get_settings
from chatsync.schemas.message import ConversationKind, ConversationRef, Message, UnreadCounts, utcnow
from chatsync.schemas.profile import Presence, SenderProfile
from chatsync.sync.enrichment import ProfileEnrichmentPatcher
from chatsync.sync.errors import PermissionDenied
from chatsync.sync.fanin import FanInCoordinator
from chatsync.sync.reconciler import PushReconciler
from chatsync.sync.sender import OptimisticSendCoordinator
from chatsync.sync.store import ConversationStore, MessagesListener
from chatsync.sync.unread import CountsListener, UnreadAggregator
from chatsync.sync.watermarks import ReadWatermarkTracker


logger = logging.getLogger(__name__)


@dataclass
class OpenConversation:

    store: ConversationStore
    enricher: ProfileEnrichmentPatcher
    reconciler: PushReconciler


class SyncSession:
    """
    Everything one signed-in user needs to keep their conversations in sync.

    Usage:
        session = SyncSession(profile, messages=..., watermarks=..., profiles=...,
                              memberships=..., conversations=..., permissions=..., bus=bus)
        await session.start()
        await session.open_conversation(ConversationRef.direct(partner_id))
        await session.send(ConversationRef.direct(partner_id), "Hello")
        session.subscribe_to_counts(print)
    """

    def __init__(
        self,
        profile: SenderProfile,
        *,
        messages,
        watermarks,
        profiles,
        memberships,
        conversations,
        permissions,
        bus,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.profile = profile
        self.user_id = profile.id
        self.settings = settings or get_settings()
        self._messages = messages
        self._profiles = profiles
        self._permissions = permissions
        self._bus = bus
        self._open: Dict[ConversationRef, OpenConversation] = {}
        self._pending: Set[asyncio.Task] = set()

        self.watermarks = ReadWatermarkTracker(watermarks, clock=clock)
        self.unread = UnreadAggregator(self.user_id, messages, self.watermarks)
        self.sender = OptimisticSendCoordinator(
            messages, profile, activity=conversations, timeout=self.settings.SEND_TIMEOUT_SECONDS, clock=clock
        )
        self.fanin = FanInCoordinator(
            self.user_id,
            bus,
            counter=messages,
            memberships=memberships,
            unread=self.unread,
            watermarks=self.watermarks,
            subscribe_timeout=self.settings.SUBSCRIBE_TIMEOUT_SECONDS,
            base_delay=self.settings.RECONNECT_BASE_DELAY_SECONDS,
            max_delay=self.settings.RECONNECT_MAX_DELAY_SECONDS,
            recompute_interval=self.settings.RECOMPUTE_INTERVAL_SECONDS,
        )

    async def start(self) -> None:
        await self.fanin.start()
        logger.info("Sync session started for %s", self.user_id)

    async def stop(self) -> None:
        for ref in list(self._open):
            await self.close_conversation(ref)
        await self.fanin.stop()
        logger.info("Sync session stopped for %s", self.user_id)

    def is_open(self, ref: ConversationRef) -> bool:
        return ref in self._open

    async def open_conversation(self, ref: ConversationRef) -> ConversationStore:
        existing = self._open.get(ref)
        if existing is not None:
            return existing.store
        if ref.kind is ConversationKind.SECTOR:
            # only one sector is followed at a time
            for other in [r for r in self._open if r.kind is ConversationKind.SECTOR]:
                await self.close_conversation(other)

        store = ConversationStore(ref, timedelta(seconds=self.settings.DEDUP_WINDOW_SECONDS))
        enricher = ProfileEnrichmentPatcher(store, self._profiles, self.settings.ENRICHMENT_MAX_ATTEMPTS)
        reconciler = PushReconciler(store, self.user_id, self._messages, enricher)
        self._open[ref] = OpenConversation(store, enricher, reconciler)
        self.fanin.attach(ref, reconciler)

        if ref.kind is ConversationKind.SECTOR:
            await self.fanin.set_sector(ref.target_id)
        try:
            await reconciler.resync()
        except Exception:
            logger.warning("Could not load history for %s", ref, exc_info=True)
        if ref.kind is not ConversationKind.SECTOR:
            await self.mark_read(ref)
        return store

    async def close_conversation(self, ref: ConversationRef) -> None:
        entry = self._open.pop(ref, None)
        if entry is None:
            return
        self.fanin.detach(ref)
        if ref.kind is ConversationKind.SECTOR and self.fanin.sector_id == ref.target_id:
            await self.fanin.set_sector(None)
        entry.enricher.close()
        entry.store.close()

    async def send(self, ref: ConversationRef, content: str, attachments: Sequence[str] = ()) -> Message:
        if not await self._permissions.can_send(ref, self.user_id):
            raise PermissionDenied(ref, self.user_id)
        store = await self.open_conversation(ref)
        return await self.sender.send(store, content, attachments)

    async def mark_read(self, ref: ConversationRef) -> None:
        try:
            await self.watermarks.mark_read(ref, self.user_id)
        except Exception:
            logger.warning("Could not persist read watermark for %s", ref, exc_info=True)
        self.unread.clear(ref)

    async def mark_all_read(self, refs: Sequence[ConversationRef]) -> None:
        await self.watermarks.mark_all_read(refs, self.user_id)
        for ref in refs:
            self.unread.clear(ref)

    def get_messages(self, ref: ConversationRef) -> List[Message]:
        entry = self._open.get(ref)
        return entry.store.messages() if entry is not None else []

    def watch_messages(self, ref: ConversationRef, listener: MessagesListener) -> Callable[[], None]:
        entry = self._open.get(ref)
        if entry is None:
            raise KeyError(f"{ref} is not open")
        return entry.store.subscribe(listener)

    def counts(self) -> UnreadCounts:
        return self.unread.snapshot()

    def subscribe_to_counts(self, listener: CountsListener) -> Callable[[], None]:
        unsubscribe = self.unread.subscribe(listener)
        result = listener(self.unread.snapshot())
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._listener_done)
        return unsubscribe

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Counts listener failed for %s", self.user_id, exc_info=task.exception())

    async def presence(self, user_id: str) -> Presence:
        return await self._bus.get_presence(user_id)
