import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from chatsync.schemas.message import ConversationKind, ConversationRef, Message, ref_for_row
from chatsync.sync.errors import SubscriptionFailure
from chatsync.sync.interfaces import MembershipSource, UnreadCounter
from chatsync.sync.reconciler import PushReconciler
from chatsync.sync.unread import UnreadAggregator
from chatsync.sync.watermarks import ReadWatermarkTracker


logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):

    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"
    RECONNECTING = "reconnecting"


_TRANSITIONS = {
    SubscriptionState.UNSUBSCRIBED: {SubscriptionState.SUBSCRIBING},
    SubscriptionState.SUBSCRIBING: {SubscriptionState.ACTIVE, SubscriptionState.ERROR, SubscriptionState.UNSUBSCRIBED},
    SubscriptionState.ACTIVE: {SubscriptionState.ERROR, SubscriptionState.UNSUBSCRIBED},
    SubscriptionState.ERROR: {SubscriptionState.RECONNECTING, SubscriptionState.UNSUBSCRIBED},
    SubscriptionState.RECONNECTING: {SubscriptionState.ACTIVE, SubscriptionState.ERROR, SubscriptionState.UNSUBSCRIBED},
}

RowHandler = Callable[["Subscription", Dict[str, Any]], Awaitable[None]]
RecoveryHandler = Callable[["Subscription"], Awaitable[None]]


class Subscription:
    """
    One live push subscription for a surface, with reconnect and backoff.

    UNSUBSCRIBED -> SUBSCRIBING -> ACTIVE -> (ERROR -> RECONNECTING -> ACTIVE)
    and any state -> UNSUBSCRIBED on teardown.
    """

    def __init__(
        self,
        key: str,
        channel: str,
        bus,
        on_row: RowHandler,
        on_recovered: Optional[RecoveryHandler] = None,
        subscribe_timeout: float = 5.0,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
    ) -> None:
        self.key = key
        self.channel = channel
        self._bus = bus
        self._on_row = on_row
        self._on_recovered = on_recovered
        self._subscribe_timeout = subscribe_timeout
        self._base_delay = base_delay
        self._max_delay = max_delay
        self.state = SubscriptionState.UNSUBSCRIBED
        self.history: List[SubscriptionState] = [self.state]
        self.recoveries = 0
        self._active = asyncio.Event()
        self._subscriber = None
        self._task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Subscription {self.key} {self.channel} {self.state.value}>"

    def start(self) -> None:
        self._transition(SubscriptionState.SUBSCRIBING)
        self._task = asyncio.ensure_future(self._run())

    async def wait_active(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._active.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        if self.state is SubscriptionState.UNSUBSCRIBED:
            return
        self._transition(SubscriptionState.UNSUBSCRIBED)
        subscriber, self._subscriber = self._subscriber, None
        if subscriber is not None:
            await subscriber.cancel()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _transition(self, new_state: SubscriptionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.key}: illegal transition {self.state.value} -> {new_state.value}")
        logger.debug("%s: %s -> %s", self.key, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)
        if new_state is SubscriptionState.ACTIVE:
            self._active.set()
        else:
            self._active.clear()

    async def _run(self) -> None:
        attempt = 0
        while self.state is not SubscriptionState.UNSUBSCRIBED:
            try:
                self._subscriber = await asyncio.wait_for(
                    self._bus.subscribe(self.channel, self._handle), timeout=self._subscribe_timeout
                )
            except asyncio.TimeoutError:
                self._fail(SubscriptionFailure(self.channel, "subscribe timed out"))
            except Exception as exc:
                self._fail(SubscriptionFailure(self.channel, str(exc) or type(exc).__name__))
            else:
                recovering = self.state is SubscriptionState.RECONNECTING
                self._transition(SubscriptionState.ACTIVE)
                attempt = 0
                if recovering:
                    self.recoveries += 1
                    await self._recovered()
                try:
                    await self._subscriber.run()
                    return
                except SubscriptionFailure as exc:
                    self._fail(exc)
                except Exception as exc:
                    self._fail(SubscriptionFailure(self.channel, str(exc) or type(exc).__name__))

            if self.state is SubscriptionState.UNSUBSCRIBED:
                return
            delay = min(self._base_delay * (2 ** attempt), self._max_delay)
            attempt += 1
            self._transition(SubscriptionState.RECONNECTING)
            logger.info("%s: reconnecting in %.2fs", self.key, delay)
            await asyncio.sleep(delay)

    def _fail(self, exc: SubscriptionFailure) -> None:
        self._subscriber = None
        if self.state is SubscriptionState.UNSUBSCRIBED:
            return
        logger.warning("%s", exc)
        self._transition(SubscriptionState.ERROR)

    async def _recovered(self) -> None:
        if self._on_recovered is None:
            return
        try:
            await self._on_recovered(self)
        except Exception:
            logger.exception("%s: recovery hook failed", self.key)

    async def _handle(self, payload: str) -> None:
        try:
            row = json.loads(payload)
        except ValueError:
            logger.warning("%s: dropping non-JSON payload", self.key)
            return
        try:
            await self._on_row(self, row)
        except Exception:
            logger.exception("%s: failed to route row", self.key)


INBOX = "inbox"
SECTOR = "sector"
MEMBERSHIP = "membership"


def inbox_channel(user_id: str) -> str:
    return f"inbox:{user_id}"


def membership_channel(user_id: str) -> str:
    return f"membership:{user_id}"


def conversation_channel(ref: ConversationRef) -> str:
    return f"{ref.kind.value}:{ref.target_id}"


class FanInCoordinator:
    """
    Owns the user's push subscriptions and routes their rows.

    The registry holds at most one subscription per surface key: "inbox" for
    direct messages addressed to or sent by the user, "sector" for the open
    sector, "group:<id>" per group membership, plus "membership" for group
    changes. Rows go to the reconciler of the open conversation, then to the
    unread aggregator when that conversation is not focused.
    """

    def __init__(
        self,
        user_id: str,
        bus,
        counter: UnreadCounter,
        memberships: MembershipSource,
        unread: UnreadAggregator,
        watermarks: ReadWatermarkTracker,
        subscribe_timeout: float = 5.0,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        recompute_interval: Optional[float] = 60.0,
    ) -> None:
        self.user_id = user_id
        self._bus = bus
        self._counter = counter
        self._memberships = memberships
        self._unread = unread
        self._watermarks = watermarks
        self._subscribe_timeout = subscribe_timeout
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._recompute_interval = recompute_interval
        self.subscriptions: Dict[str, Subscription] = {}
        self.groups: Set[str] = set()
        self.sector_id: Optional[str] = None
        self._reconcilers: Dict[ConversationRef, PushReconciler] = {}
        self._drift_task: Optional[asyncio.Task] = None

    # lifecycle

    async def start(self) -> None:
        await self._subscribe(INBOX, inbox_channel(self.user_id))
        await self._subscribe(MEMBERSHIP, membership_channel(self.user_id))
        await self.refresh_memberships()
        await self.recompute_direct()
        if self._recompute_interval and self._drift_task is None:
            self._drift_task = asyncio.ensure_future(self._drift_loop())

    async def stop(self) -> None:
        if self._drift_task is not None:
            self._drift_task.cancel()
            await asyncio.gather(self._drift_task, return_exceptions=True)
            self._drift_task = None
        for key in list(self.subscriptions):
            await self._unsubscribe(key)
        self._reconcilers.clear()

    # open conversations

    def attach(self, ref: ConversationRef, reconciler: PushReconciler) -> None:
        self._reconcilers[ref] = reconciler

    def detach(self, ref: ConversationRef) -> None:
        self._reconcilers.pop(ref, None)

    def is_focused(self, ref: ConversationRef) -> bool:
        return ref in self._reconcilers

    async def set_sector(self, sector_id: Optional[str]) -> None:
        if sector_id == self.sector_id and (sector_id is None or SECTOR in self.subscriptions):
            return
        await self._unsubscribe(SECTOR)
        self.sector_id = sector_id
        if sector_id is not None:
            await self._subscribe(SECTOR, conversation_channel(ConversationRef.sector(sector_id)))

    # memberships

    async def refresh_memberships(self) -> None:
        try:
            groups = set(await self._memberships.get_groups_for_user(self.user_id))
        except Exception:
            logger.warning("Could not load group memberships for %s", self.user_id, exc_info=True)
            return
        await self.on_membership_change(groups)

    async def on_membership_change(self, groups: Iterable[str]) -> None:
        groups = set(groups)
        added, removed = groups - self.groups, self.groups - groups
        self.groups = groups
        for group_id in sorted(removed):
            ref = ConversationRef.group(group_id)
            await self._unsubscribe(f"group:{group_id}")
            self._unread.forget(ref)
        for group_id in sorted(added):
            ref = ConversationRef.group(group_id)
            await self._subscribe(f"group:{group_id}", conversation_channel(ref))
            await self._unread.recompute(ref)
        if added or removed:
            logger.info("Memberships for %s: +%d -%d", self.user_id, len(added), len(removed))

    # recompute

    async def recompute_direct(self) -> None:
        try:
            partners = set(await self._counter.direct_partners(self.user_id))
        except Exception:
            logger.warning("Could not list direct partners for %s", self.user_id, exc_info=True)
            return
        partners.update(
            ref.target_id for ref in self._unread.conversations() if ref.kind is ConversationKind.DIRECT
        )
        for partner_id in sorted(partners):
            await self._unread.recompute(ConversationRef.direct(partner_id))

    async def recompute_all(self) -> None:
        await self.recompute_direct()
        for group_id in sorted(self.groups):
            await self._unread.recompute(ConversationRef.group(group_id))

    async def _drift_loop(self) -> None:
        while True:
            await asyncio.sleep(self._recompute_interval)
            await self.recompute_all()

    # subscriptions

    async def _subscribe(self, key: str, channel: str) -> Subscription:
        await self._unsubscribe(key)
        sub = Subscription(
            key,
            channel,
            self._bus,
            on_row=self._on_row,
            on_recovered=self._on_recovered,
            subscribe_timeout=self._subscribe_timeout,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
        )
        self.subscriptions[key] = sub
        sub.start()
        if not await sub.wait_active(self._subscribe_timeout):
            logger.warning("%s not active after %.1fs, retrying in background", key, self._subscribe_timeout)
        return sub

    async def _unsubscribe(self, key: str) -> None:
        sub = self.subscriptions.pop(key, None)
        if sub is not None:
            await sub.stop()

    async def _on_recovered(self, sub: Subscription) -> None:
        """Repair deltas missed while the subscription was down."""
        if sub.key == MEMBERSHIP:
            await self.refresh_memberships()
            return
        if sub.key == INBOX:
            await self.recompute_direct()
            refs = [ref for ref in self._reconcilers if ref.kind is ConversationKind.DIRECT]
        elif sub.key == SECTOR:
            refs = [ConversationRef.sector(self.sector_id)] if self.sector_id else []
        else:
            ref = ConversationRef.group(sub.key.split(":", 1)[1])
            await self._unread.recompute(ref)
            refs = [ref]
        for ref in refs:
            reconciler = self._reconcilers.get(ref)
            if reconciler is None:
                continue
            if await reconciler.resync() and ref.kind is not ConversationKind.SECTOR:
                await self._read_through(ref, reconciler.store.messages()[-1].created_at)

    async def _on_row(self, sub: Subscription, row: Dict[str, Any]) -> None:
        if sub.key == MEMBERSHIP:
            await self.refresh_memberships()
            return
        await self.dispatch(row)

    async def dispatch(self, row: Dict[str, Any]) -> Optional[Message]:
        try:
            ref = ref_for_row(row, self.user_id)
        except (KeyError, ValueError) as exc:
            logger.warning("Unroutable row: %s", exc)
            return None

        reconciler = self._reconcilers.get(ref)
        if reconciler is not None:
            message = reconciler.on_event(row)
            if message is None:
                return None
        else:
            try:
                message = Message.from_row(row, self.user_id)
            except (KeyError, ValueError, ValidationError) as exc:
                logger.warning("Dropping malformed row for %s: %s", ref, exc)
                return None

        if ref.kind is ConversationKind.SECTOR or message.sender_id == self.user_id:
            return message
        if reconciler is not None:
            # the user is looking at it
            await self._read_through(ref, message.created_at)
        else:
            self._unread.apply_delta(ref, message)
        return message

    async def _read_through(self, ref: ConversationRef, at: datetime) -> None:
        try:
            await self._watermarks.mark_read(ref, self.user_id, at)
        except Exception:
            logger.warning("Could not advance watermark for %s", ref, exc_info=True)
        self._unread.clear(ref)
