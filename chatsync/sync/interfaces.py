from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Set

from chatsync.schemas.message import ConversationRef
from chatsync.schemas.profile import Presence, SenderProfile


class DurableStore(Protocol):

    async def insert(self, ref: ConversationRef, row: Dict[str, Any]) -> Dict[str, Any]: ...


class HistorySource(Protocol):

    async def history(self, ref: ConversationRef, viewer_id: str) -> List[Dict[str, Any]]: ...


class UnreadCounter(Protocol):

    async def unread_ids(self, ref: ConversationRef, user_id: str, since: datetime) -> List[str]: ...

    async def direct_partners(self, user_id: str) -> Set[str]: ...


class ActivityMarker(Protocol):

    async def touch(self, ref: ConversationRef, user_id: str, at: datetime) -> None: ...


class WatermarkStore(Protocol):

    async def get(self, ref: ConversationRef, user_id: str) -> Optional[datetime]: ...

    async def advance(self, ref: ConversationRef, user_id: str, at: datetime) -> datetime: ...


class ProfileLookup(Protocol):

    async def get_profile(self, profile_id: str) -> Optional[SenderProfile]: ...


class MembershipSource(Protocol):

    async def get_groups_for_user(self, user_id: str) -> Set[str]: ...


class PermissionCheck(Protocol):

    async def can_send(self, ref: ConversationRef, user_id: str) -> bool: ...


class PresenceSource(Protocol):

    async def get_presence(self, user_id: str) -> Presence: ...
