import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from chatsync.schemas.profile import PLACEHOLDER_PROFILE, SenderProfile


TEMP_PREFIX = "temp-"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_temp_id() -> str:
    return f"{TEMP_PREFIX}{uuid.uuid4().hex}"


class ConversationKind(str, Enum):

    SECTOR = "sector"
    DIRECT = "direct"
    GROUP = "group"


class ConversationRef(BaseModel):
    """
    Identifies one conversation from the point of view of the current user.

    For direct conversations `target_id` is the partner's profile id, so the same
    thread is `direct:B` for A and `direct:A` for B.
    """

    model_config = ConfigDict(frozen=True)

    kind: ConversationKind
    target_id: str

    @classmethod
    def parse(cls, value: str) -> "ConversationRef":
        kind, sep, target = value.partition(":")
        if not sep or not target:
            raise ValueError(f"Invalid conversation reference: {value!r}")
        return cls(kind=ConversationKind(kind), target_id=target)

    @classmethod
    def sector(cls, sector_id: str) -> "ConversationRef":
        return cls(kind=ConversationKind.SECTOR, target_id=sector_id)

    @classmethod
    def direct(cls, partner_id: str) -> "ConversationRef":
        return cls(kind=ConversationKind.DIRECT, target_id=partner_id)

    @classmethod
    def group(cls, group_id: str) -> "ConversationRef":
        return cls(kind=ConversationKind.GROUP, target_id=group_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.target_id}"

    def row_fields(self) -> Dict[str, str]:
        """Columns that place a new row in this conversation."""
        if self.kind is ConversationKind.SECTOR:
            return {"sector_id": self.target_id}
        if self.kind is ConversationKind.GROUP:
            return {"group_id": self.target_id}
        return {"receiver_id": self.target_id}


def row_kind(row: Dict[str, Any]) -> ConversationKind:
    kind = row.get("kind")
    if kind:
        return ConversationKind(kind)
    if row.get("group_id"):
        return ConversationKind.GROUP
    if row.get("sector_id"):
        return ConversationKind.SECTOR
    if row.get("receiver_id"):
        return ConversationKind.DIRECT
    raise ValueError("Row does not carry a conversation reference")


def ref_for_row(row: Dict[str, Any], viewer_id: str) -> ConversationRef:
    kind = row_kind(row)
    if kind is ConversationKind.GROUP:
        return ConversationRef.group(str(row["group_id"]))
    if kind is ConversationKind.SECTOR:
        return ConversationRef.sector(str(row["sector_id"]))
    sender_id = str(row["sender_id"])
    partner = str(row["receiver_id"]) if sender_id == viewer_id else sender_id
    return ConversationRef.direct(partner)


class Message(BaseModel):

    id: str
    conversation: ConversationRef
    sender_id: str
    content: str
    created_at: datetime
    receiver_id: Optional[str] = None
    client_message_id: Optional[str] = None
    sender_profile: Optional[SenderProfile] = None

    @field_validator("created_at")
    @classmethod
    def _tz_aware(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(TEMP_PREFIX)

    @property
    def display_profile(self) -> SenderProfile:
        return self.sender_profile or PLACEHOLDER_PROFILE

    @classmethod
    def from_row(cls, row: Dict[str, Any], viewer_id: str) -> "Message":
        """
        Build a message from a durable row or push payload.

        Raises ValueError (pydantic's ValidationError included) when the row is
        missing the fields the sync logic needs.
        """
        message_id = row.get("id") or row.get("_id")
        if not message_id:
            raise ValueError("Row has no id")
        profile = row.get("sender") or row.get("sender_profile")
        return cls(
            id=str(message_id),
            conversation=ref_for_row(row, viewer_id),
            sender_id=str(row["sender_id"]),
            content=row.get("content") or "",
            created_at=row["created_at"],
            receiver_id=row.get("receiver_id"),
            client_message_id=row.get("client_message_id"),
            sender_profile=SenderProfile.model_validate(profile) if profile else None,
        )


class UnreadCounts(BaseModel):

    direct: int = 0
    group: int = 0
    external: int = 0
    total: int = 0


class SendRequest(BaseModel):

    content: str = ""
    attachments: list[str] = []
