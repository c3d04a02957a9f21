from datetime import datetime
from typing import List, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[str]
    last_message_at: datetime


class ReadWatermarkDocument(TypedDict, total=False):
    _id: str
    # "direct:<partner>", "group:<id>" ...
    conversation: str
    user_id: str
    last_read_at: datetime


class GroupMemberDocument(TypedDict, total=False):
    _id: str
    group_id: str
    profile_id: str
    role: str
    joined_at: datetime
