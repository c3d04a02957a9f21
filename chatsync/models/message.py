from datetime import datetime
from typing import Literal, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    kind: Literal["sector", "direct", "group"]
    # exactly one of these places the row in a conversation
    sector_id: str
    receiver_id: str
    group_id: str
    sender_id: str
    content: str
    created_at: datetime
    # idempotency key generated by the sending client, echoed over push
    client_message_id: Optional[str]
