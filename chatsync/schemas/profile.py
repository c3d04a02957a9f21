from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class SenderProfile(BaseModel):

    id: str
    name: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    sector_id: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.name or "Unknown user"

    @classmethod
    def from_document(cls, doc: dict) -> "SenderProfile":
        return cls(
            id=str(doc.get("_id") or doc.get("id")),
            name=doc.get("name"),
            display_name=doc.get("display_name"),
            avatar_url=doc.get("avatar_url"),
            sector_id=doc.get("sector_id"),
        )


PLACEHOLDER_PROFILE = SenderProfile(id="", display_name="Unknown user")


class Presence(BaseModel):

    user_id: str
    is_online: bool = False
    last_heartbeat: Optional[datetime] = None
