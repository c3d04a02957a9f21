from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from chatsync.models.profile import ProfileDocument
from chatsync.schemas.profile import SenderProfile


class ProfileRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("profiles")

    async def get_profile(self, profile_id: str) -> Optional[SenderProfile]:
        doc: Optional[ProfileDocument] = await self._collection.find_one(
            {"_id": profile_id},
            {"name": 1, "display_name": 1, "avatar_url": 1, "sector_id": 1},
        )
        return SenderProfile.from_document(doc) if doc else None
