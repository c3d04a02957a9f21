from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument

from chatsync.models.conversation import ReadWatermarkDocument
from chatsync.schemas.message import ConversationRef


class WatermarkRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["read_watermarks"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation", ASCENDING), ("user_id", ASCENDING)], unique=True)

    async def get(self, ref: ConversationRef, user_id: str) -> Optional[datetime]:
        doc: Optional[ReadWatermarkDocument] = await self.collection.find_one({"conversation": str(ref), "user_id": user_id})
        return doc["last_read_at"] if doc else None

    async def advance(self, ref: ConversationRef, user_id: str, at: datetime) -> datetime:
        # $max keeps the stored value monotonic even when writes land out of order
        doc = await self.collection.find_one_and_update(
            {"conversation": str(ref), "user_id": user_id},
            {"$max": {"last_read_at": at}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["last_read_at"]
