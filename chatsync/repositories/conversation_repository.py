from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from chatsync.models.conversation import ConversationDocument
from chatsync.schemas.message import ConversationKind, ConversationRef


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def markers(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        # participants are stored sorted so one pair maps to one marker
        await self.markers.create_index([("participants", ASCENDING), ("last_message_at", DESCENDING)])

    async def touch(self, ref: ConversationRef, user_id: str, at: datetime) -> None:
        if ref.kind is ConversationKind.GROUP:
            await self._db["private_groups"].update_one({"_id": ref.target_id}, {"$max": {"updated_at": at}})
            return
        if ref.kind is ConversationKind.SECTOR:
            await self._db["sectors"].update_one({"_id": ref.target_id}, {"$max": {"last_message_at": at}})
            return
        key: ConversationDocument = {"participants": sorted([user_id, ref.target_id])}
        await self.markers.update_one(
            key,
            {"$max": {"last_message_at": at}},
            upsert=True,
        )

