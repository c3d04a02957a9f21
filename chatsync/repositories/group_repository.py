import json
from datetime import datetime, timezone
from typing import Set

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from chatsync.models.conversation import GroupMemberDocument


class GroupRepository:

    def __init__(self, db: AsyncIOMotorDatabase, bus=None) -> None:
        self._db = db
        self._bus = bus

    @property
    def collection(self):
        return self._db["private_group_members"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("group_id", ASCENDING), ("profile_id", ASCENDING)], unique=True)
        await self.collection.create_index([("profile_id", ASCENDING)])

    async def get_groups_for_user(self, profile_id: str) -> Set[str]:
        groups = await self.collection.distinct("group_id", {"profile_id": profile_id})
        return {str(g) for g in groups}

    async def is_member(self, group_id: str, profile_id: str) -> bool:
        return await self.collection.count_documents({"group_id": group_id, "profile_id": profile_id}, limit=1) > 0

    async def add_member(self, group_id: str, profile_id: str, role: str = "member") -> None:
        defaults: GroupMemberDocument = {"role": role, "joined_at": datetime.now(timezone.utc)}
        await self.collection.update_one(
            {"group_id": group_id, "profile_id": profile_id},
            {"$setOnInsert": defaults},
            upsert=True,
        )
        await self._notify(profile_id, group_id, "joined")

    async def remove_member(self, group_id: str, profile_id: str) -> bool:
        result = await self.collection.delete_one({"group_id": group_id, "profile_id": profile_id})
        if result.deleted_count:
            await self._notify(profile_id, group_id, "left")
        return bool(result.deleted_count)

    async def _notify(self, profile_id: str, group_id: str, event: str) -> None:
        if self._bus is not None:
            await self._bus.publish(f"membership:{profile_id}", json.dumps({"group_id": group_id, "event": event}))
