import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from chatsync.models.message import MessageDocument
from chatsync.schemas.message import ConversationKind, ConversationRef, as_utc


logger = logging.getLogger(__name__)

COLLECTIONS = {
    ConversationKind.SECTOR: "sector_messages",
    ConversationKind.DIRECT: "direct_messages",
    ConversationKind.GROUP: "private_group_messages",
}


def to_payload(doc: Dict[str, Any]) -> str:
    body = dict(doc)
    body["created_at"] = as_utc(body["created_at"]).isoformat()
    return json.dumps(body)


def channels_for(kind: ConversationKind, doc: Dict[str, Any]) -> List[str]:
    if kind is ConversationKind.SECTOR:
        return [f"sector:{doc['sector_id']}"]
    if kind is ConversationKind.GROUP:
        return [f"group:{doc['group_id']}"]
    channels = [f"inbox:{doc['receiver_id']}"]
    if doc["sender_id"] != doc["receiver_id"]:
        channels.append(f"inbox:{doc['sender_id']}")
    return channels


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase, bus=None) -> None:
        self._db = db
        self._bus = bus

    def collection(self, kind: ConversationKind):
        return self._db[COLLECTIONS[kind]]

    async def ensure_indexes(self) -> None:
        await self.collection(ConversationKind.SECTOR).create_index([("sector_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection(ConversationKind.GROUP).create_index([("group_id", ASCENDING), ("created_at", ASCENDING)])
        direct = self.collection(ConversationKind.DIRECT)
        await direct.create_index([("receiver_id", ASCENDING), ("sender_id", ASCENDING), ("created_at", ASCENDING)])
        await direct.create_index([("sender_id", ASCENDING), ("created_at", ASCENDING)])

    async def insert(self, ref: ConversationRef, row: Dict[str, Any]) -> Dict[str, Any]:
        doc: MessageDocument = {
            **ref.row_fields(),
            "sender_id": row["sender_id"],
            "content": row["content"],
            "client_message_id": row.get("client_message_id"),
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.collection(ref.kind).insert_one(doc)
        saved = {k: v for k, v in doc.items() if k != "_id"}
        saved["id"] = str(result.inserted_id)
        saved["kind"] = ref.kind.value
        logger.debug("Stored %s message %s", ref, saved["id"])
        if self._bus is not None:
            payload = to_payload(saved)
            for channel in channels_for(ref.kind, saved):
                await self._bus.publish(channel, payload)
        return saved

    async def history(self, ref: ConversationRef, viewer_id: str, limit: int = 500) -> List[Dict[str, Any]]:
        query = self._conversation_query(ref, viewer_id)
        cur = self.collection(ref.kind).find(query).sort([("created_at", -1), ("_id", -1)]).limit(limit)
        items = await cur.to_list(length=limit)
        for it in items:
            it["id"] = str(it.pop("_id"))
            it["kind"] = ref.kind.value
        return list(reversed(items))

    async def unread_ids(self, ref: ConversationRef, user_id: str, since: datetime) -> List[str]:
        if ref.kind is ConversationKind.DIRECT:
            if ref.target_id == user_id:
                return []
            query: Dict[str, Any] = {"sender_id": ref.target_id, "receiver_id": user_id}
        else:
            query = self._conversation_query(ref, user_id)
            query["sender_id"] = {"$ne": user_id}
        query["created_at"] = {"$gt": since}
        cur = self.collection(ref.kind).find(query, {"_id": 1})
        return [str(doc["_id"]) for doc in await cur.to_list(length=None)]

    async def direct_partners(self, user_id: str) -> Set[str]:
        direct = self.collection(ConversationKind.DIRECT)
        senders = await direct.distinct("sender_id", {"receiver_id": user_id})
        receivers = await direct.distinct("receiver_id", {"sender_id": user_id})
        return {str(p) for p in [*senders, *receivers] if p != user_id}

    def _conversation_query(self, ref: ConversationRef, viewer_id: str) -> Dict[str, Any]:
        if ref.kind is ConversationKind.SECTOR:
            return {"sector_id": ref.target_id}
        if ref.kind is ConversationKind.GROUP:
            return {"group_id": ref.target_id}
        return {
            "$or": [
                {"sender_id": viewer_id, "receiver_id": ref.target_id},
                {"sender_id": ref.target_id, "receiver_id": viewer_id},
            ]
        }
