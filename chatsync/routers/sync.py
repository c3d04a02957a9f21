import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Tuple

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from chatsync.schemas.message import ConversationRef, Message, SendRequest
from chatsync.services.sync_service import SyncService
from chatsync.sync.errors import PermissionDenied, SendFailure
from chatsync.sync.session import SyncSession
from chatsync.sync.store import ConversationStore
from chatsync.utils.dependencies import get_current_user, get_sync_service
from chatsync.utils.realtime_bus import get_bus
from chatsync.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])
manager = ConnectionManager()


def parse_ref(conversation: str) -> ConversationRef:
    try:
        return ConversationRef.parse(conversation)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


async def get_session(
    current_user: str = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
) -> AsyncIterator[SyncSession]:
    try:
        session = await service.acquire(current_user)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    try:
        yield session
    finally:
        await service.release(current_user, linger=True)


def dump_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    return [m.model_dump(mode="json") for m in messages]


@router.post("/conversations/{conversation}/open")
async def open_conversation(conversation: str, session: SyncSession = Depends(get_session)):
    ref = parse_ref(conversation)
    store = await session.open_conversation(ref)
    return {"conversation": str(ref), "items": dump_messages(store.messages())}


@router.post("/conversations/{conversation}/close")
async def close_conversation(conversation: str, session: SyncSession = Depends(get_session)):
    ref = parse_ref(conversation)
    await session.close_conversation(ref)
    return {"conversation": str(ref), "closed": True}


@router.get("/conversations/{conversation}/messages")
async def list_messages(conversation: str, session: SyncSession = Depends(get_session)):
    ref = parse_ref(conversation)
    return {"conversation": str(ref), "open": session.is_open(ref), "items": dump_messages(session.get_messages(ref))}


@router.post("/conversations/{conversation}/messages")
async def send_message(conversation: str, body: SendRequest, session: SyncSession = Depends(get_session)):
    ref = parse_ref(conversation)
    try:
        provisional = await session.send(ref, body.content, body.attachments)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PermissionDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except SendFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"message": provisional.model_dump(mode="json")}


@router.post("/conversations/{conversation}/read")
async def mark_read(conversation: str, session: SyncSession = Depends(get_session)):
    ref = parse_ref(conversation)
    await session.mark_read(ref)
    return {"conversation": str(ref), "unread": session.unread.count(ref), "counts": session.counts().model_dump()}


@router.get("/counts")
async def get_counts(session: SyncSession = Depends(get_session)):
    return session.counts().model_dump()


@router.put("/counts/external/{name}")
async def set_external_count(name: str, body: Dict[str, int], session: SyncSession = Depends(get_session)):
    if "count" not in body:
        raise HTTPException(status_code=400, detail="count required")
    session.unread.set_external(name, body["count"])
    return session.counts().model_dump()


@router.websocket("/ws/{user_id}")
async def sync_socket(websocket: WebSocket, user_id: str):
    service: SyncService = websocket.app.state.sync_service
    try:
        session = await service.acquire(user_id)
    except LookupError:
        await websocket.close(code=4404)
        return

    await manager.connect(user_id, websocket)
    # the session may replace or close a store on its own (a second sector, an HTTP close)
    watchers: Dict[ConversationRef, Tuple[ConversationStore, Callable[[], None]]] = {}
    stop_counts = session.subscribe_to_counts(
        lambda counts: manager.send_event(user_id, {"type": "counts", **counts.model_dump()})
    )

    bus = await get_bus()
    ttl = session.settings.PRESENCE_TTL_SECONDS

    async def _presence_heartbeat():
        while True:
            try:
                await bus.set_presence(user_id, ttl_seconds=ttl)
            except Exception:
                logger.warning("Presence heartbeat failed for %s", user_id, exc_info=True)
            await asyncio.sleep(ttl / 2)

    heartbeat_task = asyncio.create_task(_presence_heartbeat())

    def _watch(ref: ConversationRef, store: ConversationStore) -> None:
        current = watchers.get(ref)
        if current is not None:
            if current[0] is store:
                return
            current[1]()
        watchers[ref] = (
            store,
            session.watch_messages(
                ref,
                lambda items: manager.send_event(
                    user_id, {"type": "messages", "conversation": str(ref), "items": dump_messages(items)}
                ),
            ),
        )

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
                ref = ConversationRef.parse(msg.get("conversation", ""))
            except ValueError as exc:
                await websocket.send_text(json.dumps({"type": "error", "detail": str(exc)}))
                continue

            kind = msg.get("type")
            try:
                if kind == "open":
                    store = await session.open_conversation(ref)
                    _watch(ref, store)
                    await manager.send_event(
                        user_id, {"type": "messages", "conversation": str(ref), "items": dump_messages(store.messages())}
                    )
                elif kind == "close":
                    watched = watchers.pop(ref, None)
                    if watched:
                        watched[1]()
                    await session.close_conversation(ref)
                elif kind == "send":
                    _watch(ref, await session.open_conversation(ref))
                    await session.send(ref, msg.get("content", ""), msg.get("attachments") or [])
                elif kind == "read":
                    await session.mark_read(ref)
                else:
                    await websocket.send_text(json.dumps({"type": "error", "detail": f"unknown type {kind!r}"}))
            except (ValueError, PermissionDenied, SendFailure) as exc:
                await websocket.send_text(
                    json.dumps({"type": "error", "conversation": str(ref), "detail": str(exc)})
                )
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(user_id, websocket)
        heartbeat_task.cancel()
        stop_counts()
        for _, unwatch in watchers.values():
            unwatch()
        await service.release(user_id)
