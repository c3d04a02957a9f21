from fastapi import APIRouter

from chatsync.utils.realtime_bus import get_bus


router = APIRouter(prefix="/presence", tags=["sync"])


@router.get("/{user_id}")
async def presence(user_id: str):
    """
    Online flag and last heartbeat, as written by the sync WebSocket heartbeat.
    """
    bus = await get_bus()
    state = await bus.get_presence(user_id)
    return state.model_dump(mode="json")
