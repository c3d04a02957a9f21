from fastapi import Header, HTTPException, Request, status

from chatsync.services.sync_service import SyncService


async def get_current_user(x_profile_id: str = Header(default="")) -> str:
    # Authentication happens upstream; the gateway forwards the resolved profile id.
    if not x_profile_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Profile-Id header")
    return x_profile_id.strip()


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service
