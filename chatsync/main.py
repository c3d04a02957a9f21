import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatsync.config import get_settings
from chatsync.database.connection import close_mongo_connection, connect_to_mongo, get_database
from chatsync.logging_utils import RequestLoggingMiddleware, setup_logging
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.group_repository import GroupRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.watermark_repository import WatermarkRepository
from chatsync.routers.presence import router as presence_router
from chatsync.routers.sync import router as sync_router
from chatsync.services.sync_service import SyncService
from chatsync.utils.realtime_bus import close_bus, get_bus


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    await connect_to_mongo()
    db = get_database()
    bus = await get_bus()
    for repo in (MessageRepository(db), WatermarkRepository(db), GroupRepository(db), ConversationRepository(db)):
        await repo.ensure_indexes()
    app.state.sync_service = SyncService.from_database(db, bus, settings)
    try:
        yield
    finally:
        await app.state.sync_service.shutdown()
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="chatsync", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(sync_router)
app.include_router(presence_router)


@app.get("/")
async def root():
    service = getattr(app.state, "sync_service", None)
    return {"status": "ok", "ready": service is not None}
