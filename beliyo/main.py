from contextlib import asynccontextmanager

from fastapi import FastAPI

from beliyo.core.config import get_settings
from beliyo.core.context import AppContext
from beliyo.core.exceptions import ChatError, chat_exception_handler
from beliyo.core.logging import get_logger, setup_logging
from beliyo.database.connection import close_mongo_connection, connect_to_mongo, get_database
from beliyo.routers.chat import router as chat_router
from beliyo.routers.conversations import router as conversations_router
from beliyo.routers.presence import router as presence_router
from beliyo.utils.realtime_bus import close_bus, get_bus


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level, settings.debug)

    db = await connect_to_mongo()
    bus = await get_bus()
    app.state.context = AppContext(settings=settings, db=db, bus=bus)
    await app.state.context.ensure_indexes()
    logger.info("app_started", app_name=settings.app_name)
    try:
        yield
    finally:
        await app.state.context.teardown()
        await close_bus()
        await close_mongo_connection()
        logger.info("app_stopped")


app = FastAPI(title="BeliYo Chat API", lifespan=lifespan)

app.add_exception_handler(ChatError, chat_exception_handler)

app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(presence_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"app": get_settings().app_name, "status": "ok", "collections": collections}
