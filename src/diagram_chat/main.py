import logging
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI

from .api.routes import router
from .cache import TTLCache
from .config import ACCESS_PASSWORD, MODEL_CACHE_KEY, MODEL_CACHE_TTL_SECS, PORT, ROOT_PATH, SQLITE_PATH
from .data.sqlite_store import SQLiteStore
from .generation.client import GenerationClient
from .generation.pipeline import TurnPipeline
from .history.manager import HistoryManager
from .history.rehydrate import RehydrationEngine
from .settings import SessionSettings, SettingsSnapshot

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    sqlite_path: Path = SQLITE_PATH,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Initializing SQLite store at %s...", sqlite_path)
        store = SQLiteStore(str(sqlite_path))
        await store.initialize()

        settings = SessionSettings(
            SettingsSnapshot(use_password=bool(ACCESS_PASSWORD), access_password=ACCESS_PASSWORD)
        )
        history = HistoryManager(store)
        client = GenerationClient(
            settings,
            model_cache=TTLCache(MODEL_CACHE_KEY, MODEL_CACHE_TTL_SECS),
            transport=transport,
        )

        app.state.store = store
        app.state.settings = settings
        app.state.history = history
        app.state.generation_client = client
        app.state.pipeline = TurnPipeline(client, history, settings)
        app.state.rehydration_engine = RehydrationEngine(history.messages, history.blobs)

        logger.info("Startup complete, ready to serve")
        yield

        # Shutdown
        logger.info("Shutting down...")
        await store.close()

    app = FastAPI(title="Diagram Chat", root_path=ROOT_PATH, lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("diagram_chat.main:app", host="0.0.0.0", port=PORT)
