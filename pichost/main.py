import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from .application.pipeline import drain_pending_discards
from .application.ports.transcoder import Transcoder
from .application.services.post_service import PostService
from .application.services.session_service import SessionService
from .config import Settings, get_settings, settings
from .database import DataManager
from .exceptions import PicHostError, pichost_exception_handler
from .infrastructure.transcoder import get_transcoder

# Load environment variables as early as possible
load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=settings.LOG_FORMAT,
    )


def prepare_directories(settings: Settings) -> None:
    for path in (settings.DATA_DIR, settings.IMAGE_DIR):
        if not os.path.exists(path):
            logger.info(f"Creating directory {path}")
            os.makedirs(path, exist_ok=True)


@dataclass
class Core:
    """Process-wide objects shared by every request handler."""
    settings: Settings
    data_manager: DataManager
    transcoder: Transcoder
    posts: PostService
    sessions: SessionService


def build_core(settings: Optional[Settings] = None,
               transcoder: Optional[Transcoder] = None) -> Core:
    settings = settings or get_settings()
    prepare_directories(settings)

    data_manager = DataManager.from_settings(settings)
    data_manager.connect()
    data_manager.init()

    transcoder = transcoder or get_transcoder(settings)
    return Core(
        settings=settings,
        data_manager=data_manager,
        transcoder=transcoder,
        posts=PostService(post_repo=data_manager, transcoder=transcoder, settings=settings),
        sessions=SessionService(session_repo=data_manager, life_time_sec=settings.SESSION_LIFE_TIME_SEC),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings = getattr(app.state, "settings", None) or get_settings()
    configure_logging(settings)
    logger.info(f"Starting {settings.APP_NAME}...")
    app.state.core = build_core(settings)
    logger.info("Database initialized successfully")
    yield
    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")
    await drain_pending_discards()
    app.state.core.data_manager.dispose()


def get_core(request: Request) -> Core:
    """FastAPI dependency returning the shared core."""
    return request.app.state.core


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Application shell; the web layer registers its routers on it."""
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_exception_handler(PicHostError, pichost_exception_handler)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pichost.main:app",
        host=settings.HOST,
        port=settings.PORT,
        workers=1,
        log_level=settings.LOG_LEVEL.lower(),
    )
