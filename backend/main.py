import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import Settings, settings as default_settings
from routers.status_router import router as status_router
from routers.ws_router import router as ws_router
from services.context import build_context
from services.message_router import MessageRouter
from services.persistence import GameStore

logging.basicConfig(level=getattr(logging, default_settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, store: Optional[GameStore] = None) -> FastAPI:
    settings = settings or default_settings
    context = build_context(settings, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Buzzer backend starting up (store=%s)...", settings.store_backend)
        context.registry.start_sweeper()
        yield
        await context.close()
        logger.info("Backend shutting down.")

    app = FastAPI(
        title="Game Show Buzzer",
        version="0.1.0",
        description="Real-time buzzer, team and scoring coordination for live game shows",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.context = context
    app.state.message_router = MessageRouter(context)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(status_router)
    app.include_router(ws_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=default_settings.debug)
