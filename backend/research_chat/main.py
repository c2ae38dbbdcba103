from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from research_chat.api import chat as chat_api
from research_chat.api import websocket as websocket_api
from research_chat.core.config import get_settings
from research_chat.core.logging import setup_logging
from research_chat.db.base import create_engine, create_sessionmaker, init_db
from research_chat.research.grounding import create_grounding_search
from research_chat.research.web_search import create_web_research_client
from research_chat.services.memory_store import MemoryStore
from research_chat.services.provider_service import ProviderService
from research_chat.services.turn_runner import TurnRunner


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        yield
        await app.state.turn_runner.shutdown(settings.turn_shutdown_grace_sec)
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.memory_store = MemoryStore(sessionmaker)
    app.state.session_registry = websocket_api.SessionRegistry()
    app.state.provider_service = ProviderService(settings)
    app.state.grounding_search = create_grounding_search(settings)
    app.state.web_research = create_web_research_client(settings)
    app.state.turn_runner = TurnRunner()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_api.health_router)
    app.include_router(chat_api.grounded_router)
    app.include_router(chat_api.live_research_router)
    app.include_router(chat_api.policy_router)
    app.include_router(websocket_api.router)

    return app


app = create_app()
