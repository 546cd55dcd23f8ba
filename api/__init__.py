"""REST and WebSocket API for the campus marketplace.

This module provides HTTP endpoints for:
- Buyer/seller chat rooms and message history
- Real-time chat delivery via WebSocket
- Exchange rates and price conversion
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import settings_conf
from database import get_pool, init_db, close as db_close
from exchange import RateCache
from exchange.db import SnapshotStore
from exchange.providers import build_provider
from .chat.db import ChatStore
from .chat.registry import ConnectionRegistry
from .chat.relay import ChatRelay

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("Initializing API...")
    await init_db()
    pool = await get_pool()

    app.state.chat_store = ChatStore(pool)
    app.state.registry = ConnectionRegistry(
        evict_superseded=settings_conf['evict_superseded_connections']
    )
    app.state.chat_relay = ChatRelay(app.state.registry, app.state.chat_store)

    rate_cache = RateCache.from_settings(
        settings_conf,
        build_provider(settings_conf),
        SnapshotStore(pool)
    )
    await rate_cache.initialize()
    rate_cache.start()
    app.state.rate_cache = rate_cache
    logger.info("Started exchange rate refresh task")

    yield

    # Shutdown
    logger.info("Shutting down API...")
    await rate_cache.stop()
    await db_close()

# Create FastAPI app
app = FastAPI(
    title="Campus Market API",
    description="Chat and exchange rate API for the campus secondhand marketplace",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Root endpoint - register this BEFORE other routers
@app.get("/")
async def root(request: Request):
    """Root endpoint returning service status."""
    registry = getattr(request.app.state, 'registry', None)
    return {
        "name": app.title,
        "version": app.version,
        "online_users": len(registry) if registry is not None else 0
    }

# Import and include all routers
from .chat import router as chat_router, ws_router as chat_ws_router
from .exchange import router as exchange_router

# Include all routers
app.include_router(chat_ws_router)
app.include_router(chat_router)
app.include_router(exchange_router)
