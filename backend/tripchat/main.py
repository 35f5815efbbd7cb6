"""FastAPI application entrypoint."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tripchat import db
from tripchat.api.chat import router as chat_router
from tripchat.config import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.init_db(db.DB_PATH)
    logger.info("[Startup] Database ready at %s", db.DB_PATH)
    yield


app = FastAPI(
    title="TripChat API",
    description="Conversational trip planner with cached travel data and LLM itineraries",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS: allow the frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, "http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/health")
async def health():
    """Health check: confirms API and LLM configuration."""
    return {
        "status": "ok",
        "llm": settings.groq_model,
        "llm_configured": bool(settings.groq_api_key),
        "version": "1.0.0",
    }
