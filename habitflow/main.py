"""
HabitFlow Backend - Main Application

FastAPI application for habit tracking with Pokemon rewards.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from habitflow.config import settings
from habitflow.api.routes import router
from habitflow.database import init_db
from habitflow.services.firebase import firebase_service
from habitflow.services.pokemon import PokemonCache, PokemonClient

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan: init database, setup Firebase and the PokeAPI client on startup.
    """
    # Startup
    logger.info("Starting HabitFlow Backend...")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
        app.state.db_initialized = True
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        app.state.db_initialized = False

    logger.info("Initializing Firebase...")
    firebase_initialized = firebase_service.initialize()
    app.state.firebase_initialized = firebase_initialized
    if firebase_initialized:
        logger.info("Firebase initialized successfully")
    else:
        logger.warning("Firebase not initialized - auth may not work")

    app.state.pokemon_client = PokemonClient(PokemonCache())

    yield

    # Shutdown
    app.state.pokemon_client.close()
    logger.info("Shutting down HabitFlow Backend...")


# Create FastAPI app
app = FastAPI(
    title=settings.API_TITLE,
    version=settings.API_VERSION,
    description="Habit tracking backend with streaks, focus sessions and Pokemon rewards",
    lifespan=lifespan,
)

# CORS middleware for frontend integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors (400)."""
    logger.info(f"Rejected request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors())},
    )


# Include API routes
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.API_TITLE,
        "version": settings.API_VERSION,
        "status": "running",
        "db_initialized": getattr(app.state, "db_initialized", False),
        "firebase_initialized": getattr(app.state, "firebase_initialized", False),
    }
