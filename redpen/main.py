# /redpen/main.py

# --- Core FastAPI Imports ---
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

# --- Application-specific Imports ---
from .core.config import get_settings
from .core.logging_config import configure_logging
from .routers import answer_keys_router, grading_router
from .services.gemini_service import GeminiGradingClient
from .services.remote_image_store import RemoteImageStore
from .services.review_session import ReviewSessionRegistry


# --- Application Lifecycle Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Runs once at start-up: logging plus the shared, app-lifetime collaborators.
    settings = get_settings()
    configure_logging(settings.log_level)
    app.state.review_sessions = ReviewSessionRegistry(settings.review_auto_clear_seconds)
    app.state.grading_client = GeminiGradingClient(settings)
    app.state.remote_image_store = RemoteImageStore(settings)
    yield
    # Runs once at shutdown.
    app.state.review_sessions.shutdown()
    await app.state.remote_image_store.close()


# --- FastAPI Application Instance Creation ---
app = FastAPI(
    title="RedPen Backend API",
    description="Grading orchestration and review triage for the RedPen classroom grading assistant.",
    version="1.0.0",
    lifespan=lifespan
)

# --- Middleware Configuration ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- API Router Inclusion ---
app.include_router(
    answer_keys_router.router, prefix="/api/assignments/{assignment_id}/answer-key", tags=["Answer Keys"]
)
app.include_router(
    grading_router.router, prefix="/api/assignments/{assignment_id}/grading", tags=["Grading"]
)


# --- Root / Health Check Endpoint ---
@app.get("/", tags=["Health Check"])
async def read_root():
    """A simple health check endpoint to confirm the API is online."""
    return {"status": "RedPen Backend is running!", "version": app.version}
