from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables early
load_dotenv()

from threadline.api import auth, issues, slack, tools  # noqa: E402
from threadline.db import dispose_engine, ensure_schema  # noqa: E402
from threadline.services.config_service import is_ai_enabled  # noqa: E402

logger = logging.getLogger(__name__)

app = FastAPI(title="threadline")

# CORS setup
origins = [os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Startup / shutdown hooks
# ---------------------------------------------------------------------------


@app.on_event("startup")
async def startup_event():
    """Startup event handler."""
    try:
        await ensure_schema()
        print("[Startup] Database schema ready")
    except Exception as e:
        # Entry points retry the bootstrap on first use
        logger.error(f"Schema bootstrap at startup failed: {e}")
    print(f"[Startup] AI {'enabled' if is_ai_enabled() else 'disabled (no API key)'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event handler."""
    await dispose_engine()
    print("[Shutdown] Database engine disposed")


# Include API routers
app.include_router(auth.router)
app.include_router(issues.router)
app.include_router(slack.router)
app.include_router(tools.router)


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "message": "Service is running", "ai_enabled": is_ai_enabled()}
