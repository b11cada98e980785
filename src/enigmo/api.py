"""
Enigmo - REST probes.

Read-only, unauthenticated HTTP endpoints for monitoring:
- GET /api/health: liveness and uptime
- GET /api/stats: directory and router counters
"""

from datetime import datetime, timezone

from fastapi import APIRouter, FastAPI, Request

from .constants import APP_NAME, VERSION
from .context import RelayContext

router = APIRouter(prefix="/api", tags=["probes"])


def _context(request: Request) -> RelayContext:
    return request.app.state.context


@router.get("/health")
async def health_check(request: Request):
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "uptime": _context(request).uptime(),
    }


@router.get("/stats")
async def relay_stats(request: Request):
    return _context(request).stats()


def create_app(context: RelayContext) -> FastAPI:
    """Build the probe application bound to one relay context."""
    app = FastAPI(
        title=f"{APP_NAME} Relay API",
        description="Health and statistics for the Enigmo relay",
        version=VERSION,
    )
    app.state.context = context
    app.include_router(router)
    return app
