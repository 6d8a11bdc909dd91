import logging
import threading
import time
from datetime import datetime, timezone
from typing import Annotated

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

try:
    from backend.app.config import load_settings
    from backend.app.services.cache_store import TTLCacheStore
    from backend.app.services.fulfillment import (
        FulfillmentPipeline,
        LookupKind,
        LookupRequest,
        parse_max_results,
    )
    from backend.app.services.quota import QuotaState, QuotaTracker
    from backend.app.services.upstream import YouTubeClient
except ModuleNotFoundError:
    from app.config import load_settings
    from app.services.cache_store import TTLCacheStore
    from app.services.fulfillment import (
        FulfillmentPipeline,
        LookupKind,
        LookupRequest,
        parse_max_results,
    )
    from app.services.quota import QuotaState, QuotaTracker
    from app.services.upstream import YouTubeClient


# ---------------------------
# Settings & services
# ---------------------------

settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

STARTED_AT = time.time()

CACHE_STORE = TTLCacheStore(
    default_ttl=settings.cache_ttl_seconds,
    stale_retention=settings.cache_stale_retention_seconds,
)
QUOTA_STATE = QuotaState()
YOUTUBE_CLIENT = YouTubeClient(
    api_key=settings.youtube_api_key,
    quota_state=QUOTA_STATE,
    base_url=settings.youtube_api_base_url,
    timeout=settings.upstream_timeout_seconds,
)
QUOTA_TRACKER = QuotaTracker(
    state=QUOTA_STATE,
    probe=YOUTUBE_CLIENT.probe,
    debounce_seconds=settings.quota_check_interval_seconds,
)
PIPELINE = FulfillmentPipeline(
    cache=CACHE_STORE,
    client=YOUTUBE_CLIENT,
    quota_state=QUOTA_STATE,
    ttl_seconds=settings.cache_ttl_seconds,
)

AVAILABLE_ENDPOINTS = [
    "GET /",
    "GET /health",
    "GET /api/search?q=query&maxResults=10",
    "GET /api/video/:videoId",
    "GET /api/channel/:channelId",
    "GET /api/quota-status",
    "DELETE /api/cache",
]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def epoch_to_iso(value: float) -> str | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, timezone.utc).isoformat().replace("+00:00", "Z")


def respond(request: LookupRequest) -> JSONResponse:
    outcome = PIPELINE.fulfill(request)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_content())


# ---------------------------
# App setup
# ---------------------------

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content={
                "error": "Endpoint not found",
                "code": 404,
                "path": request.url.path,
                "availableEndpoints": AVAILABLE_ENDPOINTS,
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": exc.status_code},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(_request: Request, exc: Exception):
    logger.error(f"Unhandled error: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": 500, "timestamp": utc_now_iso()},
    )


def run_initial_quota_check() -> None:
    try:
        status = QUOTA_TRACKER.check_status()
    except Exception as e:
        logger.error(f"Initial quota check failed: {e}")
        return
    logger.info(f"Initial quota status: {'OK' if status['ok'] else 'EXHAUSTED'}")


@app.on_event("startup")
def on_startup_start_background_tasks():
    logger.info(f"Server running on port {settings.port}")
    logger.info(f"Cache TTL: {settings.cache_ttl_seconds}s")
    CACHE_STORE.start_sweeper(settings.cache_check_period_seconds)
    QUOTA_TRACKER.start_prober(settings.quota_check_interval_seconds)
    threading.Thread(target=run_initial_quota_check, daemon=True).start()


@app.on_event("shutdown")
def on_shutdown_stop_background_tasks():
    logger.info("Shutting down gracefully")
    CACHE_STORE.stop_sweeper()
    QUOTA_TRACKER.stop_prober()


# ---------------------------
# Routes
# ---------------------------

@app.get("/")
def root():
    return {
        "message": "YouTube API Server is running!",
        "status": "OK",
        "quotaStatus": QUOTA_STATE.label(),
        "endpoints": {
            "search": "/api/search?q=search_term&maxResults=5",
            "video_details": "/api/video/:videoId",
            "channel_details": "/api/channel/:channelId",
            "quota_status": "/api/quota-status",
        },
        "timestamp": utc_now_iso(),
    }


@app.get("/health")
def health():
    return {
        "status": "healthy",
        "uptime": round(time.time() - STARTED_AT, 3),
        "quotaStatus": QUOTA_STATE.snapshot()["status"],
        "timestamp": utc_now_iso(),
    }


@app.get("/api/search")
def search(
    q: str | None = None,
    max_results: Annotated[str | None, Query(alias="maxResults")] = None,
):
    return respond(
        LookupRequest(
            kind=LookupKind.SEARCH,
            query_text=q,
            max_results=parse_max_results(max_results),
        )
    )


@app.get("/api/video/{video_id}")
def video_details(video_id: str):
    return respond(LookupRequest(kind=LookupKind.VIDEO, id=video_id))


@app.get("/api/channel/{channel_id}")
def channel_details(channel_id: str):
    return respond(LookupRequest(kind=LookupKind.CHANNEL, id=channel_id))


@app.get("/api/quota-status")
def quota_status():
    status = QUOTA_TRACKER.check_status()
    snapshot = QUOTA_STATE.snapshot()
    return {
        "quotaOk": status["ok"],
        "quotaExhausted": snapshot["exhausted"],
        "lastCheck": epoch_to_iso(snapshot["last_checked_at"]),
        "cacheSize": len(CACHE_STORE.keys()),
    }


@app.delete("/api/cache")
def clear_cache():
    cleared = CACHE_STORE.flush_all()
    return {
        "message": "Cache cleared",
        "clearedKeys": cleared,
        "quotaReset": False,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
