from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import logging
import socketio

from app.core.config import settings
from app.core.database import create_db_and_tables
from app.core.cache import cache
from app.api.v1.api import api_router
from app.api.v1.endpoints.signaling import register_relay_handlers
from app.services.signaling_relay import SignalingRelay
from app.middleware.performance import PerformanceMiddleware

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
SOCKETIO_PATH = "socket.io"


def build_relay():
    """Socket.IO server plus the relay routing over it"""
    server = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=settings.cors_origins,
        logger=False,
        engineio_logger=False,
    )
    routing = SignalingRelay(server.emit)
    register_relay_handlers(server, routing)
    return server, routing


app = FastAPI(
    title="Exam Proctor API",
    description="Proctored exam sessions: persistence API and WebRTC signaling relay",
    version=API_VERSION,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None
)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(PerformanceMiddleware, slow_request_threshold=settings.slow_request_threshold)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

sio, relay = build_relay()
app.state.relay = relay


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(f"Unhandled error in {request.method} {request.url.path} ({request_id}): {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "request_id": request_id}
    )


@app.on_event("startup")
async def startup_event():
    create_db_and_tables()

    if await cache.ahealth_check():
        logger.info(f"Cache reachable at {settings.redis_url}")
    else:
        # progress snapshots and slow-request logs are skipped until redis is back
        logger.warning("Cache unreachable; continuing without it")

    logger.info(f"Exam Proctor API {API_VERSION} started ({settings.environment}), relay at /{SOCKETIO_PATH}")


@app.on_event("shutdown")
async def shutdown_event():
    try:
        await cache.aclose()
    except Exception as e:
        logger.error(f"Error closing cache connections: {e}")
    logger.info("Exam Proctor API stopped")


app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def read_root():
    return {
        "message": "Exam Proctor API",
        "version": API_VERSION,
        "signaling": f"/{SOCKETIO_PATH}",
        "relay": app.state.relay.stats(),
    }


# serve with: uvicorn app.main:asgi_app
asgi_app = socketio.ASGIApp(sio, other_asgi_app=app, socketio_path=SOCKETIO_PATH)
