import logging
from datetime import datetime, UTC

from fastapi import FastAPI
from contextlib import asynccontextmanager

from starlette import status
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from room_sync.application.chat_service import ChatService
from room_sync.application.connection_manager import ConnectionManager
from room_sync.application.room_service import RoomService
from room_sync.config import Settings
from room_sync.infrastructure.memory import InMemoryBackingStore
from room_sync.infrastructure.otel import OTELManager
from room_sync.infrastructure.redis import RedisBackingStore
from room_sync.routers.rooms import router as rooms_router
from room_sync.routers.websocket import router as websocket_router

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> RedisBackingStore | InMemoryBackingStore:
    if settings.BACKING_STORE == "memory":
        return InMemoryBackingStore()
    if settings.BACKING_STORE == "redis":
        return RedisBackingStore(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
        )
    raise ValueError(f"Unknown backing store: {settings.BACKING_STORE}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Room Sync Service...")

    services_to_stop = []
    try:
        app.state.is_draining = False
        settings = Settings()
        app.state.settings = settings

        # Infra
        # OTel
        otel_manager = OTELManager(
            service_name=settings.OTEL_SERVICE_NAME,
            otlp_grpc_endpoint=settings.OTEL_OTLP_GRPC_ENDPOINT,
            enabled=settings.OTEL_ENABLED,
        )
        app.state.otel_manager = otel_manager
        services_to_stop.append(otel_manager)

        # Backing store
        store = create_store(settings)
        await store.start()
        app.state.store = store
        services_to_stop.append(store)

        # Application
        # Connection Manager
        conn_manager = ConnectionManager(
            otel_manager=otel_manager,
            max_total_connections=settings.CONNECTION_MANAGER_MAX_TOTAL_CONNECTIONS,
            send_timeout=settings.CONNECTION_SEND_TIMEOUT,
            rate_limit_per_sec=settings.CONNECTION_RATE_LIMIT_PER_SEC,
        )
        await conn_manager.start()
        app.state.conn_manager = conn_manager
        services_to_stop.append(conn_manager)

        # Services
        app.state.room_service = RoomService(store=store)
        app.state.chat_service = ChatService(
            otel_manager=otel_manager,
            conn_manager=conn_manager,
            store=store,
            typing_inactivity_timeout=settings.TYPING_INACTIVITY_TIMEOUT,
            typing_stale_after=settings.TYPING_STALE_AFTER,
            typing_sweep_interval=settings.TYPING_SWEEP_INTERVAL,
        )

        logger.info("Application started successfully!")

        yield

    except Exception as e:
        logger.critical(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("Shutting down...")
        app.state.is_draining = True

        for service in reversed(services_to_stop):
            try:
                await service.stop()
            except Exception as e:
                logger.error(f"Error stopping service: {e}", exc_info=True)

        logger.info("Shutdown complete")


app = FastAPI(lifespan=lifespan)

# 미들웨어
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware)

# 라우터
app.include_router(rooms_router)
app.include_router(websocket_router)


@app.get("/health")
async def health_check_liveness():
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@app.get("/readiness")
async def health_check_readiness(request: Request):
    if request.app.state.is_draining:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "shutting_down",
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )

    return {"status": "ready", "timestamp": datetime.now(UTC).isoformat()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("room_sync.main:app", host="0.0.0.0", port=8000)
