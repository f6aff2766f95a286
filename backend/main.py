import os
from contextlib import asynccontextmanager
from utils.utcnow import utcnow
from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse
import traceback

from config import settings
from api import Gateway
from models.database import async_engine, init_database
from models.events import BusEvent, EventName
from models.wallet import StatusSnapshot, TransactionRecord
from services.wallet_service import WalletService
from utils.logger import setup_logging, get_logger, console_logger

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


def _sync_percent(snapshot: StatusSnapshot) -> int:
    if snapshot.known_block_count <= 0:
        return 0
    return round(snapshot.block_count / snapshot.known_block_count * 100)


def log_bus_event(event: BusEvent) -> None:
    """Mirror bus events into the application log, one line per event."""
    name, data = event.name, event.data
    if name == EventName.DATA:
        console_logger.info(str(data))
    elif name == EventName.ERROR:
        logger.error(f"[ERROR]: {data}")
    elif name == EventName.WARNING:
        logger.warning(f"[WARNING]: {data}")
    elif name == EventName.INFO:
        logger.info(f"[INFO]: {data}")
    elif name == EventName.START:
        logger.info(f"walletd has started... {data}")
    elif name == EventName.STATUS and isinstance(data, StatusSnapshot):
        logger.info(
            f"[STATUS] Synced {data.block_count} out of {data.known_block_count} blocks "
            f"({_sync_percent(data)}%)",
            block_count=data.block_count,
            known_block_count=data.known_block_count,
            peer_count=data.peer_count,
        )
    elif name == EventName.SYNCED:
        logger.info("[WALLET] Wallet is synchronized")
    elif name == EventName.SAVE:
        logger.info("[WALLET] Wallet saved")
    elif name == EventName.DOWN:
        logger.error("[ERROR] walletd is not responding")
    elif name == EventName.SCAN and isinstance(data, dict):
        logger.info(
            f"[WALLET] Scanning block {data.get('fromBlock')} to {data.get('toBlock')}",
            from_block=data.get("fromBlock"),
            to_block=data.get("toBlock"),
        )
    elif name == EventName.TRANSACTION and isinstance(data, TransactionRecord):
        direction, preposition = ("incoming", "to") if data.inbound else ("outgoing", "from")
        logger.info(
            f"[WALLET] {direction} transaction {preposition} {data.address} "
            f"in the amount of {data.amount}",
            transaction_hash=data.transaction_hash,
            block_index=data.block_index,
            fee=data.fee,
        )
    elif name == EventName.CLOSE:
        logger.warning(f"[WARNING] walletd has closed (exitcode: {data})")
    else:
        logger.info("walletd event", walletd_event=name.value, data=data)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting walletd supervisor...", app_name=settings.APP_NAME)

    service = WalletService(settings)
    gateway = None
    try:
        # Initialize database
        await init_database()
        logger.info("Database initialized")

        service.bus.subscribe(log_bus_event)
        service.enable_restart_policy(
            auto_restart=settings.AUTO_RESTART,
            stop_on_down=settings.STOP_ON_DOWN,
        )

        if settings.ENABLE_WEBSOCKET:
            gateway = Gateway(
                service.bus,
                service.rpc,
                is_alive=service.is_alive,
                password=settings.GATEWAY_PASSWORD,
                auth_timeout=settings.GATEWAY_AUTH_TIMEOUT_SECONDS,
                outbox_size=settings.GATEWAY_OUTBOX_SIZE,
            )
            gateway.attach()
            service.bus.emit(
                EventName.INFO,
                f"Accepting WebSocket connections on {settings.GATEWAY_HOST}:{settings.GATEWAY_PORT}",
            )

        app.state.service = service
        app.state.gateway = gateway

        await service.start()
        logger.info("All services started")

        yield

    except Exception as e:
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise
    finally:
        logger.info("Shutting down...")
        if gateway is not None:
            await gateway.close()
        await service.close()
        await async_engine.dispose()
        logger.info("Shutdown complete")


app = FastAPI(
    title="walletd supervisor",
    description="Supervises walletd, tracks its sync state and streams wallet events over WebSocket",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


# WebSocket endpoint
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    gateway = getattr(app.state, "gateway", None)
    if gateway is None:
        await websocket.close(code=1013)
        return
    await gateway.handle_websocket(websocket)


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness probe - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness probe - is walletd answering RPC?"""
    service = getattr(app.state, "service", None)
    checks = {
        "walletd_alive": bool(service and service.is_alive()),
        "walletd_synced": bool(service and service.state.synced),
    }
    ready = checks["walletd_alive"]
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        },
    )


@app.get("/health/detailed")
async def detailed_health_check():
    service = getattr(app.state, "service", None)
    gateway = getattr(app.state, "gateway", None)
    return {
        "status": "healthy" if service and service.is_alive() else "degraded",
        "timestamp": utcnow().isoformat(),
        "app_name": settings.APP_NAME,
        "walletd": service.snapshot() if service else None,
        "gateway": {
            "enabled": gateway is not None,
            "authenticated_sessions": len(gateway.sessions) if gateway else 0,
        },
        "config": {
            "polling_interval_seconds": settings.POLLING_INTERVAL_SECONDS,
            "save_interval_seconds": settings.SAVE_INTERVAL_SECONDS,
            "scan_interval_seconds": settings.SCAN_INTERVAL_SECONDS,
            "max_polling_failures": settings.MAX_POLLING_FAILURES,
            "auto_restart": settings.AUTO_RESTART,
            "stop_on_down": settings.STOP_ON_DOWN,
        },
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", settings.GATEWAY_PORT))
    uvicorn.run(
        app,
        host=settings.GATEWAY_HOST,
        port=port,
        # Single worker: walletd is a child of this process.
        timeout_keep_alive=30,
    )
