import logging
from contextlib import asynccontextmanager

# --- FASTAPI IMPORTS ---
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import monitoring
import uvicorn

# --- LOCAL MODULES ---
from cityfix import __version__
from cityfix.core.config import settings
from cityfix.core.errors import CityFixError, UploadCancelled
from cityfix.services.change_watcher import ChangeWatcher
from cityfix.services.mongodb_service import init_mongodb, close_mongodb
from cityfix.services.notification_service import NotificationFanout
from cityfix.utils.timing_middleware import CommandLogger, TimingMiddleware

# --- ROUTES ---
from cityfix.routes.auth import router as auth_router
from cityfix.routes.reports import router as reports_router
from cityfix.routes.notifications import router as notifications_router
from cityfix.routes.users import router as users_router
from cityfix.routes.config import router as config_router
from cityfix.routes.logs import router as logs_router
from cityfix.routes.media import router as media_router

# --- LOGGING SETUP ---
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

monitoring.register(CommandLogger())


# --- LIFESPAN CONTEXT MANAGER ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"🚀 Starting CityFix backend v{__version__}...")
    mongo_service = await init_mongodb()
    if mongo_service.db is None:
        logger.error("❌ MongoDB unavailable - API will answer 503 until restart")

    subscriptions = []
    if settings.enable_change_watcher and mongo_service.db is not None:
        fanout = NotificationFanout(mongo_service.get_store())
        watcher = ChangeWatcher(mongo_service.db)
        subscriptions.append(watcher.subscribe(fanout.handle_change, name="notification-fanout"))

    logger.info("✅ All services initialized - Server ready!")

    yield

    # Shutdown: listeners first, then the client they read from
    logger.info("🔄 Shutting down...")
    for subscription in subscriptions:
        await subscription.close()
    await close_mongodb()
    logger.info("✅ All services closed gracefully")


# --- APP INITIALIZATION ---
app = FastAPI(title="CityFix Backend", version=__version__, lifespan=lifespan)

# --- MIDDLEWARE ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TimingMiddleware)


# --- REQUEST LOGGING ---
@app.middleware("http")
async def log_requests(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/media"):
        logger.info(f"📥 {request.method} {path}")
    return await call_next(request)


# --- ERROR MAPPING ---
@app.exception_handler(CityFixError)
async def cityfix_error_handler(request: Request, exc: CityFixError):
    if isinstance(exc, UploadCancelled):
        logger.info(f"🚫 {request.method} {request.url.path}: upload cancelled")
    elif exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"⚠️ {request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": type(exc).__name__, "detail": exc.message},
    )


# --- ROUTER MOUNTING ---
app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
app.include_router(reports_router, prefix="/api/reports", tags=["Reports"])
app.include_router(notifications_router, prefix="/api/notifications", tags=["Notifications"])
app.include_router(users_router, prefix="/api/users", tags=["Users"])
app.include_router(config_router, prefix="/api/config", tags=["Config"])
app.include_router(logs_router, prefix="/api/logs", tags=["Audit"])
app.include_router(media_router, tags=["Media"])


@app.get("/health")
async def health_check():
    from cityfix.services.mongodb_service import get_mongodb_service

    mongo_service = await get_mongodb_service()
    if mongo_service is None or mongo_service.client is None:
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "unavailable"})
    database = await mongo_service.health_check()
    code = 200 if database.get("status") == "healthy" else 503
    return JSONResponse(status_code=code, content={"status": database["status"], "database": database})


if __name__ == "__main__":
    uvicorn.run("cityfix.main:app", host="0.0.0.0", port=8000)
