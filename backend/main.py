from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import time
import logging
from contextlib import asynccontextmanager

from api import router as api_router, register_error_handlers
from database import init_db, async_session
from logging_config import setup_logging
from manager import PlacerManager
from services import AccountService, SettingsService, TemplateService
from settings_store import SettingsStore
from config import settings

logger = logging.getLogger(__name__)

async def build_manager() -> PlacerManager:
    """Load settings, accounts and templates from the database"""
    async with async_session() as db:
        painter_settings = await SettingsService.load_settings(db)
        manager = PlacerManager(SettingsStore(painter_settings))
        accounts = await AccountService.load_accounts(db, manager)
        templates = await TemplateService.load_templates(db, manager)
    logger.info(f"Loaded {accounts} accounts and {templates} templates (settings v{painter_settings.version})")

    manager.accounts.on_suspended(AccountService.schedule_suspension_save)
    return manager

def autostart_templates(manager: PlacerManager):
    for runner in list(manager.templates.values()):
        if runner.options.enable_autostart and runner.user_ids:
            result = manager.start_template(runner.id)
            logger.info(f"[{runner.name}] Autostart: {result}")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown"""
    # Startup
    setup_logging()
    logger.info("Starting Pixel Placer Backend...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    manager = await build_manager()
    app.state.manager = manager
    autostart_templates(manager)
    manager.start_keep_alive()

    yield

    # Shutdown
    logger.info("Shutting down Pixel Placer Backend...")
    await manager.shutdown()

# Create FastAPI app
app = FastAPI(
    title="Pixel Placer API",
    description="Template painting engine for a shared remote pixel canvas",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400  # 24 hours
)

# Add request/response logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # The capture agent polls this constantly
    quiet = request.url.path == "/api/token-needed"
    if not quiet:
        logger.info(f"Request: {request.method} {request.url.path}")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time
        if not quiet:
            logger.info(f"Response: {response.status_code} - {process_time:.3f}s")

        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(f"Request failed: {str(e)} - {process_time:.3f}s")
        raise

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

register_error_handlers(app)

# Include API routes
app.include_router(api_router, prefix="/api")

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": int(time.time()),
        "version": "1.0.0"
    }

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Pixel Placer API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }

if __name__ == "__main__":
    setup_logging()
    logger.info("Starting Pixel Placer Backend Server...")
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        access_log=True,
        log_level=settings.log_level.lower()
    )
