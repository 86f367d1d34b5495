import asyncio
import logging

from fastapi import FastAPI

from .api.routes_notifications import router as notifications_router
from .api.routes_status import router as status_router
from .config import settings, setup_logging
from .core.database import Base, engine, SessionLocal
from .core.service import NotificationService
from .core.tracker import retention_cleanup_loop

logger = logging.getLogger(__name__)


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
)


@app.on_event("startup")
async def startup_event():
    setup_logging()

    # Create tables
    Base.metadata.create_all(bind=engine)

    service = NotificationService.from_settings(settings, SessionLocal)
    app.state.notification_service = service

    # Start queue worker and recover retries lost on restart
    recovered = service.start()
    logger.info("Notification pipeline started, %d retries recovered", recovered)

    # Start history cleanup
    app.state.cleanup_task = asyncio.create_task(
        retention_cleanup_loop(
            service.tracker,
            retention_days=settings.retention_days,
            interval_seconds=settings.cleanup_interval_sec,
        )
    )


@app.on_event("shutdown")
async def shutdown_event():
    app.state.cleanup_task.cancel()
    await app.state.notification_service.stop()


app.include_router(status_router)
app.include_router(notifications_router)
