import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crm_automation import config
from crm_automation.api.automations import router as automations_router
from crm_automation.api.enrollments import router as enrollments_router
from crm_automation.api.events import router as events_router
from crm_automation.db.init import close_db, init_db, ping_db
from crm_automation.dependencies import get_engine
from crm_automation.services.background_tasks import DueWorkPoller

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    logger.info("Initializing database...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise

    poller = None
    if config.RUN_LOCAL_SCHEDULER:
        poller = DueWorkPoller(get_engine())
        await poller.start()
    else:
        logger.info("Due enrollments are dispatched by Celery beat in a separate process.")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")
    if poller:
        await poller.stop()
    await close_db()
    logger.info("=== APPLICATION SHUTDOWN COMPLETE ===")


app = FastAPI(title="CRM Automation Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "CRM Automation Engine API"}


@app.get("/health")
async def health_check():
    """Database and worker status"""
    db_status = "healthy" if await ping_db() else "unhealthy"

    try:
        from crm_automation.celery_config import celery_app

        replies = celery_app.control.ping(timeout=1.0)
        celery_status = "healthy" if replies else "no_workers"
    except Exception as e:
        celery_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" and celery_status == "healthy" else "degraded",
        "database": db_status,
        "celery": celery_status,
        "local_scheduler": config.RUN_LOCAL_SCHEDULER,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(automations_router, prefix="/api", tags=["automations"])
app.include_router(events_router, prefix="/api", tags=["events"])
app.include_router(enrollments_router, prefix="/api", tags=["enrollments"])
