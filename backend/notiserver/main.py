import asyncio
from zoneinfo import ZoneInfo

from fastapi import FastAPI

from .api.deps import get_store
from .api.routes_notifications import router as notifications_router
from .api.routes_status import router as status_router
from .config import Settings, settings
from .core.database import Base, engine
from .core.logger import configure_logging, get_logger
from .core.metrics import DispatchMetrics
from .core.retention import RetentionJob
from .core.scheduler import DispatchScheduler
from .core.worker_pool import WorkerPool
from .integrations.push_gateway import HttpPushGateway, LoggingPushGateway, PushGateway

log = get_logger(__name__)


app = FastAPI(
    title="Noti Server",
    version="0.1.0",
)
app.state.metrics = DispatchMetrics()


def build_gateway(cfg: Settings) -> PushGateway:
    if not cfg.push_credentials_file:
        log.warning("AUTH_FILE not set, push delivery is disabled and every token is counted as failed")
        return LoggingPushGateway(logger=get_logger("notiserver.push"))
    return HttpPushGateway(
        cfg.push_credentials_file,
        cfg.push_gateway_url,
        timeout_seconds=cfg.push_timeout_seconds,
        logger=get_logger("notiserver.push"),
    )


@app.on_event("startup")
async def startup_event():
    configure_logging(settings.log_level)

    # Create tables
    Base.metadata.create_all(bind=engine)

    if not settings.auth_token:
        log.warning("AUTHED not set, every authenticated request will be rejected")

    store = get_store()
    metrics = app.state.metrics
    stop_event = asyncio.Event()

    gateway = build_gateway(settings)
    pool = WorkerPool(
        store,
        gateway,
        worker_count=settings.worker_count,
        metrics=metrics,
        logger=get_logger("notiserver.worker"),
    )
    scheduler = DispatchScheduler(
        store,
        pool,
        interval_seconds=settings.poll_interval_seconds,
        batch_size=settings.poll_batch_size,
        claim_timeout_seconds=settings.claim_timeout_seconds,
        metrics=metrics,
        stop_event=stop_event,
        logger=get_logger("notiserver.scheduler"),
    )
    retention = RetentionJob(
        store,
        retention_hours=settings.retention_hours,
        run_hour=settings.retention_run_hour,
        tz=ZoneInfo(settings.retention_timezone) if settings.retention_timezone else None,
        metrics=metrics,
        stop_event=stop_event,
        logger=get_logger("notiserver.retention"),
    )

    # Start push workers, dispatch scheduler and daily cleanup
    pool.start()
    app.state.gateway = gateway
    app.state.pool = pool
    app.state.stop_event = stop_event
    app.state.background_tasks = [
        asyncio.create_task(scheduler.run()),
        asyncio.create_task(retention.run()),
    ]


@app.on_event("shutdown")
async def shutdown_event():
    stop_event = getattr(app.state, "stop_event", None)
    if stop_event is None:
        return

    # Scheduler first so nothing new is queued while the pool drains
    stop_event.set()
    await asyncio.gather(*app.state.background_tasks, return_exceptions=True)
    await app.state.pool.stop()
    await app.state.gateway.aclose()


app.include_router(status_router)
app.include_router(notifications_router)


def run() -> None:
    import uvicorn

    uvicorn.run("notiserver.main:app", host="0.0.0.0", port=settings.port)
