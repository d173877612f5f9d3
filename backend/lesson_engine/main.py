import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .db.monitoring import get_pool_snapshot
from .db.session import get_engine
from .delivery_routes import get_orchestrator, install_error_handlers, router as delivery_router
from .logging_config import configure_logging
from .pending_queue import PendingProducer


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the pending producer for the lifetime of the app when it is enabled."""
    if not get_settings().producer_enabled:
        logger.info("Pending producer disabled")
        yield
        return
    orchestrator = get_orchestrator()
    producer = PendingProducer(orchestrator.handle_pending_job)
    orchestrator.producer = producer
    await producer.start()
    try:
        yield
    finally:
        await producer.stop()
        orchestrator.producer = None


app = FastAPI(title="Lesson Delivery Engine", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)
app.include_router(delivery_router)

settings_snapshot = get_settings()
logger.info("OpenAI API key configured: %s", bool(settings_snapshot.openai_api_key))
logger.info("Database configured: %s", bool(settings_snapshot.database_url))


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    return {"status": "ok", "producer": "enabled" if settings.producer_enabled else "disabled"}


@app.get("/healthz/database")
def database_health() -> Dict[str, Any]:
    try:
        engine = get_engine()
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {
        "status": "ok",
        "dialect": engine.dialect.name,
        "pool": get_pool_snapshot(engine),
    }
