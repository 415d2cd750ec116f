import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.cors import CORSMiddleware

from postpurchase.api import enqueue, queue, receipts, webhooks
from postpurchase.config import Settings, get_settings
from postpurchase.database import create_db_engine
from postpurchase.errors import PostPurchaseError
from postpurchase.services.apple_receipts import AppleReceiptClient
from postpurchase.services.notifications import NotificationHandler, load_root_certificates
from postpurchase.services.queue import QueueProcessor, QueueStore
from postpurchase.services.receipts import ReceiptStore
from postpurchase.services.scheduler import init_scheduler, start_scheduler, stop_scheduler
from postpurchase.services.verification import ReceiptVerifier

log = logging.getLogger(__name__)

# Every route the service exposes, registered in this order
ROUTERS = (
    enqueue.router,
    queue.router,
    receipts.router,
    webhooks.router,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the optional queue scheduler; release clients on shutdown."""
    settings: Settings = app.state.settings
    scheduler = None
    if settings.QUEUE_SCHEDULER_ENABLED:
        log.info("Starting post-purchase queue scheduler...")
        scheduler = init_scheduler(app.state.queue_processor, settings)
        start_scheduler(scheduler)
    yield
    stop_scheduler(scheduler)
    if app.state.owns_http_client:
        await app.state.http_client.aclose()


async def handle_service_error(request: Request, exc: PostPurchaseError):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.message})


async def handle_database_error(request: Request, exc: SQLAlchemyError):
    log.error(f"Database error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"ok": False, "error": "Database error"})


async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"ok": False, "error": "Invalid request body"})


def build_services(app: FastAPI, settings: Settings, engine: Engine, http_client: httpx.AsyncClient) -> None:
    """Construct the long-lived clients and services once per process."""
    receipt_store = ReceiptStore(engine)
    apple = AppleReceiptClient(
        http_client,
        shared_secret=settings.APPLE_SHARED_SECRET,
        timeout=settings.APPLE_VERIFY_TIMEOUT_SECONDS,
    )
    verifier = ReceiptVerifier(apple, receipt_store)
    queue_store = QueueStore(engine)

    app.state.settings = settings
    app.state.engine = engine
    app.state.http_client = http_client
    app.state.receipt_store = receipt_store
    app.state.receipt_verifier = verifier
    app.state.queue_store = queue_store
    app.state.queue_processor = QueueProcessor(
        queue_store,
        verifier,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        base_delay=timedelta(seconds=settings.QUEUE_BASE_DELAY_SECONDS),
        max_delay=timedelta(seconds=settings.QUEUE_MAX_DELAY_SECONDS),
        batch_size=settings.QUEUE_BATCH_SIZE,
    )
    app.state.notification_handler = NotificationHandler(receipt_store)
    app.state.apple_root_certificates = load_root_certificates(settings.APPLE_ROOT_CERT_PATHS)


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    if not settings.CRON_SECRET:
        log.warning("CRON_SECRET is not set - /process-queue accepts unauthenticated calls")
    if settings.APPLE_WEBHOOK_VERIFY_SIGNATURE and not settings.APPLE_ROOT_CERT_PATHS:
        log.warning("APPLE_ROOT_CERT_PATHS is not set - webhook certificate chains are not checked")

    app = FastAPI(title="Post-Purchase Verification API", version="1.0.0", lifespan=lifespan)

    app.state.owns_http_client = http_client is None
    build_services(
        app,
        settings,
        engine if engine is not None else create_db_engine(settings.POSTGRES_URI),
        http_client if http_client is not None else httpx.AsyncClient(),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS_LIST,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(PostPurchaseError, handle_service_error)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)

    @app.get("/health")
    def health():
        return {"ok": True}

    for router in ROUTERS:
        app.include_router(router)

    return app
