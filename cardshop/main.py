import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from cardshop.auth import Services
from cardshop.config import Settings, get_settings
from cardshop.errors import CardshopError
from cardshop.metrics import get_metrics_bytes, get_metrics_content_type
from cardshop.notifications import NotificationDispatcher, build_dispatcher
from cardshop.orders import OrderLifecycleManager
from cardshop.routes import admin, admin_login, verification
from cardshop.sessions import SessionManager
from cardshop.store import KeyValueStore, build_store
from cardshop.verification import VerificationWorkflow

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


def build_services(
    settings: Settings,
    store: KeyValueStore,
    dispatcher: NotificationDispatcher | None = None,
) -> Services:
    dispatcher = dispatcher or build_dispatcher(settings)
    verification = VerificationWorkflow(store, dispatcher, settings)
    return Services(
        settings=settings,
        store=store,
        sessions=SessionManager(store, settings),
        orders=OrderLifecycleManager(store, dispatcher, settings, verification=verification),
        verification=verification,
    )


async def handle_cardshop_error(request: Request, exc: CardshopError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    reason = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": reason, "code": "invalid_request"},
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal error", "code": "internal_error"},
    )


def create_app(
    settings: Settings | None = None,
    store: KeyValueStore | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    """
    Services are built right away when a store is passed in (tests); otherwise the lifespan
    connects the configured backend on startup and closes it on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.services is None:
            owned = await build_store(settings)
            app.state.services = build_services(settings, owned, dispatcher)
            logger.info("Store ready. Backend=%s", settings.store_backend)
        yield
        if owned is not None:
            await owned.close()
            app.state.services = None

    app = FastAPI(title="NFC Card Storefront Core", lifespan=lifespan)
    app.state.services = build_services(settings, store, dispatcher) if store is not None else None
    app.add_exception_handler(CardshopError, handle_cardshop_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
    app.include_router(admin_login.router)
    app.include_router(admin.router)
    app.include_router(verification.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


configure_logging(get_settings())
app = create_app()
