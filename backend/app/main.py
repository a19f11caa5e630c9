"""
SERVEUR PASSERELLE M-PESA - STK PUSH + RÉCONCILIATION
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional
import asyncio
import logging
import traceback

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.config import Settings, get_settings
from app.exceptions import GatewayError, ProviderError
from app.middleware.security import add_security_headers, configure_limiter, limiter
from app.routes import payments_router
from app.services.mpesa_service import MpesaService
from app.services.payment_service import PaymentService
from app.services.reconciliation_service import ReconciliationService, run_periodic_sweep
from app.services.transaction_mirror import build_mirror
from app.services.transaction_store import TransactionStore
from app.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ==================== LIFESPAN MANAGEMENT ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(f"🚀 {settings.APP_NAME} démarré - M-Pesa {settings.MPESA_ENVIRONMENT}")
    logger.info("📋 Configuration:")
    for key, value in settings.describe().items():
        logger.info(f"   - {key}: {value}")

    sweep_task = None
    if settings.SWEEP_ENABLED:
        sweep_task = asyncio.create_task(run_periodic_sweep(
            app.state.reconciliation,
            settings.SWEEP_INTERVAL_SECONDS,
            settings.PENDING_TIMEOUT_SECONDS,
        ))

    yield

    # Arrêt
    if sweep_task:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    app.state.store.close()
    logger.info("🛑 Passerelle arrêtée")


# ==================== GESTIONNAIRES D'ERREURS ====================
async def gateway_exception_handler(request: Request, exc: GatewayError):
    if exc.status_code >= 500:
        logger.error(f"❌ {type(exc).__name__} - {request.method} {request.url.path}: {exc}")
    else:
        logger.info(f"{type(exc).__name__} - {request.method} {request.url.path}: {exc.message}")

    content = {"success": False, "message": exc.message, "error": exc.error}
    if isinstance(exc, ProviderError) and exc.code:
        content["code"] = exc.code
    if exc.retryable:
        content["retryable"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    if any(error.get("type") == "missing" for error in exc.errors()):
        message = "Phone number, amount, and description are required"
    else:
        message = f"Invalid request: {errors[0]['field'] or 'body'} - {errors[0]['message']}" if errors else "Invalid request"

    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": message,
            "error": "VALIDATION_ERROR",
            "errors": errors,
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": message},
        headers=getattr(exc, "headers", None),
    )


def build_global_exception_handler(settings: Settings):
    async def global_exception_handler(request: Request, exc: Exception):
        """Gestionnaire d'erreurs global - aucun détail interne en production"""
        logger.critical(f"❌ ERREUR CRITIQUE - Path: {request.method} {request.url.path}")
        logger.critical(f"   Type: {type(exc).__name__}")
        logger.critical(f"   Message: {str(exc)}")

        if settings.DEBUG:
            logger.critical(f"   Traceback:\n{traceback.format_exc()}")
            error_message = f"{type(exc).__name__}: {str(exc)}"
        else:
            error_message = "Internal server error"

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": error_message,
                "error_id": f"ERR_{datetime.now().strftime('%Y%m%d_%H%M%S')}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
    return global_exception_handler


# ==================== APPLICATION FASTAPI ====================
def create_app(
    settings: Optional[Settings] = None,
    mpesa_service: Optional[MpesaService] = None,
    store: Optional[TransactionStore] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)
    configure_limiter(settings)

    if store is None:
        store = TransactionStore(build_mirror(settings))
        store.load()
    mpesa_service = mpesa_service or MpesaService(settings)
    reconciliation = ReconciliationService(store, mpesa_service)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Passerelle de paiement M-Pesa STK Push avec réconciliation des callbacks",
        version=VERSION,
        docs_url=f"{settings.API_PREFIX}/docs",
        redoc_url=f"{settings.API_PREFIX}/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.reconciliation = reconciliation
    app.state.payment_service = PaymentService(settings, store, mpesa_service, reconciliation)

    # ⬅️ CONFIGURATION GLOBALE DU RATE LIMITING
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(GatewayError, gateway_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, build_global_exception_handler(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_security_headers)

    app.include_router(payments_router, prefix=settings.API_PREFIX)

    @app.get(f"{settings.API_PREFIX}/health")
    def health_check():
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.MPESA_ENVIRONMENT,
            "app": settings.APP_NAME,
            "transactions": store.count(),
        }

    return app


def run():
    """Point d'entrée console : uvicorn avec la fabrique d'application"""
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:create_app", factory=True, host=settings.HOST, port=settings.PORT)
