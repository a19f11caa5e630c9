"""
Sécurité HTTP : rate limiting, headers, vérification des callbacks M-Pesa,
protection du listing administrateur
"""
from fastapi import Header, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from typing import Dict, Optional
import hashlib
import hmac
import logging

from app.config import Settings
from app.exceptions import AdminAuthError, CallbackVerificationError

logger = logging.getLogger(__name__)

# Rate limiter global, configuré par configure_limiter() au démarrage
limiter = Limiter(key_func=get_remote_address)

_rate_limits: Dict[str, str] = {
    "payments": "10/minute",
    "status": "30/minute",
}


def configure_limiter(settings: Settings):
    limiter.enabled = settings.RATE_LIMIT_ENABLED
    _rate_limits["payments"] = settings.RATE_LIMIT_PAYMENTS
    _rate_limits["status"] = settings.RATE_LIMIT_STATUS


def payments_rate_limit() -> str:
    return _rate_limits["payments"]


def status_rate_limit() -> str:
    return _rate_limits["status"]


async def add_security_headers(request: Request, call_next):
    """Ajouter des headers de sécurité"""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"

    if "/payments" in request.url.path:
        response.headers["Cache-Control"] = "no-store, max-age=0"

    return response


def compute_callback_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_callback_request(settings: Settings, client_ip: Optional[str], payload: bytes, signature: Optional[str]):
    """Vérifier l'origine d'un callback (IP autorisée et/ou signature HMAC-SHA256)."""
    if settings.CALLBACK_ALLOWED_IPS and client_ip not in settings.CALLBACK_ALLOWED_IPS:
        logger.error(f"❌ Callback refusé - IP non autorisée: {client_ip}")
        raise CallbackVerificationError("Callback origin not allowed")

    if not settings.CALLBACK_SECRET:
        return

    if not signature:
        logger.error("❌ Signature callback manquante")
        raise CallbackVerificationError("Missing callback signature")

    computed_signature = compute_callback_signature(settings.CALLBACK_SECRET, payload)
    if not hmac.compare_digest(computed_signature, signature):
        logger.error(f"❌ Signature callback invalide. Reçu: {signature[:20]}...")
        raise CallbackVerificationError("Invalid callback signature")


def require_admin_token(request: Request, x_admin_token: Optional[str] = Header(None)):
    """Dépendance FastAPI pour le listing administrateur"""
    settings: Settings = request.app.state.settings
    if not settings.ADMIN_API_TOKEN:
        logger.warning("⚠️ ADMIN_API_TOKEN non configuré - listing administrateur non protégé")
        return

    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise AdminAuthError("Admin token required")
