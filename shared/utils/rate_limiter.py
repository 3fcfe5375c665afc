"""
Rate limiting usando slowapi + Redis

Los límites se comparten entre instancias a través de Redis.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from starlette.responses import JSONResponse
import hashlib
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """
    Obtener IP real del cliente considerando proxies/load balancers.
    Importante para rate limiting correcto detrás de nginx/cloudflare.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # La primera IP es la del cliente
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return get_remote_address(request)


def get_scanner_identifier(request: Request) -> str:
    """
    Identificador para rate limiting: IP + hash del bearer token.
    Varios scanners detrás del mismo NAT de la puerta no comparten cupo.
    """
    ip = get_real_client_ip(request)

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token_hash = hashlib.sha256(auth_header.encode()).hexdigest()[:8]
        return f"{ip}:{token_hash}"

    return ip


def _storage_uri() -> str:
    if not settings.RATE_LIMIT_ENABLED:
        return "memory://"
    return settings.RATE_LIMIT_STORAGE_URI or settings.REDIS_URL


limiter = Limiter(
    key_func=get_scanner_identifier,
    storage_uri=_storage_uri(),
    strategy="fixed-window",
    headers_enabled=False,  # Deshabilitado para compatibilidad con response_model de FastAPI
    enabled=settings.RATE_LIMIT_ENABLED,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Handler para rate limit exceeded, retorna JSON con el tiempo de espera"""
    retry_after = exc.detail.split(" ")[-1] if exc.detail else "60"

    logger.warning(
        f"Rate limit exceeded - IP: {get_real_client_ip(request)}, "
        f"Path: {request.url.path}, "
        f"Retry-After: {retry_after}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "detail": "Demasiadas solicitudes. Por favor espera antes de intentar nuevamente.",
            "retry_after_seconds": int(retry_after) if retry_after.isdigit() else 60,
        },
        headers={"Retry-After": str(retry_after)}
    )


# Límites por familia de rutas
RATE_LIMITS = {
    # Scanners en la puerta: ráfagas altas al abrir el acceso
    "scan": "120/minute",

    # Callbacks de la pasarela (redirect + webhook, con reintentos)
    "callback": "100/minute",

    "admin": "120/minute",

    "default": "30/minute",
}
