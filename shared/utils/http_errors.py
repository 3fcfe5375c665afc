"""Traducción de errores del datastore a respuestas HTTP"""
from fastapi import HTTPException, status

from shared.utils.errors import StoreTimeoutError


def store_error_to_http(e: Exception) -> HTTPException:
    """StoreTimeoutError -> 504, StoreUnavailableError -> 503"""
    if isinstance(e, StoreTimeoutError):
        return HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="El datastore no respondió a tiempo, reintente la operación"
        )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Datastore no disponible"
    )
