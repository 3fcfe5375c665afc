"""Utilidades para retry con backoff exponencial y operaciones acotadas contra el datastore"""
import asyncio
import logging
from typing import Awaitable, Callable, Any, Type, Tuple

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.utils.errors import StoreTimeoutError, StoreUnavailableError

logger = logging.getLogger(__name__)


async def retry_with_backoff(
    func: Callable,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,)
) -> Any:
    """
    Ejecutar función con retry y backoff exponencial

    Args:
        func: Función a ejecutar (async o sync)
        max_retries: Número máximo de reintentos
        initial_delay: Delay inicial en segundos
        max_delay: Delay máximo en segundos
        exponential_base: Base para cálculo exponencial
        exceptions: Excepciones que deben trigger retry

    Returns:
        Resultado de la función
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            if asyncio.iscoroutinefunction(func):
                return await func()
            else:
                return func()
        except exceptions as e:
            if attempt == max_retries:
                raise e

            logger.warning(f"Reintento {attempt + 1}/{max_retries} en {delay:.2f}s: {type(e).__name__}: {e}")
            await asyncio.sleep(delay)
            delay = min(delay * exponential_base, max_delay)

    raise RuntimeError("Max retries exceeded")


async def _rollback(db: AsyncSession):
    try:
        await db.rollback()
    except SQLAlchemyError as e:
        logger.error(f"Rollback falló tras error de datastore: {e}")


async def run_store_operation(
    db: AsyncSession,
    operation: Callable[[], Awaitable[Any]],
    timeout: float,
    max_retries: int = 2,
    initial_delay: float = 0.1
) -> Any:
    """
    Ejecutar UNA operación atómica contra el datastore con timeout

    - Timeout -> StoreTimeoutError, sin reintento (pudo haber hecho commit)
    - Error de conexión -> StoreUnavailableError, se reintenta solo la operación
    """
    async def attempt():
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await _rollback(db)
            raise StoreTimeoutError(f"Operación excedió {timeout}s") from e
        except (OperationalError, InterfaceError, OSError) as e:
            await _rollback(db)
            raise StoreUnavailableError(f"{type(e).__name__}: {e}") from e

    return await retry_with_backoff(
        attempt,
        max_retries=max_retries,
        initial_delay=initial_delay,
        max_delay=1.0,
        exceptions=(StoreUnavailableError,)
    )
