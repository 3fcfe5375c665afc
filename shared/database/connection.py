"""Conexión a la base de datos (PostgreSQL en producción, SQLite para desarrollo/tests)"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from sqlalchemy import event
import os
from typing import AsyncGenerator, Optional, Tuple
import logging
import asyncio

logger = logging.getLogger(__name__)

# Base para modelos SQLAlchemy
Base = declarative_base()

# Engine y session factory
engine = None
async_session_maker = None


def normalize_database_url(database_url: str) -> str:
    """Convertir la URL al driver async correspondiente"""
    # Limpiar parámetros SSL de la URL (se configuran en connect_args)
    if database_url.startswith("postgres") and "?" in database_url:
        database_url = database_url.split("?")[0]

    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql+psycopg://"):
        return database_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def make_async_engine(database_url: str) -> Tuple[AsyncEngine, async_sessionmaker]:
    """Crear engine + session factory para una URL"""
    database_url = normalize_database_url(database_url)
    is_sqlite = database_url.startswith("sqlite+aiosqlite://")

    if is_sqlite:
        # Una conexión por sesión; los locks de SQLite serializan las escrituras
        new_engine = create_async_engine(database_url, poolclass=NullPool)

        @event.listens_for(new_engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA busy_timeout=5000;")
            cursor.close()
    else:
        # Configuración del pool para Postgres
        pool_config = {
            "pool_pre_ping": True,  # Verificar conexiones antes de usar
            "pool_recycle": 300,
            "pool_timeout": 30,
            "pool_use_lifo": True,
            "pool_size": int(os.getenv("DATABASE_POOL_SIZE", "5")),
            "max_overflow": int(os.getenv("DATABASE_MAX_OVERFLOW", "10")),
        }
        logger.info(f"Pool config: size={pool_config['pool_size']}, overflow={pool_config['max_overflow']}")
        new_engine = create_async_engine(
            database_url,
            echo=os.getenv("APP_DEBUG", "False").lower() == "true",
            **pool_config
        )

    session_maker = async_sessionmaker(
        new_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )
    return new_engine, session_maker


async def init_db(database_url: Optional[str] = None):
    """Inicializar conexión a la base de datos"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Database engine already initialized, skipping...")
        return

    if database_url is None:
        from app.core.config import settings
        database_url = settings.DATABASE_URL

    logger.info(f"Initializing database connection to: {database_url.split('@')[1] if '@' in database_url else database_url}")

    engine, async_session_maker = make_async_engine(database_url)

    logger.info(f"Using async driver: {engine.url.drivername}")
    logger.info("Database engine initialized successfully")


async def create_schema(target_engine: Optional[AsyncEngine] = None):
    """Crear tablas (solo desarrollo/tests; en producción el esquema es de la capa de persistencia)"""
    # Registrar modelos en Base.metadata
    import shared.database.models  # noqa: F401

    target_engine = target_engine or engine
    if target_engine is None:
        raise RuntimeError("Database not initialized. Please check application startup.")
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency para obtener sesión de base de datos con retry para errores transitorios.

    Maneja errores de DNS y conexión transitorios con retry exponencial.
    """
    if async_session_maker is None:
        logger.error("Database not initialized! Call init_db() first.")
        raise RuntimeError("Database not initialized. Please check application startup.")

    max_retries = 3
    retry_delay = 0.5  # Segundos iniciales
    last_exception = None

    for attempt in range(max_retries):
        try:
            async with async_session_maker() as session:
                try:
                    yield session
                    return  # Exit después de yield exitoso
                finally:
                    await session.close()
        except OSError as e:
            # Captura errores de DNS y socket (socket.gaierror es subclase de OSError)
            last_exception = e
            if attempt < max_retries - 1:
                delay = retry_delay * (2 ** attempt)  # Exponential backoff
                logger.warning(
                    f"Database connection error (attempt {attempt + 1}/{max_retries}): {type(e).__name__}: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database connection failed after {max_retries} attempts: {e}")

    # Si llegamos aquí, todos los reintentos fallaron
    raise last_exception or RuntimeError("Database connection failed")


async def close_db():
    """Cerrar conexiones a la base de datos"""
    global engine, async_session_maker
    if engine:
        logger.info("Closing database connections...")
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database connections closed")
