from functools import lru_cache
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from invoicing.core.config import settings
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()

# Los objetos se mantienen cargados después del commit: el builder devuelve
# la factura con sus ítems y callbacks en memoria.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)


@lru_cache
def get_engine() -> Engine:
    """Engine síncrono construido a partir de la configuración global."""
    url = settings.database_url
    options = {"pool_pre_ping": True, "echo": settings.DEBUG}
    if url.startswith("postgresql"):
        options.update(pool_size=10, max_overflow=20)
    return create_engine(url, **options)


def init_db(engine: Engine = None) -> None:
    """Crear las tablas del módulo de facturación."""
    # Registrar modelos en el metadata
    import invoicing.modules.invoices.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def get_db():
    """Genera una sesión de base de datos síncrona."""
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()
