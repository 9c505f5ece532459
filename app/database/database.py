from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    """Opciones del engine según el motor (PostgreSQL en producción, SQLite en tests)."""
    if url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
    }


engine = create_engine(
    settings.database_url,
    echo=settings.DEBUG and settings.ENVIRONMENT != "test",
    **_engine_options(settings.database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Genera una sesión de base de datos por request."""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def is_postgres(db) -> bool:
    """True si la sesión está ligada a PostgreSQL (row locks y statement_timeout)."""
    return db.get_bind().dialect.name == "postgresql"


# SQLSTATE de PostgreSQL: query_canceled (statement_timeout) y lock_not_available
TIMEOUT_SQLSTATES = ("57014", "55P03")


def is_timeout_error(exc: Exception) -> bool:
    """True si la excepción del driver corresponde a un timeout de sentencia o de lock."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in TIMEOUT_SQLSTATES:
        return True
    return "timeout" in str(orig or exc).lower()
