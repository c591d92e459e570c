import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from commission_core.core.config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Render hands out postgres:// URLs; SQLAlchemy + psycopg3 needs postgresql+psycopg://"""
    if url.startswith("postgres://"):
        return "postgresql+psycopg://" + url[len("postgres://"):]
    if url.startswith("postgresql://") and "+psycopg" not in url:
        return "postgresql+psycopg://" + url[len("postgresql://"):]
    return url


def build_engine(url: str):
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        # No FOR UPDATE on SQLite; the in-process payment lock is the only guard there
        return create_engine(url, connect_args={"check_same_thread": False}, echo=settings.DB_ECHO)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        echo=settings.DB_ECHO,
    )


engine = build_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def init_database(bind=None):
    """Create the ledger, payroll and notification tables if they are missing."""
    import commission_core.models  # noqa: F401  register every table

    bind = bind or engine
    logger.info(f"Creating database tables on {bind.url.get_backend_name()}...")
    Base.metadata.create_all(bind=bind)
    logger.info("Database ready")


# Dependency for FastAPI routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
