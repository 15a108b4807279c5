from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from image_service.config import settings
import structlog

logger = structlog.get_logger(__name__)

# Create base class for ORM models
Base = declarative_base()


def enable_sqlite_foreign_keys(sqlite_engine):
    """SQLite only enforces FOREIGN KEY constraints when asked to per connection"""
    @event.listens_for(sqlite_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return sqlite_engine


def build_engine(database_url: str):
    """Create an engine, with SQLite-specific connect args for local dev"""
    if database_url.startswith("sqlite"):
        return enable_sqlite_foreign_keys(create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        ))

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600
    )


# Create database engine
engine = build_engine(settings.database_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(bind=None):
    """Initialize database tables"""
    # registers the mapped classes on Base.metadata
    from image_service import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise
