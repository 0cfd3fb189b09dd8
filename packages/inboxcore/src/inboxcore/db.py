import functools
from uuid import UUID

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from inboxcore.settings import get_settings

Base = declarative_base()


@functools.lru_cache()
def get_engine():
    """
    Get SQLAlchemy engine (cached).

    This function lazily initializes the engine to avoid import-time side effects.
    The engine is created using DATABASE_URL from settings.
    """
    settings = get_settings()
    return create_engine(settings.DATABASE_URL, pool_pre_ping=True, echo=False)


@functools.lru_cache()
def get_sessionmaker():
    """Get SQLAlchemy sessionmaker (cached)."""
    engine = get_engine()
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """
    Dependency generator for FastAPI to get database session.

    Yields a database session and ensures it's closed after use.
    """
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def set_tenant_context(db: Session, organization_id: UUID | None) -> None:
    """
    Scope the current transaction to an organization.

    Row-level security policies read app.current_organization_id; the setting
    is transaction-local, so it must be set again after each commit.
    """
    db.execute(
        text("SELECT set_config('app.current_organization_id', :org_id, true)"),
        {"org_id": str(organization_id) if organization_id else ""},
    )
