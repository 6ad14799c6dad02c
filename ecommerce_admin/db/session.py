from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool
from sqlalchemy import create_engine
from ecommerce_admin.core.config import settings
from ecommerce_admin.core.errors import ConcurrencyError

class Base(DeclarativeBase): pass

def _engine_kwargs(dsn: str) -> dict:
    # in-memory sqlite must share one connection across threads
    if dsn.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True, "pool_timeout": settings.DB_POOL_TIMEOUT}

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def commit_or_conflict(db: Session):
    """Commit the unit of work; a stale version check becomes a ConcurrencyError."""
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrencyError()

def init_db():
    import ecommerce_admin.db.models  # noqa
    Base.metadata.create_all(bind=engine)
