from sqlalchemy import create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker

from midnight_brew.core.config import get_settings


settings = get_settings()

db_url = settings.database_url
try:
    is_sqlite = make_url(db_url).get_backend_name() == "sqlite"
except Exception:
    # Fallback: handle values like "sqlite+pysqlite:///:memory:"
    is_sqlite = db_url.startswith("sqlite")

# Create engine: tune params for SQLite vs. others
if is_sqlite:
    # SQLite: limited concurrency; avoid unsupported pool args
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
        echo=False,
    )
else:
    # Postgres/MySQL: enable pooling. Every instance shares the same session table.
    engine = create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=10,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db_session():
    db = SessionLocal()
    try:
        yield db
    except Exception:
        # Ensure failed requests don't leave transactions open
        db.rollback()
        raise
    finally:
        db.close()
