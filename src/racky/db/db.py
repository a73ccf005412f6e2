from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from loguru import logger
from sqla_wrapper import Session, SQLAlchemy
from sqlalchemy import orm, text

from alembic import command
from alembic.config import Config
from racky.utils import root_dir

engine_options = {
    "pool_size": 25,
    "max_overflow": 25,
    "pool_pre_ping": True,
    "pool_recycle": 1800,
    "echo": False,
}


class Base(orm.DeclarativeBase):
    """Base class for all database models"""

    pass


def create_db(url: str, *, pool_size: int | None = None, max_overflow: int | None = None) -> SQLAlchemy:
    """Build the database handle shared by every service in a process."""
    if url.startswith("sqlite"):
        options: dict[str, Any] = {
            "echo": False,
            "connect_args": {"check_same_thread": False},
        }
    else:
        options = dict(engine_options)
        if pool_size is not None:
            options["pool_size"] = pool_size
        if max_overflow is not None:
            options["max_overflow"] = max_overflow
    return SQLAlchemy(url, engine_options=options)


@contextmanager
def db_session(db: SQLAlchemy) -> Generator[Session, Any, None]:
    with db.Session() as session:
        s: Session = session

        yield s


def ping(db: SQLAlchemy) -> bool:
    try:
        with db.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.log("DATABASE", f"Database ping failed: {e}")
        return False


def create_all(db: SQLAlchemy) -> None:
    """Create tables straight from the models, bypassing alembic."""
    from racky.db.base_model import get_base_metadata

    get_base_metadata().create_all(db.engine)


def run_migrations(database_url: str) -> None:
    """Run any pending migrations on startup."""
    try:
        alembic_cfg = Config(root_dir / "src" / "alembic.ini")
        alembic_cfg.set_main_option("script_location", str(root_dir / "src" / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", database_url)
        command.upgrade(alembic_cfg, "head")
        logger.log("DATABASE", "Database migrations are up to date")
    except Exception as e:
        logger.error(f"Error running database migrations: {e}")
        raise
