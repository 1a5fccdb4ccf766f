import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from .errors import StartupFailure
from .settings import Settings

log = logging.getLogger(__name__)


def make_engine(cfg: Settings) -> Engine:
    """Build the process-wide engine with a bounded wait on every storage call."""
    url = cfg.database_url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    if url in ("sqlite://", "sqlite:///:memory:"):
        # one connection, otherwise every session sees its own empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        # wait for locks instead of failing immediately
        connect_args = {"timeout": cfg.db_timeout, "check_same_thread": False}
    else:
        connect_args = {
            "connect_timeout": max(1, int(cfg.db_timeout)),
            "options": f"-c statement_timeout={int(cfg.db_timeout * 1000)}",
        }
    return create_engine(url, pool_timeout=cfg.db_timeout, connect_args=connect_args, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create tables and make sure the database answers; fatal when it does not."""
    # table classes must be registered on the metadata before create_all
    from . import models  # noqa: F401

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        SQLModel.metadata.create_all(engine)
    except SQLAlchemyError as e:
        log.error("Database error: %s", e)
        raise StartupFailure(f"database unreachable: {e}") from e
    log.info("Database ready at %s", engine.url.render_as_string(hide_password=True))


def close_db(engine: Engine) -> None:
    engine.dispose()
    log.info("Database connection closed")


def get_session(engine: Engine) -> Session:
    # prevent attribute expiration so simple reads after commit are safe
    return Session(engine, expire_on_commit=False)
