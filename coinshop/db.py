import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import QueuePool

from coinshop.config import Settings, normalize_database_url
from coinshop.logging_utils import log_event, log_error_event


class Base(DeclarativeBase):
    pass


def create_db_engine(settings: Settings) -> Engine:
    url = normalize_database_url(settings.database_url)
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if make_url(url).database in (None, "", ":memory:"):
            # in-memory sqlite keeps one connection per thread, no queue to size
            return create_engine(url, future=True, connect_args=connect_args)
        # sqlite file DB shared between worker threads
        return create_engine(
            url,
            future=True,
            connect_args=connect_args,
            poolclass=QueuePool,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
        )
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
    )


class Database:
    """Connection pool plus the unit-of-work boundary used by the ledger store.

    start()/stop() are called by the app lifespan; the store only borrows it.
    """

    def __init__(self, settings: Settings, logger: logging.Logger):
        self.settings = settings
        self.logger = logger
        self.engine: Engine | None = None
        self.SessionLocal: sessionmaker | None = None

    def start(self) -> None:
        self.engine = create_db_engine(self.settings)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)
        if self.settings.create_schema:
            # models must be imported so their tables are registered on Base
            import coinshop.models  # noqa: F401
            Base.metadata.create_all(bind=self.engine)
        log_event(
            self.logger,
            "db_pool_ready",
            dialect=self.engine.dialect.name,
            pool_size=self.settings.pool_size,
            max_overflow=self.settings.max_overflow,
        )

    def stop(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            log_event(self.logger, "db_pool_closed")
        self.engine = None
        self.SessionLocal = None

    def ping(self) -> bool:
        with self.unit_of_work("ping") as db:
            db.execute(select(1))
        return True

    @contextmanager
    def unit_of_work(self, operation: str, isolation_level: str | None = None) -> Iterator[Session]:
        """One transaction: commit when the block finishes, roll back otherwise.

        On PostgreSQL the transaction runs at ``isolation_level`` when one is
        given and every statement in it is bounded by ``statement_timeout_ms``.
        A failing rollback is logged and the original exception is re-raised.
        """
        if self.SessionLocal is None:
            raise RuntimeError("database is not started")
        db = self.SessionLocal()
        try:
            if self.engine.dialect.name == "postgresql":
                if isolation_level:
                    db.connection(execution_options={"isolation_level": isolation_level})
                if self.settings.statement_timeout_ms:
                    db.execute(text(f"SET LOCAL statement_timeout = {int(self.settings.statement_timeout_ms)}"))
            yield db
            db.commit()
        except BaseException as exc:
            try:
                db.rollback()
            except Exception as rollback_exc:
                log_error_event(
                    self.logger,
                    "rollback_failed",
                    exc=rollback_exc,
                    operation=operation,
                    original_error=type(exc).__name__,
                )
            raise
        finally:
            db.close()
