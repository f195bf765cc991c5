from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from sheetstore.db.metadata import build_engine, create_session_factory, init_database, session_scope
from sheetstore.services.errors import StorageBusy
from sheetstore.utils.config import DatabaseConfig, load_database_config
from sheetstore.utils.logging import get_logger, log_event, log_warning

LOGGER = get_logger(__name__)


class StorageRuntime:
    """Process-scoped owner of the connection pool.

    The engine is built on first use. Every unit of work goes through
    :meth:`transaction` or :meth:`read_scope`, which always hand the connection
    back to the pool. :meth:`shutdown` stops admitting work, waits for in-flight
    scopes up to a grace period and then disposes the pool.
    """

    def __init__(self, config: DatabaseConfig | None = None) -> None:
        self.config = config or load_database_config()
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight = 0
        self._closing = False

    # Lifecycle -----------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._engine is not None:
                return
            engine = build_engine(self.config)
            init_database(engine)
            self._engine = engine
            self._session_factory = create_session_factory(engine)
            self._closing = False
        log_event(LOGGER, "storage.start", dialect=engine.dialect.name, pool_size=self.config.pool_size)

    @property
    def engine(self) -> Engine:
        self.start()
        assert self._engine is not None
        return self._engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        self.start()
        assert self._session_factory is not None
        return self._session_factory

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def shutdown(self, grace_seconds: float | None = None) -> bool:
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        deadline = time.monotonic() + max(grace, 0.0)
        with self._lock:
            self._closing = True
            while self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._idle.wait(remaining)
            drained = self._in_flight == 0
            abandoned = self._in_flight
            engine = self._engine
            self._engine = None
            self._session_factory = None
        if engine is not None:
            engine.dispose()
        if drained:
            log_event(LOGGER, "storage.shutdown", drained=True)
        else:
            log_warning(LOGGER, "storage.shutdown", drained=False, abandoned=abandoned)
        return drained

    # Scopes --------------------------------------------------------------
    def _enter(self) -> sessionmaker[Session]:
        factory = self.session_factory
        with self._lock:
            if self._closing:
                raise StorageBusy("Storage is shutting down.")
            self._in_flight += 1
        return factory

    def _leave(self) -> None:
        with self._lock:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.notify_all()

    @contextmanager
    def transaction(self, session: Session | None = None) -> Iterator[Session]:
        """Run the enclosed block as one all-or-nothing unit of work.

        Passing an outer ``session`` joins that unit instead of opening a new one;
        commit and rollback then belong to the outer scope.
        """
        if session is not None:
            yield session
            return
        factory = self._enter()
        try:
            with session_scope(factory) as scoped:
                yield scoped
        except sa_exc.TimeoutError as error:
            raise StorageBusy() from error
        finally:
            self._leave()

    @contextmanager
    def read_scope(self, session: Session | None = None) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        factory = self._enter()
        try:
            scoped = factory()
            try:
                yield scoped
            except sa_exc.TimeoutError as error:
                raise StorageBusy() from error
            finally:
                scoped.close()
        finally:
            self._leave()
