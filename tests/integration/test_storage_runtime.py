from __future__ import annotations

import threading
import time

import pytest
from sqlalchemy import inspect, text

from sheetstore.db.runtime import StorageRuntime
from sheetstore.services.errors import StorageBusy
from sheetstore.utils.config import DatabaseConfig


def test_start_is_lazy_and_creates_metadata_tables(sqlite_url: str) -> None:
    runtime = StorageRuntime(DatabaseConfig(url=sqlite_url))
    try:
        tables = set(inspect(runtime.engine).get_table_names())
        assert {"sheets", "sheet_columns"} <= tables
    finally:
        runtime.shutdown(grace_seconds=0)


def test_transaction_rolls_back_on_error(runtime: StorageRuntime) -> None:
    with runtime.transaction() as session:
        session.execute(text("CREATE TABLE scratch (value INTEGER)"))

    with pytest.raises(ValueError):
        with runtime.transaction() as session:
            session.execute(text("INSERT INTO scratch (value) VALUES (1)"))
            raise ValueError("boom")

    with runtime.read_scope() as session:
        assert session.execute(text("SELECT COUNT(*) FROM scratch")).scalar_one() == 0
    assert runtime.in_flight == 0


def test_outer_session_is_joined(runtime: StorageRuntime) -> None:
    with runtime.transaction() as outer:
        with runtime.transaction(outer) as inner:
            assert inner is outer
        assert runtime.in_flight == 1
    assert runtime.in_flight == 0


def test_shutdown_waits_for_in_flight_work(runtime: StorageRuntime) -> None:
    entered = threading.Event()
    release = threading.Event()

    def _work() -> None:
        with runtime.read_scope():
            entered.set()
            release.wait(5)

    worker = threading.Thread(target=_work)
    worker.start()
    assert entered.wait(5)

    threading.Timer(0.2, release.set).start()
    started = time.monotonic()
    assert runtime.shutdown(grace_seconds=5) is True
    assert time.monotonic() - started >= 0.1
    worker.join(5)
    assert runtime.in_flight == 0


def test_shutdown_gives_up_after_grace_period(runtime: StorageRuntime) -> None:
    entered = threading.Event()
    release = threading.Event()
    rejected: list[BaseException] = []

    def _work() -> None:
        with runtime.read_scope():
            entered.set()
            release.wait(5)

    worker = threading.Thread(target=_work)
    worker.start()
    assert entered.wait(5)

    def _late_arrival() -> None:
        try:
            with runtime.transaction():
                pass
        except StorageBusy as error:
            rejected.append(error)

    closer = threading.Thread(target=lambda: runtime.shutdown(grace_seconds=0.5))
    closer.start()
    time.sleep(0.1)
    _late_arrival()
    closer.join(5)
    release.set()
    worker.join(5)

    assert len(rejected) == 1


def test_saturated_pool_fails_fast_with_storage_busy(sqlite_url: str) -> None:
    runtime = StorageRuntime(
        DatabaseConfig(url=sqlite_url, pool_size=1, max_overflow=0, pool_timeout_seconds=0.3)
    )
    try:
        with runtime.read_scope() as holder:
            holder.execute(text("SELECT 1"))
            started = time.monotonic()
            with pytest.raises(StorageBusy):
                with runtime.read_scope() as waiter:
                    waiter.execute(text("SELECT 1"))
            assert time.monotonic() - started < 5
        assert runtime.in_flight == 0

        with runtime.read_scope() as session:
            assert session.execute(text("SELECT 1")).scalar_one() == 1
    finally:
        runtime.shutdown(grace_seconds=0)
