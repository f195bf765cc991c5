from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from sheetstore.db.metadata import (
    MetadataRepository,
    build_engine,
    create_session_factory,
    init_database,
    session_scope,
)
from sheetstore.db.runtime import StorageRuntime
from sheetstore.services.ingestion import SpreadsheetIngester
from sheetstore.services.rows import RowStore
from sheetstore.services.schema_builder import SchemaBuilder
from sheetstore.utils.config import IngestConfig, load_database_config
from tests.fixtures.sheet_sources.factory import (
    DEFAULT_WORKSHEETS,
    WorksheetDefinition,
    build_csv_bytes,
    build_workbook_bytes,
)


@pytest.fixture
def sqlite_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    db_path = tmp_path / "sheets.db"
    url = f"sqlite:///{db_path}"
    monkeypatch.setenv("SHEETSTORE_DATABASE_URL", url)
    return url


@pytest.fixture
def session_factory(sqlite_url: str) -> Iterator[sessionmaker[Session]]:
    engine = build_engine(sqlite_url)
    init_database(engine)
    factory = create_session_factory(engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_scope(session_factory) as session:
        yield session


@pytest.fixture
def metadata_repository(db_session: Session) -> MetadataRepository:
    return MetadataRepository(db_session)


@pytest.fixture
def runtime(sqlite_url: str) -> Iterator[StorageRuntime]:
    storage = StorageRuntime(load_database_config(sqlite_url))
    try:
        yield storage
    finally:
        storage.shutdown(grace_seconds=0)


@pytest.fixture
def schema_builder(runtime: StorageRuntime) -> SchemaBuilder:
    return SchemaBuilder(runtime)


@pytest.fixture
def row_store(runtime: StorageRuntime, schema_builder: SchemaBuilder) -> RowStore:
    return RowStore(runtime, schema_builder)


@pytest.fixture
def ingest_config() -> IngestConfig:
    return IngestConfig(batch_size=2)


@pytest.fixture
def ingester(
    runtime: StorageRuntime,
    schema_builder: SchemaBuilder,
    ingest_config: IngestConfig,
) -> SpreadsheetIngester:
    return SpreadsheetIngester(runtime, schema_builder=schema_builder, config=ingest_config)


@pytest.fixture
def scores_sheet(row_store: RowStore) -> dict[str, object]:
    return row_store.create_sheet(
        "Scores",
        [
            {"name": "name", "type": "string"},
            {"name": "a", "type": "integer"},
            {"name": "b", "type": "integer"},
            {"name": "total", "type": "float", "sum_of": ["a", "b"]},
        ],
    )


@pytest.fixture
def workbook_builder():
    def _builder(*worksheets: WorksheetDefinition) -> bytes:
        return build_workbook_bytes(worksheets or DEFAULT_WORKSHEETS)

    return _builder


@pytest.fixture
def csv_builder():
    def _builder(headers: Sequence[object], rows: Sequence[Sequence[object]]) -> bytes:
        return build_csv_bytes(headers, rows)

    return _builder
