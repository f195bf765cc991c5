from __future__ import annotations

import json
import logging

import pytest

from sheetstore.services.errors import SheetNotFound
from sheetstore.utils.config import (
    get_database_url,
    load_database_config,
    load_export_config,
    load_ingest_config,
)
from sheetstore.utils.logging import ConsoleFormatter, JsonFormatter, log_directory, log_event, log_timing


def test_database_config_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SHEETSTORE_DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://app@db/sheets")
    monkeypatch.setenv("SHEETSTORE_POOL_SIZE", "3")
    monkeypatch.setenv("SHEETSTORE_POOL_TIMEOUT", "2.5")
    monkeypatch.setenv("SHEETSTORE_SQL_ECHO", "yes")

    config = load_database_config()

    assert config.url == "postgresql+psycopg://app@db/sheets"
    assert config.pool_size == 3
    assert config.pool_timeout_seconds == 2.5
    assert config.echo is True
    assert load_database_config("sqlite:///:memory:").url == "sqlite:///:memory:"


def test_ingest_and_export_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHEETSTORE_INGEST_ALLOWED_TYPES", ".XLSX, csv")
    monkeypatch.setenv("SHEETSTORE_IMPORT_BATCH_SIZE", "0")
    monkeypatch.setenv("SHEETSTORE_EXPORT_LINK_EXPIRY", "60")

    ingest = load_ingest_config()
    assert ingest.allowed_types == ("xlsx", "csv")
    assert ingest.batch_size == 1
    assert ingest.preview_max_rows == 100
    assert load_export_config().link_expiry_seconds == 60


def test_data_root_anchors_default_database_and_log_locations(
    tmp_path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("SHEETSTORE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SHEETSTORE_LOG_DIR", raising=False)
    monkeypatch.setenv("DATA_ROOT", str(tmp_path))

    assert get_database_url() == f"sqlite:///{(tmp_path / 'sheets.db').as_posix()}"
    assert log_directory() == tmp_path / "logs"

    monkeypatch.setenv("SHEETSTORE_LOG_DIR", str(tmp_path / "elsewhere"))
    assert log_directory() == tmp_path / "elsewhere"


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def capture() -> tuple[logging.Logger, _Capture]:
    logger = logging.getLogger("sheetstore.tests.capture")
    handler = _Capture()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        yield logger, handler
    finally:
        logger.removeHandler(handler)


def test_structured_events_render_in_both_formats(capture) -> None:
    logger, handler = capture
    log_event(logger, "sheets.create", sheet_id=4, table_name="scores_1")

    record = handler.records[-1]
    payload = json.loads(JsonFormatter().format(record))
    assert payload["event"] == "sheets.create"
    assert payload["sheet_id"] == 4
    assert payload["severity"] == "INFO"
    assert "sheets.create sheet_id=4 table_name=scores_1" in ConsoleFormatter().format(record)


def test_log_timing_marks_domain_errors_as_warnings(capture) -> None:
    logger, handler = capture
    with pytest.raises(SheetNotFound):
        with log_timing(logger, "rows.add", sheet_id=9):
            raise SheetNotFound(9)

    events = [json.loads(record.getMessage())["event"] for record in handler.records]
    assert events == ["rows.add.start", "rows.add.error"]
    assert handler.records[-1].levelno == logging.WARNING
    assert handler.records[-1].exc_info is None


def test_log_timing_keeps_tracebacks_for_unexpected_errors(capture) -> None:
    logger, handler = capture
    with pytest.raises(ZeroDivisionError):
        with log_timing(logger, "export.render"):
            1 / 0

    assert handler.records[-1].levelno == logging.ERROR
    assert handler.records[-1].exc_info is not None


def test_plain_messages_are_kept_as_messages(capture) -> None:
    logger, handler = capture
    logger.info("not a structured event")

    record = handler.records[-1]
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "not a structured event"
    assert "event" not in payload
    assert ConsoleFormatter().format(record).endswith("| not a structured event")
