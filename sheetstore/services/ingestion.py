from __future__ import annotations

import csv
import io
import re
import time
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Optional

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from sheetstore.db.runtime import StorageRuntime
from sheetstore.db.schema import DataType
from sheetstore.services.cells import cell_text, coerce_value, infer_column_type, is_blank
from sheetstore.services.derived import DerivedColumnEngine, SumDefinition, evaluation_order
from sheetstore.services.errors import (
    EmptyWorksheet,
    InvalidName,
    InvalidSumDefinition,
    UnsupportedFileType,
    WorksheetNotFound,
)
from sheetstore.services.rows import insert_batch
from sheetstore.services.schema_builder import RESERVED_COLUMNS, ColumnSpec, SchemaBuilder, build_table
from sheetstore.utils.config import IngestConfig, load_ingest_config
from sheetstore.utils.logging import get_logger, log_event, log_timing
from sheetstore.utils.naming import sanitize_name

LOGGER = get_logger(__name__)

SUM_HEADER = re.compile(r"^(.+?)__sum\((.*?)\)$", re.IGNORECASE)
SPREADSHEET_TYPES = ("xlsx", "xlsm")


@dataclass(frozen=True)
class UploadOptions:
    sheet_name: Optional[str] = None
    worksheet: Optional[str] = None
    preview: bool = False
    sample_size: Optional[int] = None


@dataclass
class ParsedWorksheet:
    name: str
    header: list[object]
    # (1-based physical row number, cells padded to the header width)
    rows: list[tuple[int, list[object]]] = field(default_factory=list)


@dataclass(frozen=True)
class HeaderColumn:
    name: str
    header: str
    sum_of: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class InferredColumn:
    name: str
    data_type: DataType
    sum_of: Optional[tuple[str, ...]] = None

    def as_spec(self) -> ColumnSpec:
        return ColumnSpec(name=self.name, data_type=self.data_type, sum_of=self.sum_of)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.data_type.value,
            "sum_of": list(self.sum_of) if self.sum_of else None,
        }


@dataclass
class PreviewResult:
    sheet_name: str
    worksheet: str
    detected_rows: int
    columns: list[InferredColumn]
    sample_rows: list[dict[str, Any]]
    warnings: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "preview": True,
            "sheetName": self.sheet_name,
            "worksheet": self.worksheet,
            "detectedRows": self.detected_rows,
            "columns": [column.to_dict() for column in self.columns],
            "sanitizedCols": [column.name for column in self.columns],
            "inferredTypes": [column.data_type.value for column in self.columns],
            "sampleRows": self.sample_rows,
            "warnings": self.warnings,
        }


@dataclass
class ImportResult:
    sheet_id: int
    table_name: str
    rows_inserted: int
    worksheet: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": "Import completed",
            "sheetId": self.sheet_id,
            "tableName": self.table_name,
            "rowsInserted": self.rows_inserted,
            "worksheet": self.worksheet,
        }


def file_extension(filename: str | None) -> str:
    return PurePath(filename or "").suffix.lower().lstrip(".")


def validate_upload(filename: str | None, size: int, config: IngestConfig) -> str:
    extension = file_extension(filename)
    if extension not in config.allowed_types:
        raise UnsupportedFileType(filename)
    if size > config.max_bytes:
        raise UnsupportedFileType(filename, f"File exceeds the {config.max_bytes} byte upload limit.")
    return extension


def _trim_header(header: Sequence[object]) -> list[object]:
    width = len(header)
    while width and is_blank(header[width - 1]):
        width -= 1
    return list(header[:width])


def _padded(values: Sequence[object], width: int) -> list[object]:
    cells = list(values[:width])
    cells.extend([None] * (width - len(cells)))
    return cells


def _collect(name: str, rows: list[tuple[int, Sequence[object]]]) -> ParsedWorksheet:
    populated = [(number, values) for number, values in rows if not all(is_blank(value) for value in values)]
    if not populated:
        raise EmptyWorksheet(name)
    _, header_values = populated[0]
    header = _trim_header(header_values)
    width = len(header)
    return ParsedWorksheet(
        name=name,
        header=header,
        rows=[(number, _padded(values, width)) for number, values in populated[1:]],
    )


def read_workbook(content: bytes, worksheet: str | None = None) -> ParsedWorksheet:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as error:
        raise UnsupportedFileType(None, "Uploaded file is not a readable workbook.") from error
    try:
        if not workbook.sheetnames:
            raise EmptyWorksheet()
        name = worksheet or workbook.sheetnames[0]
        if name not in workbook.sheetnames:
            raise WorksheetNotFound(name)
        sheet = workbook[name]
        rows = [(number, list(values)) for number, values in enumerate(sheet.iter_rows(values_only=True), start=1)]
        return _collect(name, rows)
    finally:
        workbook.close()


def read_csv(content: bytes, filename: str, worksheet: str | None = None) -> ParsedWorksheet:
    name = PurePath(filename).stem or "csv"
    if worksheet and worksheet != name:
        raise WorksheetNotFound(worksheet)
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as error:
        raise UnsupportedFileType(filename, "CSV uploads must be UTF-8 encoded.") from error
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=",")
    rows: list[tuple[int, Sequence[object]]] = []
    for values in reader:
        rows.append((reader.line_num, values))
    return _collect(name, rows)


def analyze_headers(header: Sequence[object]) -> list[HeaderColumn]:
    """Resolve header cells into unique column names and derived-column sources."""
    used: set[str] = set(RESERVED_COLUMNS)
    resolved: list[HeaderColumn] = []
    for index, cell in enumerate(header):
        fallback = f"col{index + 1}"
        text = "" if is_blank(cell) else cell_text(cell)
        base = text or fallback
        sum_of: Optional[tuple[str, ...]] = None

        match = SUM_HEADER.match(base)
        if match:
            base = match.group(1).strip()
            sources = [source.strip() for source in match.group(2).split(",") if source.strip()]
            if not sources:
                raise InvalidSumDefinition(text)
            try:
                sum_of = tuple(sanitize_name(source) for source in sources)
            except InvalidName:
                raise InvalidSumDefinition(text) from None

        try:
            name = sanitize_name(base)
        except InvalidName:
            name = fallback
        if name in used:
            suffix = 2
            while f"{name}_{suffix}" in used:
                suffix += 1
            name = f"{name}_{suffix}"
        used.add(name)
        resolved.append(HeaderColumn(name=name, header=text, sum_of=sum_of))

    evaluation_order(
        [SumDefinition(column.name, column.sum_of) for column in resolved if column.sum_of],
        known_columns=[column.name for column in resolved],
    )
    return resolved


def infer_columns(
    headers: Sequence[HeaderColumn],
    rows: Sequence[tuple[int, Sequence[object]]],
    sample_size: int = 50,
) -> list[InferredColumn]:
    inferred: list[InferredColumn] = []
    for index, column in enumerate(headers):
        if column.sum_of:
            inferred.append(InferredColumn(name=column.name, data_type=DataType.FLOAT, sum_of=column.sum_of))
            continue
        data_type = infer_column_type((values[index] for _, values in rows), sample_size)
        inferred.append(InferredColumn(name=column.name, data_type=data_type))
    return inferred


class SpreadsheetIngester:
    """Turns an uploaded workbook or CSV into a previewed or imported sheet."""

    def __init__(
        self,
        runtime: StorageRuntime,
        *,
        schema_builder: SchemaBuilder | None = None,
        config: IngestConfig | None = None,
    ) -> None:
        self.runtime = runtime
        self.schema_builder = schema_builder or SchemaBuilder(runtime)
        self.config = config or load_ingest_config()

    def parse(self, content: bytes, filename: str, worksheet: str | None = None) -> ParsedWorksheet:
        extension = validate_upload(filename, len(content), self.config)
        with log_timing(LOGGER, "ingest.parse", filename=filename, worksheet=worksheet):
            if extension in SPREADSHEET_TYPES:
                return read_workbook(content, worksheet)
            return read_csv(content, filename, worksheet)

    def analyze(self, parsed: ParsedWorksheet) -> list[InferredColumn]:
        headers = analyze_headers(parsed.header)
        return infer_columns(headers, parsed.rows, self.config.inference_sample_size)

    def clamp_sample_size(self, requested: object) -> int:
        if requested in (None, ""):
            return self.config.preview_default_rows
        try:
            size = int(requested)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return self.config.preview_default_rows
        return max(1, min(self.config.preview_max_rows, size))

    def upload(self, content: bytes, filename: str, options: UploadOptions) -> dict[str, Any]:
        if options.preview:
            return self.preview(content, filename, options).to_dict()
        return self.import_file(content, filename, options).to_dict()

    def preview(self, content: bytes, filename: str, options: UploadOptions) -> PreviewResult:
        parsed = self.parse(content, filename, options.worksheet)
        columns = self.analyze(parsed)
        engine = _engine_for(columns)
        sample_size = self.clamp_sample_size(options.sample_size)

        with log_timing(LOGGER, "ingest.preview", worksheet=parsed.name, sample_size=sample_size):
            sample_rows: list[dict[str, Any]] = []
            warnings: list[str] = []
            for row_number, values in parsed.rows[:sample_size]:
                plain = _parse_plain_cells(columns, values)
                computed, row_warnings = engine.compute_row_lenient(plain, row_number=row_number)
                warnings.extend(row_warnings)
                sample_rows.append(_ordered(columns, plain, computed))

        return PreviewResult(
            sheet_name=options.sheet_name or _default_sheet_name(),
            worksheet=parsed.name,
            detected_rows=len(parsed.rows),
            columns=columns,
            sample_rows=sample_rows,
            warnings=warnings,
        )

    def import_file(self, content: bytes, filename: str, options: UploadOptions) -> ImportResult:
        parsed = self.parse(content, filename, options.worksheet)
        columns = self.analyze(parsed)
        engine = _engine_for(columns)
        sheet_name = options.sheet_name or _default_sheet_name()
        batch_size = max(self.config.batch_size, 1)

        with log_timing(LOGGER, "ingest.import", worksheet=parsed.name, rows=len(parsed.rows)):
            with self.runtime.transaction() as session:
                created = self.schema_builder.create_sheet(
                    sheet_name,
                    [column.as_spec() for column in columns],
                    session=session,
                )
                table = build_table(created.table_name, created.columns)
                inserted = 0
                for start in range(0, len(parsed.rows), batch_size):
                    batch = []
                    for row_number, values in parsed.rows[start : start + batch_size]:
                        plain = _parse_plain_cells(columns, values)
                        computed = engine.compute_row(plain, row_number=row_number)
                        batch.append(_ordered(columns, plain, computed))
                    inserted += insert_batch(session, table, batch)
                    log_event(LOGGER, "ingest.batch", table_name=created.table_name, inserted=inserted)

        return ImportResult(
            sheet_id=created.sheet_id,
            table_name=created.table_name,
            rows_inserted=inserted,
            worksheet=parsed.name,
        )


def _default_sheet_name() -> str:
    return f"import_{int(time.time() * 1000)}"


def _engine_for(columns: Sequence[InferredColumn]) -> DerivedColumnEngine:
    return DerivedColumnEngine([SumDefinition(column.name, column.sum_of) for column in columns if column.sum_of])


def _parse_plain_cells(columns: Sequence[InferredColumn], values: Sequence[object]) -> dict[str, object]:
    return {
        column.name: coerce_value(column.data_type, values[index])
        for index, column in enumerate(columns)
        if not column.sum_of
    }


def _ordered(
    columns: Sequence[InferredColumn],
    plain: dict[str, object],
    computed: dict[str, Any],
) -> dict[str, Any]:
    return {
        column.name: computed.get(column.name) if column.sum_of else plain.get(column.name)
        for column in columns
    }
