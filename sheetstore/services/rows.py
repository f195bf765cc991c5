from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import Table, select
from sqlalchemy.orm import Session

from sheetstore.db.metadata import MetadataRepository
from sheetstore.db.runtime import StorageRuntime
from sheetstore.db.schema import Sheet, SheetColumn
from sheetstore.services.cells import CellCoercionError, coerce_value
from sheetstore.services.derived import DerivedColumnEngine, ResolutionPolicy, SumDefinition
from sheetstore.services.errors import InvalidCellValue, InvalidName, RowNotFound
from sheetstore.services.schema_builder import SchemaBuilder, build_table
from sheetstore.utils.logging import get_logger, log_timing, log_warning
from sheetstore.utils.naming import is_valid_identifier, sanitize_name

LOGGER = get_logger(__name__)

AVAILABLE = "Available"
TAKEN = "Already taken"


@dataclass
class SheetShape:
    """A sheet's column definitions and the physical table they describe."""

    sheet: Sheet
    columns: list[SheetColumn]
    table: Table
    engine: DerivedColumnEngine

    @property
    def plain_columns(self) -> list[SheetColumn]:
        return [column for column in self.columns if not column.is_derived]

    @property
    def column_names(self) -> list[str]:
        return [column.column_name for column in self.columns]


def load_shape(session: Session, sheet_id: int) -> SheetShape:
    repository = MetadataRepository(session)
    sheet = repository.require_sheet(sheet_id)
    columns = repository.get_columns(sheet.id)
    engine = DerivedColumnEngine(
        [SumDefinition(column.column_name, tuple(column.sum_of or ())) for column in columns if column.is_derived]
    )
    return SheetShape(sheet=sheet, columns=columns, table=build_table(sheet.table_name, columns), engine=engine)


def insert_batch(session: Session, table: Table, rows: Sequence[Mapping[str, object]]) -> int:
    if not rows:
        return 0
    session.execute(table.insert(), [dict(row) for row in rows])
    return len(rows)


def describe_column(column: SheetColumn) -> dict[str, Any]:
    return {
        "id": column.id,
        "column_name": column.column_name,
        "data_type": column.data_type,
        "sum_of": column.sum_of,
        "created_at": column.created_at,
    }


class RowStore:
    """Row-level reads and writes against a sheet's dynamic table."""

    def __init__(self, runtime: StorageRuntime, schema_builder: SchemaBuilder | None = None) -> None:
        self.runtime = runtime
        self.schema_builder = schema_builder or SchemaBuilder(runtime)

    # Rows ----------------------------------------------------------------
    def add_row(self, sheet_id: int, fields: Mapping[str, object] | None) -> dict[str, Any]:
        with log_timing(LOGGER, "rows.add", sheet_id=sheet_id):
            with self.runtime.transaction() as session:
                shape = load_shape(session, sheet_id)
                provided = self._normalize_fields(shape, fields)

                values: dict[str, object] = {}
                values.update(shape.engine.compute_row(provided, policy=ResolutionPolicy.INSERT))
                for column in shape.plain_columns:
                    values[column.column_name] = self._coerce(column, provided.get(column.column_name))

                result = session.execute(shape.table.insert().values(**values))
                row_id = result.inserted_primary_key[0]
                return self._fetch(session, shape, row_id)

    def update_row(self, sheet_id: int, row_id: int, fields: Mapping[str, object] | None) -> dict[str, Any]:
        with log_timing(LOGGER, "rows.update", sheet_id=sheet_id, row_id=row_id):
            with self.runtime.transaction() as session:
                shape = load_shape(session, sheet_id)
                existing = self._fetch(session, shape, row_id)
                provided = self._normalize_fields(shape, fields)

                computed = shape.engine.compute_row(provided, policy=ResolutionPolicy.UPDATE, existing=existing)
                changes: dict[str, object] = {}
                for column in shape.plain_columns:
                    if column.column_name in provided:
                        changes[column.column_name] = self._coerce(column, provided[column.column_name])
                if not changes and not computed:
                    return existing

                changes.update(computed)
                session.execute(shape.table.update().where(shape.table.c.id == row_id).values(**changes))
                return self._fetch(session, shape, row_id)

    def get_row(self, sheet_id: int, row_id: int) -> dict[str, Any]:
        with self.runtime.read_scope() as session:
            shape = load_shape(session, sheet_id)
            return self._fetch(session, shape, row_id)

    def iter_rows(self, sheet_id: int, *, batch_size: int = 500) -> Iterator[dict[str, Any]]:
        """Yield every row ordered by id, each keyed id, created_at, then declared columns."""
        with self.runtime.read_scope() as session:
            shape = load_shape(session, sheet_id)
            stmt = select(shape.table).order_by(shape.table.c.id.asc())
            result = session.execute(stmt.execution_options(yield_per=batch_size))
            for row in result.mappings():
                yield dict(row)

    # Sheets --------------------------------------------------------------
    def create_sheet(self, display_name: object, columns: Sequence[Mapping[str, object]]) -> dict[str, Any]:
        created = self.schema_builder.create_sheet(display_name, columns)
        return {"sheetId": created.sheet_id, "tableName": created.table_name}

    def get_sheet(self, sheet_id: int) -> dict[str, Any]:
        with self.runtime.read_scope() as session:
            repository = MetadataRepository(session)
            sheet = repository.require_sheet(sheet_id)
            columns = repository.get_columns(sheet.id)
            return {
                "sheetId": sheet.id,
                "sheetName": sheet.name,
                "tableName": sheet.table_name,
                "columns": [
                    {"column_name": column.column_name, "data_type": column.data_type, "sum_of": column.sum_of}
                    for column in columns
                ],
            }

    def list_sheets(
        self,
        *,
        include_columns: bool = True,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        with self.runtime.read_scope() as session:
            sheets = MetadataRepository(session).list_sheets(
                include_columns=include_columns,
                limit=limit,
                offset=offset,
            )
            listing: list[dict[str, Any]] = []
            for sheet in sheets:
                entry: dict[str, Any] = {
                    "id": sheet.id,
                    "name": sheet.name,
                    "table_name": sheet.table_name,
                    "created_at": sheet.created_at,
                }
                if include_columns:
                    entry["columns"] = [describe_column(column) for column in sheet.columns]
                listing.append(entry)
            return listing

    def delete_sheet(self, sheet_id: int) -> dict[str, Any]:
        dropped = self.schema_builder.drop_sheet(sheet_id)
        return {
            "message": "Sheet deleted successfully",
            "deletedSheet": dropped["displayName"],
            "deletedTable": dropped["tableName"],
        }

    def check_table_availability(self, raw: object) -> str:
        if not isinstance(raw, str) or not raw.strip():
            raise InvalidName(raw, "tableName is required.")
        candidate = sanitize_name(raw)
        if not is_valid_identifier(candidate):
            raise InvalidName(
                raw,
                "Invalid table name. Use letters, numbers and underscores, "
                "start with a letter or underscore.",
            )
        return TAKEN if self.schema_builder.table_exists(candidate) else AVAILABLE

    # Helpers -------------------------------------------------------------
    def _normalize_fields(self, shape: SheetShape, fields: Mapping[str, object] | None) -> dict[str, object]:
        known = set(shape.column_names)
        normalized: dict[str, object] = {}
        unknown: list[str] = []
        for key, value in (fields or {}).items():
            try:
                name = sanitize_name(key)
            except InvalidName:
                unknown.append(str(key))
                continue
            if name in known:
                normalized[name] = value
            else:
                unknown.append(str(key))
        if unknown:
            log_warning(LOGGER, "rows.unknown_fields", sheet_id=shape.sheet.id, fields=unknown)
        return normalized

    def _coerce(self, column: SheetColumn, value: object) -> object:
        try:
            return coerce_value(column.data_type, value, strict=True)
        except CellCoercionError:
            raise InvalidCellValue(column=column.column_name, data_type=column.data_type, value=value) from None

    def _fetch(self, session: Session, shape: SheetShape, row_id: int) -> dict[str, Any]:
        row = session.execute(select(shape.table).where(shape.table.c.id == row_id)).mappings().first()
        if row is None:
            raise RowNotFound(shape.sheet.id, row_id)
        return dict(row)
