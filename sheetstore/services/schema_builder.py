from __future__ import annotations

import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Double, Integer, MetaData, Table, Text, inspect
from sqlalchemy.orm import Session
from sqlalchemy.types import TypeEngine

from sheetstore.db.metadata import MetadataRepository
from sheetstore.db.runtime import StorageRuntime
from sheetstore.db.schema import DataType, SheetColumn
from sheetstore.services.derived import SumDefinition, evaluation_order
from sheetstore.services.errors import (
    DuplicateColumnName,
    DuplicateTableName,
    InvalidName,
    UnsupportedType,
)
from sheetstore.utils.logging import get_logger, log_timing
from sheetstore.utils.naming import is_valid_identifier, sanitize_name

LOGGER = get_logger(__name__)

RESERVED_COLUMNS = ("id", "created_at")
MAX_IDENTIFIER_LENGTH = 63

_STORAGE_TYPES: dict[DataType, type[TypeEngine]] = {
    DataType.STRING: Text,
    DataType.INTEGER: Integer,
    DataType.FLOAT: Double,
    DataType.BOOLEAN: Boolean,
    DataType.DATE: DateTime,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_data_type(logical: object) -> DataType:
    if isinstance(logical, DataType):
        return logical
    if isinstance(logical, str):
        try:
            return DataType(logical.strip().lower())
        except ValueError:
            pass
    raise UnsupportedType(logical)


def map_type(logical: object) -> TypeEngine:
    """Map a logical column type to the SQL type of its physical column."""
    return _STORAGE_TYPES[parse_data_type(logical)]()


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    data_type: DataType
    sum_of: Optional[tuple[str, ...]] = None

    @property
    def is_derived(self) -> bool:
        return bool(self.sum_of)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ColumnSpec:
        sources = payload.get("sum_of")
        return cls(
            name=payload.get("name"),  # type: ignore[arg-type]
            data_type=payload.get("type") or payload.get("data_type"),  # type: ignore[arg-type]
            sum_of=tuple(sources) if sources else None,  # type: ignore[arg-type]
        )


@dataclass
class CreatedSheet:
    sheet_id: int
    table_name: str
    display_name: str
    columns: list[ColumnSpec] = field(default_factory=list)


class _TableSuffix:
    """Millisecond timestamps that strictly increase within the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            value = max(int(time.time() * 1000), self._last + 1)
            self._last = value
            return value


_SUFFIX = _TableSuffix()


def build_table_name(display_name: str) -> str:
    suffix = str(_SUFFIX.next())
    base = sanitize_name(display_name)
    if not is_valid_identifier(base):
        base = f"sheet_{base}"
    base = base[: MAX_IDENTIFIER_LENGTH - len(suffix) - 1]
    return f"{base}_{suffix}"


def build_table(table_name: str, columns: Sequence[ColumnSpec | SheetColumn]) -> Table:
    """Describe a sheet's physical table: id, created_at, then declared columns in order."""
    physical = [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("created_at", DateTime, default=_utcnow, nullable=False),
    ]
    for column in columns:
        if isinstance(column, SheetColumn):
            physical.append(Column(column.column_name, map_type(column.data_type), nullable=True))
        else:
            physical.append(Column(column.name, map_type(column.data_type), nullable=True))
    return Table(table_name, MetaData(), *physical)


def normalize_column_specs(column_specs: Sequence[ColumnSpec | Mapping[str, object]]) -> list[ColumnSpec]:
    """Sanitize names and types, force derived columns to float and validate the sum graph."""
    if not column_specs:
        raise InvalidName(column_specs, "At least one column is required.")

    normalized: list[ColumnSpec] = []
    seen: set[str] = set()
    for raw in column_specs:
        spec = raw if isinstance(raw, ColumnSpec) else ColumnSpec.from_payload(raw)
        name = sanitize_name(spec.name)
        if name in RESERVED_COLUMNS:
            raise DuplicateColumnName(name, f"Column name '{name}' is reserved.")
        if name in seen:
            raise DuplicateColumnName(name)
        seen.add(name)
        if spec.sum_of:
            sources = tuple(sanitize_name(source) for source in spec.sum_of)
            normalized.append(ColumnSpec(name=name, data_type=DataType.FLOAT, sum_of=sources))
        else:
            normalized.append(ColumnSpec(name=name, data_type=parse_data_type(spec.data_type)))

    evaluation_order(
        [SumDefinition(spec.name, spec.sum_of) for spec in normalized if spec.sum_of],
        known_columns=[spec.name for spec in normalized],
    )
    return normalized


class SchemaBuilder:
    """Creates and drops sheets together with their physical tables."""

    def __init__(self, runtime: StorageRuntime) -> None:
        self.runtime = runtime

    def create_sheet(
        self,
        display_name: object,
        column_specs: Sequence[ColumnSpec | Mapping[str, object]],
        *,
        session: Session | None = None,
    ) -> CreatedSheet:
        if not isinstance(display_name, str) or not display_name.strip():
            raise InvalidName(display_name, "Sheet name is required.")
        columns = normalize_column_specs(column_specs)
        table_name = build_table_name(display_name)

        with log_timing(LOGGER, "sheets.create", table_name=table_name, columns=len(columns)):
            with self.runtime.transaction(session) as active:
                repository = MetadataRepository(active)
                connection = active.connection()
                if repository.table_name_registered(table_name) or inspect(connection).has_table(table_name):
                    raise DuplicateTableName(table_name)

                sheet = repository.register_sheet(name=display_name.strip(), table_name=table_name)
                for column in columns:
                    repository.insert_column(
                        sheet_id=sheet.id,
                        column_name=column.name,
                        data_type=column.data_type.value,
                        sum_of=column.sum_of,
                    )
                build_table(table_name, columns).create(bind=connection)
                sheet_id = sheet.id

        return CreatedSheet(
            sheet_id=sheet_id,
            table_name=table_name,
            display_name=display_name.strip(),
            columns=columns,
        )

    def drop_sheet(self, sheet_id: int, *, session: Session | None = None) -> dict[str, str]:
        with log_timing(LOGGER, "sheets.drop", sheet_id=sheet_id):
            with self.runtime.transaction(session) as active:
                repository = MetadataRepository(active)
                sheet = repository.require_sheet(sheet_id)
                display_name, table_name = sheet.name, sheet.table_name
                connection = active.connection()
                if connection.dialect.name == "postgresql":
                    connection.exec_driver_sql(f'DROP TABLE IF EXISTS "{table_name}" CASCADE')
                else:
                    Table(table_name, MetaData()).drop(bind=connection, checkfirst=True)
                repository.delete_sheet_metadata(sheet)
        return {"displayName": display_name, "tableName": table_name}

    def table_exists(self, candidate: object, *, session: Session | None = None) -> bool:
        if not is_valid_identifier(candidate):
            raise InvalidName(candidate)
        with self.runtime.read_scope(session) as active:
            return inspect(active.connection()).has_table(str(candidate))
