from __future__ import annotations

import pytest
from sqlalchemy import inspect, select

from sheetstore.db.metadata import MetadataRepository
from sheetstore.db.schema import Sheet, SheetColumn
from sheetstore.services.errors import (
    CyclicSumDefinition,
    DuplicateColumnName,
    DuplicateTableName,
    InvalidName,
    SheetNotFound,
    UnknownSumSource,
    UnsupportedType,
)
from sheetstore.services.schema_builder import SchemaBuilder, build_table_name, map_type


def _table_names(runtime) -> set[str]:
    return set(inspect(runtime.engine).get_table_names())


def test_map_type_covers_logical_types() -> None:
    assert map_type("string").__class__.__name__ == "Text"
    assert map_type("INTEGER").__class__.__name__ == "Integer"
    assert map_type("float").__class__.__name__ == "Double"
    assert map_type("boolean").__class__.__name__ == "Boolean"
    assert map_type("date").__class__.__name__ == "DateTime"
    with pytest.raises(UnsupportedType):
        map_type("money")


def test_build_table_name_is_unique_and_bounded() -> None:
    first = build_table_name("Monthly Sales")
    second = build_table_name("Monthly Sales")
    assert first != second
    assert first.startswith("monthly_sales_")
    assert len(build_table_name("x" * 200)) <= 63
    assert build_table_name("2024 plan").startswith("sheet_2024_plan_")


def test_create_sheet_registers_columns_in_declared_order(schema_builder: SchemaBuilder, runtime) -> None:
    created = schema_builder.create_sheet(
        "Scores",
        [
            {"name": "Player Name", "type": "string"},
            {"name": "a", "type": "integer"},
            {"name": "b", "type": "integer"},
            {"name": "Total", "type": "integer", "sum_of": ["A", "b"]},
            {"name": "played", "type": "date"},
        ],
    )

    with runtime.read_scope() as session:
        columns = MetadataRepository(session).get_columns(created.sheet_id)
        assert [column.column_name for column in columns] == ["player_name", "a", "b", "total", "played"]
        assert [column.data_type for column in columns] == ["string", "integer", "integer", "float", "date"]
        assert columns[3].sum_of == ["a", "b"]
        assert columns[0].sum_of is None

    physical = [column["name"] for column in inspect(runtime.engine).get_columns(created.table_name)]
    assert physical == ["id", "created_at", "player_name", "a", "b", "total", "played"]


@pytest.mark.parametrize(
    ("columns", "error"),
    [
        ([], InvalidName),
        ([{"name": "a", "type": "text"}], UnsupportedType),
        ([{"name": "a", "type": "string"}, {"name": "A ", "type": "integer"}], DuplicateColumnName),
        ([{"name": "id", "type": "integer"}], DuplicateColumnName),
        ([{"name": "t", "type": "float", "sum_of": ["missing"]}], UnknownSumSource),
        (
            [
                {"name": "x", "type": "float", "sum_of": ["y"]},
                {"name": "y", "type": "float", "sum_of": ["x"]},
            ],
            CyclicSumDefinition,
        ),
    ],
)
def test_invalid_specs_leave_no_trace(schema_builder: SchemaBuilder, runtime, columns, error) -> None:
    before = _table_names(runtime)
    with pytest.raises(error):
        schema_builder.create_sheet("Broken", columns)
    assert _table_names(runtime) == before
    with runtime.read_scope() as session:
        assert session.execute(select(Sheet)).first() is None


def test_blank_display_name_is_rejected(schema_builder: SchemaBuilder) -> None:
    with pytest.raises(InvalidName):
        schema_builder.create_sheet("   ", [{"name": "a", "type": "string"}])


def test_failure_after_metadata_insert_rolls_back_everything(
    schema_builder: SchemaBuilder,
    runtime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _explode(self, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(MetadataRepository, "insert_column", _explode)
    before = _table_names(runtime)

    with pytest.raises(RuntimeError, match="disk full"):
        schema_builder.create_sheet("Atomic", [{"name": "a", "type": "string"}])

    assert _table_names(runtime) == before
    with runtime.read_scope() as session:
        assert session.execute(select(Sheet)).first() is None


def test_existing_physical_table_is_reported_before_ddl(
    schema_builder: SchemaBuilder,
    runtime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    with runtime.engine.begin() as connection:
        connection.exec_driver_sql('CREATE TABLE "taken_1" (id INTEGER PRIMARY KEY)')
    monkeypatch.setattr("sheetstore.services.schema_builder.build_table_name", lambda _: "taken_1")

    with pytest.raises(DuplicateTableName):
        schema_builder.create_sheet("Taken", [{"name": "a", "type": "string"}])
    with runtime.read_scope() as session:
        assert session.execute(select(Sheet)).first() is None


def test_drop_sheet_removes_table_and_metadata(schema_builder: SchemaBuilder, runtime) -> None:
    created = schema_builder.create_sheet("Disposable", [{"name": "a", "type": "string"}])
    assert schema_builder.table_exists(created.table_name)

    dropped = schema_builder.drop_sheet(created.sheet_id)

    assert dropped == {"displayName": "Disposable", "tableName": created.table_name}
    assert not schema_builder.table_exists(created.table_name)
    with runtime.read_scope() as session:
        assert session.execute(select(Sheet)).first() is None
        assert session.execute(select(SheetColumn)).first() is None


def test_drop_missing_sheet(schema_builder: SchemaBuilder) -> None:
    with pytest.raises(SheetNotFound):
        schema_builder.drop_sheet(404)


def test_table_exists_validates_identifier(schema_builder: SchemaBuilder) -> None:
    assert schema_builder.table_exists("sheets")
    assert not schema_builder.table_exists("nothing_here")
    with pytest.raises(InvalidName):
        schema_builder.table_exists("bad name; drop table sheets")


def test_list_sheets_newest_first(schema_builder: SchemaBuilder, runtime) -> None:
    first = schema_builder.create_sheet("First", [{"name": "a", "type": "string"}])
    second = schema_builder.create_sheet("Second", [{"name": "a", "type": "string"}])

    with runtime.read_scope() as session:
        repository = MetadataRepository(session)
        listed = repository.list_sheets(include_columns=True)
        assert [sheet.id for sheet in listed] == [second.sheet_id, first.sheet_id]
        assert [column.column_name for column in listed[0].columns] == ["a"]
        paged = repository.list_sheets(include_columns=False, limit=1, offset=1)
        assert [sheet.id for sheet in paged] == [first.sheet_id]
