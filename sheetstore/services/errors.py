from __future__ import annotations

from collections.abc import Sequence


class SheetStoreError(RuntimeError):
    """Base class for failures that are surfaced verbatim to callers."""

    kind = "SheetStoreError"
    status_code = 500


class InvalidName(SheetStoreError):
    kind = "InvalidName"
    status_code = 400

    def __init__(self, value: object, message: str | None = None) -> None:
        self.value = value
        super().__init__(message or f"Invalid name: {value!r}.")


class DuplicateColumnName(InvalidName):
    def __init__(self, column: str, message: str | None = None) -> None:
        self.column = column
        super().__init__(column, message or f"Column '{column}' is declared more than once.")


class UnsupportedType(SheetStoreError):
    kind = "UnsupportedType"
    status_code = 400

    def __init__(self, data_type: object) -> None:
        self.data_type = data_type
        super().__init__(f"Unsupported data type: {data_type}.")


class SheetNotFound(SheetStoreError):
    kind = "SheetNotFound"
    status_code = 404

    def __init__(self, sheet_id: object) -> None:
        self.sheet_id = sheet_id
        super().__init__(f"Sheet not found: {sheet_id}.")


class RowNotFound(SheetStoreError):
    kind = "RowNotFound"
    status_code = 404

    def __init__(self, sheet_id: object, row_id: object) -> None:
        self.sheet_id = sheet_id
        self.row_id = row_id
        super().__init__(f"Row {row_id} not found in sheet {sheet_id}.")


class DuplicateTableName(SheetStoreError):
    kind = "DuplicateTableName"
    status_code = 409

    def __init__(self, table_name: str) -> None:
        self.table_name = table_name
        super().__init__(f"Table '{table_name}' already exists.")


class WorksheetNotFound(SheetStoreError):
    kind = "WorksheetNotFound"
    status_code = 400

    def __init__(self, worksheet: str) -> None:
        self.worksheet = worksheet
        super().__init__(f"Worksheet '{worksheet}' not found in uploaded file.")


class EmptyWorksheet(SheetStoreError):
    kind = "EmptyWorksheet"
    status_code = 400

    def __init__(self, worksheet: str | None = None) -> None:
        self.worksheet = worksheet
        if worksheet:
            message = f"Worksheet '{worksheet}' is empty."
        else:
            message = "Uploaded file contains no worksheets."
        super().__init__(message)


class InvalidSumDefinition(SheetStoreError):
    kind = "InvalidSumDefinition"
    status_code = 400

    def __init__(self, header: str, message: str | None = None) -> None:
        self.header = header
        super().__init__(message or f"Invalid sum definition in header '{header}'.")


class CyclicSumDefinition(InvalidSumDefinition):
    def __init__(self, columns: Sequence[str]) -> None:
        self.columns = tuple(columns)
        path = " -> ".join(self.columns)
        super().__init__(self.columns[0] if self.columns else "", f"Sum columns form a cycle: {path}.")


class UnknownSumSource(SheetStoreError):
    kind = "UnknownSumSource"
    status_code = 400

    def __init__(self, column: str, source: str) -> None:
        self.column = column
        self.source = source
        super().__init__(f"Sum column '{column}' references unknown source column '{source}'.")


class NonNumericSumSource(SheetStoreError):
    kind = "NonNumericSumSource"
    status_code = 400

    def __init__(
        self,
        *,
        column: str,
        source: str,
        value: object,
        row_number: int | None = None,
    ) -> None:
        self.column = column
        self.source = source
        self.value = value
        self.row_number = row_number
        location = f" at row {row_number}" if row_number is not None else ""
        super().__init__(
            f"Value {value!r} for column '{source}'{location} is not numeric "
            f"but is required for sum column '{column}'."
        )


class InvalidCellValue(SheetStoreError):
    kind = "InvalidCellValue"
    status_code = 400

    def __init__(self, *, column: str, data_type: str, value: object) -> None:
        self.column = column
        self.data_type = data_type
        self.value = value
        super().__init__(f"Value {value!r} is not a valid {data_type} for column '{column}'.")


class UnsupportedFileType(SheetStoreError):
    kind = "UnsupportedFileType"
    status_code = 400

    def __init__(self, filename: str | None, message: str | None = None) -> None:
        self.filename = filename
        super().__init__(message or f"Unsupported file type: {filename}.")


class StorageBusy(SheetStoreError):
    kind = "StorageBusy"
    status_code = 503

    def __init__(self, message: str = "Storage is busy; try again later.") -> None:
        super().__init__(message)
