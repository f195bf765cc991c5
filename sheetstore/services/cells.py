"""Per-type cell coercion and column type inference.

Spreadsheet cells arrive either as native values (numbers, booleans, datetimes
from openpyxl) or as text (CSV, JSON payloads). Everything that is matched
against a textual pattern goes through :func:`cell_text` first so that a cell
holding ``3.0`` behaves like the text ``"3"``.
"""

from __future__ import annotations

import math
import re
import warnings
from collections.abc import Iterable
from datetime import date, datetime, timezone
from decimal import Decimal

import pandas as pd

from sheetstore.db.schema import DataType

BOOLEAN_LITERAL = re.compile(r"(true|false|yes|no|1|0)", re.IGNORECASE)
TRUTHY_LITERAL = re.compile(r"(true|yes|1)", re.IGNORECASE)
FALSY_LITERAL = re.compile(r"(false|no|0)", re.IGNORECASE)


class CellCoercionError(ValueError):
    """Raised by strict coercion when a value does not fit the column type."""


def is_blank(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def cell_text(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def parse_real(value: object) -> float | None:
    """Return the finite float a value denotes, or None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    else:
        text = cell_text(value)
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def parse_date(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (bool, int, float, Decimal)) or value is None:
        return None
    text = cell_text(value)
    if not text:
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            parsed = pd.to_datetime(text)
        except (ValueError, TypeError, OverflowError):
            return None
    if parsed is pd.NaT or pd.isna(parsed):
        return None
    return _naive_utc(parsed.to_pydatetime())


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _is_boolean_like(value: object) -> bool:
    return isinstance(value, bool) or BOOLEAN_LITERAL.fullmatch(cell_text(value)) is not None


def _is_whole_number(value: object) -> bool:
    if isinstance(value, (datetime, date)):
        return False
    number = parse_real(value)
    return number is not None and number.is_integer()


def _is_real_number(value: object) -> bool:
    if isinstance(value, (datetime, date)):
        return False
    return parse_real(value) is not None


def _is_calendar_date(value: object) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, bool):
        return False
    return parse_date(value) is not None


def infer_column_type(values: Iterable[object], sample_size: int = 50) -> DataType:
    """Classify a column from its first ``sample_size`` non-blank values.

    Precedence is boolean, integer, float, date, then string; a column with no
    non-blank values is a string column.
    """
    sample: list[object] = []
    for value in values:
        if is_blank(value):
            continue
        sample.append(value)
        if len(sample) >= sample_size:
            break
    if not sample:
        return DataType.STRING
    if all(_is_boolean_like(value) for value in sample):
        return DataType.BOOLEAN
    if all(_is_whole_number(value) for value in sample):
        return DataType.INTEGER
    if all(_is_real_number(value) for value in sample):
        return DataType.FLOAT
    if all(_is_calendar_date(value) for value in sample):
        return DataType.DATE
    return DataType.STRING


def coerce_value(data_type: DataType | str, value: object, *, strict: bool = False) -> object:
    """Convert a raw cell to the Python value stored for ``data_type``.

    Blank input becomes ``None``. With ``strict`` a value that does not fit
    raises :class:`CellCoercionError`; otherwise it becomes ``None``.
    """
    kind = DataType(data_type)
    if is_blank(value):
        return None

    result: object | None
    if kind is DataType.STRING:
        result = cell_text(value)
    elif kind is DataType.INTEGER:
        number = parse_real(value)
        result = int(number) if number is not None and number.is_integer() else None
    elif kind is DataType.FLOAT:
        result = parse_real(value)
    elif kind is DataType.BOOLEAN:
        if isinstance(value, bool):
            result = value
        else:
            text = cell_text(value)
            if TRUTHY_LITERAL.fullmatch(text):
                result = True
            elif strict and not FALSY_LITERAL.fullmatch(text):
                raise CellCoercionError(value)
            else:
                result = False
    else:
        result = parse_date(value)

    if result is None and strict:
        raise CellCoercionError(value)
    return result
