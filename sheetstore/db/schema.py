from __future__ import annotations

import enum
import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for sheet metadata models."""


class DataType(str, enum.Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"


class Sheet(Base):
    __tablename__ = "sheets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text)
    table_name: Mapped[str] = mapped_column(Text, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    columns: Mapped[list[SheetColumn]] = relationship(
        back_populates="sheet",
        cascade="all, delete-orphan",
        order_by="SheetColumn.id",
    )


class SheetColumn(Base):
    __tablename__ = "sheet_columns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sheet_id: Mapped[int] = mapped_column(ForeignKey("sheets.id", ondelete="CASCADE"))
    column_name: Mapped[str] = mapped_column(Text)
    data_type: Mapped[str] = mapped_column(Text)
    # JSON-encoded ordered list of source column names; NULL for plain columns.
    sum_of_raw: Mapped[Optional[str]] = mapped_column("sum_of", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    sheet: Mapped[Sheet] = relationship(back_populates="columns")

    @property
    def sum_of(self) -> list[str] | None:
        if not self.sum_of_raw:
            return None
        return list(json.loads(self.sum_of_raw))

    @sum_of.setter
    def sum_of(self, sources: list[str] | None) -> None:
        self.sum_of_raw = json.dumps(list(sources)) if sources else None

    @property
    def is_derived(self) -> bool:
        return bool(self.sum_of_raw)
