from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Select, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, selectinload, sessionmaker

from sheetstore.db.schema import Base, Sheet, SheetColumn
from sheetstore.services.errors import SheetNotFound
from sheetstore.utils.config import DatabaseConfig, load_database_config


def _prepare_sqlite_path(url: str) -> None:
    if url.startswith("sqlite:///") and ":memory:" not in url:
        db_path = Path(url.replace("sqlite:///", "", 1))
        db_path.parent.mkdir(parents=True, exist_ok=True)


def _enable_sqlite_transactions(engine: Engine) -> None:
    # pysqlite only opens transactions before DML; emit BEGIN ourselves so DDL joins the unit.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:  # type: ignore[no-untyped-def]
        connection.exec_driver_sql("BEGIN")


def build_engine(config: DatabaseConfig | str | None = None) -> Engine:
    if not isinstance(config, DatabaseConfig):
        config = load_database_config(config)
    url = config.url
    if url.startswith("sqlite"):
        _prepare_sqlite_path(url)
        kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" not in url:
            kwargs.update(
                pool_size=config.pool_size,
                max_overflow=config.max_overflow,
                pool_timeout=config.pool_timeout_seconds,
                pool_recycle=config.pool_recycle_seconds,
            )
        engine = create_engine(url, future=True, echo=config.echo, **kwargs)
        _enable_sqlite_transactions(engine)
        return engine
    return create_engine(
        url,
        future=True,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout_seconds,
        pool_recycle=config.pool_recycle_seconds,
        pool_pre_ping=True,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, future=True)


def init_database(engine: Engine) -> None:
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class MetadataRepository:
    """Registry of sheets and their column definitions."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Sheets --------------------------------------------------------------
    def register_sheet(self, *, name: str, table_name: str) -> Sheet:
        sheet = Sheet(name=name, table_name=table_name)
        self.session.add(sheet)
        self.session.flush()
        return sheet

    def get_sheet(self, sheet_id: int) -> Sheet | None:
        return self.session.get(Sheet, sheet_id)

    def require_sheet(self, sheet_id: int) -> Sheet:
        sheet = self.get_sheet(sheet_id)
        if sheet is None:
            raise SheetNotFound(sheet_id)
        return sheet

    def get_table_name(self, sheet_id: int) -> str:
        stmt = select(Sheet.table_name).where(Sheet.id == sheet_id)
        table_name = self.session.execute(stmt).scalar_one_or_none()
        if table_name is None:
            raise SheetNotFound(sheet_id)
        return table_name

    def table_name_registered(self, table_name: str) -> bool:
        stmt = select(Sheet.id).where(Sheet.table_name == table_name)
        return self.session.execute(stmt).first() is not None

    def list_sheets(
        self,
        *,
        include_columns: bool = True,
        limit: int | None = None,
        offset: int | None = None,
    ) -> Sequence[Sheet]:
        stmt: Select[tuple[Sheet]] = select(Sheet).order_by(Sheet.created_at.desc(), Sheet.id.desc())
        if include_columns:
            stmt = stmt.options(selectinload(Sheet.columns))
        if limit:
            stmt = stmt.limit(max(1, int(limit)))
        if offset:
            stmt = stmt.offset(max(0, int(offset)))
        return self.session.execute(stmt).scalars().all()

    def delete_sheet_metadata(self, sheet: Sheet) -> None:
        self.session.delete(sheet)
        self.session.flush()

    # Columns -------------------------------------------------------------
    def insert_column(
        self,
        *,
        sheet_id: int,
        column_name: str,
        data_type: str,
        sum_of: Sequence[str] | None = None,
    ) -> SheetColumn:
        column = SheetColumn(
            sheet_id=sheet_id,
            column_name=column_name,
            data_type=data_type,
            sum_of=list(sum_of) if sum_of else None,
        )
        self.session.add(column)
        self.session.flush()
        return column

    def get_columns(self, sheet_id: int) -> list[SheetColumn]:
        stmt: Select[tuple[SheetColumn]] = (
            select(SheetColumn).where(SheetColumn.sheet_id == sheet_id).order_by(SheetColumn.id.asc())
        )
        return list(self.session.execute(stmt).scalars().all())
