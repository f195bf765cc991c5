from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from sheetstore.db.runtime import StorageRuntime
from sheetstore.services.errors import SheetStoreError
from sheetstore.services.export import ExportService, ObjectStorage
from sheetstore.services.ingestion import SpreadsheetIngester, UploadOptions
from sheetstore.services.rows import RowStore
from sheetstore.services.schema_builder import SchemaBuilder
from sheetstore.utils.logging import get_logger, log_warning

LOGGER = get_logger(__name__)


class ColumnPayload(BaseModel):
    name: str
    type: Annotated[str | None, Field(default=None)]
    sum_of: Annotated[list[str] | None, Field(alias="sum_of", default=None)]

    model_config = ConfigDict(populate_by_name=True)


class CreateSheetRequest(BaseModel):
    sheet_name: Annotated[str, Field(alias="sheetName")]
    columns: Annotated[list[ColumnPayload], Field(min_length=1)]

    model_config = ConfigDict(populate_by_name=True)


class RowValuesRequest(BaseModel):
    values: Annotated[dict[str, Any], Field(default_factory=dict)]


def create_app(
    *,
    runtime: StorageRuntime | None = None,
    object_storage: ObjectStorage | None = None,
) -> FastAPI:
    """Create the FastAPI application serving sheets, rows, uploads and exports."""
    storage_runtime = runtime or StorageRuntime()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        storage_runtime.start()
        yield
        await run_in_threadpool(storage_runtime.shutdown)

    app = FastAPI(title="Sheet Store API", version="0.1.0", lifespan=lifespan)

    schema_builder = SchemaBuilder(storage_runtime)
    row_store = RowStore(storage_runtime, schema_builder)
    ingester = SpreadsheetIngester(storage_runtime, schema_builder=schema_builder)
    export_service = ExportService(row_store)

    def get_row_store() -> RowStore:
        return row_store

    def get_ingester() -> SpreadsheetIngester:
        return ingester

    def get_export_service() -> ExportService:
        return export_service

    @app.exception_handler(SheetStoreError)
    async def handle_sheet_store_error(_: Request, error: SheetStoreError) -> JSONResponse:
        if error.status_code >= 500:
            log_warning(LOGGER, "api.error", kind=error.kind, message=str(error))
        return JSONResponse(status_code=error.status_code, content={"error": str(error), "kind": error.kind})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/sheets")
    def create_sheet(
        payload: CreateSheetRequest,
        store: RowStore = Depends(get_row_store),
    ) -> dict[str, object]:
        columns = [column.model_dump(exclude_none=True) for column in payload.columns]
        result = store.create_sheet(payload.sheet_name, columns)
        return {"message": "Sheet created", **result}

    @app.get("/sheets")
    def list_sheets(
        store: RowStore = Depends(get_row_store),
        include_columns: Annotated[bool, Query(alias="includeColumns")] = True,
        limit: Annotated[int | None, Query(ge=1)] = None,
        offset: Annotated[int | None, Query(ge=0)] = None,
    ) -> dict[str, object]:
        return {"sheets": store.list_sheets(include_columns=include_columns, limit=limit, offset=offset)}

    @app.get("/sheets/{sheet_id}/columns")
    def get_sheet_columns(
        sheet_id: int,
        store: RowStore = Depends(get_row_store),
    ) -> dict[str, object]:
        return store.get_sheet(sheet_id)

    @app.delete("/sheets/{sheet_id}")
    def delete_sheet(
        sheet_id: int,
        store: RowStore = Depends(get_row_store),
    ) -> dict[str, object]:
        return store.delete_sheet(sheet_id)

    @app.post("/sheets/{sheet_id}/rows")
    def add_row(
        sheet_id: int,
        payload: RowValuesRequest,
        store: RowStore = Depends(get_row_store),
    ) -> dict[str, object]:
        return {"message": "Row added", "row": store.add_row(sheet_id, payload.values)}

    @app.put("/sheets/{sheet_id}/rows/{row_id}")
    def update_row(
        sheet_id: int,
        row_id: int,
        payload: RowValuesRequest,
        store: RowStore = Depends(get_row_store),
    ) -> dict[str, object]:
        return {"message": "Row updated", "row": store.update_row(sheet_id, row_id, payload.values)}

    @app.get("/sheets/{sheet_id}/rows/{row_id}")
    def get_row(
        sheet_id: int,
        row_id: int,
        store: RowStore = Depends(get_row_store),
    ) -> dict[str, object]:
        return {"row": store.get_row(sheet_id, row_id)}

    @app.get("/sheets/{sheet_id}/export")
    def export_sheet(
        sheet_id: int,
        exporter: ExportService = Depends(get_export_service),
    ) -> Response:
        document = exporter.render(sheet_id)
        return Response(
            content=document.content,
            media_type=document.content_type,
            headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
        )

    @app.post("/sheets/{sheet_id}/export/link")
    def export_sheet_link(
        sheet_id: int,
        exporter: ExportService = Depends(get_export_service),
    ) -> dict[str, object]:
        if object_storage is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Object storage is not configured.",
            )
        published = exporter.publish(sheet_id, object_storage)
        return {"message": "Export uploaded", **published}

    @app.get("/tables/check")
    def check_table(
        store: RowStore = Depends(get_row_store),
        table_name: Annotated[str | None, Query(alias="tableName")] = None,
    ) -> dict[str, str]:
        return {"status": store.check_table_availability(table_name)}

    @app.post("/sheets/upload-excel")
    async def upload_excel(
        file: Annotated[UploadFile, File(...)],
        spreadsheet_ingester: SpreadsheetIngester = Depends(get_ingester),
        sheetName: Annotated[str | None, Form()] = None,
        worksheet: Annotated[str | None, Form()] = None,
        preview: Annotated[bool, Form()] = False,
        sampleSize: Annotated[int | None, Form()] = None,
    ) -> dict[str, object]:
        contents = await file.read()
        options = UploadOptions(
            sheet_name=sheetName or None,
            worksheet=worksheet or None,
            preview=preview,
            sample_size=sampleSize,
        )
        return await run_in_threadpool(
            spreadsheet_ingester.upload,
            contents,
            file.filename or "upload",
            options,
        )

    return app
