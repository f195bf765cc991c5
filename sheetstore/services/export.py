from __future__ import annotations

import io
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from openpyxl import Workbook
from openpyxl.styles import Font

from sheetstore.services.rows import RowStore
from sheetstore.services.schema_builder import RESERVED_COLUMNS
from sheetstore.utils.config import ExportConfig, load_export_config
from sheetstore.utils.logging import get_logger, log_timing

LOGGER = get_logger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class ObjectStorage(Protocol):
    """Blob store that can hand out time-limited download links."""

    def upload(self, container: str, name: str, data: bytes, content_type: str) -> str: ...

    def signed_url(self, container: str, name: str, expires_in: timedelta) -> str: ...


@dataclass(frozen=True)
class ExportDocument:
    filename: str
    content: bytes
    content_type: str = XLSX_CONTENT_TYPE


def _cell_value(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ExportService:
    def __init__(self, row_store: RowStore, config: ExportConfig | None = None) -> None:
        self.row_store = row_store
        self.config = config or load_export_config()

    def render(self, sheet_id: int) -> ExportDocument:
        sheet = self.row_store.get_sheet(sheet_id)
        header = [*RESERVED_COLUMNS, *(column["column_name"] for column in sheet["columns"])]

        with log_timing(LOGGER, "export.render", sheet_id=sheet_id):
            workbook = Workbook()
            worksheet = workbook.active
            worksheet.title = sheet["tableName"][:31]
            worksheet.append(header)
            for cell in worksheet[1]:
                cell.font = Font(bold=True)
            worksheet.freeze_panes = "A2"
            for row in self.row_store.iter_rows(sheet_id):
                worksheet.append([_cell_value(row.get(name)) for name in header])
            buffer = io.BytesIO()
            workbook.save(buffer)

        return ExportDocument(filename=f"{sheet['tableName']}.xlsx", content=buffer.getvalue())

    def publish(self, sheet_id: int, storage: ObjectStorage) -> dict[str, Any]:
        document = self.render(sheet_id)
        stamp = datetime.now(timezone.utc)
        object_name = f"{document.filename[:-5]}_{stamp.strftime('%Y%m%d%H%M%S')}.xlsx"
        expires_in = timedelta(seconds=self.config.link_expiry_seconds)

        with log_timing(LOGGER, "export.publish", sheet_id=sheet_id, object_name=object_name):
            storage.upload(self.config.container, object_name, document.content, document.content_type)
            url = storage.signed_url(self.config.container, object_name, expires_in)

        return {
            "url": url,
            "expiresOn": (stamp + expires_in).isoformat(),
            "objectName": object_name,
        }
