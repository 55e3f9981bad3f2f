"""Serialise the rows of a result page as JSON or CSV text."""

from __future__ import annotations

import csv
import io
import json
from enum import Enum
from typing import Any, Iterable

from .models import DocumentRow

ID_COLUMN = "id"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


def page_columns(rows: Iterable[DocumentRow]) -> list[str]:
    """Union of top-level fields in first-seen order."""

    columns: list[str] = []
    for row in rows:
        for key in row.data:
            if key not in columns:
                columns.append(key)
    return columns


def rows_to_json(rows: Iterable[DocumentRow]) -> str:
    payload = [{"id": row.id, "path": row.path, "data": dict(row.data)} for row in rows]
    return json.dumps(payload, indent=2, default=str, ensure_ascii=False)


def rows_to_csv(rows: Iterable[DocumentRow]) -> str:
    """CSV with an id column followed by every field present on any row.

    Nested maps and arrays are written as JSON; absent fields are empty cells.
    """

    rows = list(rows)
    columns = page_columns(rows)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([ID_COLUMN, *columns])
    for row in rows:
        writer.writerow([row.id, *(_csv_cell(row.data[column]) if column in row.data else "" for column in columns)])
    return buffer.getvalue()


def export_rows(rows: Iterable[DocumentRow], fmt: ExportFormat | str) -> str:
    fmt = ExportFormat(fmt)
    if fmt is ExportFormat.JSON:
        return rows_to_json(rows)
    return rows_to_csv(rows)


def _csv_cell(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


__all__ = ["ExportFormat", "ID_COLUMN", "export_rows", "page_columns", "rows_to_csv", "rows_to_json"]
