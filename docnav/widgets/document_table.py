"""Data table rendering the current page of documents."""

from __future__ import annotations

import json
from typing import Any, Callable

from textual.widgets import DataTable

from docnav.export import page_columns
from docnav.pagination import Page, PaginationEngine

MAX_CELL_WIDTH = 40


class DocumentTable(DataTable[str]):
    """One row per document; columns are the union of top-level fields on the page."""

    DEFAULT_CSS = """
    DocumentTable {
        height: 1fr;
    }
    """

    def __init__(self, pagination: PaginationEngine) -> None:
        super().__init__(id="document-table", zebra_stripes=True, cursor_type="row")
        self._pagination = pagination
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._pagination.subscribe(self.show_page)
        self.show_page(self._pagination.current_page)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def show_page(self, page: Page | None) -> None:
        self.clear(columns=True)
        if page is None:
            return
        columns = page_columns(page.rows)
        self.add_column("id", key="__id__")
        for column in columns:
            self.add_column(column, key=column)
        for row in page.rows:
            cells = [row.id] + [_cell(row.data[column]) if column in row.data else "" for column in columns]
            self.add_row(*cells, key=row.id)


def _cell(value: Any) -> str:
    if isinstance(value, str):
        text = value
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (dict, list)):
        text = json.dumps(value, default=str, ensure_ascii=False)
    else:
        text = str(value)
    if len(text) > MAX_CELL_WIDTH:
        return text[: MAX_CELL_WIDTH - 1] + "…"
    return text


__all__ = ["DocumentTable"]
