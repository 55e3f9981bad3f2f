"""Tests for JSON and CSV page export."""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime

import pytest

from docnav.export import ExportFormat, export_rows, page_columns, rows_to_csv, rows_to_json
from docnav.models import DocumentRow

ROWS = (
    DocumentRow("u1", "users/u1", {"name": "Ada", "admin": True, "tags": ["x", "y"]}),
    DocumentRow("u2", "users/u2", {"name": "Grace, H.", "age": 85, "meta": {"team": "core"}, "nickname": None}),
)


def test_columns_are_the_union_in_first_seen_order() -> None:
    assert page_columns(ROWS) == ["name", "admin", "tags", "age", "meta", "nickname"]


def test_csv_has_id_column_and_blank_cells_for_missing_fields() -> None:
    parsed = list(csv.reader(io.StringIO(rows_to_csv(ROWS))))

    assert parsed[0] == ["id", "name", "admin", "tags", "age", "meta", "nickname"]
    assert parsed[1] == ["u1", "Ada", "true", '["x", "y"]', "", "", ""]
    assert parsed[2] == ["u2", "Grace, H.", "", "", "85", '{"team": "core"}', "null"]


def test_csv_of_empty_page_is_just_the_header() -> None:
    assert rows_to_csv(()) == "id\n"


def test_json_keeps_ids_paths_and_native_values() -> None:
    payload = json.loads(rows_to_json(ROWS))

    assert payload[0] == {"id": "u1", "path": "users/u1", "data": {"name": "Ada", "admin": True, "tags": ["x", "y"]}}
    assert payload[1]["data"]["nickname"] is None


def test_json_stringifies_values_it_cannot_encode() -> None:
    row = DocumentRow("e1", "events/e1", {"at": datetime(2024, 1, 1, 9, 30)})

    assert json.loads(rows_to_json([row]))[0]["data"]["at"] == "2024-01-01 09:30:00"


@pytest.mark.parametrize(("fmt", "first_char"), [(ExportFormat.JSON, "["), ("csv", "i")])
def test_export_rows_dispatches_on_format(fmt: ExportFormat | str, first_char: str) -> None:
    assert export_rows(ROWS, fmt).startswith(first_char)


def test_export_rows_rejects_unknown_format() -> None:
    with pytest.raises(ValueError):
        export_rows(ROWS, "xml")
