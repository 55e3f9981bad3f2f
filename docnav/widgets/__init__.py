"""Widget library for the Textual UI."""

from __future__ import annotations

from .collection_sidebar import CollectionSidebar
from .document_table import DocumentTable
from .status_bar import StatusBar

__all__ = ["CollectionSidebar", "DocumentTable", "StatusBar"]
