"""Shared dataclasses used across registry/session/pagination modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

DocumentData = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    """Runtime representation of one tenant connection."""

    tenant_id: str
    display_name: str
    backend: str = "firestore"
    credentials: Mapping[str, str] = field(default_factory=dict)
    credentials_path: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.tenant_id


@dataclass(frozen=True, slots=True)
class DocumentRow:
    """One document returned by a backend."""

    id: str
    path: str
    data: DocumentData


__all__ = ["ConnectionConfig", "DocumentData", "DocumentRow"]
