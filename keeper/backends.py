"""
Dirkeeper - Backend Boundary
==============================
What the lifecycle core needs from a live backend of the managed server,
plus the records exchanged during a bulk-data (LDIF) import.

A Backend is finalized (storage handles released), imported into, and
initialized again. The storage format itself is the server's business.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import BinaryIO


@dataclass
class ImportConfig:
    """
    A bulk-import request over an LDIF byte stream.

    Defaults are the settings used for every reload: existing data is
    replaced, the backend is cleared first, schema checks are skipped and
    DN checks are kept.
    """
    stream: BinaryIO
    append_to_existing_data: bool = False
    clear_backend: bool = True
    validate_schema: bool = False
    skip_dn_validation: bool = False


@dataclass
class ImportResult:
    """Outcome of one import."""
    entries_read: int = 0
    entries_imported: int = 0
    entries_rejected: int = 0
    rejected: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"read={self.entries_read} imported={self.entries_imported} "
            f"rejected={self.entries_rejected}"
        )


class Backend(ABC):
    """A named storage unit of the managed server."""

    def __init__(self, backend_id: str):
        self.backend_id = backend_id

    @abstractmethod
    def finalize(self) -> None:
        """Release storage handles so the contents can be replaced."""

    @abstractmethod
    def import_ldif(self, config: ImportConfig) -> ImportResult:
        """Load the stream into backend storage. Only valid while finalized."""

    @abstractmethod
    def initialize(self) -> None:
        """Resume serving from storage."""


def count_ldif_entries(data: bytes) -> int:
    """Number of records (lines starting with "dn:") in LDIF data."""
    count = 0
    for line in data.splitlines():
        if line[:3].lower() == b"dn:":
            count += 1
    return count
