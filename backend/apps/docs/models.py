"""
Document and upload data types for DocChat.

Documents and their sections live in the store; these are the shapes this
backend reads and reports.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.utils.dateparse import parse_datetime


class SummaryKind:
    """Overall result of an upload batch."""
    SUCCESS = 'success'
    FAILURE = 'failure'
    MIXED = 'mixed'


def _plural(count: int) -> str:
    return '' if count == 1 else 's'


@dataclass
class Document:
    """
    A document row from the documents_with_storage_path view.

    storage_object_path is None when the document has no storage object
    (for example after a partial cleanup).
    """
    id: Any
    name: str
    storage_object_path: Optional[str]
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Document':
        created_at = row.get('created_at')
        if isinstance(created_at, str):
            # PostgREST trims trailing zeros from fractional seconds
            created_at = parse_datetime(created_at)
        return cls(
            id=row.get('id'),
            name=row.get('name') or '',
            storage_object_path=row.get('storage_object_path'),
            created_at=created_at,
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'storagePath': self.storage_object_path,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class UploadFile:
    """A file handed to the upload orchestrator."""
    name: str
    data: bytes
    content_type: str = 'application/octet-stream'

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class UploadProgress:
    """Progress reported before each file starts (current is 1-based)."""
    current: int
    total: int
    file_name: str

    @property
    def percent(self) -> int:
        return round(self.current / self.total * 100) if self.total else 0

    def to_dict(self) -> dict:
        return {
            'current': self.current,
            'total': self.total,
            'fileName': self.file_name,
            'percent': self.percent,
        }


@dataclass
class UploadOutcome:
    """Result of uploading one file."""
    file_name: str
    success: bool
    error_detail: Optional[str] = None
    storage_path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'fileName': self.file_name,
            'success': self.success,
            'errorDetail': self.error_detail,
            'storagePath': self.storage_path,
        }


@dataclass
class BatchOutcome:
    """Aggregated result of an upload batch, outcomes in input order."""
    outcomes: List[UploadOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def fail_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def summary_kind(self) -> str:
        if self.fail_count == 0:
            return SummaryKind.SUCCESS
        if self.success_count == 0:
            return SummaryKind.FAILURE
        return SummaryKind.MIXED

    @property
    def message(self) -> str:
        success, failed = self.success_count, self.fail_count
        kind = self.summary_kind
        if kind == SummaryKind.SUCCESS:
            return f"Successfully uploaded {success} file{_plural(success)}!"
        if kind == SummaryKind.FAILURE:
            return f"Failed to upload all {failed} file{_plural(failed)}. Please try again."
        return f"Uploaded {success} file{_plural(success)}, {failed} failed."

    @property
    def refresh_listing(self) -> bool:
        return self.success_count > 0

    @property
    def navigate_to(self) -> Optional[str]:
        return '/chat' if self.success_count > 0 else None

    def to_dict(self) -> dict:
        return {
            'successCount': self.success_count,
            'failCount': self.fail_count,
            'summary': self.summary_kind,
            'message': self.message,
            'refreshListing': self.refresh_listing,
            'navigateTo': self.navigate_to,
            'outcomes': [o.to_dict() for o in self.outcomes],
        }


@dataclass
class DeleteResult:
    """Result of a document deletion."""
    document_id: Any
    storage_path: str
    storage_removed: bool
    storage_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'documentId': self.document_id,
            'storagePath': self.storage_path,
            'storageRemoved': self.storage_removed,
            'storageError': self.storage_error,
        }
