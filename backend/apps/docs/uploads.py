"""
Upload orchestration for document batches.

Files are stored one at a time, strictly in input order. A progress event
is produced before each file starts and a failed file never stops the
rest of the batch.
"""
import logging
import uuid
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Union

from django.conf import settings

from .models import BatchOutcome, UploadFile, UploadOutcome, UploadProgress
from .storage import ObjectStorage, StorageError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_EXTENSIONS = ['.md', '.markdown', '.txt']

UploadEvent = Union[UploadProgress, UploadOutcome]


class UploadRejected(Exception):
    """Raised when a file fails validation before reaching storage."""
    pass


def get_extension(filename: str) -> str:
    """Extract file extension from filename."""
    return Path(filename).suffix.lower()


def make_storage_key(file_name: str) -> str:
    """Namespace a file name under a fresh random identifier."""
    return f"{uuid.uuid4()}/{file_name}"


class UploadOrchestrator:
    """
    Best-effort, sequential batch uploader.

    Usage:
        orchestrator = UploadOrchestrator(ObjectStorage(gateway))
        batch = orchestrator.upload_batch(files, on_progress=print)
    """

    def __init__(
        self,
        storage: ObjectStorage,
        allowed_extensions: Optional[List[str]] = None,
        max_upload_size: Optional[int] = None,
        key_factory: Callable[[str], str] = make_storage_key,
    ):
        self.storage = storage
        self.allowed_extensions = allowed_extensions or getattr(
            settings, 'ALLOWED_EXTENSIONS', DEFAULT_ALLOWED_EXTENSIONS
        )
        self.max_upload_size = max_upload_size or getattr(settings, 'MAX_UPLOAD_SIZE', 50 * 1024 * 1024)
        self.key_factory = key_factory

    def validate(self, file: UploadFile) -> None:
        """
        Check name, extension and size.

        Raises:
            UploadRejected: If the file cannot be accepted
        """
        if not file.name or not file.name.strip():
            raise UploadRejected("File name is required")

        if get_extension(file.name) not in self.allowed_extensions:
            allowed = ', '.join(self.allowed_extensions)
            raise UploadRejected(f"Invalid file type. Allowed: {allowed}")

        if file.size_bytes > self.max_upload_size:
            max_mb = self.max_upload_size // (1024 * 1024)
            raise UploadRejected(f"File too large. Maximum size is {max_mb}MB")

    def upload_one(self, file: UploadFile) -> UploadOutcome:
        """Store one file, converting any failure into a failed outcome."""
        try:
            self.validate(file)
            key = self.key_factory(file.name)
            self.storage.upload(key, file.data, file.content_type)
        except UploadRejected as e:
            logger.warning(f"Rejected {file.name}: {e}")
            return UploadOutcome(file_name=file.name, success=False, error_detail=str(e))
        except StorageError as e:
            logger.error(f"Failed to upload {file.name}: {e}")
            return UploadOutcome(file_name=file.name, success=False, error_detail=str(e))
        except Exception as e:
            logger.exception(f"Error uploading {file.name}: {e}")
            return UploadOutcome(file_name=file.name, success=False, error_detail=str(e))

        return UploadOutcome(file_name=file.name, success=True, storage_path=key)

    def iter_batch(self, files: Iterable[UploadFile]) -> Iterator[UploadEvent]:
        """
        Run the batch as a sequence of events.

        For each file, in input order: an UploadProgress, then its
        UploadOutcome. The next file starts only after the previous
        outcome has been produced.
        """
        files = list(files)
        total = len(files)
        for index, file in enumerate(files, 1):
            yield UploadProgress(current=index, total=total, file_name=file.name)
            yield self.upload_one(file)

    def upload_batch(
        self,
        files: Iterable[UploadFile],
        on_progress: Optional[Callable[[UploadProgress], None]] = None,
    ) -> BatchOutcome:
        """
        Upload every file and aggregate the results.

        Args:
            files: Files in the order they should be stored
            on_progress: Called before each file starts

        Returns:
            BatchOutcome with per-file outcomes in input order
        """
        batch = BatchOutcome()
        for event in self.iter_batch(files):
            if isinstance(event, UploadProgress):
                logger.debug(f"Uploading {event.current} of {event.total}: {event.file_name}")
                if on_progress:
                    on_progress(event)
            else:
                batch.outcomes.append(event)

        log = logger.info if batch.fail_count == 0 else logger.warning
        log(
            f"Upload batch finished: {batch.success_count} succeeded, "
            f"{batch.fail_count} failed ({batch.summary_kind})"
        )
        return batch
