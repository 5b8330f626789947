"""
Document upload and management views.

Provides endpoints for:
- POST /api/docs/upload - Upload a batch of files (multipart "files")
- GET /api/docs - List the caller's documents
- POST /api/docs/<id>/delete - Delete a document and its storage object
- GET /api/docs/download?path=... - Signed download link
"""
import json
import logging
import queue
import threading

from asgiref.sync import sync_to_async
from django.core.handlers.asgi import ASGIRequest
from django.http import JsonResponse, StreamingHttpResponse
from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt

from apps.authn.middleware import auth_required
from apps.authn.audit import (
    audit_document_uploaded,
    audit_upload_batch,
    audit_document_deleted,
)
from apps.store.gateway import StoreGateway, ConfigError
from .lifecycle import DocumentLifecycleManager, MissingPath
from .models import BatchOutcome, UploadFile, UploadProgress
from .repository import MetadataError
from .storage import ObjectStorage, StorageError
from .uploads import UploadOrchestrator

logger = logging.getLogger(__name__)

STREAM_FLAGS = ('1', 'true', 'yes')


def config_error_response(e: ConfigError) -> JsonResponse:
    return JsonResponse({'error': str(e), 'code': 'CONFIG_ERROR'}, status=500)


def internal_error_response() -> JsonResponse:
    return JsonResponse({'error': 'Internal server error', 'code': 'INTERNAL_ERROR'}, status=500)


def read_uploaded_files(request) -> list:
    """Turn the multipart "files" field into UploadFile objects, in order."""
    uploaded = request.FILES.getlist('files') or request.FILES.getlist('file')
    files = []
    for uploaded_file in uploaded:
        files.append(UploadFile(
            name=uploaded_file.name,
            data=uploaded_file.read(),
            content_type=uploaded_file.content_type or 'application/octet-stream',
        ))
    return files


def audit_batch(request, batch: BatchOutcome, files: list) -> None:
    sizes = {f.name: f.size_bytes for f in files}
    for outcome in batch.outcomes:
        if outcome.success:
            audit_document_uploaded(
                request, outcome.storage_path, outcome.file_name, sizes.get(outcome.file_name, 0)
            )
    audit_upload_batch(request, batch.total, batch.success_count, batch.fail_count)


def sse_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def stream_in_background(events):
    """
    Serve a blocking event generator to an ASGI server.

    The generator runs to completion on its own thread and hands events over
    through a queue, so a client that disconnects does not stop the batch.
    """
    pending = queue.Queue()

    def produce():
        try:
            for event in events:
                pending.put(event)
        except Exception:
            logger.exception("Upload event stream failed")
        finally:
            pending.put(None)

    threading.Thread(target=produce, name='upload-batch', daemon=True).start()
    return drain(pending)


async def drain(pending: queue.Queue):
    get = sync_to_async(pending.get, thread_sensitive=False)
    while True:
        event = await get()
        if event is None:
            return
        yield event


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def upload_documents(request):
    """
    Upload one or more files.

    POST /api/docs/upload
    POST /api/docs/upload?stream=1  (Server-Sent Events)

    Files are stored one at a time in the order given. A failed file does
    not stop the batch.

    Returns:
        {
            "successCount": 1,
            "failCount": 1,
            "summary": "mixed",
            "message": "Uploaded 1 file, 1 failed.",
            "refreshListing": true,
            "navigateTo": "/chat",
            "outcomes": [...]
        }

    Streaming mode emits "progress" before each file, "file" after each
    file and a final "complete" carrying the summary above.
    """
    files = read_uploaded_files(request)
    if not files:
        return JsonResponse(
            {'error': 'No files provided', 'code': 'MISSING_FILE'},
            status=400
        )

    try:
        orchestrator = UploadOrchestrator(ObjectStorage(StoreGateway(request.authorization)))
    except ConfigError as e:
        return config_error_response(e)

    logger.info(f"Upload request: {len(files)} file(s) from user {request.user_claims.sub}")

    if request.GET.get('stream', '').lower() not in STREAM_FLAGS:
        batch = orchestrator.upload_batch(files)
        audit_batch(request, batch, files)
        return JsonResponse(batch.to_dict(), status=200)

    def event_stream():
        """Generate SSE events from the upload batch."""
        batch = BatchOutcome()
        events = orchestrator.iter_batch(files)
        try:
            for event in events:
                if isinstance(event, UploadProgress):
                    yield sse_event('progress', event.to_dict())
                else:
                    batch.outcomes.append(event)
                    yield sse_event('file', event.to_dict())
            yield sse_event('complete', batch.to_dict())
        finally:
            # Uploads are not cancellable; a disconnected client still gets the whole batch stored.
            for event in events:
                if not isinstance(event, UploadProgress):
                    batch.outcomes.append(event)
            audit_batch(request, batch, files)

    body = event_stream()
    if isinstance(request, ASGIRequest):
        body = stream_in_background(body)

    response = StreamingHttpResponse(
        body,
        content_type='text/event-stream'
    )
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'  # Disable nginx buffering
    return response


@csrf_exempt
@require_http_methods(["GET"])
@auth_required
def list_documents(request):
    """
    List the caller's documents.

    GET /api/docs

    Returns:
        {
            "documents": [
                {
                    "id": 1,
                    "name": "notes.md",
                    "storagePath": "<uuid>/notes.md",
                    "createdAt": "2024-01-01T00:00:00+00:00"
                }
            ]
        }
    """
    try:
        manager = DocumentLifecycleManager.for_gateway(StoreGateway(request.authorization))
        documents = manager.list_documents()
    except ConfigError as e:
        return config_error_response(e)
    except MetadataError as e:
        logger.error(f"Failed to list documents: {e}")
        return JsonResponse(
            {'error': 'Failed to load documents', 'code': 'METADATA_ERROR'},
            status=502
        )
    except Exception as e:
        logger.exception(f"Unexpected error listing documents: {e}")
        return internal_error_response()

    return JsonResponse({'documents': [doc.to_dict() for doc in documents]})


@csrf_exempt
@require_http_methods(["POST", "DELETE"])
@auth_required
def delete_document(request, document_id):
    """
    Delete a document.

    POST /api/docs/<document_id>/delete
    Body: {"storagePath": "<uuid>/notes.md"}

    The storage object is removed first, then the metadata row. If the
    storage removal fails the document is still deleted and the response
    reports storageRemoved=false.
    """
    try:
        body = json.loads(request.body) if request.body else {}
    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON', 'code': 'INVALID_JSON'}, status=400)

    if not isinstance(body, dict):
        return JsonResponse({'error': 'Invalid JSON', 'code': 'INVALID_JSON'}, status=400)

    storage_path = body.get('storagePath') or request.GET.get('storagePath')

    try:
        manager = DocumentLifecycleManager.for_gateway(StoreGateway(request.authorization))
        result = manager.delete_document(document_id, storage_path)
    except ConfigError as e:
        return config_error_response(e)
    except MissingPath as e:
        return JsonResponse({'error': str(e), 'code': 'MISSING_PATH'}, status=400)
    except MetadataError as e:
        logger.error(f"Failed to delete document {document_id}: {e}")
        return JsonResponse(
            {'error': 'Failed to delete document', 'code': 'DELETE_FAILED'},
            status=500
        )
    except Exception as e:
        logger.exception(f"Unexpected error deleting document {document_id}: {e}")
        return internal_error_response()

    audit_document_deleted(request, str(document_id), result.storage_removed)
    return JsonResponse(result.to_dict(), status=200)


@csrf_exempt
@require_http_methods(["GET"])
@auth_required
def download_document(request):
    """
    Create a short-lived download link.

    GET /api/docs/download?path=<uuid>/notes.md

    Returns:
        {"url": "https://.../storage/v1/object/sign/files/...?token=..."}
    """
    try:
        manager = DocumentLifecycleManager.for_gateway(StoreGateway(request.authorization))
        url = manager.download_url(request.GET.get('path'))
    except ConfigError as e:
        return config_error_response(e)
    except MissingPath as e:
        return JsonResponse({'error': str(e), 'code': 'MISSING_PATH'}, status=400)
    except StorageError as e:
        logger.error(f"Failed to sign download URL: {e}")
        return JsonResponse(
            {'error': 'Failed to create download link', 'code': 'STORAGE_ERROR'},
            status=502
        )
    except Exception as e:
        logger.exception(f"Unexpected error signing download URL: {e}")
        return internal_error_response()

    return JsonResponse({'url': url})
