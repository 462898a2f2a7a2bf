"""
Document ingestion and deletion views.

Provides endpoints for:
- POST /api/docs/ingest - Upload and index a document
- DELETE /api/docs/<id> - Remove a document's chunks
- DELETE /api/projects/<id> - Remove every chunk of a project
"""
import logging
from pathlib import Path

from asgiref.sync import sync_to_async
from django.conf import settings
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.indexing.ingestion import IngestionError, delete_document, delete_project, ingest
from apps.rag.pipeline import get_pipeline
from apps.rag.providers import ProviderType
from apps.rag.storage import StorageError

logger = logging.getLogger(__name__)


def get_extension(filename: str) -> str:
    """Extract file extension from filename."""
    return Path(filename).suffix.lower()


def validate_extension(filename: str) -> bool:
    """Check if file extension is allowed."""
    ext = get_extension(filename)
    return ext in getattr(settings, 'ALLOWED_EXTENSIONS', ['.pdf', '.txt', '.md', '.markdown', '.csv'])


@method_decorator(csrf_exempt, name='dispatch')
class IngestView(View):
    """
    POST /api/docs/ingest

    Accepts multipart/form-data with a 'file' field and optional
    'projectId', 'provider' and 'embeddingModel' fields.

    Allowed file types: PDF, TXT, MD, CSV
    Max size: 50MB (configurable)

    Returns:
        {
            "documentId": "uuid",
            "documentName": "original.pdf",
            "projectId": "...",
            "chunkCount": 12,
            "events": [ {progress events...} ]
        }
    """

    async def post(self, request):
        if 'file' not in request.FILES:
            return JsonResponse(
                {'error': 'No file provided', 'code': 'MISSING_FILE'},
                status=400
            )

        uploaded_file = request.FILES['file']
        filename = uploaded_file.name
        max_size = getattr(settings, 'MAX_UPLOAD_SIZE', 50 * 1024 * 1024)

        logger.info(f"Ingest request: {filename}, {uploaded_file.size} bytes")

        if uploaded_file.size > max_size:
            max_mb = max_size // (1024 * 1024)
            return JsonResponse(
                {
                    'error': f'File too large. Maximum size is {max_mb}MB',
                    'code': 'FILE_TOO_LARGE',
                    'maxSize': max_size
                },
                status=400
            )

        if not validate_extension(filename):
            return JsonResponse(
                {
                    'error': 'Invalid file type. Allowed: PDF, TXT, MD, CSV',
                    'code': 'INVALID_FILE_TYPE',
                    'allowedExtensions': getattr(settings, 'ALLOWED_EXTENSIONS', [])
                },
                status=400
            )

        try:
            provider = ProviderType.parse(request.POST.get('provider') or ProviderType.LOCAL)
        except ValueError as e:
            return JsonResponse({'error': str(e), 'code': 'INVALID_PROVIDER'}, status=400)

        events = []
        try:
            result = await ingest(
                uploaded_file,
                on_progress=lambda event: events.append(event.to_dict()),
                provider=provider,
                embedding_model=request.POST.get('embeddingModel') or None,
                project_id=request.POST.get('projectId') or None,
                pipeline=get_pipeline(),
            )
        except IngestionError as e:
            return JsonResponse(
                {
                    'error': str(e),
                    'code': 'INGESTION_FAILED',
                    'documentId': e.document_id,
                    'events': events,
                },
                status=422
            )

        return JsonResponse({**result.to_dict(), 'events': events}, status=201)


@method_decorator(csrf_exempt, name='dispatch')
class DocumentView(View):
    """
    DELETE /api/docs/<document_id>

    Returns:
        {"documentId": "...", "deleted": 12}
    """

    async def delete(self, request, document_id):
        try:
            deleted = await sync_to_async(delete_document)(document_id, pipeline=get_pipeline())
        except StorageError as e:
            logger.error(f"Failed to delete document {document_id}: {e}")
            return JsonResponse({'error': 'Failed to persist deletion'}, status=500)

        if deleted == 0:
            return JsonResponse({'error': 'Document not found', 'documentId': document_id}, status=404)

        return JsonResponse({'documentId': document_id, 'deleted': deleted})


@method_decorator(csrf_exempt, name='dispatch')
class ProjectView(View):
    """
    DELETE /api/projects/<project_id>

    Deleting an empty or unknown project is not an error.

    Returns:
        {"projectId": "...", "deleted": 40}
    """

    async def delete(self, request, project_id):
        try:
            deleted = await sync_to_async(delete_project)(project_id, pipeline=get_pipeline())
        except StorageError as e:
            logger.error(f"Failed to delete project {project_id}: {e}")
            return JsonResponse({'error': 'Failed to persist deletion'}, status=500)

        return JsonResponse({'projectId': project_id, 'deleted': deleted})
