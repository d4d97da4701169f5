import logging

from django.http import FileResponse
from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.pagination import LimitOffsetPagination
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from contracts.models import FileEntry
from .exceptions import (
    CatalogError,
    Conflict,
    EntryNotFound,
    InvalidFilter,
    InvalidUpload,
    NotOwner,
    StorageBackendUnavailable,
)
from .filters import FileEntryFilter
from .serializers import (
    AggregateStatsSerializer,
    FileEntrySerializer,
    RenameSerializer,
    UploadResultSerializer,
    VersionSerializer,
    VisibilitySerializer,
)
from .services import catalog, compute_stats, visibility_controller

logger = logging.getLogger(__name__)


ERROR_STATUS = {
    EntryNotFound: status.HTTP_404_NOT_FOUND,
    NotOwner: status.HTTP_403_FORBIDDEN,
    InvalidFilter: status.HTTP_400_BAD_REQUEST,
    InvalidUpload: status.HTTP_400_BAD_REQUEST,
    Conflict: status.HTTP_409_CONFLICT,
    StorageBackendUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_response(exc: CatalogError) -> Response:
    """Render a catalog error with its kind and offending field or id."""
    http_status = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return Response({'error': exc.as_dict()}, status=http_status)


def serve_entry(entry: FileEntry) -> FileResponse:
    """
    Stream an entry's bytes and count the download.

    The count is recorded once the content file is open, so a missing or
    unreadable file never inflates it.
    """
    try:
        handle = entry.content.file.open('rb')
    except OSError as e:
        logger.error(f"Could not open content for file {entry.pk}: {e}")
        raise StorageBackendUnavailable(
            'File content unavailable',
            entry_id=entry.pk,
        ) from e

    catalog.record_download(entry.pk)
    return FileResponse(
        handle,
        as_attachment=True,
        filename=entry.display_name,
        content_type=entry.mime_type,
    )


class FilePagination(LimitOffsetPagination):
    """
    Custom pagination for file listings.

    - Default limit: 20
    - Maximum limit: 100
    """
    default_limit = 20
    max_limit = 100


class FileEntryViewSet(viewsets.GenericViewSet):
    """
    ViewSet for a user's files.

    Provides:
    - List files with filtering (plus storage stats on the unfiltered listing)
    - Upload files with automatic deduplication
    - Rename, delete, visibility toggle and link rotation
    - Owner downloads

    Filtering (all use AND logic):
    - name: Case-sensitive filename substring
    - mime_type: Exact MIME type(s)
    - size_min/size_max: File size range in bytes
    - date_from/date_to: Upload date range (ISO 8601)
    - is_public: Visibility
    - scope: 'mine' (default) or 'public'
    """
    queryset = FileEntry.objects.all()
    serializer_class = FileEntrySerializer
    pagination_class = FilePagination
    lookup_value_regex = '[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}'

    def list(self, request):
        """
        List files in the requested scope.

        The scope is read once; filtering and the stats both run on that
        snapshot.
        """
        scope = request.query_params.get('scope', 'mine')
        if scope == 'mine':
            queryset = catalog.owner_entries(request.user)
        elif scope == 'public':
            queryset = catalog.public_entries()
        else:
            return error_response(InvalidFilter(f'Unknown scope {scope!r}', field='scope'))

        filterset = FileEntryFilter(request.query_params, queryset=queryset, request=request)
        try:
            results = filterset.qs
        except CatalogError as e:
            return error_response(e)

        page = self.paginate_queryset(results)
        serializer = self.get_serializer(page, many=True)
        response = self.get_paginated_response(serializer.data)

        if filterset.spec.is_unconstrained:
            stats = compute_stats(filterset.entries).as_dict()
            stats['scope'] = scope
            response.data['stats'] = AggregateStatsSerializer(stats).data
        return response

    def create(self, request):
        """
        Upload a file with deduplication.

        If the content already exists, no duplicate storage occurs.
        The response includes `is_duplicate` to say so.
        """
        file_obj = request.FILES.get('file')
        if not file_obj:
            return error_response(InvalidUpload('No file provided', field='file'))

        display_name = request.data.get('display_name') or file_obj.name
        mime_type = file_obj.content_type or catalog.DEFAULT_MIME_TYPE

        try:
            entry, is_duplicate = catalog.upload(request.user, file_obj, display_name, mime_type)
        except CatalogError as e:
            return error_response(e)

        serializer = UploadResultSerializer(
            entry,
            context={'request': request, 'is_duplicate': is_duplicate},
        )
        return Response(serializer.data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        try:
            entry = catalog.get_entry(pk, actor=request.user)
        except CatalogError as e:
            return error_response(e)
        return Response(self.get_serializer(entry).data)

    def partial_update(self, request, pk=None):
        """Rename a file."""
        params = RenameSerializer(data=request.data)
        params.is_valid(raise_exception=True)

        try:
            entry = catalog.rename(
                pk,
                request.user,
                params.validated_data['display_name'],
                expected_version=params.validated_data.get('version'),
            )
        except CatalogError as e:
            return error_response(e)
        return Response(self.get_serializer(entry).data)

    def destroy(self, request, pk=None):
        """
        Delete a file with proper reference counting.

        Physical bytes are only released when no other entry references them.
        """
        params = VersionSerializer(data=request.query_params)
        params.is_valid(raise_exception=True)

        try:
            catalog.delete(pk, request.user, expected_version=params.validated_data.get('version'))
        except CatalogError as e:
            return error_response(e)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=['post'])
    def visibility(self, request, pk=None):
        """Make a file public (issuing a link) or private (revoking it)."""
        params = VisibilitySerializer(data=request.data)
        params.is_valid(raise_exception=True)

        try:
            entry = visibility_controller.set_visibility(
                pk,
                request.user,
                params.validated_data['is_public'],
                expected_version=params.validated_data.get('version'),
            )
        except CatalogError as e:
            return error_response(e)
        return Response(self.get_serializer(entry).data)

    @action(detail=True, methods=['post'], url_path='rotate-link')
    def rotate_link(self, request, pk=None):
        """Replace the public link of a public file."""
        params = VersionSerializer(data=request.data)
        params.is_valid(raise_exception=True)

        try:
            entry = visibility_controller.rotate_link(
                pk,
                request.user,
                expected_version=params.validated_data.get('version'),
            )
        except CatalogError as e:
            return error_response(e)
        return Response(self.get_serializer(entry).data)

    @action(detail=True, methods=['get'])
    def download(self, request, pk=None):
        try:
            entry = catalog.get_entry(pk, actor=request.user)
            return serve_entry(entry)
        except CatalogError as e:
            return error_response(e)

    @action(detail=False, methods=['get'], url_path='upload-limits')
    def upload_limits(self, request):
        """
        Get upload limits for client-side validation.

        Returns:
            - max_file_size: Maximum allowed file size in bytes
            - max_file_size_formatted: Human-readable max size
        """
        max_size = catalog.get_max_upload_size()
        return Response({
            'max_file_size': max_size,
            'max_file_size_formatted': catalog.format_file_size(max_size),
        })


class PublicLinkView(APIView):
    """
    GET /api/public/<token>/

    Anonymous download through a public link. Revoked or unknown links
    give 404.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, token):
        try:
            entry = visibility_controller.resolve_public_link(token)
            return serve_entry(entry)
        except CatalogError as e:
            return error_response(e)
