"""
Views for storage accounting and monitoring endpoints.
"""
from collections import Counter
from datetime import timedelta

from django.db.models import Avg, Max
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework.viewsets import ViewSet

from ..exceptions import CatalogError, InvalidFilter
from ..models import QueryLog
from ..serializers import AggregateStatsSerializer
from ..services import accounting
from ..views import error_response
from .serializers import QueryLogSerializer, QuerySummarySerializer


class StorageStatsView(APIView):
    """
    GET /api/stats/storage/?scope=mine|public|global

    Returns original vs. deduplicated storage for the requested scope.
    Defaults to the requesting user's own files.
    """

    SCOPES = {
        'mine': lambda request: accounting.stats_for_owner(request.user),
        'public': lambda request: accounting.stats_for_public(),
        'global': lambda request: accounting.stats_for_catalog(),
    }

    def get(self, request):
        scope = request.query_params.get('scope', 'mine')
        compute = self.SCOPES.get(scope)
        if compute is None:
            return error_response(InvalidFilter(f'Unknown scope {scope!r}', field='scope'))

        try:
            stats = compute(request).as_dict()
        except CatalogError as e:
            return error_response(e)

        stats['scope'] = scope
        return Response(AggregateStatsSerializer(stats).data)


def _int_param(params, name, default, maximum=None):
    try:
        value = int(params.get(name, default))
    except (TypeError, ValueError):
        value = default
    return min(value, maximum) if maximum is not None else value


class QueryLogViewSet(ViewSet):
    """
    ViewSet for query log monitoring endpoints (staff only).

    Endpoints:
    - GET /api/stats/queries/ - List query logs
    - GET /api/stats/queries/slow/ - Get slow queries
    - GET /api/stats/queries/summary/ - Get query statistics summary
    - DELETE /api/stats/queries/cleanup/ - Cleanup old logs
    """
    permission_classes = [IsAdminUser]

    def list(self, request):
        """
        Query Parameters:
        - limit: Results per page (default: 50, max: 200)
        - offset: Pagination offset
        - status_code: Filter by status code
        - error_kind: Filter by catalog error kind
        """
        queryset = QueryLog.objects.all()

        status_code = request.query_params.get('status_code')
        if status_code and status_code.isdigit():
            queryset = queryset.filter(status_code=int(status_code))

        error_kind = request.query_params.get('error_kind')
        if error_kind:
            queryset = queryset.filter(error_kind=error_kind)

        limit = _int_param(request.query_params, 'limit', 50, maximum=200)
        offset = _int_param(request.query_params, 'offset', 0)

        total_count = queryset.count()
        serializer = QueryLogSerializer(queryset[offset:offset + limit], many=True)

        return Response({
            'count': total_count,
            'limit': limit,
            'offset': offset,
            'results': serializer.data,
        })

    @action(detail=False, methods=['get'], url_path='slow')
    def slow_queries(self, request):
        """Queries at or above threshold_ms (default: 500), slowest first."""
        threshold_ms = _int_param(request.query_params, 'threshold_ms', 500)
        limit = _int_param(request.query_params, 'limit', 50, maximum=200)

        queryset = QueryLog.objects.filter(
            duration_ms__gte=threshold_ms
        ).order_by('-duration_ms')[:limit]

        serializer = QueryLogSerializer(queryset, many=True)
        return Response({
            'threshold_ms': threshold_ms,
            'count': len(serializer.data),
            'results': serializer.data,
        })

    @action(detail=False, methods=['get'], url_path='summary')
    def summary(self, request):
        """
        Aggregated request statistics.

        Query Parameters:
        - hours: Time window in hours (default: all time)
        """
        queryset = QueryLog.objects.all()
        period = 'all_time'

        hours = request.query_params.get('hours')
        if hours and hours.isdigit():
            queryset = queryset.filter(timestamp__gte=timezone.now() - timedelta(hours=int(hours)))
            period = f'last_{hours}_hours'

        total_queries = queryset.count()
        failed_queries = queryset.filter(status_code__gte=400).count()
        successful_queries = total_queries - failed_queries

        duration_stats = queryset.aggregate(
            avg_duration=Avg('duration_ms'),
            max_duration=Max('duration_ms'),
        )
        durations = list(queryset.order_by('duration_ms').values_list('duration_ms', flat=True))
        errors_by_kind = Counter(
            queryset.filter(error_kind__isnull=False).values_list('error_kind', flat=True)
        )

        summary_data = {
            'period': period,
            'total_queries': total_queries,
            'successful_queries': successful_queries,
            'failed_queries': failed_queries,
            'success_rate_percent': round(
                successful_queries * 100 / total_queries if total_queries else 0, 2
            ),
            'avg_duration_ms': round(duration_stats['avg_duration'] or 0, 1),
            'p50_duration_ms': self._percentile(durations, 50),
            'p95_duration_ms': self._percentile(durations, 95),
            'slowest_query_ms': duration_stats['max_duration'] or 0,
            'errors_by_kind': dict(errors_by_kind),
        }

        return Response(QuerySummarySerializer(summary_data).data)

    @action(detail=False, methods=['delete'], url_path='cleanup')
    def cleanup(self, request):
        """
        Delete old query logs.

        Query Parameters:
        - older_than_days: Delete logs older than N days (default: 30)
        - dry_run: If 'true', preview count without deleting
        """
        older_than_days = _int_param(request.query_params, 'older_than_days', 30)
        dry_run = request.query_params.get('dry_run', 'false').lower() == 'true'

        if older_than_days < 1:
            return Response(
                {'error': {'kind': 'invalid_request', 'message': 'older_than_days must be at least 1',
                           'field': 'older_than_days', 'entry_id': None}},
                status=status.HTTP_400_BAD_REQUEST
            )

        cutoff_date = timezone.now() - timedelta(days=older_than_days)
        queryset = QueryLog.objects.filter(timestamp__lt=cutoff_date)

        result = {
            'dry_run': dry_run,
            'older_than_days': older_than_days,
            'cutoff_date': cutoff_date.isoformat(),
        }
        if dry_run:
            result['logs_to_delete'] = queryset.count()
        else:
            result['deleted_count'], _ = queryset.delete()
        return Response(result)

    @staticmethod
    def _percentile(data, p):
        """Linear-interpolated percentile of sorted integer data."""
        n = len(data)
        if n == 0:
            return 0
        k = (n - 1) * p / 100
        f = int(k)
        c = f + 1 if f + 1 < n else f
        if f == c:
            return data[f]
        return int(data[f] * (c - k) + data[c] * (k - f))
