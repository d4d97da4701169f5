"""
Stats module for storage accounting and monitoring endpoints.
"""
from .views import StorageStatsView, QueryLogViewSet
from .serializers import QueryLogSerializer, QuerySummarySerializer

__all__ = [
    'StorageStatsView',
    'QueryLogViewSet',
    'QueryLogSerializer',
    'QuerySummarySerializer',
]
