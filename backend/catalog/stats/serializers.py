"""
Serializers for monitoring stats endpoints.
"""
from rest_framework import serializers
from ..models import QueryLog


class QueryLogSerializer(serializers.ModelSerializer):
    """Serializer for QueryLog model."""

    class Meta:
        model = QueryLog
        fields = [
            'id',
            'endpoint',
            'method',
            'query_params',
            'duration_ms',
            'status_code',
            'result_count',
            'error_kind',
            'error_message',
            'user_id',
            'timestamp',
        ]
        read_only_fields = fields


class QuerySummarySerializer(serializers.Serializer):
    """Serializer for query statistics summary."""
    period = serializers.CharField()
    total_queries = serializers.IntegerField()
    successful_queries = serializers.IntegerField()
    failed_queries = serializers.IntegerField()
    success_rate_percent = serializers.FloatField()
    avg_duration_ms = serializers.FloatField()
    p50_duration_ms = serializers.IntegerField()
    p95_duration_ms = serializers.IntegerField()
    slowest_query_ms = serializers.IntegerField()
    errors_by_kind = serializers.DictField(child=serializers.IntegerField())
