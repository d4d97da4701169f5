"""
Query Logging Middleware for monitoring API performance.
"""
import time
import logging

from django.conf import settings

logger = logging.getLogger(__name__)


class QueryLoggingMiddleware:
    """
    Middleware to log API request performance.

    Captures request timing, method, path, query parameters, response
    status, result count and, for failed requests, the catalog error kind
    and message.

    Only /api/ paths are logged; the monitoring endpoints themselves and
    public link downloads are skipped.
    """

    INCLUDED_PREFIX = '/api/'
    EXCLUDED_PATHS = ['/api/stats/', '/api/public/']

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if not self.should_log(request.path):
            return self.get_response(request)

        start_time = time.monotonic()
        response = self.get_response(request)
        duration_ms = int((time.monotonic() - start_time) * 1000)

        # Monitoring must never fail the request itself
        try:
            self._log_query(request, response, duration_ms)
        except Exception as e:
            logger.error(f"Failed to log query: {e}")

        slow_ms = getattr(settings, 'QUERY_LOG_SLOW_MS', 2000)
        if duration_ms > slow_ms:
            logger.warning(
                f"Very slow query detected: {request.method} {request.path} "
                f"took {duration_ms}ms"
            )

        return response

    def should_log(self, path):
        if not path.startswith(self.INCLUDED_PREFIX):
            return False
        return not any(path.startswith(p) for p in self.EXCLUDED_PATHS)

    def _log_query(self, request, response, duration_ms):
        # Import here to avoid loading models before the app registry is ready
        from .models import QueryLog

        error_kind, error_message = None, None
        if response.status_code >= 400:
            error_kind, error_message = self._extract_error(response)

        user = getattr(request, 'user', None)
        user_id = user.pk if user is not None and user.is_authenticated else None

        QueryLog.objects.create(
            endpoint=request.path[:255],
            method=request.method,
            query_params=dict(request.GET.items()),
            duration_ms=duration_ms,
            status_code=response.status_code,
            result_count=self._extract_result_count(response),
            error_kind=error_kind,
            error_message=error_message,
            user_id=user_id,
        )

    def _extract_result_count(self, response):
        """
        Returns:
            int: Number of results, or -1 if not applicable
        """
        data = getattr(response, 'data', None)
        if isinstance(data, dict):
            if 'count' in data:
                return data['count']
            if 'results' in data:
                return len(data['results'])
        if isinstance(data, list):
            return len(data)
        return -1

    def _extract_error(self, response):
        """
        Returns:
            tuple: (error kind or None, error message or None)
        """
        data = getattr(response, 'data', None)
        if not isinstance(data, dict):
            return None, None

        error = data.get('error')
        if isinstance(error, dict):
            return error.get('kind'), error.get('message')
        if error is not None:
            return None, str(error)[:500]
        if 'detail' in data:
            return None, str(data['detail'])[:500]
        return None, str(data)[:500]
