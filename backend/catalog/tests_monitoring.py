"""
Unit Tests for Monitoring Functionality
=======================================
Tests cover:
- Query logging middleware
- Query log list endpoint
- Slow queries endpoint
- Query summary endpoint
- Query cleanup endpoint
- Request logging end to end
"""

import shutil
import tempfile
from datetime import timedelta
from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import RequestFactory, TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from catalog.middleware import QueryLoggingMiddleware
from catalog.models import QueryLog

User = get_user_model()

TEST_MEDIA_ROOT = tempfile.mkdtemp()


def make_log(**kwargs):
    defaults = {
        'endpoint': '/api/files/',
        'method': 'GET',
        'query_params': {},
        'duration_ms': 10,
        'status_code': 200,
    }
    defaults.update(kwargs)
    return QueryLog.objects.create(**defaults)


class QueryLogModelTests(TestCase):

    def test_defaults(self):
        log = make_log()

        self.assertEqual(log.result_count, -1)
        self.assertIsNone(log.error_kind)
        self.assertIsNone(log.error_message)
        self.assertIsNone(log.user_id)
        self.assertIsNotNone(log.timestamp)

    def test_newest_first(self):
        old = make_log()
        QueryLog.objects.filter(pk=old.pk).update(timestamp=timezone.now() - timedelta(hours=1))
        new = make_log()

        self.assertEqual(list(QueryLog.objects.all()), [new, QueryLog.objects.get(pk=old.pk)])

    def test_str(self):
        log = make_log(method='DELETE', status_code=204, duration_ms=7)

        self.assertEqual(str(log), 'DELETE /api/files/ - 204 (7ms)')


class QueryLoggingMiddlewareTests(TestCase):

    def setUp(self):
        self.factory = RequestFactory()
        self.middleware = QueryLoggingMiddleware(MagicMock())

    def _respond_with(self, status_code=200, data=None):
        response = MagicMock()
        response.status_code = status_code
        response.data = data if data is not None else []
        self.middleware.get_response = MagicMock(return_value=response)
        return response

    def test_should_log(self):
        self.assertTrue(self.middleware.should_log('/api/files/'))
        self.assertTrue(self.middleware.should_log('/api/files/upload-limits/'))
        self.assertFalse(self.middleware.should_log('/api/stats/storage/'))
        self.assertFalse(self.middleware.should_log('/api/stats/queries/slow/'))
        self.assertFalse(self.middleware.should_log('/api/public/some-token/'))
        self.assertFalse(self.middleware.should_log('/admin/'))
        self.assertFalse(self.middleware.should_log('/media/cas/ab/cd/hash.txt'))

    def test_creates_log_entry(self):
        self._respond_with(data={'count': 42, 'results': [{}, {}]})

        self.middleware(self.factory.get('/api/files/', {'name': 'report', 'limit': '10'}))

        log = QueryLog.objects.get()
        self.assertEqual(log.endpoint, '/api/files/')
        self.assertEqual(log.method, 'GET')
        self.assertEqual(log.status_code, 200)
        self.assertEqual(log.result_count, 42)
        self.assertEqual(log.query_params, {'name': 'report', 'limit': '10'})
        self.assertGreaterEqual(log.duration_ms, 0)

    def test_excluded_paths_not_logged(self):
        self._respond_with()

        self.middleware(self.factory.get('/api/stats/storage/'))
        self.middleware(self.factory.get('/api/public/abc/'))

        self.assertFalse(QueryLog.objects.exists())

    def test_result_count_from_list(self):
        self._respond_with(data=[{}, {}, {}])

        self.middleware(self.factory.get('/api/files/'))

        self.assertEqual(QueryLog.objects.get().result_count, 3)

    def test_captures_catalog_error(self):
        self._respond_with(400, {'error': {
            'kind': 'invalid_filter',
            'message': 'Unknown filter parameter',
            'field': 'colour',
            'entry_id': None,
        }})

        self.middleware(self.factory.get('/api/files/', {'colour': 'red'}))

        log = QueryLog.objects.get()
        self.assertEqual(log.status_code, 400)
        self.assertEqual(log.error_kind, 'invalid_filter')
        self.assertEqual(log.error_message, 'Unknown filter parameter')

    def test_captures_framework_error_detail(self):
        self._respond_with(403, {'detail': 'Authentication credentials were not provided.'})

        self.middleware(self.factory.get('/api/files/'))

        log = QueryLog.objects.get()
        self.assertIsNone(log.error_kind)
        self.assertEqual(log.error_message, 'Authentication credentials were not provided.')

    def test_records_authenticated_user(self):
        user = User.objects.create_user(username='watched', password='testpass123')
        self._respond_with()
        request = self.factory.get('/api/files/')
        request.user = user

        self.middleware(request)

        self.assertEqual(QueryLog.objects.get().user_id, user.pk)

    def test_logging_failure_does_not_fail_request(self):
        self._respond_with()

        with patch.object(self.middleware, '_log_query', side_effect=Exception('DB Error')):
            response = self.middleware(self.factory.get('/api/files/'))

        self.assertEqual(response.status_code, 200)

    @override_settings(QUERY_LOG_SLOW_MS=-1)
    def test_warns_on_slow_request(self):
        self._respond_with()

        with self.assertLogs('catalog.middleware', level='WARNING') as logs:
            self.middleware(self.factory.get('/api/files/'))

        self.assertIn('slow', logs.output[0])


class QueryLogAPITests(APITestCase):

    def setUp(self):
        self.admin = User.objects.create_user(username='ops', password='testpass123', is_staff=True)
        self.client.force_authenticate(self.admin)

        for i, duration in enumerate([10, 20, 30, 600, 1200]):
            make_log(duration_ms=duration, result_count=i)
        make_log(status_code=400, error_kind='invalid_filter', error_message='bad date')
        make_log(status_code=404, error_kind='not_found', error_message='gone')
        make_log(status_code=409, error_kind='conflict', error_message='stale')
        make_log(status_code=400, error_kind='invalid_filter', error_message='inverted')

    def test_staff_only(self):
        self.client.force_authenticate(User.objects.create_user(username='plain', password='x'))

        response = self.client.get('/api/stats/queries/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_list_queries(self):
        response = self.client.get('/api/stats/queries/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 9)
        self.assertEqual(len(response.data['results']), 9)

    def test_list_pagination(self):
        response = self.client.get('/api/stats/queries/', {'limit': 3, 'offset': 2})

        self.assertEqual(response.data['limit'], 3)
        self.assertEqual(response.data['offset'], 2)
        self.assertEqual(len(response.data['results']), 3)

    def test_list_max_limit(self):
        response = self.client.get('/api/stats/queries/', {'limit': 1000})

        self.assertEqual(response.data['limit'], 200)

    def test_list_filters(self):
        by_status = self.client.get('/api/stats/queries/', {'status_code': 400})
        by_kind = self.client.get('/api/stats/queries/', {'error_kind': 'conflict'})

        self.assertEqual(by_status.data['count'], 2)
        self.assertEqual(by_kind.data['count'], 1)
        self.assertEqual(by_kind.data['results'][0]['error_message'], 'stale')

    def test_slow_queries(self):
        response = self.client.get('/api/stats/queries/slow/', {'threshold_ms': 100})

        self.assertEqual(response.data['threshold_ms'], 100)
        self.assertEqual([r['duration_ms'] for r in response.data['results']], [1200, 600])

    def test_slow_queries_default_threshold(self):
        response = self.client.get('/api/stats/queries/slow/')

        self.assertEqual(response.data['threshold_ms'], 500)
        self.assertEqual(response.data['count'], 2)

    def test_summary(self):
        response = self.client.get('/api/stats/queries/summary/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['period'], 'all_time')
        self.assertEqual(response.data['total_queries'], 9)
        self.assertEqual(response.data['failed_queries'], 4)
        self.assertEqual(response.data['successful_queries'], 5)
        self.assertEqual(response.data['success_rate_percent'], 55.56)
        self.assertEqual(response.data['slowest_query_ms'], 1200)
        self.assertEqual(response.data['p50_duration_ms'], 10)
        self.assertEqual(response.data['errors_by_kind'], {'invalid_filter': 2, 'not_found': 1, 'conflict': 1})

    def test_summary_time_window(self):
        QueryLog.objects.update(timestamp=timezone.now() - timedelta(hours=5))
        make_log()

        response = self.client.get('/api/stats/queries/summary/', {'hours': 1})

        self.assertEqual(response.data['period'], 'last_1_hours')
        self.assertEqual(response.data['total_queries'], 1)

    def test_summary_empty(self):
        QueryLog.objects.all().delete()

        response = self.client.get('/api/stats/queries/summary/')

        self.assertEqual(response.data['total_queries'], 0)
        self.assertEqual(response.data['success_rate_percent'], 0)
        self.assertEqual(response.data['p95_duration_ms'], 0)
        self.assertEqual(response.data['errors_by_kind'], {})


class QueryCleanupAPITests(APITestCase):

    def setUp(self):
        self.client.force_authenticate(
            User.objects.create_user(username='ops', password='testpass123', is_staff=True)
        )
        for _ in range(5):
            make_log()
        for _ in range(5):
            log = make_log()
            QueryLog.objects.filter(pk=log.pk).update(timestamp=timezone.now() - timedelta(days=40))

    def test_cleanup_dry_run(self):
        response = self.client.delete('/api/stats/queries/cleanup/?older_than_days=30&dry_run=true')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['dry_run'])
        self.assertEqual(response.data['logs_to_delete'], 5)
        self.assertIn('cutoff_date', response.data)
        self.assertEqual(QueryLog.objects.count(), 10)

    def test_cleanup_actual_delete(self):
        response = self.client.delete('/api/stats/queries/cleanup/?older_than_days=30')

        self.assertFalse(response.data['dry_run'])
        self.assertEqual(response.data['deleted_count'], 5)
        self.assertEqual(QueryLog.objects.count(), 5)

    def test_cleanup_default_retention(self):
        response = self.client.delete('/api/stats/queries/cleanup/?dry_run=true')

        self.assertEqual(response.data['older_than_days'], 30)

    def test_cleanup_invalid_days(self):
        response = self.client.delete('/api/stats/queries/cleanup/?older_than_days=0')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['field'], 'older_than_days')


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class IntegrationTests(APITestCase):
    """Requests travelling through the full middleware stack."""

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.user = User.objects.create_user(username='logged', password='testpass123')
        self.client.force_authenticate(self.user)

    def test_file_operations_are_logged(self):
        self.client.post(
            '/api/files/',
            {'file': SimpleUploadedFile('a.txt', b"logged upload")},
            format='multipart',
        )
        self.client.get('/api/files/', {'name': 'a'})

        logs = QueryLog.objects.order_by('timestamp')
        self.assertEqual([(log.method, log.status_code) for log in logs], [('POST', 201), ('GET', 200)])
        self.assertEqual(logs[1].result_count, 1)
        self.assertEqual(logs[1].user_id, self.user.pk)

    def test_stats_endpoints_not_logged(self):
        self.client.get('/api/stats/storage/')

        self.assertFalse(QueryLog.objects.exists())

    def test_failed_requests_logged_with_kind(self):
        self.client.get('/api/files/', {'date_from': 'soon'})

        log = QueryLog.objects.get()
        self.assertEqual(log.status_code, 400)
        self.assertEqual(log.error_kind, 'invalid_filter')
