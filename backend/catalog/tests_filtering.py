"""
Unit Tests for Filtering
========================
Tests cover:
- Name substring, MIME type, size, date, owner and visibility predicates
- AND composition, identity and idempotence
- Inverted ranges, empty patterns and malformed input
- Query-string binding and the listing endpoint
"""

import shutil
import tempfile
from datetime import date, datetime, timezone as dt_timezone

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.http import QueryDict
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from contracts.models import FileEntry
from catalog.exceptions import InvalidFilter
from catalog.filters import FileEntryFilter
from catalog.services import FilterSpec, catalog, evaluate, visibility_controller

User = get_user_model()

TEST_MEDIA_ROOT = tempfile.mkdtemp()


def at(day, hour=12):
    return datetime(2024, 1, day, hour, 0, tzinfo=dt_timezone.utc)


def make_entry(name, mime_type='text/plain', size=100, uploaded_at=None, owner_id=1, is_public=False):
    return FileEntry(
        content_id=name,
        owner_id=owner_id,
        display_name=name,
        mime_type=mime_type,
        original_size=size,
        uploaded_at=uploaded_at or at(15),
        is_public=is_public,
        public_link='tok-' + name if is_public else None,
    )


class EvaluateTests(SimpleTestCase):
    """Pure filter evaluation over in-memory entries."""

    def setUp(self):
        self.entries = [
            make_entry('annual_report.txt', size=10, uploaded_at=at(10)),
            make_entry('photo.png', 'image/png', size=500, uploaded_at=at(12), is_public=True),
            make_entry('Report.pdf', 'application/pdf', size=2000, uploaded_at=at(14), owner_id=2),
            make_entry('diagram.png', 'image/png', size=800, uploaded_at=at(16)),
            make_entry('notes.md', 'text/markdown', size=0, uploaded_at=at(18), owner_id=2),
        ]

    def names(self, result):
        return [e.display_name for e in result]

    def test_empty_spec_is_identity(self):
        self.assertEqual(evaluate(self.entries, FilterSpec()), self.entries)
        self.assertEqual(evaluate(self.entries, {}), self.entries)
        self.assertEqual(evaluate(self.entries, None), self.entries)

    def test_mime_type_keeps_original_order(self):
        result = evaluate(self.entries, FilterSpec(mime_types={'image/png'}))

        self.assertEqual(self.names(result), ['photo.png', 'diagram.png'])

    def test_name_pattern_is_case_sensitive_substring(self):
        self.assertEqual(self.names(evaluate(self.entries, FilterSpec(name_pattern='report'))), ['annual_report.txt'])
        self.assertEqual(self.names(evaluate(self.entries, FilterSpec(name_pattern='Report'))), ['Report.pdf'])

    def test_empty_name_pattern_is_no_constraint(self):
        self.assertEqual(evaluate(self.entries, FilterSpec(name_pattern='')), self.entries)

    def test_size_range_inclusive(self):
        result = evaluate(self.entries, FilterSpec(size_min=500, size_max=2000))

        self.assertEqual(self.names(result), ['photo.png', 'Report.pdf', 'diagram.png'])

    def test_single_size_bound_is_open_on_the_other_side(self):
        self.assertEqual(
            self.names(evaluate(self.entries, FilterSpec(size_max=10))),
            ['annual_report.txt', 'notes.md'],
        )
        self.assertEqual(self.names(evaluate(self.entries, FilterSpec(size_min=2000))), ['Report.pdf'])

    def test_inverted_size_range_matches_nothing(self):
        spec = FilterSpec(size_min=1000, size_max=10)

        self.assertTrue(spec.matches_nothing)
        self.assertEqual(evaluate(self.entries, spec), [])

    def test_inverted_date_range_matches_nothing(self):
        self.assertEqual(evaluate(self.entries, FilterSpec(date_from=at(20), date_to=at(1))), [])

    def test_date_range_inclusive(self):
        result = evaluate(self.entries, FilterSpec(date_from=at(12), date_to=at(16)))

        self.assertEqual(self.names(result), ['photo.png', 'Report.pdf', 'diagram.png'])

    def test_date_strings_and_whole_day_upper_bound(self):
        result = evaluate(self.entries, FilterSpec(date_from='2024-01-14', date_to='2024-01-16'))

        self.assertEqual(self.names(result), ['Report.pdf', 'diagram.png'])

    def test_bare_date_bounds_cover_the_day(self):
        spec = FilterSpec(date_from='2024-01-16', date_to='2024-01-16')

        self.assertEqual(spec.date_from, datetime(2024, 1, 16, tzinfo=dt_timezone.utc))
        self.assertEqual(spec.date_to, datetime(2024, 1, 16, 23, 59, 59, 999999, tzinfo=dt_timezone.utc))
        self.assertEqual(self.names(evaluate(self.entries, spec)), ['diagram.png'])

    def test_date_objects_accepted(self):
        result = evaluate(self.entries, FilterSpec(date_to=date(2024, 1, 12)))

        self.assertEqual(self.names(result), ['annual_report.txt', 'photo.png'])

    def test_malformed_date_raises(self):
        with self.assertRaises(InvalidFilter) as ctx:
            evaluate(self.entries, {'date_from': 'last tuesday'})

        self.assertEqual(ctx.exception.field, 'date_from')

    def test_impossible_date_raises(self):
        with self.assertRaises(InvalidFilter):
            FilterSpec(date_to='2024-02-30')

    def test_negative_size_raises(self):
        with self.assertRaises(InvalidFilter) as ctx:
            FilterSpec(size_min=-1)

        self.assertEqual(ctx.exception.field, 'size_min')

    def test_unknown_field_rejected(self):
        with self.assertRaises(InvalidFilter) as ctx:
            evaluate(self.entries, {'colour': 'blue'})

        self.assertEqual(ctx.exception.field, 'colour')

    def test_owner_and_visibility(self):
        self.assertEqual(
            self.names(evaluate(self.entries, FilterSpec(owner_id=2))),
            ['Report.pdf', 'notes.md'],
        )
        self.assertEqual(self.names(evaluate(self.entries, FilterSpec(is_public=True))), ['photo.png'])

    def test_fields_combine_with_and(self):
        spec = FilterSpec(mime_types=['image/png', 'application/pdf'], size_min=600, owner_id=1)

        self.assertEqual(self.names(evaluate(self.entries, spec)), ['diagram.png'])

    def test_evaluate_is_idempotent(self):
        specs = [
            FilterSpec(mime_types={'image/png'}),
            FilterSpec(name_pattern='o', size_max=900),
            FilterSpec(date_from=at(11), is_public=False),
        ]
        for spec in specs:
            once = evaluate(self.entries, spec)
            self.assertEqual(evaluate(once, spec), once)

    def test_is_unconstrained(self):
        self.assertTrue(FilterSpec().is_unconstrained)
        self.assertTrue(FilterSpec(name_pattern='', mime_types=[]).is_unconstrained)
        self.assertFalse(FilterSpec(is_public=False).is_unconstrained)


class FileEntryFilterTests(TestCase):
    """Query-string parsing into FilterSpec."""

    def _spec(self, query):
        return FileEntryFilter(QueryDict(query), queryset=FileEntry.objects.none()).get_spec()

    def test_parses_all_fields(self):
        spec = self._spec(
            'name=rep&mime_type=image/png,application/pdf&size_min=1&size_max=9'
            '&date_from=2024-01-01&date_to=2024-01-31T10:00:00Z&is_public=true'
        )

        self.assertEqual(spec.name_pattern, 'rep')
        self.assertEqual(spec.mime_types, frozenset({'image/png', 'application/pdf'}))
        self.assertEqual((spec.size_min, spec.size_max), (1, 9))
        self.assertEqual(spec.date_from, datetime(2024, 1, 1, tzinfo=dt_timezone.utc))
        self.assertEqual(spec.date_to, datetime(2024, 1, 31, 10, tzinfo=dt_timezone.utc))
        self.assertIs(spec.is_public, True)

    def test_pagination_params_allowed(self):
        self.assertTrue(self._spec('limit=5&offset=10&scope=mine').is_unconstrained)

    def test_unknown_param_rejected(self):
        with self.assertRaises(InvalidFilter) as ctx:
            self._spec('search=report')

        self.assertEqual(ctx.exception.field, 'search')

    def test_non_integer_size_rejected(self):
        with self.assertRaises(InvalidFilter) as ctx:
            self._spec('size_min=big')

        self.assertEqual(ctx.exception.field, 'size_min')

    def test_inverted_range_rejected_at_the_boundary(self):
        with self.assertRaises(InvalidFilter):
            self._spec('size_min=100&size_max=1')
        with self.assertRaises(InvalidFilter):
            self._spec('date_from=2024-02-01&date_to=2024-01-01')

    def test_qs_evaluates_over_snapshot(self):
        owner = User.objects.create_user(username='qs', password='testpass123')
        with override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False):
            catalog.upload(owner, SimpleUploadedFile('a.png', b'png'), 'a.png', 'image/png')
            catalog.upload(owner, SimpleUploadedFile('b.txt', b'txt'), 'b.txt', 'text/plain')

        filterset = FileEntryFilter(QueryDict('mime_type=image/png'), queryset=catalog.owner_entries(owner))

        self.assertEqual([e.display_name for e in filterset.qs], ['a.png'])
        self.assertEqual(filterset.spec.mime_types, frozenset({'image/png'}))
        self.assertEqual(sorted(e.display_name for e in filterset.entries), ['a.png', 'b.txt'])


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class FileListFilterAPITests(APITestCase):
    """GET /api/files/ with filters."""

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.user = User.objects.create_user(username='lister', password='testpass123')
        self.other = User.objects.create_user(username='neighbour', password='testpass123')
        self.client.force_authenticate(self.user)

    def _upload(self, content, filename, content_type='text/plain'):
        file_obj = SimpleUploadedFile(filename, content, content_type=content_type)
        return self.client.post('/api/files/', {'file': file_obj}, format='multipart')

    def _setup_test_files(self):
        self._upload(b"Report content", 'annual_report.txt')
        self._upload(b"PDF content" * 100, 'document.pdf', 'application/pdf')
        self._upload(b"Big PDF" * 500, 'large_report.pdf', 'application/pdf')
        self._upload(b"PNG data", 'photo.png', 'image/png')
        self._upload(b"More PNG data", 'diagram.png', 'image/png')

    def names(self, response):
        return [f['display_name'] for f in response.data['results']]

    def test_unfiltered_listing_includes_stats(self):
        self._setup_test_files()
        self._upload(b"PNG data", 'photo_copy.png', 'image/png')

        response = self.client.get('/api/files/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 6)
        stats = response.data['stats']
        self.assertEqual(stats['entry_count'], 6)
        self.assertEqual(stats['savings'], len(b"PNG data"))

    def test_filtered_listing_omits_stats(self):
        self._setup_test_files()

        response = self.client.get('/api/files/', {'mime_type': 'image/png'})

        self.assertNotIn('stats', response.data)
        self.assertEqual(sorted(self.names(response)), ['diagram.png', 'photo.png'])

    def test_listing_is_newest_first(self):
        self._setup_test_files()

        response = self.client.get('/api/files/')

        results = response.data['results']
        for newer, older in zip(results, results[1:]):
            self.assertGreaterEqual(newer['uploaded_at'], older['uploaded_at'])

    def test_name_filter_is_case_sensitive(self):
        self._setup_test_files()

        self.assertEqual(sorted(self.names(self.client.get('/api/files/', {'name': 'report'}))),
                         ['annual_report.txt', 'large_report.pdf'])
        self.assertEqual(self.names(self.client.get('/api/files/', {'name': 'REPORT'})), [])

    def test_combined_filters_use_and_logic(self):
        self._setup_test_files()

        response = self.client.get('/api/files/', {'name': 'report', 'mime_type': 'application/pdf'})

        self.assertEqual(self.names(response), ['large_report.pdf'])

    def test_size_range(self):
        self._setup_test_files()

        response = self.client.get('/api/files/', {'size_min': 10, 'size_max': 1100})

        for f in response.data['results']:
            self.assertGreaterEqual(f['original_size'], 10)
            self.assertLessEqual(f['original_size'], 1100)
        self.assertIn('document.pdf', self.names(response))

    def test_inverted_size_range_is_reported(self):
        self._setup_test_files()

        response = self.client.get('/api/files/', {'size_min': 1000, 'size_max': 10})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['kind'], 'invalid_filter')

    def test_date_filters(self):
        self._setup_test_files()
        today = timezone.localdate().isoformat()

        self.assertEqual(self.client.get('/api/files/', {'date_from': today}).data['count'], 5)
        self.assertEqual(self.client.get('/api/files/', {'date_to': today}).data['count'], 5)
        self.assertEqual(self.client.get('/api/files/', {'date_from': '2099-01-01'}).data['count'], 0)
        self.assertEqual(self.client.get('/api/files/', {'date_to': '2000-01-01'}).data['count'], 0)

    def test_malformed_date_rejected(self):
        response = self.client.get('/api/files/', {'date_from': 'yesterday'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['field'], 'date_from')

    def test_unknown_parameter_rejected(self):
        response = self.client.get('/api/files/', {'file_type': 'image/png'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['field'], 'file_type')

    def test_listing_only_shows_own_files(self):
        self._setup_test_files()
        catalog.upload(self.other, SimpleUploadedFile('theirs.txt', b"theirs"), 'theirs.txt')

        response = self.client.get('/api/files/')

        self.assertNotIn('theirs.txt', self.names(response))
        self.assertEqual(response.data['count'], 5)

    def test_public_scope(self):
        theirs, _ = catalog.upload(self.other, SimpleUploadedFile('shared.txt', b"shared"), 'shared.txt')
        catalog.upload(self.other, SimpleUploadedFile('secret.txt', b"secret"), 'secret.txt')
        visibility_controller.set_visibility(theirs.pk, self.other, True)

        response = self.client.get('/api/files/', {'scope': 'public'})

        self.assertEqual(self.names(response), ['shared.txt'])
        self.assertEqual(response.data['stats']['scope'], 'public')

    def test_pagination(self):
        self._setup_test_files()

        response = self.client.get('/api/files/', {'limit': 2, 'offset': 1})

        self.assertEqual(response.data['count'], 5)
        self.assertEqual(len(response.data['results']), 2)
