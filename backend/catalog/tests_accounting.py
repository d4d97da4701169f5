"""
Unit Tests for Storage Accounting
=================================
Tests cover:
- Original, deduplicated and saved byte totals
- Grouping by content id
- Scoped statistics (owner, public, whole catalog)
- Storage stats endpoint
"""

import random
import shutil
import tempfile

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from contracts.models import FileEntry
from catalog.services import catalog, compute_stats, visibility_controller
from catalog.services.accounting import (
    AggregateStats,
    stats_for_catalog,
    stats_for_owner,
    stats_for_public,
)

User = get_user_model()

TEST_MEDIA_ROOT = tempfile.mkdtemp()


def make_entry(content_id, size, **kwargs):
    return FileEntry(content_id=content_id, original_size=size, display_name='f', mime_type='text/plain', **kwargs)


class ComputeStatsTests(SimpleTestCase):
    """Pure accounting over in-memory entries."""

    def test_empty_input_yields_zeros(self):
        stats = compute_stats([])

        self.assertEqual(stats, AggregateStats())
        self.assertEqual(stats.savings, 0)
        self.assertEqual(stats.savings_percent, 0.0)
        self.assertEqual(stats.deduplication_ratio, 0.0)

    def test_distinct_contents_have_no_savings(self):
        entries = [make_entry('a', 10), make_entry('b', 20), make_entry('c', 30)]

        stats = compute_stats(entries)

        self.assertEqual(stats.original_total, 60)
        self.assertEqual(stats.deduped_total, 60)
        self.assertEqual(stats.savings, 0)

    def test_shared_content_counted_once(self):
        entries = [make_entry('a', 1_000_000) for _ in range(3)]

        stats = compute_stats(entries)

        self.assertEqual(stats.original_total, 3_000_000)
        self.assertEqual(stats.deduped_total, 1_000_000)
        self.assertEqual(stats.savings, 2_000_000)
        self.assertEqual(stats.entry_count, 3)
        self.assertEqual(stats.unique_contents, 1)
        self.assertEqual(stats.duplicate_count, 2)

    def test_mixed_sharing(self):
        entries = [make_entry('a', 5), make_entry('b', 7), make_entry('a', 5), make_entry('c', 0)]

        stats = compute_stats(entries)

        self.assertEqual(stats.original_total, 17)
        self.assertEqual(stats.deduped_total, 12)
        self.assertEqual(stats.savings, 5)

    def test_savings_identity_holds_for_random_catalogs(self):
        rng = random.Random(1234)
        for _ in range(50):
            sizes = {f'c{i}': rng.randint(0, 10_000) for i in range(rng.randint(1, 8))}
            entries = [
                make_entry(cid, sizes[cid])
                for cid in rng.choices(list(sizes), k=rng.randint(0, 25))
            ]

            stats = compute_stats(entries)

            self.assertEqual(stats.savings, stats.original_total - stats.deduped_total)
            self.assertGreaterEqual(stats.savings, 0)
            self.assertEqual(stats.deduped_total, sum(sizes[cid] for cid in {e.content_id for e in entries}))

    def test_accepts_any_iterable(self):
        stats = compute_stats(make_entry('a', 4) for _ in range(2))

        self.assertEqual(stats.original_total, 8)
        self.assertEqual(stats.deduped_total, 4)

    def test_percentages_derived_from_integer_totals(self):
        stats = compute_stats([make_entry('a', 1) for _ in range(3)])

        self.assertEqual(stats.savings_percent, 66.67)
        self.assertEqual(stats.deduplication_ratio, 0.3333)
        self.assertIsInstance(stats.original_total, int)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class ScopedStatsTests(TestCase):

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.alice = User.objects.create_user(username='alice', password='testpass123')
        self.bob = User.objects.create_user(username='bob', password='testpass123')

    def _upload(self, owner, content, name):
        return catalog.upload(owner, SimpleUploadedFile(name, content), name, 'text/plain')[0]

    def test_owner_scope_only_counts_owner_entries(self):
        self._upload(self.alice, b"12345", 'a1.txt')
        self._upload(self.alice, b"12345", 'a2.txt')
        self._upload(self.bob, b"12345", 'b1.txt')

        alice = stats_for_owner(self.alice)
        everyone = stats_for_catalog()

        self.assertEqual((alice.original_total, alice.deduped_total), (10, 5))
        self.assertEqual((everyone.original_total, everyone.deduped_total), (15, 5))

    def test_public_scope(self):
        shown = self._upload(self.alice, b"public bytes", 'shown.txt')
        self._upload(self.alice, b"hidden bytes!", 'hidden.txt')
        visibility_controller.set_visibility(shown.pk, self.alice, True)

        stats = stats_for_public()

        self.assertEqual(stats.entry_count, 1)
        self.assertEqual(stats.original_total, len(b"public bytes"))

    def test_deleting_one_shared_entry_keeps_deduped_total(self):
        entries = [self._upload(self.alice, b"x" * 100, f'c{i}.bin') for i in range(3)]

        before = stats_for_owner(self.alice)
        catalog.delete(entries[0].pk, self.alice)
        after = stats_for_owner(self.alice)

        self.assertEqual(before.deduped_total, 100)
        self.assertEqual(after.deduped_total, 100)
        self.assertEqual(after.original_total, 200)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class StorageStatsAPITests(APITestCase):
    """GET /api/stats/storage/"""

    def setUp(self):
        self.user = User.objects.create_user(username='stats', password='testpass123')
        self.client.force_authenticate(self.user)

    def test_requires_authentication(self):
        self.client.force_authenticate(None)

        response = self.client.get('/api/stats/storage/')

        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_empty_storage(self):
        response = self.client.get('/api/stats/storage/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['original_total'], 0)
        self.assertEqual(response.data['deduped_total'], 0)
        self.assertEqual(response.data['savings'], 0)
        self.assertEqual(response.data['scope'], 'mine')

    def test_duplicates_reported(self):
        for i in range(2):
            self.client.post(
                '/api/files/',
                {'file': SimpleUploadedFile(f'dup{i}.txt', b"duplicate payload")},
                format='multipart',
            )

        response = self.client.get('/api/stats/storage/', {'scope': 'global'})

        self.assertEqual(response.data['original_total'], 2 * len(b"duplicate payload"))
        self.assertEqual(response.data['deduped_total'], len(b"duplicate payload"))
        self.assertEqual(response.data['savings_percent'], 50.0)

    def test_unknown_scope_rejected(self):
        response = self.client.get('/api/stats/storage/', {'scope': 'everything'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['kind'], 'invalid_filter')
        self.assertEqual(response.data['error']['field'], 'scope')
