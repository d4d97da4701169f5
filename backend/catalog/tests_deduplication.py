"""
Unit Tests for Deduplication and Entry Lifecycle
================================================
Tests cover:
- Hash computation
- Upload with deduplication and reference counting
- Upload validation
- Delete with reference release and byte reclamation
- Rename, download counting and optimistic concurrency
- Reference reconciliation command
"""

import hashlib
import os
import shutil
import tempfile
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.files.storage import default_storage
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import call_command
from django.db import OperationalError
from django.test import TestCase, override_settings

from contracts.models import FileContent, FileEntry
from catalog.exceptions import (
    Conflict,
    EntryNotFound,
    InvalidUpload,
    NotOwner,
    StorageBackendUnavailable,
)
from catalog.services import catalog
from catalog.services.content_store import DjangoContentStore, compute_hash

User = get_user_model()

# Create a temporary media root for tests
TEST_MEDIA_ROOT = tempfile.mkdtemp()


def _upload_file(content: bytes, filename: str = 'test.txt', content_type: str = 'text/plain'):
    return SimpleUploadedFile(filename, content, content_type=content_type)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class ContentStoreTests(TestCase):
    """Tests for hashing and reference counting in DjangoContentStore."""

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.store = DjangoContentStore()

    def test_compute_hash_matches_sha256(self):
        """Hash should match independently computed SHA-256."""
        content = b"Test content for hashing"
        file_obj = _upload_file(content)

        self.assertEqual(compute_hash(file_obj), hashlib.sha256(content).hexdigest())

    def test_compute_hash_resets_file_pointer(self):
        """File pointer should be reset to beginning after hashing."""
        file_obj = _upload_file(b"Test content")

        compute_hash(file_obj)

        self.assertEqual(file_obj.read(), b"Test content")

    def test_store_new_content(self):
        stored = self.store.store(_upload_file(b"fresh bytes"), 'fresh.txt')

        self.assertFalse(stored.is_duplicate)
        self.assertEqual(stored.reference_count, 1)
        self.assertEqual(stored.size, len(b"fresh bytes"))
        self.assertEqual(FileContent.objects.count(), 1)

    def test_store_duplicate_increments_reference_count(self):
        self.store.store(_upload_file(b"same"), 'a.txt')
        stored = self.store.store(_upload_file(b"same"), 'b.txt')

        self.assertTrue(stored.is_duplicate)
        self.assertEqual(stored.reference_count, 2)
        self.assertEqual(self.store.reference_count(stored.content_id), 2)
        self.assertEqual(FileContent.objects.count(), 1)

    def test_store_uses_cas_path(self):
        """File should be stored in content-addressable storage path."""
        stored = self.store.store(_upload_file(b"CAS test"), 'test.txt')

        content = FileContent.objects.get(hash=stored.content_id)
        h = stored.content_id
        self.assertIn(f"cas/{h[:2]}/{h[2:4]}/{h}", content.file.name)

    def test_increment_and_decrement(self):
        stored = self.store.store(_upload_file(b"counted"), 'c.txt')

        self.assertEqual(self.store.increment(stored.content_id), 2)
        self.assertEqual(self.store.decrement(stored.content_id), 1)

    def test_unknown_content_raises_not_found(self):
        with self.assertRaises(EntryNotFound):
            self.store.reference_count('0' * 64)
        with self.assertRaises(EntryNotFound):
            self.store.decrement('0' * 64)

    def test_database_failure_surfaces_as_backend_unavailable(self):
        with patch.object(FileContent.objects, 'select_for_update', side_effect=OperationalError('db down')):
            with self.assertRaises(StorageBackendUnavailable) as ctx:
                self.store.store(_upload_file(b"doomed"), 'doomed.txt')

        self.assertIsInstance(ctx.exception.__cause__, OperationalError)
        self.assertEqual(ctx.exception.kind, 'storage_unavailable')


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False, FILE_UPLOAD_MAX_SIZE=2 * 1024 * 1024)
class EntryLifecycleTests(TestCase):
    """Tests for catalog upload, delete, rename and download counting."""

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.owner = User.objects.create_user(username='owner', password='testpass123')
        self.other = User.objects.create_user(username='other', password='testpass123')

    # ===================
    # Upload Tests
    # ===================

    def test_upload_creates_entry_with_content_metadata(self):
        entry, is_duplicate = catalog.upload(
            self.owner, _upload_file(b"Test content", 'document.txt'), 'document.txt', 'text/plain'
        )

        self.assertFalse(is_duplicate)
        self.assertEqual(entry.display_name, 'document.txt')
        self.assertEqual(entry.mime_type, 'text/plain')
        self.assertEqual(entry.original_size, len(b"Test content"))
        self.assertEqual(entry.owner, self.owner)
        self.assertEqual(entry.content_id, hashlib.sha256(b"Test content").hexdigest())
        self.assertFalse(entry.is_public)
        self.assertIsNone(entry.public_link)
        self.assertEqual(entry.download_count, 0)

    def test_three_identical_uploads_share_one_content(self):
        payload = b"x" * 1_000_000
        entries = [
            catalog.upload(self.owner, _upload_file(payload, f'copy{i}.bin'), f'copy{i}.bin')[0]
            for i in range(3)
        ]

        self.assertEqual(len({e.pk for e in entries}), 3)
        self.assertEqual(len({e.content_id for e in entries}), 1)
        self.assertEqual(FileContent.objects.get().reference_count, 3)

    def test_same_content_different_owners_deduplicates(self):
        catalog.upload(self.owner, _upload_file(b"shared"), 'mine.txt')
        _, is_duplicate = catalog.upload(self.other, _upload_file(b"shared"), 'theirs.txt')

        self.assertTrue(is_duplicate)
        self.assertEqual(FileContent.objects.count(), 1)
        self.assertEqual(FileEntry.objects.count(), 2)

    def test_upload_defaults_mime_type(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"raw"), 'raw')

        self.assertEqual(entry.mime_type, 'application/octet-stream')

    def test_empty_files_deduplicate(self):
        """All empty files should share the same FileContent."""
        catalog.upload(self.owner, _upload_file(b"", 'empty1.txt'), 'empty1.txt')
        entry, is_dup = catalog.upload(self.owner, _upload_file(b"", 'empty2.txt'), 'empty2.txt')

        self.assertTrue(is_dup)
        self.assertEqual(entry.original_size, 0)
        self.assertEqual(FileContent.objects.count(), 1)

    @override_settings(FILE_UPLOAD_MAX_SIZE=10)
    def test_upload_too_large_rejected_before_storing(self):
        with self.assertRaises(InvalidUpload) as ctx:
            catalog.upload(self.owner, _upload_file(b"way more than ten bytes"), 'big.txt')

        self.assertEqual(ctx.exception.field, 'file')
        self.assertEqual(FileContent.objects.count(), 0)
        self.assertEqual(FileEntry.objects.count(), 0)

    @override_settings(ALLOWED_UPLOAD_MIME_TYPES=['image/png'])
    def test_upload_disallowed_type_rejected(self):
        with self.assertRaises(InvalidUpload) as ctx:
            catalog.upload(self.owner, _upload_file(b"text"), 'notes.txt', 'text/plain')

        self.assertEqual(ctx.exception.field, 'mime_type')
        self.assertEqual(FileContent.objects.count(), 0)

    def test_failed_entry_insert_removes_new_bytes(self):
        content_hash = hashlib.sha256(b"never catalogued").hexdigest()
        stored_name = f"cas/{content_hash[:2]}/{content_hash[2:4]}/{content_hash}.txt"

        with patch.object(FileEntry.objects, 'create', side_effect=OperationalError('db down')):
            with self.assertRaises(StorageBackendUnavailable):
                catalog.upload(self.owner, _upload_file(b"never catalogued", 'lost.txt'), 'lost.txt')

        self.assertFalse(FileContent.objects.exists())
        self.assertFalse(default_storage.exists(stored_name))

    def test_failed_duplicate_insert_keeps_existing_bytes(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"kept bytes", 'kept.txt'), 'kept.txt')
        stored_name = entry.content.file.name

        with patch.object(FileEntry.objects, 'create', side_effect=OperationalError('db down')):
            with self.assertRaises(StorageBackendUnavailable):
                catalog.upload(self.owner, _upload_file(b"kept bytes", 'again.txt'), 'again.txt')

        self.assertEqual(FileContent.objects.get().reference_count, 1)
        self.assertTrue(default_storage.exists(stored_name))

    def test_upload_blank_name_rejected(self):
        with self.assertRaises(InvalidUpload):
            catalog.upload(self.owner, _upload_file(b"data"), '   ')

    # ===================
    # Delete Tests
    # ===================

    def test_delete_one_of_three_decrements_reference_count(self):
        entries = [
            catalog.upload(self.owner, _upload_file(b"triple", f't{i}.txt'), f't{i}.txt')[0]
            for i in range(3)
        ]
        content_id = entries[0].content_id

        result = catalog.delete(entries[0].pk, self.owner)

        self.assertEqual(result['remaining_references'], 2)
        self.assertFalse(result['physical_deleted'])
        self.assertEqual(FileContent.objects.get(hash=content_id).reference_count, 2)
        self.assertFalse(FileEntry.objects.filter(pk=entries[0].pk).exists())

    def test_delete_last_reference_reclaims_bytes(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"To be deleted"), 'delete_me.txt')
        file_path = entry.content.file.path
        parent_dir = os.path.dirname(file_path)
        self.assertTrue(os.path.exists(file_path))

        with self.captureOnCommitCallbacks(execute=True):
            result = catalog.delete(entry.pk, self.owner)

        self.assertTrue(result['physical_deleted'])
        self.assertEqual(FileContent.objects.count(), 0)
        self.assertFalse(os.path.exists(file_path))
        self.assertFalse(os.path.exists(parent_dir))

    def test_delete_with_other_references_keeps_bytes(self):
        first, _ = catalog.upload(self.owner, _upload_file(b"Shared file"), 'file1.txt')
        catalog.upload(self.owner, _upload_file(b"Shared file"), 'file2.txt')
        file_path = first.content.file.path

        with self.captureOnCommitCallbacks(execute=True):
            catalog.delete(first.pk, self.owner)

        self.assertTrue(os.path.exists(file_path))
        self.assertEqual(FileContent.objects.get().reference_count, 1)

    @override_settings(CONTENT_RECLAIM_ASYNC=True)
    def test_delete_queues_reclamation_task(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"queued"), 'queued.txt')
        storage_name = entry.content.file.name

        with patch('catalog.tasks.reclaim_content_bytes.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                catalog.delete(entry.pk, self.owner)

        delay.assert_called_once_with(storage_name)

    def test_delete_by_non_owner_forbidden(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"private"), 'p.txt')

        with self.assertRaises(NotOwner) as ctx:
            catalog.delete(entry.pk, self.other)

        self.assertEqual(ctx.exception.entry_id, str(entry.pk))
        self.assertTrue(FileEntry.objects.filter(pk=entry.pk).exists())
        self.assertEqual(FileContent.objects.get().reference_count, 1)

    def test_delete_unknown_entry_not_found(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"gone"), 'gone.txt')
        catalog.delete(entry.pk, self.owner)

        with self.assertRaises(EntryNotFound):
            catalog.delete(entry.pk, self.owner)

    def test_delete_with_stale_version_conflicts(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"versioned"), 'v.txt')
        catalog.rename(entry.pk, self.owner, 'renamed.txt')

        with self.assertRaises(Conflict):
            catalog.delete(entry.pk, self.owner, expected_version=entry.version)

        self.assertTrue(FileEntry.objects.filter(pk=entry.pk).exists())

    def test_store_failure_during_delete_keeps_entry(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"sticky"), 's.txt')

        class BrokenStore(DjangoContentStore):
            def decrement(self, content_id):
                raise StorageBackendUnavailable('store offline')

        with self.assertRaises(StorageBackendUnavailable):
            catalog.delete(entry.pk, self.owner, store=BrokenStore())

        self.assertTrue(FileEntry.objects.filter(pk=entry.pk).exists())
        self.assertEqual(FileContent.objects.get().reference_count, 1)

    # ===================
    # Rename & Download Tests
    # ===================

    def test_rename_bumps_version(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"named"), 'old.txt')

        renamed = catalog.rename(entry.pk, self.owner, 'new.txt', expected_version=entry.version)

        self.assertEqual(renamed.display_name, 'new.txt')
        self.assertEqual(renamed.version, entry.version + 1)

    def test_rename_by_non_owner_forbidden(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"named"), 'old.txt')

        with self.assertRaises(NotOwner):
            catalog.rename(entry.pk, self.other, 'hijack.txt')

        entry.refresh_from_db()
        self.assertEqual(entry.display_name, 'old.txt')

    def test_record_download_increments(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"popular"), 'pop.txt')

        catalog.record_download(entry.pk)
        count = catalog.record_download(entry.pk)

        self.assertEqual(count, 2)
        entry.refresh_from_db()
        self.assertEqual(entry.download_count, 2)

    def test_record_download_unknown_entry(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"temp"), 'temp.txt')
        catalog.delete(entry.pk, self.owner)

        with self.assertRaises(EntryNotFound):
            catalog.record_download(entry.pk)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class ReconcileReferencesCommandTests(TestCase):

    def setUp(self):
        self.owner = User.objects.create_user(username='owner', password='testpass123')

    def test_fixes_drifted_counts(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"drift"), 'd.txt')
        FileContent.objects.filter(hash=entry.content_id).update(reference_count=7)

        out = StringIO()
        call_command('reconcile_references', stdout=out)

        self.assertEqual(FileContent.objects.get(hash=entry.content_id).reference_count, 1)
        self.assertIn('1 fixed', out.getvalue())

    def test_dry_run_changes_nothing(self):
        entry, _ = catalog.upload(self.owner, _upload_file(b"drift"), 'd.txt')
        FileContent.objects.filter(hash=entry.content_id).update(reference_count=7)

        call_command('reconcile_references', '--dry-run', stdout=StringIO())

        self.assertEqual(FileContent.objects.get(hash=entry.content_id).reference_count, 7)

    def test_orphaned_content_is_reclaimed(self):
        orphan = FileContent(hash='f' * 64, size=3, reference_count=2)
        orphan.file.name = 'cas/ff/ff/orphan.txt'
        orphan.save()

        with self.captureOnCommitCallbacks(execute=True):
            call_command('reconcile_references', stdout=StringIO())

        self.assertFalse(FileContent.objects.filter(hash='f' * 64).exists())
