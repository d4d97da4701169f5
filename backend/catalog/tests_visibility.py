"""
Unit Tests for Visibility and Public Links
==========================================
Tests cover:
- Private/public transitions and link issuance
- Link rotation and revocation
- Ownership and optimistic version checks
- Anonymous downloads through public links
- Concurrent mutations of one entry
"""

import shutil
import tempfile
import threading
import time

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from contracts.models import FileEntry
from catalog.exceptions import Conflict, EntryNotFound, NotOwner, StorageBackendUnavailable
from catalog.services import VisibilityController, catalog, visibility_controller

User = get_user_model()

TEST_MEDIA_ROOT = tempfile.mkdtemp()


def sequential_tokens():
    counter = iter(range(1, 1000))
    return lambda: f'token-{next(counter)}'


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class VisibilityControllerTests(TestCase):

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.owner = User.objects.create_user(username='owner', password='testpass123')
        self.stranger = User.objects.create_user(username='stranger', password='testpass123')
        self.entry, _ = catalog.upload(self.owner, SimpleUploadedFile('doc.txt', b"shared text"), 'doc.txt')
        self.controller = VisibilityController(token_generator=sequential_tokens())

    def test_new_entries_are_private(self):
        self.assertFalse(self.entry.is_public)
        self.assertIsNone(self.entry.public_link)

    def test_make_public_issues_link(self):
        entry = self.controller.set_visibility(self.entry.pk, self.owner, True)

        self.assertTrue(entry.is_public)
        self.assertEqual(entry.public_link, 'token-1')
        self.assertEqual(entry.version, 2)

    def test_make_public_twice_keeps_link(self):
        self.controller.set_visibility(self.entry.pk, self.owner, True)
        entry = self.controller.set_visibility(self.entry.pk, self.owner, True)

        self.assertEqual(entry.public_link, 'token-1')
        self.assertEqual(entry.version, 2)

    def test_make_private_revokes_link(self):
        self.controller.set_visibility(self.entry.pk, self.owner, True)
        entry = self.controller.set_visibility(self.entry.pk, self.owner, False)

        self.assertFalse(entry.is_public)
        self.assertIsNone(entry.public_link)
        with self.assertRaises(EntryNotFound):
            VisibilityController.resolve_public_link('token-1')

    def test_republishing_draws_fresh_link(self):
        self.controller.set_visibility(self.entry.pk, self.owner, True)
        self.controller.set_visibility(self.entry.pk, self.owner, False)
        entry = self.controller.set_visibility(self.entry.pk, self.owner, True)

        self.assertEqual(entry.public_link, 'token-2')
        with self.assertRaises(EntryNotFound):
            VisibilityController.resolve_public_link('token-1')

    def test_default_tokens_are_unpredictable(self):
        first = visibility_controller.set_visibility(self.entry.pk, self.owner, True).public_link
        visibility_controller.set_visibility(self.entry.pk, self.owner, False)
        second = visibility_controller.set_visibility(self.entry.pk, self.owner, True).public_link

        self.assertNotEqual(first, second)
        self.assertGreaterEqual(len(first), 20)

    def test_rotate_link(self):
        self.controller.set_visibility(self.entry.pk, self.owner, True)
        entry = self.controller.rotate_link(self.entry.pk, self.owner)

        self.assertEqual(entry.public_link, 'token-2')
        self.assertTrue(entry.is_public)
        self.assertEqual(VisibilityController.resolve_public_link('token-2').pk, self.entry.pk)
        with self.assertRaises(EntryNotFound):
            VisibilityController.resolve_public_link('token-1')

    def test_rotate_private_entry_conflicts(self):
        with self.assertRaises(Conflict) as ctx:
            self.controller.rotate_link(self.entry.pk, self.owner)

        self.assertEqual(ctx.exception.entry_id, str(self.entry.pk))
        self.assertEqual(FileEntry.objects.get(pk=self.entry.pk).version, 1)

    def test_non_owner_cannot_change_visibility(self):
        with self.assertRaises(NotOwner):
            self.controller.set_visibility(self.entry.pk, self.stranger, True)

        self.assertFalse(FileEntry.objects.get(pk=self.entry.pk).is_public)

    def test_stale_version_conflicts(self):
        self.controller.set_visibility(self.entry.pk, self.owner, True, expected_version=1)

        with self.assertRaises(Conflict):
            self.controller.set_visibility(self.entry.pk, self.owner, False, expected_version=1)
        self.assertTrue(FileEntry.objects.get(pk=self.entry.pk).is_public)

    def test_unknown_entry(self):
        other, _ = catalog.upload(self.owner, SimpleUploadedFile('x.txt', b"x"), 'x.txt')
        catalog.delete(other.pk, self.owner)

        with self.assertRaises(EntryNotFound):
            self.controller.set_visibility(other.pk, self.owner, True)

    def test_resolve_unknown_or_empty_token(self):
        with self.assertRaises(EntryNotFound):
            VisibilityController.resolve_public_link('no-such-token')
        with self.assertRaises(EntryNotFound):
            VisibilityController.resolve_public_link('')

    def test_public_and_link_always_agree(self):
        for make_public in (True, True, False, True, False, False):
            self.controller.set_visibility(self.entry.pk, self.owner, make_public)
            entry = FileEntry.objects.get(pk=self.entry.pk)
            self.assertEqual(entry.is_public, entry.public_link is not None)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class PublicLinkAPITests(APITestCase):
    """Visibility actions and GET /api/public/<token>/"""

    def setUp(self):
        self.owner = User.objects.create_user(username='publisher', password='testpass123')
        self.client.force_authenticate(self.owner)
        self.entry, _ = catalog.upload(
            self.owner, SimpleUploadedFile('hello.txt', b"hello world"), 'hello.txt', 'text/plain'
        )
        self.anonymous = APIClient()

    def _publish(self):
        response = self.client.post(
            f'/api/files/{self.entry.pk}/visibility/', {'is_public': True}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        return response.data

    def test_publish_returns_link(self):
        data = self._publish()

        self.assertTrue(data['is_public'])
        self.assertTrue(data['public_link'])
        self.assertTrue(data['public_url'].endswith(f"/api/public/{data['public_link']}/"))

    def test_anonymous_download_counts(self):
        token = self._publish()['public_link']

        response = self.anonymous.get(f'/api/public/{token}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(b''.join(response.streaming_content), b"hello world")
        self.assertIn('attachment', response['Content-Disposition'])
        self.assertEqual(FileEntry.objects.get(pk=self.entry.pk).download_count, 1)

    def test_revoked_link_gives_404(self):
        token = self._publish()['public_link']
        self.client.post(f'/api/files/{self.entry.pk}/visibility/', {'is_public': False}, format='json')

        response = self.anonymous.get(f'/api/public/{token}/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error']['kind'], 'not_found')
        self.assertEqual(FileEntry.objects.get(pk=self.entry.pk).download_count, 0)

    def test_rotate_link_endpoint(self):
        old = self._publish()['public_link']

        response = self.client.post(f'/api/files/{self.entry.pk}/rotate-link/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertNotEqual(response.data['public_link'], old)
        self.assertEqual(self.anonymous.get(f'/api/public/{old}/').status_code, status.HTTP_404_NOT_FOUND)

    def test_rotate_private_link_conflicts(self):
        response = self.client.post(f'/api/files/{self.entry.pk}/rotate-link/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error']['kind'], 'conflict')

    def test_stale_version_gives_409(self):
        self._publish()

        response = self.client.post(
            f'/api/files/{self.entry.pk}/visibility/',
            {'is_public': False, 'version': 1},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error']['entry_id'], str(self.entry.pk))

    def test_non_owner_gets_403(self):
        stranger = User.objects.create_user(username='stranger', password='testpass123')
        self.client.force_authenticate(stranger)

        response = self.client.post(
            f'/api/files/{self.entry.pk}/visibility/', {'is_public': True}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error']['kind'], 'forbidden')

    def test_visibility_requires_flag(self):
        response = self.client.post(f'/api/files/{self.entry.pk}/visibility/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


def with_retries(operation, attempts=200):
    """Run ``operation``, retrying while the database reports a lock."""
    for _ in range(attempts - 1):
        try:
            return operation()
        except StorageBackendUnavailable:
            time.sleep(0.005)
    return operation()


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class ConcurrentMutationTests(TransactionTestCase):
    """Mutations of one entry from several threads at once."""

    ROUNDS = 10

    def setUp(self):
        self.owner = User.objects.create_user(username='racer', password='testpass123')
        self.entry, _ = catalog.upload(self.owner, SimpleUploadedFile('race.txt', b"contended"), 'race.txt')
        self.errors = []
        self.torn_reads = []
        self.done = threading.Event()

    def _in_thread(self, target):
        def run():
            try:
                target()
            except Exception as e:
                self.errors.append(e)
            finally:
                connection.close()
        return threading.Thread(target=run)

    def _toggle(self, start):
        start.wait()
        for i in range(self.ROUNDS):
            make_public = i % 2 == 0
            with_retries(lambda: visibility_controller.set_visibility(self.entry.pk, self.owner, make_public))

    def _rename(self, start):
        start.wait()
        for i in range(self.ROUNDS):
            with_retries(lambda: catalog.rename(self.entry.pk, self.owner, f'race-{i}.txt'))

    def _watch(self, start):
        start.wait()
        while not self.done.is_set():
            try:
                row = FileEntry.objects.values_list('is_public', 'public_link').get(pk=self.entry.pk)
            except DatabaseError:
                continue
            if row[0] != (row[1] is not None):
                self.torn_reads.append(row)

    def test_toggle_and_rename_lose_no_updates(self):
        start = threading.Barrier(3)
        writers = [
            self._in_thread(lambda: self._toggle(start)),
            self._in_thread(lambda: self._rename(start)),
        ]
        watcher = self._in_thread(lambda: self._watch(start))
        for thread in writers + [watcher]:
            thread.start()
        for thread in writers:
            thread.join()
        self.done.set()
        watcher.join()

        self.assertEqual(self.errors, [])
        self.assertEqual(self.torn_reads, [])
        entry = FileEntry.objects.get(pk=self.entry.pk)
        # Every toggle flips the state and every rename picks a new name
        self.assertEqual(entry.version, 1 + 2 * self.ROUNDS)
        self.assertFalse(entry.is_public)
        self.assertIsNone(entry.public_link)
        self.assertEqual(entry.display_name, f'race-{self.ROUNDS - 1}.txt')
