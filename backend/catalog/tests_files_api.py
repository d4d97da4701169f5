"""
API Tests for File Endpoints
============================
Tests cover:
- Upload with deduplication flag and validation errors
- Retrieve, rename, delete and owner download
- Error kinds mapped to HTTP status codes
- Upload limits
"""

import shutil
import tempfile
import uuid

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from contracts.models import FileContent, FileEntry
from catalog.exceptions import EntryNotFound
from catalog.services import catalog

User = get_user_model()

TEST_MEDIA_ROOT = tempfile.mkdtemp()


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, CONTENT_RECLAIM_ASYNC=False)
class FileAPITests(APITestCase):

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.user = User.objects.create_user(username='uploader', password='testpass123')
        self.client.force_authenticate(self.user)

    def _upload(self, content, filename='test.txt', content_type='text/plain', **extra):
        file_obj = SimpleUploadedFile(filename, content, content_type=content_type)
        return self.client.post('/api/files/', {'file': file_obj, **extra}, format='multipart')

    # ===================
    # Upload
    # ===================

    def test_upload_new_file(self):
        response = self._upload(b"Hello, World!", 'hello.txt')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertFalse(response.data['is_duplicate'])
        self.assertEqual(response.data['display_name'], 'hello.txt')
        self.assertEqual(response.data['original_size'], 13)
        self.assertEqual(response.data['mime_type'], 'text/plain')
        self.assertEqual(response.data['owner'], self.user.pk)
        self.assertEqual(response.data['version'], 1)
        self.assertFalse(response.data['is_public'])
        self.assertIsNone(response.data['public_url'])

    def test_upload_duplicate_flags_existing_content(self):
        first = self._upload(b"same bytes", 'one.txt')
        second = self._upload(b"same bytes", 'two.txt')

        self.assertTrue(second.data['is_duplicate'])
        self.assertEqual(first.data['content_hash'], second.data['content_hash'])
        self.assertNotEqual(first.data['id'], second.data['id'])
        self.assertEqual(FileContent.objects.get().reference_count, 2)

    def test_upload_with_display_name(self):
        response = self._upload(b"data", 'raw.bin', display_name='Quarterly numbers')

        self.assertEqual(response.data['display_name'], 'Quarterly numbers')

    def test_upload_without_file(self):
        response = self.client.post('/api/files/', {}, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['kind'], 'invalid_upload')
        self.assertEqual(response.data['error']['field'], 'file')

    @override_settings(FILE_UPLOAD_MAX_SIZE=8)
    def test_upload_too_large(self):
        response = self._upload(b"123456789")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['kind'], 'invalid_upload')
        self.assertFalse(FileContent.objects.exists())
        self.assertFalse(FileEntry.objects.exists())

    @override_settings(ALLOWED_UPLOAD_MIME_TYPES=['image/png'])
    def test_upload_disallowed_type(self):
        response = self._upload(b"plain", 'notes.txt', 'text/plain')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['field'], 'mime_type')

    def test_upload_requires_authentication(self):
        self.client.force_authenticate(None)

        response = self._upload(b"anonymous")

        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))
        self.assertFalse(FileEntry.objects.exists())

    @override_settings(FILE_UPLOAD_MAX_SIZE=2048)
    def test_upload_limits(self):
        response = self.client.get('/api/files/upload-limits/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['max_file_size'], 2048)
        self.assertEqual(response.data['max_file_size_formatted'], '2.0 KB')

    # ===================
    # Retrieve / rename
    # ===================

    def test_retrieve(self):
        file_id = self._upload(b"retrieve me").data['id']

        response = self.client.get(f'/api/files/{file_id}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['id'], file_id)

    def test_retrieve_unknown(self):
        response = self.client.get(f'/api/files/{uuid.uuid4()}/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error']['kind'], 'not_found')

    def test_malformed_ids_are_not_found(self):
        self._upload(b"something to find")

        for file_id in ['a' * 36, '-' * 36, 'f' * 32, 'not-a-uuid']:
            response = self.client.get(f'/api/files/{file_id}/')
            self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND, file_id)

        for file_id in ['a' * 36, '-' * 36, '', None, 42]:
            with self.assertRaises(EntryNotFound):
                catalog.get_entry(file_id)
            with self.assertRaises(EntryNotFound):
                catalog.rename(file_id, self.user, 'renamed.txt')
            with self.assertRaises(EntryNotFound):
                catalog.delete(file_id, self.user)

    def test_rename(self):
        file_id = self._upload(b"rename me", 'old.txt').data['id']

        response = self.client.patch(
            f'/api/files/{file_id}/', {'display_name': 'new.txt', 'version': 1}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['display_name'], 'new.txt')
        self.assertEqual(response.data['version'], 2)

    def test_rename_stale_version(self):
        file_id = self._upload(b"rename me twice").data['id']
        self.client.patch(f'/api/files/{file_id}/', {'display_name': 'a.txt'}, format='json')

        response = self.client.patch(
            f'/api/files/{file_id}/', {'display_name': 'b.txt', 'version': 1}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(FileEntry.objects.get(pk=file_id).display_name, 'a.txt')

    def test_rename_blank(self):
        file_id = self._upload(b"keep my name", 'keep.txt').data['id']

        response = self.client.patch(f'/api/files/{file_id}/', {'display_name': '   '}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(FileEntry.objects.get(pk=file_id).display_name, 'keep.txt')

    def test_other_users_file_is_forbidden(self):
        file_id = self._upload(b"private bytes").data['id']
        self.client.force_authenticate(User.objects.create_user(username='mallory', password='x'))

        self.assertEqual(self.client.get(f'/api/files/{file_id}/').status_code, status.HTTP_403_FORBIDDEN)
        response = self.client.delete(f'/api/files/{file_id}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error']['kind'], 'forbidden')
        self.assertTrue(FileEntry.objects.filter(pk=file_id).exists())

    # ===================
    # Delete
    # ===================

    def test_delete_shared_content_keeps_bytes(self):
        ids = [self._upload(b"shared", f'copy{i}.txt').data['id'] for i in range(3)]

        response = self.client.delete(f'/api/files/{ids[0]}/')

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        content = FileContent.objects.get()
        self.assertEqual(content.reference_count, 2)
        self.assertTrue(content.file.storage.exists(content.file.name))

    def test_delete_last_reference_releases_bytes(self):
        file_id = self._upload(b"only copy").data['id']
        storage_name = FileContent.objects.get().file.name

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.delete(f'/api/files/{file_id}/')

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(FileContent.objects.exists())
        self.assertFalse(FileContent._meta.get_field('file').storage.exists(storage_name))

    def test_delete_with_stale_version(self):
        file_id = self._upload(b"versioned").data['id']
        self.client.patch(f'/api/files/{file_id}/', {'display_name': 'v2.txt'}, format='json')

        response = self.client.delete(f'/api/files/{file_id}/?version=1')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertTrue(FileEntry.objects.filter(pk=file_id).exists())

    def test_delete_twice(self):
        file_id = self._upload(b"gone").data['id']
        self.client.delete(f'/api/files/{file_id}/')

        response = self.client.delete(f'/api/files/{file_id}/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    # ===================
    # Download
    # ===================

    def test_owner_download(self):
        file_id = self._upload(b"download me", 'dl.txt').data['id']

        response = self.client.get(f'/api/files/{file_id}/download/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(b''.join(response.streaming_content), b"download me")
        self.assertIn('dl.txt', response['Content-Disposition'])
        self.assertEqual(FileEntry.objects.get(pk=file_id).download_count, 1)

    def test_download_missing_bytes(self):
        file_id = self._upload(b"vanishing").data['id']
        content = FileContent.objects.get()
        content.file.storage.delete(content.file.name)

        response = self.client.get(f'/api/files/{file_id}/download/')

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data['error']['kind'], 'storage_unavailable')
        self.assertEqual(FileEntry.objects.get(pk=file_id).download_count, 0)
