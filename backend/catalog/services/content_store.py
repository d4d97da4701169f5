"""
Content Store
=============
Content-addressable byte storage with reference counting.

The catalog only talks to the ``ContentStore`` interface: it hands over
bytes, gets back a content id and size, and asks for reference count
changes. ``DjangoContentStore`` is the implementation backed by the
``FileContent`` model and Django's default file storage.
"""

import hashlib
import logging
import os
from dataclasses import dataclass

from django.conf import settings
from django.core.files.storage import default_storage
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F

from contracts.models import FileContent
from catalog.exceptions import EntryNotFound, StorageBackendUnavailable

logger = logging.getLogger(__name__)


CHUNK_SIZE = 65536  # 64KB for memory-efficient hashing


@dataclass(frozen=True)
class StoredContent:
    """Result of handing bytes to the content store."""
    content_id: str
    size: int
    reference_count: int
    is_duplicate: bool
    storage_name: str = None


class ContentStore:
    """
    Interface the catalog depends on.

    Implementations must make each call atomic per content id and must not
    retry on failure; errors surface as StorageBackendUnavailable.
    """

    def store(self, file_obj, filename: str) -> StoredContent:
        """Persist bytes once per content id and add one reference."""
        raise NotImplementedError

    def increment(self, content_id: str) -> int:
        raise NotImplementedError

    def decrement(self, content_id: str) -> int:
        """Drop one reference; reclaim the bytes when none remain."""
        raise NotImplementedError

    def reference_count(self, content_id: str) -> int:
        raise NotImplementedError

    def discard(self, stored: StoredContent) -> None:
        """Drop bytes written by a store() whose transaction rolled back."""
        raise NotImplementedError


def compute_hash(file_obj) -> str:
    """
    Compute SHA-256 hash of file content.

    Uses chunked reading for memory efficiency and resets the file pointer
    afterwards so the same object can be saved.

    Args:
        file_obj: Django UploadedFile or file-like object

    Returns:
        str: Hexadecimal SHA-256 hash
    """
    sha256 = hashlib.sha256()
    file_obj.seek(0)
    for chunk in iter(lambda: file_obj.read(CHUNK_SIZE), b''):
        sha256.update(chunk)
    file_obj.seek(0)
    return sha256.hexdigest()


def storage_filename(content_hash: str, original_filename: str) -> str:
    """Name handed to the storage backend; upload_to adds the CAS prefix."""
    ext = original_filename.rsplit('.', 1)[-1] if '.' in original_filename else ''
    return f"{content_hash}.{ext}" if ext else content_hash


def cleanup_empty_directories(file_path: str) -> None:
    """
    Remove empty parent directories up to the CAS root.

    For path like: media/cas/ab/cd/abcd1234.txt
    Will try to remove: media/cas/ab/cd/, then media/cas/ab/
    Stops at media/cas/ (the CAS root).
    """
    cas_root = os.path.join(str(settings.MEDIA_ROOT), 'cas')
    parent_dir = os.path.dirname(file_path)

    while parent_dir and parent_dir != cas_root and parent_dir.startswith(cas_root):
        try:
            if os.path.isdir(parent_dir) and not os.listdir(parent_dir):
                os.rmdir(parent_dir)
            else:
                break
        except OSError:
            # Raced with a new upload into the same directory
            break
        parent_dir = os.path.dirname(parent_dir)


def reclaim_bytes(storage_name: str) -> bool:
    """
    Delete physical bytes for content that no entry references any more.

    Returns:
        bool: True if a file was removed
    """
    if not storage_name:
        return False

    # The hash may have been re-uploaded after the row was dropped
    if FileContent.objects.filter(file=storage_name).exists():
        logger.info(f"Skipping reclamation of {storage_name}: content was re-uploaded")
        return False

    if not default_storage.exists(storage_name):
        return False

    try:
        local_path = default_storage.path(storage_name)
    except NotImplementedError:
        local_path = None

    default_storage.delete(storage_name)
    if local_path:
        cleanup_empty_directories(local_path)

    logger.info(f"Reclaimed physical bytes at {storage_name}")
    return True


def schedule_reclamation(storage_name: str) -> None:
    """
    Reclaim bytes once the surrounding transaction commits.

    Runs as a Celery task when CONTENT_RECLAIM_ASYNC is set, inline
    otherwise.
    """
    def _run():
        if getattr(settings, 'CONTENT_RECLAIM_ASYNC', True):
            from catalog.tasks import reclaim_content_bytes
            reclaim_content_bytes.delay(storage_name)
            logger.info(f"Queued reclamation of {storage_name}")
        else:
            reclaim_bytes(storage_name)

    transaction.on_commit(_run)


class DjangoContentStore(ContentStore):
    """
    ContentStore backed by FileContent rows and Django file storage.

    Upload Algorithm:
    1. Hash computation over the uploaded bytes
    2. Duplicate detection: lock the FileContent row for that hash
    3. Reference increment: if it exists, bump reference_count
    4. New content: save bytes to the CAS path and create the row
    """

    def store(self, file_obj, filename: str) -> StoredContent:
        content_hash = compute_hash(file_obj)
        size = file_obj.size

        try:
            with transaction.atomic():
                existing = self._lock(content_hash)
                if existing is not None:
                    count = self._bump(content_hash, 1)
                    logger.info(f"Duplicate content {content_hash[:12]} now has {count} references")
                    return StoredContent(content_hash, existing.size, count, True)

                created = self._create(content_hash, size, file_obj, filename)
                if created is None:
                    # Lost the insert race to a concurrent upload of the same bytes
                    existing = self._lock(content_hash)
                    count = self._bump(content_hash, 1)
                    return StoredContent(content_hash, existing.size, count, True)

                logger.info(f"Stored new content {content_hash[:12]} ({size} bytes)")
                return StoredContent(content_hash, created.size, 1, False, created.file.name)
        except (DatabaseError, OSError) as e:
            logger.error(f"Content store failed while storing {filename}: {e}")
            raise StorageBackendUnavailable(
                f'Content store unavailable: {e}',
            ) from e

    def increment(self, content_id: str) -> int:
        try:
            with transaction.atomic():
                if self._lock(content_id) is None:
                    raise EntryNotFound(f'Unknown content {content_id}', field='content_id')
                return self._bump(content_id, 1)
        except DatabaseError as e:
            raise StorageBackendUnavailable(f'Content store unavailable: {e}') from e

    def decrement(self, content_id: str) -> int:
        try:
            with transaction.atomic():
                content = self._lock(content_id)
                if content is None:
                    raise EntryNotFound(f'Unknown content {content_id}', field='content_id')

                count = self._bump(content_id, -1)
                if count > 0:
                    return count

                storage_name = content.file.name
                content.delete()
                schedule_reclamation(storage_name)
                logger.info(f"Last reference to {content_id[:12]} dropped, bytes scheduled for reclamation")
                return 0
        except DatabaseError as e:
            logger.error(f"Content store failed while releasing {content_id}: {e}")
            raise StorageBackendUnavailable(f'Content store unavailable: {e}') from e

    def reference_count(self, content_id: str) -> int:
        try:
            count = (
                FileContent.objects
                .filter(hash=content_id)
                .values_list('reference_count', flat=True)
                .first()
            )
        except DatabaseError as e:
            raise StorageBackendUnavailable(f'Content store unavailable: {e}') from e
        if count is None:
            raise EntryNotFound(f'Unknown content {content_id}', field='content_id')
        return count

    def discard(self, stored: StoredContent) -> None:
        if stored.is_duplicate or not stored.storage_name:
            return
        try:
            reclaim_bytes(stored.storage_name)
        except (OSError, DatabaseError) as e:
            logger.error(f"Could not discard {stored.storage_name} after rollback: {e}")

    @staticmethod
    def _lock(content_hash):
        return FileContent.objects.select_for_update().filter(hash=content_hash).first()

    @staticmethod
    def _bump(content_hash, delta):
        FileContent.objects.filter(hash=content_hash).update(
            reference_count=F('reference_count') + delta
        )
        return FileContent.objects.values_list('reference_count', flat=True).get(hash=content_hash)

    @staticmethod
    def _create(content_hash, size, file_obj, filename):
        file_content = FileContent(hash=content_hash, size=size, reference_count=1)
        file_content.file.save(storage_filename(content_hash, filename), file_obj, save=False)
        try:
            with transaction.atomic():
                file_content.save(force_insert=True)
        except IntegrityError:
            default_storage.delete(file_content.file.name)
            return None
        except DatabaseError:
            default_storage.delete(file_content.file.name)
            raise
        return file_content


_default_store = None


def get_content_store() -> ContentStore:
    """Process-wide content store used by the catalog services."""
    global _default_store
    if _default_store is None:
        _default_store = DjangoContentStore()
    return _default_store
