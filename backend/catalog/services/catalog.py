"""
Catalog Service
===============
Lifecycle of logical file entries: upload, rename, delete and download
counting. Bytes and reference counts belong to the content store; this
module owns the entry rows and keeps them in step with it.

Each single-entry mutation runs in one transaction holding that entry's
row lock, so mutations of different entries never wait on each other.
"""

import logging
import uuid

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import F

from contracts.models import FileEntry
from catalog.exceptions import (
    CatalogError,
    Conflict,
    EntryNotFound,
    InvalidUpload,
    NotOwner,
    StorageBackendUnavailable,
)
from .content_store import get_content_store

logger = logging.getLogger(__name__)


DEFAULT_MIME_TYPE = 'application/octet-stream'


def get_max_upload_size():
    """Get max upload size from settings, default 10MB."""
    return getattr(settings, 'FILE_UPLOAD_MAX_SIZE', 10 * 1024 * 1024)


def format_file_size(size_bytes):
    """Format bytes as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def validate_upload(file_obj, display_name: str, mime_type: str) -> None:
    """
    Reject uploads before any byte reaches the content store.

    Raises:
        InvalidUpload: empty name, file too large or type not allowed
    """
    if not display_name or not display_name.strip():
        raise InvalidUpload('Filename must not be empty', field='display_name')

    max_size = get_max_upload_size()
    if file_obj.size > max_size:
        raise InvalidUpload(
            f'File size {format_file_size(file_obj.size)} exceeds maximum '
            f'allowed {format_file_size(max_size)}',
            field='file',
        )

    allowed = getattr(settings, 'ALLOWED_UPLOAD_MIME_TYPES', None)
    if allowed and mime_type not in allowed:
        raise InvalidUpload(f'File type {mime_type} is not allowed', field='mime_type')


def _entry_pk(entry_id):
    """Coerce an entry id to a UUID; anything else names no entry."""
    try:
        return uuid.UUID(str(entry_id))
    except ValueError as e:
        raise EntryNotFound(f'File {entry_id} not found', entry_id=entry_id) from e


def _locked_entry(entry_id, expected_version=None):
    """
    Lock and return one entry inside the caller's transaction.

    Raises:
        EntryNotFound: the entry does not exist
        Conflict: expected_version no longer matches, or the entry the
            caller had seen was deleted concurrently
    """
    entry = FileEntry.objects.select_for_update().filter(pk=_entry_pk(entry_id)).first()
    if entry is None:
        if expected_version is not None:
            raise Conflict(
                f'File {entry_id} was deleted concurrently',
                field='version',
                entry_id=entry_id,
            )
        raise EntryNotFound(f'File {entry_id} not found', entry_id=entry_id)
    if expected_version is not None and entry.version != expected_version:
        raise Conflict(
            f'File {entry_id} changed concurrently '
            f'(expected version {expected_version}, found {entry.version})',
            field='version',
            entry_id=entry_id,
        )
    return entry


def _check_owner(entry, actor):
    if entry.owner_id != actor.pk:
        raise NotOwner(entry.pk)


def mutate_entry(entry_id, actor, apply, expected_version=None):
    """
    Apply one atomic mutation to an entry owned by ``actor``.

    ``apply(entry)`` returns a dict of field updates; the version bump is
    added here. The update and the ownership check happen under the row
    lock, so no caller can observe a half-applied change.
    """
    try:
        with transaction.atomic():
            entry = _locked_entry(entry_id, expected_version)
            _check_owner(entry, actor)

            changes = apply(entry)
            if not changes:
                return entry

            changes['version'] = F('version') + 1
            FileEntry.objects.filter(pk=entry.pk).update(**changes)
            entry.refresh_from_db()
            return entry
    except DatabaseError as e:
        logger.error(f"Database failure while updating file {entry_id}: {e}")
        raise StorageBackendUnavailable(f'Catalog unavailable: {e}', entry_id=entry_id) from e


def get_entry(entry_id, actor=None) -> FileEntry:
    """
    Fetch one entry, optionally enforcing ownership.

    Raises:
        EntryNotFound, NotOwner
    """
    try:
        entry = FileEntry.objects.filter(pk=_entry_pk(entry_id)).first()
    except DatabaseError as e:
        raise StorageBackendUnavailable(f'Catalog unavailable: {e}', entry_id=entry_id) from e
    if entry is None:
        raise EntryNotFound(f'File {entry_id} not found', entry_id=entry_id)
    if actor is not None:
        _check_owner(entry, actor)
    return entry


def upload(owner, file_obj, display_name: str, mime_type: str = None, store=None):
    """
    Upload a file with deduplication.

    Args:
        owner: User who owns the new entry
        file_obj: Django UploadedFile
        display_name: Filename shown to the owner
        mime_type: Declared MIME type
        store: ContentStore to use, the process default if omitted

    Returns:
        tuple: (FileEntry, is_duplicate boolean)
    """
    mime_type = mime_type or DEFAULT_MIME_TYPE
    validate_upload(file_obj, display_name, mime_type)
    store = store or get_content_store()
    stored = None

    try:
        with transaction.atomic():
            stored = store.store(file_obj, display_name)
            entry = FileEntry.objects.create(
                content_id=stored.content_id,
                owner=owner,
                display_name=display_name,
                original_size=stored.size,
                mime_type=mime_type,
            )
    except CatalogError:
        if stored is not None:
            store.discard(stored)
        raise
    except DatabaseError as e:
        logger.error(f"Database failure while uploading {display_name}: {e}")
        # The content row rolled back with the entry; its new bytes go too
        if stored is not None:
            store.discard(stored)
        raise StorageBackendUnavailable(f'Catalog unavailable: {e}') from e

    logger.info(
        f"Uploaded {display_name} as {entry.pk} for user {owner.pk} "
        f"(content {stored.content_id[:12]}, {stored.reference_count} refs)"
    )
    return entry, stored.is_duplicate


def delete(entry_id, actor, expected_version=None, store=None) -> dict:
    """
    Delete an entry and release its content reference.

    The entry row and the reference count change commit together; if the
    store fails, nothing is deleted and the failure is raised unchanged.

    Returns:
        dict: remaining reference count and whether the bytes were released
    """
    store = store or get_content_store()

    try:
        with transaction.atomic():
            entry = _locked_entry(entry_id, expected_version)
            _check_owner(entry, actor)
            content_id = entry.content_id
            entry.delete()
            remaining = store.decrement(content_id)
    except CatalogError:
        raise
    except DatabaseError as e:
        logger.error(f"Database failure while deleting file {entry_id}: {e}")
        raise StorageBackendUnavailable(f'Catalog unavailable: {e}', entry_id=entry_id) from e

    logger.info(f"Deleted file {entry_id}; content {content_id[:12]} has {remaining} refs left")
    return {
        'content_id': content_id,
        'remaining_references': remaining,
        'physical_deleted': remaining == 0,
    }


def rename(entry_id, actor, display_name: str, expected_version=None) -> FileEntry:
    """Change the display name of an entry owned by ``actor``."""
    if not display_name or not display_name.strip():
        raise InvalidUpload('Filename must not be empty', field='display_name', entry_id=entry_id)

    def apply(entry):
        if entry.display_name == display_name:
            return {}
        return {'display_name': display_name}

    return mutate_entry(entry_id, actor, apply, expected_version)


def record_download(entry_id) -> int:
    """
    Count one completed download.

    Called by the download-serving views after the bytes were opened for
    transfer; never exposed to users directly.

    Returns:
        int: the new download count
    """
    try:
        with transaction.atomic():
            updated = FileEntry.objects.filter(pk=entry_id).update(
                download_count=F('download_count') + 1,
            )
            if not updated:
                raise EntryNotFound(f'File {entry_id} not found', entry_id=entry_id)
            return FileEntry.objects.values_list('download_count', flat=True).get(pk=entry_id)
    except DatabaseError as e:
        raise StorageBackendUnavailable(f'Catalog unavailable: {e}', entry_id=entry_id) from e


def owner_entries(owner):
    """Queryset of one owner's entries, newest first."""
    return FileEntry.objects.filter(owner=owner).order_by('-uploaded_at', 'id')


def public_entries():
    """Queryset of every public entry, newest first."""
    return FileEntry.objects.filter(is_public=True).order_by('-uploaded_at', 'id')


def all_entries():
    return FileEntry.objects.order_by('-uploaded_at', 'id')


def snapshot(queryset) -> list:
    """
    Materialise a queryset in a single SELECT.

    Accounting and filtering read from this list, so a concurrent delete
    is either entirely in it or entirely absent.
    """
    try:
        return list(queryset)
    except DatabaseError as e:
        raise StorageBackendUnavailable(f'Catalog unavailable: {e}') from e
