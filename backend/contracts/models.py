"""
Shared Data Contract Models
===========================
Every app in the project reads and writes files through these two models.

Models:
    - FileContent: Unique physical file content (content-addressable storage)
    - FileEntry: A user's logical file, referencing FileContent
"""

from django.conf import settings
from django.db import models
from django.db.models import Q
import uuid


def content_addressable_path(instance, filename):
    """
    Generate storage path for content-addressable file.
    Path structure: cas/{hash[0:2]}/{hash[2:4]}/{hash}.{ext}
    """
    hash_value = instance.hash
    ext = filename.split('.')[-1] if '.' in filename else ''

    if ext:
        return f"cas/{hash_value[:2]}/{hash_value[2:4]}/{hash_value}.{ext}"
    return f"cas/{hash_value[:2]}/{hash_value[2:4]}/{hash_value}"


class FileContent(models.Model):
    """
    Represents unique physical file content.
    Primary key is the SHA-256 hash of the content.
    Multiple FileEntry records can reference the same FileContent.
    """
    hash = models.CharField(
        max_length=64,
        primary_key=True,
        help_text="SHA-256 hash of file content"
    )
    file = models.FileField(
        upload_to=content_addressable_path,
        max_length=255,
        help_text="Path to physical file in content-addressable storage"
    )
    size = models.BigIntegerField(
        help_text="File size in bytes"
    )
    reference_count = models.PositiveIntegerField(
        default=1,
        help_text="Number of FileEntry records referencing this content"
    )
    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="When this content was first uploaded"
    )

    class Meta:
        verbose_name = "File Content"
        verbose_name_plural = "File Contents"
        indexes = [
            models.Index(fields=['size'], name='filecontent_size_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(size__gte=0),
                name='filecontent_size_non_negative',
            ),
        ]

    def __str__(self):
        return f"{self.hash[:12]}... ({self.size} bytes, {self.reference_count} refs)"


class FileEntry(models.Model):
    """
    A logical file as seen by its owner.

    The size is copied from the content at upload time so listings and
    filters never need to join FileContent. A public link exists exactly
    when the entry is public; the check constraint below holds the database
    to the same rule the service layer applies.
    """
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )
    content = models.ForeignKey(
        FileContent,
        on_delete=models.PROTECT,
        related_name='entries',
        help_text="Reference to the actual file content"
    )
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='file_entries',
        help_text="User who uploaded this file"
    )
    display_name = models.CharField(
        max_length=255,
        help_text="Filename shown to the owner"
    )
    original_size = models.BigIntegerField(
        help_text="Byte length of the uploaded content"
    )
    mime_type = models.CharField(
        max_length=100,
        help_text="Declared MIME type of the file"
    )
    uploaded_at = models.DateTimeField(
        auto_now_add=True,
        help_text="When this file was uploaded"
    )
    is_public = models.BooleanField(
        default=False,
        help_text="Whether the file can be fetched through its public link"
    )
    public_link = models.CharField(
        max_length=128,
        null=True,
        blank=True,
        unique=True,
        help_text="Opaque token for anonymous downloads, set only while public"
    )
    download_count = models.PositiveIntegerField(
        default=0,
        help_text="Number of completed downloads"
    )
    version = models.PositiveIntegerField(
        default=1,
        help_text="Bumped on every mutation, used for optimistic concurrency"
    )

    class Meta:
        ordering = ['-uploaded_at']
        verbose_name = "File Entry"
        verbose_name_plural = "File Entries"
        indexes = [
            models.Index(fields=['owner', 'uploaded_at'], name='entry_owner_date_idx'),
            models.Index(fields=['display_name'], name='entry_name_idx'),
            models.Index(fields=['mime_type'], name='entry_type_idx'),
            models.Index(fields=['is_public'], name='entry_public_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(is_public=True, public_link__isnull=False)
                    | Q(is_public=False, public_link__isnull=True)
                ),
                name='entry_public_iff_link',
            ),
            models.CheckConstraint(
                condition=Q(original_size__gte=0),
                name='entry_size_non_negative',
            ),
        ]

    def __str__(self):
        return self.display_name

