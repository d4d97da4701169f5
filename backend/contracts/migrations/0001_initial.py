# Generated migration for the shared data contract

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import uuid

import contracts.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='FileContent',
            fields=[
                ('hash', models.CharField(
                    help_text='SHA-256 hash of file content',
                    max_length=64,
                    primary_key=True,
                    serialize=False
                )),
                ('file', models.FileField(
                    help_text='Path to physical file in content-addressable storage',
                    max_length=255,
                    upload_to=contracts.models.content_addressable_path
                )),
                ('size', models.BigIntegerField(
                    help_text='File size in bytes'
                )),
                ('reference_count', models.PositiveIntegerField(
                    default=1,
                    help_text='Number of FileEntry records referencing this content'
                )),
                ('created_at', models.DateTimeField(
                    auto_now_add=True,
                    help_text='When this content was first uploaded'
                )),
            ],
            options={
                'verbose_name': 'File Content',
                'verbose_name_plural': 'File Contents',
                'indexes': [
                    models.Index(fields=['size'], name='filecontent_size_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(size__gte=0),
                        name='filecontent_size_non_negative',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='FileEntry',
            fields=[
                ('id', models.UUIDField(
                    default=uuid.uuid4,
                    editable=False,
                    primary_key=True,
                    serialize=False
                )),
                ('display_name', models.CharField(
                    help_text='Filename shown to the owner',
                    max_length=255
                )),
                ('original_size', models.BigIntegerField(
                    help_text='Byte length of the uploaded content'
                )),
                ('mime_type', models.CharField(
                    help_text='Declared MIME type of the file',
                    max_length=100
                )),
                ('uploaded_at', models.DateTimeField(
                    auto_now_add=True,
                    help_text='When this file was uploaded'
                )),
                ('is_public', models.BooleanField(
                    default=False,
                    help_text='Whether the file can be fetched through its public link'
                )),
                ('public_link', models.CharField(
                    blank=True,
                    help_text='Opaque token for anonymous downloads, set only while public',
                    max_length=128,
                    null=True,
                    unique=True
                )),
                ('download_count', models.PositiveIntegerField(
                    default=0,
                    help_text='Number of completed downloads'
                )),
                ('version', models.PositiveIntegerField(
                    default=1,
                    help_text='Bumped on every mutation, used for optimistic concurrency'
                )),
                ('content', models.ForeignKey(
                    help_text='Reference to the actual file content',
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='entries',
                    to='contracts.filecontent'
                )),
                ('owner', models.ForeignKey(
                    help_text='User who uploaded this file',
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='file_entries',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'verbose_name': 'File Entry',
                'verbose_name_plural': 'File Entries',
                'ordering': ['-uploaded_at'],
                'indexes': [
                    models.Index(fields=['owner', 'uploaded_at'], name='entry_owner_date_idx'),
                    models.Index(fields=['display_name'], name='entry_name_idx'),
                    models.Index(fields=['mime_type'], name='entry_type_idx'),
                    models.Index(fields=['is_public'], name='entry_public_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(
                        condition=(
                            models.Q(is_public=True, public_link__isnull=False)
                            | models.Q(is_public=False, public_link__isnull=True)
                        ),
                        name='entry_public_iff_link',
                    ),
                    models.CheckConstraint(
                        condition=models.Q(original_size__gte=0),
                        name='entry_size_non_negative',
                    ),
                ],
            },
        ),
    ]
