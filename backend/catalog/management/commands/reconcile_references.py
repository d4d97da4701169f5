"""
Management command to reconcile content reference counts.

Usage:
    python manage.py reconcile_references
    python manage.py reconcile_references --dry-run
"""

import logging

from django.core.management.base import BaseCommand
from django.db import transaction
from django.db.models import Count

from contracts.models import FileContent
from catalog.services.content_store import schedule_reclamation

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Recompute FileContent reference counts from the entries that use them'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report drift without changing anything',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        fixed = 0
        reclaimed = 0

        contents = FileContent.objects.annotate(actual=Count('entries')).order_by('hash')
        for content in contents.iterator():
            if content.actual == content.reference_count:
                continue

            self.stdout.write(
                f'{content.hash[:12]}: recorded {content.reference_count}, '
                f'actual {content.actual}'
            )
            if dry_run:
                continue

            with transaction.atomic():
                locked = FileContent.objects.select_for_update().get(hash=content.hash)
                actual = locked.entries.count()
                if actual == 0:
                    storage_name = locked.file.name
                    locked.delete()
                    schedule_reclamation(storage_name)
                    reclaimed += 1
                else:
                    locked.reference_count = actual
                    locked.save(update_fields=['reference_count'])
                    fixed += 1

        if dry_run:
            self.stdout.write(self.style.NOTICE('Dry run: no changes made'))
            return

        logger.info(f"Reconciled references: {fixed} fixed, {reclaimed} reclaimed")
        self.stdout.write(self.style.SUCCESS(
            f'Reconciled references: {fixed} fixed, {reclaimed} reclaimed'
        ))
