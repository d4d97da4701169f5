"""
Celery tasks for content reclamation.

Retry policy for freeing physical bytes lives here, with the storage
backend, not in the catalog services that release references.
"""

import logging
from celery import shared_task

from .services.content_store import reclaim_bytes

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_kwargs={'max_retries': 5},
    name='catalog.tasks.reclaim_content_bytes'
)
def reclaim_content_bytes(self, storage_name: str) -> dict:
    """
    Delete the physical file for content whose last reference is gone.

    Args:
        storage_name: Storage-relative path of the content file

    Returns:
        Dictionary with reclamation result
    """
    removed = reclaim_bytes(storage_name)
    if not removed:
        logger.info(f"Nothing to reclaim at {storage_name}")
    return {
        'storage_name': storage_name,
        'removed': removed,
    }
