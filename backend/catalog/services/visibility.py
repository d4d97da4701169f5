"""
Visibility Service
==================
Public/private transitions for catalog entries and public link handling.

An entry is public exactly when it holds a link token. Both fields change
in a single UPDATE under the entry's row lock, so no reader ever sees one
without the other. Revoked tokens are never handed out again: every
transition to public draws a fresh random token, and the column is unique.
"""

import logging
import secrets

from django.conf import settings
from django.db import DatabaseError

from contracts.models import FileEntry
from catalog.exceptions import Conflict, EntryNotFound, StorageBackendUnavailable
from .catalog import mutate_entry

logger = logging.getLogger(__name__)


def generate_link_token() -> str:
    """Unpredictable URL-safe token for a public link."""
    nbytes = getattr(settings, 'PUBLIC_LINK_TOKEN_BYTES', 16)
    return secrets.token_urlsafe(nbytes)


class VisibilityController:
    """
    Applies visibility changes to already-authenticated requests.

    Ownership is checked under the row lock by ``mutate_entry``.
    """

    def __init__(self, token_generator=None):
        self.token_generator = token_generator or generate_link_token

    def set_visibility(self, entry_id, actor, make_public: bool, expected_version=None) -> FileEntry:
        """
        Make an entry public or private.

        Making an already-public entry public keeps its link; use
        ``rotate_link`` to replace it.

        Returns:
            FileEntry: the entry after the change
        """
        def apply(entry):
            if make_public and not entry.is_public:
                return {'is_public': True, 'public_link': self.token_generator()}
            if not make_public and entry.is_public:
                return {'is_public': False, 'public_link': None}
            return {}

        entry = mutate_entry(entry_id, actor, apply, expected_version)
        logger.info(f"File {entry_id} visibility is now {'public' if entry.is_public else 'private'}")
        return entry

    def rotate_link(self, entry_id, actor, expected_version=None) -> FileEntry:
        """
        Replace the link of a public entry; the old link stops resolving.

        Raises:
            Conflict: the entry is not public
        """
        def apply(entry):
            if not entry.is_public:
                raise Conflict(
                    f'File {entry_id} is private and has no link to rotate',
                    field='is_public',
                    entry_id=entry_id,
                )
            return {'public_link': self.token_generator()}

        entry = mutate_entry(entry_id, actor, apply, expected_version)
        logger.info(f"Rotated public link for file {entry_id}")
        return entry

    @staticmethod
    def resolve_public_link(token: str) -> FileEntry:
        """
        Find the public entry behind a link token.

        Raises:
            EntryNotFound: unknown or revoked token
        """
        if not token:
            raise EntryNotFound('Link invalid or file private', field='public_link')
        try:
            entry = FileEntry.objects.filter(public_link=token, is_public=True).first()
        except DatabaseError as e:
            raise StorageBackendUnavailable(f'Catalog unavailable: {e}') from e
        if entry is None:
            raise EntryNotFound('Link invalid or file private', field='public_link')
        return entry


visibility_controller = VisibilityController()
