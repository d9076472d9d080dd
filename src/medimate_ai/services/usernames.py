"""Global username uniqueness through reservation records.

A reservation lives at ``usernames/{username}`` and holds only the owner's
uid. The existence check before writing is a shortcut for a friendly error;
the actual guard against a concurrent racer is the store's insert-only
``create``, which fails with ``already-exists`` on an existing key.
"""

from typing import Any, Dict, Optional

import structlog

from ..domain.errors import BackendError, UsernameTaken, translate_error
from ..domain.models import user_path, username_path
from ..repositories.base import DocumentStore, WriteBatch

logger = structlog.get_logger()


class UsernameRegistry:
    """Reserves, releases and renames usernames."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def owner_of(self, username: str) -> Optional[str]:
        snapshot = await self.store.get_document(username_path(username))
        if not snapshot.exists:
            return None
        return snapshot.data.get("uid")

    async def is_available(self, username: str, uid: Optional[str] = None) -> bool:
        """True if nobody, or ``uid`` itself, holds the username."""
        owner = await self.owner_of(username)
        return owner is None or owner == uid

    def reserve_in(self, batch: WriteBatch, username: str, uid: str) -> WriteBatch:
        return batch.create(username_path(username), {"uid": uid})

    async def ensure_available(self, username: str, uid: Optional[str] = None) -> None:
        try:
            available = await self.is_available(username, uid)
        except BackendError as e:
            logger.error("username_check_failed", username=username, error=e.code)
            raise translate_error(e, field="username") from e
        if not available:
            logger.info("username_taken", username=username)
            raise UsernameTaken()

    async def reserve(self, username: str, uid: str) -> None:
        await self.ensure_available(username)
        try:
            await self.store.create_document(username_path(username), {"uid": uid})
        except BackendError as e:
            if e.code == "already-exists":
                raise UsernameTaken() from e
            raise translate_error(e, field="username") from e
        logger.info("username_reserved", username=username, uid=uid)

    async def rename(
        self,
        uid: str,
        old_username: Optional[str],
        new_username: str,
        profile_updates: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Swap reservations and update the profile in one atomic batch."""
        if old_username == new_username:
            return
        await self.ensure_available(new_username, uid)

        batch = self.store.batch()
        if old_username:
            batch.delete(username_path(old_username))
        self.reserve_in(batch, new_username, uid)
        updates = dict(profile_updates or {})
        updates["username"] = new_username
        batch.update(user_path(uid), updates)
        try:
            await batch.commit()
        except BackendError as e:
            logger.error("username_rename_failed", uid=uid, new_username=new_username, error=e.code)
            if e.code == "already-exists":
                raise UsernameTaken() from e
            raise translate_error(e, field="username") from e
        logger.info("username_renamed", uid=uid, old_username=old_username, new_username=new_username)
