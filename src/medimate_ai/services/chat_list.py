"""Live list of a user's chat sessions."""

from typing import List, Optional

import structlog

from ..domain.errors import BackendError, RenameFailed, translate_error
from ..domain.models import DEFAULT_CHAT_TITLE, ChatSession, chat_path, chats_collection
from ..repositories.base import SERVER_TIMESTAMP, DocumentStore, QuerySnapshot, Subscription

logger = structlog.get_logger()


class ChatListMirror:
    """Chat sessions of one user, newest first.

    Every push from the store replaces ``sessions`` wholesale.
    """

    def __init__(self, store: DocumentStore, uid: str) -> None:
        self.store = store
        self.uid = uid
        self.sessions: List[ChatSession] = []
        self.loading = True
        self.error: Optional[str] = None
        self._subscription: Optional[Subscription] = None

    def open(self) -> None:
        if self._subscription is not None:
            return
        self.loading = True
        self._subscription = self.store.subscribe_query(
            chats_collection(self.uid),
            order_by="created_at",
            descending=True,
            on_snapshot=self._on_snapshot,
            on_error=self._on_error,
        )

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_snapshot(self, snapshot: QuerySnapshot) -> None:
        self.sessions = [ChatSession.from_document(doc.id, doc.data) for doc in snapshot]
        self.loading = False
        self.error = None

    def _on_error(self, error: Exception) -> None:
        self.error = translate_error(error).message
        self.loading = False
        logger.error("chat_list_listener_error", uid=self.uid, error=str(error))

    def get(self, chat_id: str) -> Optional[ChatSession]:
        return next((s for s in self.sessions if s.id == chat_id), None)

    async def create(self) -> str:
        """Create an empty chat; the caller navigates to the returned id."""
        try:
            chat_id = await self.store.add_document(chats_collection(self.uid), {
                "title": DEFAULT_CHAT_TITLE,
                "user_id": self.uid,
                "created_at": SERVER_TIMESTAMP,
                "messages": [],
            })
        except BackendError as e:
            logger.error("chat_create_failed", uid=self.uid, error=e.code)
            raise translate_error(e) from e
        logger.info("chat_created", uid=self.uid, chat_id=chat_id)
        return chat_id

    async def rename(self, chat_id: str, title: str) -> None:
        title = (title or "").strip()
        if not title:
            raise RenameFailed("Chat title cannot be empty.", field="title")
        try:
            await self.store.update_document(chat_path(self.uid, chat_id), {"title": title})
        except BackendError as e:
            logger.error("chat_rename_failed", uid=self.uid, chat_id=chat_id, error=e.code)
            raise RenameFailed(translate_error(e).message) from e
        logger.info("chat_renamed", uid=self.uid, chat_id=chat_id)

    async def delete(self, chat_id: str, active_chat_id: Optional[str] = None) -> bool:
        """Delete a chat; returns True when the caller must navigate away."""
        try:
            await self.store.delete_document(chat_path(self.uid, chat_id))
        except BackendError as e:
            logger.error("chat_delete_failed", uid=self.uid, chat_id=chat_id, error=e.code)
            raise translate_error(e) from e
        logger.info("chat_deleted", uid=self.uid, chat_id=chat_id)
        return chat_id == active_chat_id
