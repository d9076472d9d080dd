"""Live transcript of one chat session with optimistic sends."""

from datetime import datetime
from typing import Callable, List, Optional

import structlog

from ..domain.errors import ConfigurationError, MediMateError, translate_error
from ..domain.models import (
    DEFAULT_CHAT_TITLE,
    TITLE_PREFIX_LENGTH,
    ChatMessage,
    ChatSession,
    chat_path,
    utcnow,
)
from ..repositories.base import AnswerService, ArrayUnion, DocumentSnapshot, DocumentStore, Subscription

logger = structlog.get_logger()


def derive_title(text: str, limit: int = TITLE_PREFIX_LENGTH) -> str:
    """Title taken from the first user message, truncated with an ellipsis."""
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class ChatTranscriptMirror:
    """Mirror of a single chat document.

    The subscription is the source of truth: each push replaces ``session``
    entirely. A send appends the user message locally before the store has
    confirmed it. If the send fails, the local copy falls back to the last
    pushed snapshot, dropping the message only when the store never took it.
    """

    def __init__(
        self,
        store: DocumentStore,
        uid: str,
        chat_id: str,
        answers: Optional[AnswerService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.uid = uid
        self.chat_id = chat_id
        self.answers = answers
        self._clock = clock
        self.session: Optional[ChatSession] = None
        self.loading = True
        self.sending = False
        self.not_found = False
        self.error: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._not_found_listeners: List[Callable[[str], None]] = []

    @property
    def path(self) -> str:
        return chat_path(self.uid, self.chat_id)

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self.session.messages) if self.session else []

    def on_not_found(self, listener: Callable[[str], None]) -> None:
        """Register a callback run when the chat disappears (caller redirects)."""
        self._not_found_listeners.append(listener)

    def open(self) -> None:
        if self._subscription is not None:
            return
        self.loading = True
        self.error = None
        self._subscription = self.store.subscribe_document(
            self.path, on_snapshot=self._on_snapshot, on_error=self._on_error
        )

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_snapshot(self, snapshot: DocumentSnapshot) -> None:
        self.loading = False
        if snapshot.exists:
            self.session = ChatSession.from_document(snapshot.id, snapshot.data)
            self.not_found = False
            self.error = None
            return
        self.session = None
        self.not_found = True
        self.error = "Chat not found."
        logger.warning("chat_not_found", uid=self.uid, chat_id=self.chat_id)
        for listener in list(self._not_found_listeners):
            listener(self.chat_id)

    def _on_error(self, error: Exception) -> None:
        self.loading = False
        self.error = translate_error(error).message
        logger.error("chat_listener_error", uid=self.uid, chat_id=self.chat_id, error=str(error))

    def _append_local(self, message: ChatMessage) -> None:
        self.session = self.session.model_copy(update={"messages": [*self.session.messages, message]})

    def _rollback(self, message: ChatMessage) -> None:
        """Undo an optimistic append unless the store already holds the message."""
        latest = self._subscription.latest if self._subscription is not None else None
        if latest is not None and latest.exists:
            stored = ChatSession.from_document(latest.id, latest.data)
            if any(m.id == message.id for m in stored.messages):
                self.session = stored
                return
        if self.session is None:
            return
        messages = list(self.session.messages)
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].id == message.id:
                del messages[index]
                break
        self.session = self.session.model_copy(update={"messages": messages})

    def _require_answers(self) -> AnswerService:
        if self.answers is None:
            raise ConfigurationError("The answer service is not configured.")
        return self.answers

    async def send(self, text: str) -> Optional[ChatMessage]:
        """Send a user message and append the assistant's reply.

        Returns the assistant message, or None when the send was ignored
        (blank input, a send already in flight, or no session loaded).
        """
        if not text or not text.strip() or self.sending or self.session is None:
            return None

        self.sending = True
        self.error = None
        session = self.session
        user_message = ChatMessage(role="user", content=text, timestamp=self._clock())
        self._append_local(user_message)

        try:
            updates = {"messages": ArrayUnion(user_message.to_document())}
            if session.user_message_count() == 0 and session.title == DEFAULT_CHAT_TITLE:
                updates["title"] = derive_title(text)
            await self.store.update_document(self.path, updates)

            reply = await self._require_answers().answer(text)

            assistant_message = ChatMessage(
                role="assistant",
                content=reply.answer,
                source=reply.source,
                timestamp=self._clock(),
            )
            await self.store.append_to_array(self.path, "messages", assistant_message.to_document())
        except Exception as e:
            error = translate_error(e)
            self._rollback(user_message)
            self.error = error.message
            logger.error(
                "message_send_failed",
                uid=self.uid,
                chat_id=self.chat_id,
                error_code=error.code,
                error=str(e),
            )
            if isinstance(e, MediMateError):
                raise
            raise error from e
        finally:
            self.sending = False

        logger.info(
            "message_processed",
            chat_id=self.chat_id,
            user_message_length=len(text),
            ai_response_length=len(assistant_message.content),
        )
        return assistant_message
