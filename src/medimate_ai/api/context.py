"""Per-client state held by the API between requests."""

import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

import structlog

from ..domain.models import Identity
from ..services.accounts import AccountService
from ..services.backend import BackendClient
from ..services.chat_list import ChatListMirror
from ..services.profile import ProfileMutator
from ..services.session import SessionManager, SessionState
from ..services.transcript import ChatTranscriptMirror

logger = structlog.get_logger()


class ClientContext:
    """Everything one signed-in browser keeps: session, mirrors and mutators.

    Mirrors are tied to the identity they were opened for and are closed as
    soon as the session changes identity or leaves the ready state.
    """

    def __init__(self, token: str, backend: BackendClient) -> None:
        self.token = token
        self.backend = backend
        self.auth = backend.open_auth_session()
        self.session = SessionManager(self.auth)
        self.accounts = AccountService(self.auth, backend.store)
        self.profile = ProfileMutator(
            self.auth, backend.store, backend.storage, max_upload_bytes=backend.max_upload_bytes
        )
        self.chat_list: Optional[ChatListMirror] = None
        self.transcripts: Dict[str, ChatTranscriptMirror] = {}
        self._uid: Optional[str] = None
        self.session.subscribe(self._on_session_changed)

    async def start(self) -> None:
        await self.session.start()

    def _on_session_changed(self, state: SessionState, identity: Optional[Identity]) -> None:
        uid = identity.uid if identity and state == SessionState.READY else None
        if uid == self._uid:
            return
        self.close_mirrors()
        self.profile.profile = None
        self._uid = uid

    def close_mirrors(self) -> None:
        if self.chat_list is not None:
            self.chat_list.close()
            self.chat_list = None
        for transcript in self.transcripts.values():
            transcript.close()
        self.transcripts.clear()

    def chats(self) -> ChatListMirror:
        identity = self.session.require_verified()
        if self.chat_list is None:
            self.chat_list = ChatListMirror(self.backend.store, identity.uid)
            self.chat_list.open()
        return self.chat_list

    def transcript(self, chat_id: str) -> ChatTranscriptMirror:
        identity = self.session.require_verified()
        transcript = self.transcripts.get(chat_id)
        if transcript is None:
            transcript = ChatTranscriptMirror(
                self.backend.store, identity.uid, chat_id, answers=self.backend.answers
            )
            transcript.on_not_found(self._forget_transcript)
            transcript.open()
            if transcript.not_found:
                transcript.close()
            else:
                self.transcripts[chat_id] = transcript
        return transcript

    def _forget_transcript(self, chat_id: str) -> None:
        transcript = self.transcripts.pop(chat_id, None)
        if transcript is not None:
            transcript.close()

    def close(self) -> None:
        self.close_mirrors()
        self.session.stop()
        logger.info("client_context_closed")


class ClientContextRegistry:
    """Open client contexts keyed by bearer token, least recently used first.

    A context idle for longer than ``idle_seconds`` is closed and forgotten.
    Opening a context when ``max_contexts`` are held closes the least
    recently used one.
    """

    def __init__(
        self,
        max_contexts: int = 1000,
        idle_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_contexts = max_contexts
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._contexts: "OrderedDict[str, Tuple[ClientContext, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, token: str) -> bool:
        return token in self._contexts

    def _evict(self, token: str, reason: str) -> None:
        context, _ = self._contexts.pop(token)
        context.close()
        logger.info("client_context_evicted", reason=reason, contexts=len(self._contexts))

    def expire(self) -> int:
        """Close contexts idle past the limit; returns how many were closed."""
        cutoff = self._clock() - self.idle_seconds
        stale = [token for token, (_, seen) in self._contexts.items() if seen < cutoff]
        for token in stale:
            self._evict(token, "idle")
        return len(stale)

    def add(self, context: ClientContext) -> None:
        self.expire()
        while self._contexts and len(self._contexts) >= self.max_contexts:
            self._evict(next(iter(self._contexts)), "capacity")
        self._contexts[context.token] = (context, self._clock())

    def get(self, token: str) -> Optional[ClientContext]:
        """Look up a context and mark it as used."""
        self.expire()
        entry = self._contexts.get(token)
        if entry is None:
            return None
        self._contexts[token] = (entry[0], self._clock())
        self._contexts.move_to_end(token)
        return entry[0]

    def pop(self, token: str) -> Optional[ClientContext]:
        entry = self._contexts.pop(token, None)
        return entry[0] if entry else None

    def close_all(self) -> None:
        for context, _ in self._contexts.values():
            context.close()
        self._contexts.clear()
