"""Contracts of the external collaborators.

The document store, authentication provider, object storage and AI answering
capability are managed services. The application only talks to them through
the interfaces below, so an in-memory implementation can stand in for them.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..domain.models import Identity, MedicalAnswer


class _ServerTimestamp:
    """Sentinel resolved to the store's clock at commit time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Field transform appending values not already present (structural equality)."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


class DocumentSnapshot(BaseModel):
    """Full state of one document at a point in time."""

    path: str
    data: Optional[Dict[str, Any]] = None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def exists(self) -> bool:
        return self.data is not None


class QuerySnapshot(BaseModel):
    """Full result set of a query at a point in time."""

    documents: List[DocumentSnapshot] = Field(default_factory=list)

    def __iter__(self):
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)


SnapshotCallback = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]
Filter = Tuple[str, str, Any]


def _is_snapshot(item: Any) -> bool:
    return item is not None and not isinstance(item, Exception)


class Subscription:
    """Live interest in a document or query.

    Every change is delivered as a full snapshot, never a diff. Snapshots are
    pushed to the registered callback and can also be consumed with
    ``async for``; iteration stops once the subscription is cancelled.
    Unread snapshots are not queued up: a newer one replaces an older one
    still waiting, so an iterator always resumes at the current state.
    """

    def __init__(
        self,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._on_cancel = on_cancel
        self._backlog: Deque[Any] = deque()
        self._wakeup = asyncio.Event()
        self.active = True
        self.latest: Any = None

    @property
    def pending(self) -> int:
        """Items delivered but not yet read by an iterator."""
        return len(self._backlog)

    def _push(self, item: Any) -> None:
        if self._backlog and _is_snapshot(item) and _is_snapshot(self._backlog[-1]):
            self._backlog[-1] = item
        else:
            self._backlog.append(item)
        self._wakeup.set()

    def deliver(self, snapshot: Any) -> None:
        if not self.active:
            return
        self.latest = snapshot
        self._push(snapshot)
        if self._on_snapshot is not None:
            self._on_snapshot(snapshot)

    def fail(self, error: Exception) -> None:
        if not self.active:
            return
        self._push(error)
        if self._on_error is not None:
            self._on_error(error)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._push(None)
        if self._on_cancel is not None:
            self._on_cancel(self)

    async def __aiter__(self) -> AsyncIterator[Any]:
        while True:
            while not self._backlog:
                self._wakeup.clear()
                await self._wakeup.wait()
            item = self._backlog.popleft()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class WriteBatch:
    """Multi-document write committed all-or-nothing."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self.operations: List[Tuple[str, str, Optional[Dict[str, Any]], bool]] = []

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self.operations.append(("set", path, data, merge))
        return self

    def create(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        """Insert only; the whole batch fails if the document exists."""
        self.operations.append(("create", path, data, False))
        return self

    def update(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        self.operations.append(("update", path, data, False))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self.operations.append(("delete", path, None, False))
        return self

    def __len__(self) -> int:
        return len(self.operations)

    async def commit(self) -> None:
        await self._store.commit(self.operations)


class DocumentStore(ABC):
    """Abstract document database."""

    @abstractmethod
    async def get_document(self, path: str) -> DocumentSnapshot:
        """Read a document; ``exists`` is False when it is absent."""
        pass

    @abstractmethod
    async def commit(self, operations: List[Tuple[str, str, Optional[Dict[str, Any]], bool]]) -> None:
        """Apply write operations atomically."""
        pass

    @abstractmethod
    def new_document_id(self) -> str:
        """Generate an id for a document to be added to a collection."""
        pass

    @abstractmethod
    def subscribe_document(
        self,
        path: str,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Watch one document."""
        pass

    @abstractmethod
    def subscribe_query(
        self,
        collection: str,
        filters: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Watch the documents directly under a collection path."""
        pass

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def set_document(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        await self.commit([("set", path, data, merge)])

    async def create_document(self, path: str, data: Dict[str, Any]) -> None:
        await self.commit([("create", path, data, False)])

    async def update_document(self, path: str, data: Dict[str, Any]) -> None:
        await self.commit([("update", path, data, False)])

    async def delete_document(self, path: str) -> None:
        await self.commit([("delete", path, None, False)])

    async def add_document(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = self.new_document_id()
        await self.create_document(f"{collection}/{doc_id}", data)
        return doc_id

    async def append_to_array(self, path: str, field_name: str, value: Any) -> None:
        await self.update_document(path, {field_name: ArrayUnion(value)})


IdentityListener = Callable[[Optional[Identity]], Awaitable[None]]
IdentityErrorListener = Callable[[Exception], Awaitable[None]]


class AuthSession(ABC):
    """One client's view of the authentication provider."""

    @property
    @abstractmethod
    def current_identity(self) -> Optional[Identity]:
        pass

    @abstractmethod
    def on_identity_changed(
        self,
        listener: IdentityListener,
        on_error: Optional[IdentityErrorListener] = None,
    ) -> Callable[[], None]:
        """Register a listener fired on sign-in, sign-out and token refresh."""
        pass

    @abstractmethod
    async def sign_in_with_credential(self, email: str, password: str) -> Identity:
        pass

    @abstractmethod
    async def sign_in_with_federated_provider(self) -> Identity:
        pass

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> Identity:
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass

    @abstractmethod
    async def reload(self) -> Optional[Identity]:
        """Fetch the freshest record of the current identity."""
        pass

    @abstractmethod
    async def send_verification_email(self) -> None:
        pass

    @abstractmethod
    async def reauthenticate(self, email: str, password: str) -> None:
        pass

    @abstractmethod
    async def update_profile_fields(
        self, display_name: Optional[str] = None, photo_url: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    async def update_password(self, new_password: str) -> None:
        pass

    @abstractmethod
    async def delete_identity(self) -> None:
        pass


class AuthDirectory(ABC):
    """The authentication provider as a whole; hands out client sessions."""

    @abstractmethod
    def open_session(self) -> AuthSession:
        pass


ProgressCallback = Callable[[int, int], None]


class ObjectStorage(ABC):
    """Abstract object storage."""

    @abstractmethod
    async def upload_resumable(
        self,
        path: str,
        data: bytes,
        content_type: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Upload ``data`` to ``path``; returns a download reference."""
        pass


class AnswerService(ABC):
    """AI answering capability: one opaque request/response call."""

    @abstractmethod
    async def answer(self, question: str) -> MedicalAnswer:
        pass
