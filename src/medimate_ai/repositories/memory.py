"""In-memory implementations of the external collaborators."""

import asyncio
import copy
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from ..domain.errors import BackendError
from ..domain.models import Identity, utcnow
from .base import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    AuthDirectory,
    AuthSession,
    DocumentSnapshot,
    DocumentStore,
    ErrorCallback,
    Filter,
    IdentityErrorListener,
    IdentityListener,
    ObjectStorage,
    ProgressCallback,
    QuerySnapshot,
    SnapshotCallback,
    Subscription,
)

logger = structlog.get_logger()


@dataclass
class Fault:
    """A scripted failure for the next matching operation(s)."""

    operation: str
    path_prefix: str
    code: str
    remaining: int


class FaultPlan:
    """Scripted failures shared by the in-memory collaborators."""

    def __init__(self) -> None:
        self._faults: List[Fault] = []

    def add(self, operation: str, code: str, path_prefix: str = "", times: int = 1) -> None:
        self._faults.append(Fault(operation, path_prefix, code, times))

    def clear(self) -> None:
        self._faults.clear()

    def check(self, operation: str, path: str = "") -> None:
        for fault in self._faults:
            if fault.operation not in (operation, "*"):
                continue
            if not path.startswith(fault.path_prefix):
                continue
            fault.remaining -= 1
            if fault.remaining <= 0:
                self._faults.remove(fault)
            logger.debug("fault_injected", operation=operation, path=path, code=fault.code)
            raise BackendError(fault.code, f"{operation} {path} failed: {fault.code}")


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in a dict of path -> document data.

    Writes are staged on a copy and swapped in only when every operation of
    a commit succeeded, then every affected subscription receives a full
    snapshot.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._document_subscriptions: Dict[str, List[Subscription]] = {}
        self._query_subscriptions: List[Tuple[str, List[Filter], Optional[str], bool, Subscription]] = []
        self._lock = asyncio.Lock()
        self._clock = clock
        self.faults = FaultPlan()
        self.commit_count = 0

    def inject_fault(self, operation: str, code: str = "unavailable", path_prefix: str = "", times: int = 1) -> None:
        self.faults.add(operation, code, path_prefix, times)

    def new_document_id(self) -> str:
        return uuid4().hex[:20]

    async def get_document(self, path: str) -> DocumentSnapshot:
        await asyncio.sleep(0)
        self.faults.check("get", path)
        return DocumentSnapshot(path=path, data=copy.deepcopy(self._documents.get(path)))

    def peek(self, path: str) -> Optional[Dict[str, Any]]:
        """Synchronous read used by tests and diagnostics."""
        return copy.deepcopy(self._documents.get(path))

    def _resolve(self, value: Any, current: Any) -> Any:
        if value is SERVER_TIMESTAMP:
            return self._clock()
        if isinstance(value, ArrayUnion):
            merged = list(current) if isinstance(current, list) else []
            for item in value.values:
                if item not in merged:
                    merged.append(copy.deepcopy(item))
            return merged
        return copy.deepcopy(value)

    def _apply(
        self,
        staged: Dict[str, Dict[str, Any]],
        operation: str,
        path: str,
        data: Optional[Dict[str, Any]],
        merge: bool,
    ) -> None:
        existing = staged.get(path)
        if operation == "delete":
            staged.pop(path, None)
            return
        if operation == "create" and existing is not None:
            raise BackendError("already-exists", f"Document {path} already exists")
        if operation == "update" and existing is None:
            raise BackendError("not-found", f"No document to update: {path}")

        if operation in ("update",) or (operation == "set" and merge):
            document = dict(existing or {})
        else:
            document = {}
        for key, value in (data or {}).items():
            document[key] = self._resolve(value, document.get(key))
        staged[path] = document

    async def commit(self, operations: List[Tuple[str, str, Optional[Dict[str, Any]], bool]]) -> None:
        await asyncio.sleep(0)
        async with self._lock:
            staged = dict(self._documents)
            for operation, path, data, merge in operations:
                self.faults.check(operation, path)
                self._apply(staged, operation, path, data, merge)
            self._documents = staged
            self.commit_count += 1
        logger.debug("store_commit", operations=len(operations))
        self._notify({path for _, path, _, _ in operations})

    def _query(
        self, collection: str, filters: List[Filter], order_by: Optional[str], descending: bool
    ) -> QuerySnapshot:
        matches = []
        for path, data in self._documents.items():
            if _parent(path) != collection:
                continue
            if all(self._matches(data.get(f), op, value) for f, op, value in filters):
                matches.append(DocumentSnapshot(path=path, data=copy.deepcopy(data)))
        if order_by:
            # documents missing the field sort first, as if null
            matches.sort(
                key=lambda s: (s.data.get(order_by) is not None, s.data.get(order_by)),
                reverse=descending,
            )
        return QuerySnapshot(documents=matches)

    @staticmethod
    def _matches(actual: Any, op: str, expected: Any) -> bool:
        if op == "==":
            return actual == expected
        if op == "!=":
            return actual != expected
        raise ValueError(f"Unsupported filter operator {op!r}")

    def _notify(self, paths: set) -> None:
        for path in paths:
            for subscription in list(self._document_subscriptions.get(path, [])):
                subscription.deliver(DocumentSnapshot(path=path, data=copy.deepcopy(self._documents.get(path))))
        collections = {_parent(path) for path in paths}
        for collection, filters, order_by, descending, subscription in list(self._query_subscriptions):
            if collection in collections:
                subscription.deliver(self._query(collection, filters, order_by, descending))

    def subscribe_document(
        self,
        path: str,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(on_snapshot, on_error, on_cancel=self._cancel)
        self._document_subscriptions.setdefault(path, []).append(subscription)
        subscription.deliver(DocumentSnapshot(path=path, data=copy.deepcopy(self._documents.get(path))))
        return subscription

    def subscribe_query(
        self,
        collection: str,
        filters: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        filters = list(filters or [])
        subscription = Subscription(on_snapshot, on_error, on_cancel=self._cancel)
        self._query_subscriptions.append((collection, filters, order_by, descending, subscription))
        subscription.deliver(self._query(collection, filters, order_by, descending))
        return subscription

    def _cancel(self, subscription: Subscription) -> None:
        for subscriptions in self._document_subscriptions.values():
            if subscription in subscriptions:
                subscriptions.remove(subscription)
        self._query_subscriptions = [q for q in self._query_subscriptions if q[-1] is not subscription]

    def fail_subscriptions(self, code: str, path_prefix: str = "") -> None:
        """Push a listener error to every subscription under ``path_prefix``."""
        error = BackendError(code)
        for path, subscriptions in self._document_subscriptions.items():
            if path.startswith(path_prefix):
                for subscription in list(subscriptions):
                    subscription.fail(error)
        for collection, _, _, _, subscription in list(self._query_subscriptions):
            if collection.startswith(path_prefix):
                subscription.fail(error)

    def subscription_count(self) -> int:
        return sum(len(s) for s in self._document_subscriptions.values()) + len(self._query_subscriptions)


@dataclass
class _Account:
    uid: str
    email: str
    password: Optional[str]
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    email_verified: bool = False
    provider: str = "password"
    last_auth_at: Optional[datetime] = None

    def to_identity(self) -> Identity:
        return Identity(
            uid=self.uid,
            email=self.email,
            display_name=self.display_name,
            email_verified=self.email_verified,
            photo_url=self.photo_url,
        )


class InMemoryAuthDirectory(AuthDirectory):
    """Account directory of the fake authentication provider."""

    def __init__(
        self,
        recent_login_window: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.accounts: Dict[str, _Account] = {}
        self.recent_login_window = recent_login_window
        self.clock = clock
        self.faults = FaultPlan()
        self.sent_verifications: List[str] = []
        self._federated: Optional[Dict[str, Any]] = None

    def inject_fault(self, operation: str, code: str, times: int = 1) -> None:
        self.faults.add(operation, code, "", times)

    def open_session(self) -> "InMemoryAuthSession":
        return InMemoryAuthSession(self)

    def find_by_email(self, email: str) -> Optional[_Account]:
        email = email.strip().lower()
        for account in self.accounts.values():
            if account.email.lower() == email:
                return account
        return None

    def create_account(self, email: str, password: Optional[str], **fields: Any) -> _Account:
        account = _Account(uid=uuid4().hex[:28], email=email, password=password, **fields)
        self.accounts[account.uid] = account
        logger.debug("auth_account_created", uid=account.uid, provider=account.provider)
        return account

    def set_federated_account(
        self,
        email: str,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
        email_verified: bool = True,
    ) -> None:
        """Account the federated provider's popup will return next."""
        self._federated = {
            "email": email,
            "display_name": display_name,
            "photo_url": photo_url,
            "email_verified": email_verified,
        }

    def take_federated_account(self) -> Dict[str, Any]:
        if self._federated is None:
            raise BackendError("auth/popup-closed-by-user", "Sign-in popup closed before completion.")
        return self._federated

    def verify_email(self, uid: str) -> None:
        """Simulate the user following the verification link."""
        self.accounts[uid].email_verified = True


class InMemoryAuthSession(AuthSession):
    """Client-side auth state bound to one browser session.

    ``current_identity`` is a cached copy; out-of-band changes such as a
    completed email verification only show up after ``reload``.
    """

    def __init__(self, directory: InMemoryAuthDirectory) -> None:
        self._directory = directory
        self._identity: Optional[Identity] = None
        self._listeners: List[Tuple[IdentityListener, Optional[IdentityErrorListener]]] = []

    @property
    def current_identity(self) -> Optional[Identity]:
        return self._identity

    def on_identity_changed(
        self,
        listener: IdentityListener,
        on_error: Optional[IdentityErrorListener] = None,
    ) -> Callable[[], None]:
        entry = (listener, on_error)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    async def _notify(self) -> None:
        for listener, _ in list(self._listeners):
            await listener(self._identity)

    async def emit_error(self, error: Exception) -> None:
        """Deliver a listener-level failure, as a broken token refresh would."""
        for _, on_error in list(self._listeners):
            if on_error is not None:
                await on_error(error)

    async def refresh_token(self) -> None:
        await asyncio.sleep(0)
        await self._notify()

    def _account(self) -> _Account:
        if self._identity is None:
            raise BackendError("auth/no-current-user", "No user is signed in.")
        account = self._directory.accounts.get(self._identity.uid)
        if account is None:
            raise BackendError("auth/user-not-found")
        return account

    async def _signed_in(self, account: _Account) -> Identity:
        account.last_auth_at = self._directory.clock()
        self._identity = account.to_identity()
        await self._notify()
        return self._identity

    async def sign_in_with_credential(self, email: str, password: str) -> Identity:
        await asyncio.sleep(0)
        self._directory.faults.check("sign_in")
        account = self._directory.find_by_email(email)
        if account is None or account.password is None or account.password != password:
            raise BackendError("auth/invalid-credential")
        return await self._signed_in(account)

    async def sign_in_with_federated_provider(self) -> Identity:
        await asyncio.sleep(0)
        self._directory.faults.check("sign_in_federated")
        profile = self._directory.take_federated_account()
        account = self._directory.find_by_email(profile["email"])
        if account is None:
            account = self._directory.create_account(profile["email"], None, provider="federated")
        account.display_name = profile["display_name"]
        account.photo_url = profile["photo_url"]
        account.email_verified = account.email_verified or profile["email_verified"]
        return await self._signed_in(account)

    async def sign_up(self, email: str, password: str) -> Identity:
        await asyncio.sleep(0)
        self._directory.faults.check("sign_up")
        if "@" not in email:
            raise BackendError("auth/invalid-email")
        if self._directory.find_by_email(email) is not None:
            raise BackendError("auth/email-already-in-use")
        if len(password) < 6:
            raise BackendError("auth/weak-password")
        account = self._directory.create_account(email, password)
        return await self._signed_in(account)

    async def sign_out(self) -> None:
        await asyncio.sleep(0)
        self._directory.faults.check("sign_out")
        self._identity = None
        await self._notify()

    async def reload(self) -> Optional[Identity]:
        await asyncio.sleep(0)
        if self._identity is None:
            return None
        self._directory.faults.check("reload")
        self._identity = self._account().to_identity()
        return self._identity

    async def send_verification_email(self) -> None:
        await asyncio.sleep(0)
        self._directory.faults.check("send_verification")
        account = self._account()
        self._directory.sent_verifications.append(account.uid)

    async def reauthenticate(self, email: str, password: str) -> None:
        await asyncio.sleep(0)
        self._directory.faults.check("reauthenticate")
        account = self._account()
        if account.email.lower() != email.lower() or account.password != password:
            raise BackendError("auth/wrong-password")
        account.last_auth_at = self._directory.clock()

    async def update_profile_fields(
        self, display_name: Optional[str] = None, photo_url: Optional[str] = None
    ) -> None:
        await asyncio.sleep(0)
        self._directory.faults.check("update_profile")
        account = self._account()
        if display_name is not None:
            account.display_name = display_name
        if photo_url is not None:
            account.photo_url = photo_url
        self._identity = account.to_identity()

    async def update_password(self, new_password: str) -> None:
        await asyncio.sleep(0)
        self._directory.faults.check("update_password")
        account = self._account()
        if len(new_password) < 6:
            raise BackendError("auth/weak-password")
        last_auth = account.last_auth_at
        if last_auth is None or self._directory.clock() - last_auth > self._directory.recent_login_window:
            raise BackendError("auth/requires-recent-login")
        account.password = new_password

    async def delete_identity(self) -> None:
        await asyncio.sleep(0)
        self._directory.faults.check("delete_identity")
        account = self._account()
        del self._directory.accounts[account.uid]
        self._identity = None
        await self._notify()


class InMemoryObjectStorage(ObjectStorage):
    """Object storage writing whole blobs, transferred chunk by chunk."""

    def __init__(self, bucket: str = "medimate-local", chunk_size: int = 256 * 1024) -> None:
        self.bucket = bucket
        self.chunk_size = chunk_size
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.faults = FaultPlan()
        self._generation = 0

    def inject_fault(self, code: str = "storage/unauthorized", path_prefix: str = "", times: int = 1) -> None:
        self.faults.add("upload", code, path_prefix, times)

    async def upload_resumable(
        self,
        path: str,
        data: bytes,
        content_type: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        total = len(data)
        transferred = 0
        if on_progress is not None:
            on_progress(0, total)
        while transferred < total:
            await asyncio.sleep(0)
            self.faults.check("upload", path)
            transferred = min(total, transferred + self.chunk_size)
            if on_progress is not None:
                on_progress(transferred, total)
        if total == 0:
            self.faults.check("upload", path)
        self.objects[path] = (bytes(data), content_type)
        self._generation += 1
        logger.debug("object_stored", path=path, size=total)
        return f"memory://{self.bucket}/{path}?generation={self._generation}"
