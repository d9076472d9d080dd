"""Shared fixtures: in-memory collaborators and a scripted answer service."""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from medimate_ai.domain.models import MedicalAnswer
from medimate_ai.repositories.base import AnswerService
from medimate_ai.repositories.memory import InMemoryAuthDirectory, InMemoryDocumentStore, InMemoryObjectStorage
from medimate_ai.services.accounts import AccountService
from medimate_ai.services.backend import BackendClient


class FakeAnswerService(AnswerService):
    """Answers every question with a canned reply."""

    def __init__(self, answer: str = "Rest and drink fluids.", source: Optional[str] = "CDC") -> None:
        self.reply = MedicalAnswer(answer=answer, source=source)
        self.questions: List[str] = []
        self.error: Optional[Exception] = None

    async def answer(self, question: str) -> MedicalAnswer:
        self.questions.append(question)
        if self.error is not None:
            raise self.error
        return self.reply


def ticking_clock(start: Optional[datetime] = None) -> Callable[[], datetime]:
    """Clock advancing one second per reading, so orderings are deterministic."""
    current = [start or datetime(2024, 1, 1, tzinfo=timezone.utc)]

    def now() -> datetime:
        current[0] += timedelta(seconds=1)
        return current[0]

    return now


@pytest.fixture
def answers() -> FakeAnswerService:
    return FakeAnswerService()


@pytest.fixture
def backend(answers) -> BackendClient:
    return BackendClient(
        auth=InMemoryAuthDirectory(),
        store=InMemoryDocumentStore(clock=ticking_clock()),
        storage=InMemoryObjectStorage(chunk_size=4),
        answers=answers,
        max_upload_bytes=1024,
    )


@pytest.fixture
def store(backend) -> InMemoryDocumentStore:
    return backend.store


@pytest.fixture
def make_user(backend):
    """Factory signing up a user on a fresh auth session."""

    async def _make(
        username: str = "alice",
        email: Optional[str] = None,
        password: str = "secret123",
        verified: bool = True,
        name: str = "Alice Doe",
    ):
        auth = backend.open_auth_session()
        accounts = AccountService(auth, backend.store)
        identity = await accounts.sign_up({
            "name": name,
            "username": username,
            "email": email or f"{username}@example.com",
            "password": password,
        })
        if verified:
            backend.auth.verify_email(identity.uid)
            identity = await auth.reload()
        return auth, identity

    return _make
