"""Explicitly constructed handle on the external collaborators."""

from dataclasses import dataclass
from typing import Optional

import structlog

from ..config import Settings
from ..domain.errors import ConfigurationError
from ..repositories.base import AnswerService, AuthDirectory, AuthSession, DocumentStore, ObjectStorage
from ..repositories.memory import InMemoryAuthDirectory, InMemoryDocumentStore, InMemoryObjectStorage
from .llm import MedicalAnswerService

logger = structlog.get_logger()


@dataclass
class BackendClient:
    """Auth, store, storage and AI handles, created once per process."""

    auth: AuthDirectory
    store: DocumentStore
    storage: ObjectStorage
    answers: Optional[AnswerService] = None
    max_upload_bytes: int = 5 * 1024 * 1024

    def open_auth_session(self) -> AuthSession:
        return self.auth.open_session()

    def require_answers(self) -> AnswerService:
        if self.answers is None:
            raise ConfigurationError("The answer service is not configured. Set GEMINI_API_KEY.")
        return self.answers


def create_backend(settings: Settings, answers: Optional[AnswerService] = None) -> BackendClient:
    """Build the backend client, degrading the AI feature if it is not configured."""
    if settings.backend != "memory":
        logger.error("unknown_backend", backend=settings.backend)
        raise ConfigurationError(f"Unsupported backend {settings.backend!r}")

    missing = settings.missing_keys()
    if missing:
        logger.warning("configuration_incomplete", missing_keys=missing)

    if answers is None and "gemini_api_key" not in missing:
        try:
            answers = MedicalAnswerService(settings.gemini_api_key, settings.gemini_model)
        except Exception as e:
            logger.error("llm_service_init_failed", error=str(e))
            answers = None

    client = BackendClient(
        auth=InMemoryAuthDirectory(),
        store=InMemoryDocumentStore(),
        storage=InMemoryObjectStorage(bucket=settings.storage_bucket),
        answers=answers,
        max_upload_bytes=settings.max_upload_bytes,
    )
    logger.info(
        "backend_initialized",
        backend=settings.backend,
        project_id=settings.project_id,
        answers_enabled=client.answers is not None,
    )
    return client
