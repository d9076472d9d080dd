"""Process configuration read from the environment."""

import os
from typing import List, Optional

from pydantic import BaseModel

PLACEHOLDER_PREFIX = "YOUR_"


class Settings(BaseModel):
    """Settings resolved once at process start."""

    backend: str = "memory"
    project_id: str = "medimate-local"
    storage_bucket: str = "medimate-local.appspot.com"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    max_upload_bytes: int = 5 * 1024 * 1024
    max_client_contexts: int = 1000
    client_idle_seconds: float = 1800.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            backend=os.getenv("MEDIMATE_BACKEND", "memory"),
            project_id=os.getenv("MEDIMATE_PROJECT_ID", "medimate-local"),
            storage_bucket=os.getenv("MEDIMATE_STORAGE_BUCKET", "medimate-local.appspot.com"),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
            max_upload_bytes=int(os.getenv("MEDIMATE_MAX_UPLOAD_BYTES", str(5 * 1024 * 1024))),
            max_client_contexts=int(os.getenv("MEDIMATE_MAX_CLIENT_CONTEXTS", "1000")),
            client_idle_seconds=float(os.getenv("MEDIMATE_CLIENT_IDLE_SECONDS", "1800")),
        )

    def missing_keys(self) -> List[str]:
        """Required keys that are empty or still carry a placeholder value."""
        required = {
            "project_id": self.project_id,
            "storage_bucket": self.storage_bucket,
            "gemini_api_key": self.gemini_api_key,
        }
        return [
            key for key, value in required.items()
            if not value or value.startswith(PLACEHOLDER_PREFIX)
        ]
