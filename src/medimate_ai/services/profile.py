"""Profile edits, password changes and profile pictures."""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from ..domain.errors import (
    AuthInvalidCredential,
    BackendError,
    PermissionDenied,
    ProfileSyncFailed,
    ReauthRequired,
    UploadFailed,
    ValidationFailed,
    translate_error,
)
from ..domain.models import Identity, ProfileEdits, UserProfile, parse_form, profile_picture_path, user_path
from ..repositories.base import AuthSession, DocumentStore, ObjectStorage
from .usernames import UsernameRegistry

logger = structlog.get_logger()


class PasswordChangeState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    REQUIRES_REAUTH = "requires_reauth"
    REAUTHENTICATING = "reauthenticating"
    SUCCESS = "success"
    FAILED = "failed"


class PasswordChange:
    """Password update with at most one retry after re-authentication."""

    def __init__(self, auth: AuthSession, email: Optional[str]) -> None:
        self.auth = auth
        self.email = email
        self.state = PasswordChangeState.IDLE
        self.transitions: List[PasswordChangeState] = [self.state]

    def _enter(self, state: PasswordChangeState) -> None:
        self.state = state
        self.transitions.append(state)

    def _fail(self, error: Exception) -> Exception:
        self._enter(PasswordChangeState.FAILED)
        logger.warning("password_change_failed", error=str(error))
        return error

    async def run(self, new_password: str, current_password: Optional[str] = None) -> None:
        if self.state != PasswordChangeState.IDLE:
            raise RuntimeError("A password change can only run once")
        self._enter(PasswordChangeState.ATTEMPTING)
        try:
            await self.auth.update_password(new_password)
        except BackendError as e:
            if e.code == "auth/weak-password":
                raise self._fail(ValidationFailed("Password is too weak (min 6 chars).", field="new_password")) from e
            if e.code != "auth/requires-recent-login":
                raise self._fail(translate_error(e, field="new_password")) from e
            self._enter(PasswordChangeState.REQUIRES_REAUTH)
            if not current_password:
                raise self._fail(ReauthRequired("Enter current password to change.")) from e
            await self._reauthenticate_and_retry(new_password, current_password)
            return
        self._enter(PasswordChangeState.SUCCESS)
        logger.info("password_changed")

    async def _reauthenticate_and_retry(self, new_password: str, current_password: str) -> None:
        self._enter(PasswordChangeState.REAUTHENTICATING)
        try:
            await self.auth.reauthenticate(self.email or "", current_password)
            await self.auth.update_password(new_password)
        except BackendError as e:
            if e.code in ("auth/wrong-password", "auth/invalid-credential"):
                raise self._fail(AuthInvalidCredential("Incorrect current password.", field="current_password")) from e
            raise self._fail(translate_error(e, field="current_password")) from e
        self._enter(PasswordChangeState.SUCCESS)
        logger.info("password_changed", reauthenticated=True)


class SaveResult(BaseModel):
    """Outcome of a settings save."""

    updated_fields: List[str] = Field(default_factory=list)
    password_changed: bool = False


class ProfileMutator:
    """Applies settings edits across the auth provider and the profile record."""

    def __init__(
        self,
        auth: AuthSession,
        store: DocumentStore,
        storage: Optional[ObjectStorage] = None,
        max_upload_bytes: int = 5 * 1024 * 1024,
    ) -> None:
        self.auth = auth
        self.store = store
        self.storage = storage
        self.max_upload_bytes = max_upload_bytes
        self.usernames = UsernameRegistry(store)
        self.profile: Optional[UserProfile] = None
        self.load_error: Optional[str] = None
        self.saving = False
        self.uploading = False
        self.upload_progress = 0.0

    def _identity(self) -> Identity:
        identity = self.auth.current_identity
        if identity is None:
            raise PermissionDenied("User not logged in.")
        return identity

    async def load(self) -> UserProfile:
        """Fetch the profile record, falling back to the auth identity."""
        identity = self._identity()
        self.load_error = None
        try:
            snapshot = await self.store.get_document(user_path(identity.uid))
        except BackendError as e:
            logger.error("profile_load_failed", uid=identity.uid, error=e.code)
            self.load_error = "Could not load user profile data."
            snapshot = None
        if snapshot is not None and snapshot.exists:
            profile = UserProfile.from_document(snapshot.data)
            if not profile.name:
                profile.name = identity.display_name
            if not profile.photo_url:
                profile.photo_url = identity.photo_url
        else:
            profile = UserProfile(
                uid=identity.uid,
                name=identity.display_name,
                email=identity.email,
                photo_url=identity.photo_url,
                email_verified=identity.email_verified,
            )
        self.profile = profile
        return profile

    def diff(self, edits: ProfileEdits, profile: UserProfile) -> Dict[str, Any]:
        """Changed profile fields only."""
        changes: Dict[str, Any] = {}
        name = edits.name.strip()
        if name != (profile.name or ""):
            changes["name"] = name
        if edits.username and edits.username != (profile.username or ""):
            changes["username"] = edits.username
        if edits.mobile != (profile.mobile or None):
            changes["mobile"] = edits.mobile
        return changes

    async def save(self, data: Dict[str, Any]) -> SaveResult:
        edits = parse_form(ProfileEdits, data)
        identity = self._identity()
        if self.saving:
            return SaveResult()
        profile = self.profile or await self.load()
        changes = self.diff(edits, profile)
        new_username = changes.pop("username", None)

        self.saving = True
        result = SaveResult()
        try:
            if new_username:
                await self.usernames.ensure_available(new_username, identity.uid)

            if "name" in changes:
                try:
                    await self.auth.update_profile_fields(display_name=changes["name"])
                except BackendError as e:
                    logger.error("auth_profile_update_failed", uid=identity.uid, error=e.code)
                    raise translate_error(e) from e

            if new_username:
                await self.usernames.rename(identity.uid, profile.username, new_username, changes)
            elif changes:
                try:
                    await self.store.update_document(user_path(identity.uid), changes)
                except BackendError as e:
                    logger.error("profile_update_failed", uid=identity.uid, error=e.code)
                    raise translate_error(e) from e

            if new_username:
                changes["username"] = new_username
            result.updated_fields = sorted(changes)
            self.profile = profile.model_copy(update=changes)

            if edits.new_password:
                await PasswordChange(self.auth, identity.email).run(edits.new_password, edits.current_password)
                result.password_changed = True
        finally:
            self.saving = False

        logger.info(
            "profile_saved",
            uid=identity.uid,
            updated_fields=result.updated_fields,
            password_changed=result.password_changed,
        )
        return result

    def _track_progress(self, transferred: int, total: int) -> None:
        self.upload_progress = transferred / total if total else 0.0

    async def upload_picture(
        self,
        data: bytes,
        content_type: str,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> Optional[str]:
        """Store a new profile picture and point both profile records at it.

        Returns the download reference, or None if an upload or save is
        already running.
        """
        identity = self._identity()
        if not (content_type or "").startswith("image/"):
            raise ValidationFailed("Please select an image file.", field="picture")
        if len(data) > self.max_upload_bytes:
            limit_mb = max(1, self.max_upload_bytes // (1024 * 1024))
            raise ValidationFailed(f"Please select an image smaller than {limit_mb}MB.", field="picture")
        if self.storage is None:
            raise UploadFailed("Storage is not configured.")
        if self.uploading or self.saving:
            return None

        def progress(transferred: int, total: int) -> None:
            self._track_progress(transferred, total)
            if on_progress is not None:
                on_progress(self.upload_progress)

        self.uploading = True
        self.upload_progress = 0.0
        try:
            url = await self.storage.upload_resumable(
                profile_picture_path(identity.uid), data, content_type, on_progress=progress
            )
        except BackendError as e:
            self.upload_progress = 0.0
            logger.error("picture_upload_failed", uid=identity.uid, error=e.code)
            raise UploadFailed(f"Upload failed: {translate_error(e).message}") from e
        finally:
            self.uploading = False

        failures = []
        try:
            await self.auth.update_profile_fields(photo_url=url)
        except BackendError as e:
            logger.error("auth_photo_update_failed", uid=identity.uid, error=e.code)
            failures.append("auth")
        try:
            await self.store.update_document(user_path(identity.uid), {"photo_url": url})
        except BackendError as e:
            logger.error("profile_photo_update_failed", uid=identity.uid, error=e.code)
            failures.append("profile")
        if failures:
            self.upload_progress = 0.0
            raise ProfileSyncFailed(f"Picture uploaded but failed to update: {', '.join(failures)}.")

        self.upload_progress = 1.0
        if self.profile is not None:
            self.profile = self.profile.model_copy(update={"photo_url": url})
        logger.info("profile_picture_updated", uid=identity.uid, size=len(data))
        return url
