"""Sign-up and sign-in flows."""

from typing import Any, Dict

import structlog

from ..domain.errors import AuthInvalidCredential, BackendError, UsernameTaken, translate_error
from ..domain.models import (
    Identity,
    SignInForm,
    SignUpForm,
    UserProfile,
    parse_form,
    user_path,
    username_path,
)
from ..repositories.base import SERVER_TIMESTAMP, AuthSession, DocumentStore
from .usernames import UsernameRegistry

logger = structlog.get_logger()


class AccountService:
    """Creates accounts and signs identities in for one client session."""

    def __init__(self, auth: AuthSession, store: DocumentStore) -> None:
        self.auth = auth
        self.store = store
        self.usernames = UsernameRegistry(store)

    async def sign_up(self, data: Dict[str, Any]) -> Identity:
        """Create the identity, its profile and its username reservation.

        Profile and reservation are written in one batch. If that batch
        fails, the fresh auth identity is deleted again.
        """
        form = parse_form(SignUpForm, data)
        await self.usernames.ensure_available(form.username)

        try:
            identity = await self.auth.sign_up(form.email, form.password)
        except BackendError as e:
            logger.warning("sign_up_failed", error=e.code)
            raise translate_error(e) from e

        try:
            await self.auth.update_profile_fields(display_name=form.name)
            batch = self.store.batch()
            batch.set(user_path(identity.uid), {
                "uid": identity.uid,
                "name": form.name,
                "username": form.username,
                "email": form.email,
                "mobile": form.mobile,
                "photo_url": identity.photo_url,
                "created_at": SERVER_TIMESTAMP,
                "email_verified": False,
                "last_login": SERVER_TIMESTAMP,
            })
            self.usernames.reserve_in(batch, form.username, identity.uid)
            await batch.commit()
        except BackendError as e:
            logger.error("sign_up_profile_write_failed", uid=identity.uid, error=e.code)
            try:
                await self.auth.delete_identity()
            except BackendError as delete_error:
                logger.error("sign_up_rollback_failed", uid=identity.uid, error=delete_error.code)
            if e.code == "already-exists":
                raise UsernameTaken() from e
            raise translate_error(e) from e

        try:
            await self.auth.send_verification_email()
        except BackendError as e:
            logger.warning("verification_email_failed", uid=identity.uid, error=e.code)

        logger.info("user_signed_up", uid=identity.uid, username=form.username)
        return self.auth.current_identity or identity

    async def resolve_email(self, identifier: str) -> str:
        """Turn a username into the email it signs in with."""
        if "@" in identifier:
            return identifier
        try:
            reservation = await self.store.get_document(username_path(identifier))
            uid = reservation.data.get("uid") if reservation.exists else None
            if not uid:
                raise AuthInvalidCredential()
            profile = await self.store.get_document(user_path(uid))
        except BackendError as e:
            logger.error("username_lookup_failed", error=e.code)
            raise translate_error(e) from e
        email = profile.data.get("email") if profile.exists else None
        if not email:
            logger.error("username_without_email", uid=uid)
            raise AuthInvalidCredential()
        return email

    async def sign_in(self, data: Dict[str, Any]) -> Identity:
        form = parse_form(SignInForm, data)
        email = await self.resolve_email(form.identifier.strip())
        try:
            identity = await self.auth.sign_in_with_credential(email, form.password)
        except BackendError as e:
            logger.info("sign_in_failed", error=e.code)
            raise translate_error(e) from e

        try:
            await self.store.set_document(user_path(identity.uid), {"last_login": SERVER_TIMESTAMP}, merge=True)
        except BackendError as e:
            logger.warning("last_login_update_failed", uid=identity.uid, error=e.code)
        logger.info("user_signed_in", uid=identity.uid)
        return identity

    async def _default_username(self, identity: Identity) -> str:
        base = (identity.email or "").split("@")[0] or f"user_{identity.uid[:5]}"
        if await self.usernames.is_available(base, identity.uid):
            return base
        return f"{base}_{identity.uid[:4]}"

    async def sign_in_with_federated_provider(self) -> Identity:
        try:
            identity = await self.auth.sign_in_with_federated_provider()
        except BackendError as e:
            logger.info("federated_sign_in_failed", error=e.code)
            raise translate_error(e) from e

        try:
            snapshot = await self.store.get_document(user_path(identity.uid))
            batch = self.store.batch()
            if not snapshot.exists:
                username = await self._default_username(identity)
                batch.set(user_path(identity.uid), {
                    "uid": identity.uid,
                    "name": identity.display_name,
                    "email": identity.email,
                    "username": username,
                    "photo_url": identity.photo_url,
                    "created_at": SERVER_TIMESTAMP,
                    "email_verified": identity.email_verified,
                    "last_login": SERVER_TIMESTAMP,
                })
                self.usernames.reserve_in(batch, username, identity.uid)
            else:
                profile = UserProfile.from_document(snapshot.data)
                updates: Dict[str, Any] = {
                    "name": identity.display_name,
                    "photo_url": identity.photo_url,
                    "email_verified": identity.email_verified,
                    "last_login": SERVER_TIMESTAMP,
                }
                if not profile.username:
                    username = await self._default_username(identity)
                    updates["username"] = username
                    self.usernames.reserve_in(batch, username, identity.uid)
                batch.update(user_path(identity.uid), updates)
            await batch.commit()
        except BackendError as e:
            logger.error("federated_profile_sync_failed", uid=identity.uid, error=e.code)
            raise translate_error(e) from e

        logger.info("user_signed_in", uid=identity.uid, provider="federated")
        return identity

    async def sign_out(self) -> None:
        try:
            await self.auth.sign_out()
        except BackendError as e:
            raise translate_error(e) from e
