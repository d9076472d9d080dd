"""Domain models for the medical assistant chat application."""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator, model_validator

from .errors import ValidationFailed

DEFAULT_CHAT_TITLE = "New Chat"
TITLE_PREFIX_LENGTH = 30
MIN_PASSWORD_LENGTH = 6

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
MOBILE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


def user_path(uid: str) -> str:
    return f"users/{uid}"


def username_path(username: str) -> str:
    return f"usernames/{username}"


def chats_collection(uid: str) -> str:
    return f"users/{uid}/chats"


def chat_path(uid: str, chat_id: str) -> str:
    return f"users/{uid}/chats/{chat_id}"


def profile_picture_path(uid: str) -> str:
    return f"profilePictures/{uid}/profile"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class ChatMessage(BaseModel):
    """A single entry of a chat transcript. Never edited once appended."""

    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant"] = "user"
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    source: Optional[str] = None  # assistant only

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ChatSession(BaseModel):
    """Chat session model."""

    id: str
    title: str = DEFAULT_CHAT_TITLE
    user_id: str
    created_at: Optional[datetime] = None
    messages: List[ChatMessage] = []

    @classmethod
    def from_document(cls, chat_id: str, data: Dict[str, Any]) -> "ChatSession":
        return cls(
            id=chat_id,
            title=data.get("title") or "Untitled Chat",
            user_id=data.get("user_id", ""),
            created_at=data.get("created_at"),
            messages=[ChatMessage(**m) for m in data.get("messages", [])],
        )

    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == "user")


class UserProfile(BaseModel):
    """Profile record stored under ``users/{uid}``."""

    uid: str
    name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None
    photo_url: Optional[str] = None
    email_verified: bool = False
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})


class UsernameReservation(BaseModel):
    """Side record under ``usernames/{username}`` pointing at its owner."""

    username: str
    uid: str


class Identity(BaseModel):
    """Authenticated principal as reported by the authentication service."""

    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False
    photo_url: Optional[str] = None


class MedicalAnswer(BaseModel):
    """Reply of the AI answering capability."""

    answer: str
    source: Optional[str] = None


class SignInForm(BaseModel):
    identifier: str = Field(min_length=1)  # email or username
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class SignUpForm(BaseModel):
    name: str = Field(min_length=2)
    username: str = Field(min_length=3)
    email: EmailStr
    mobile: Optional[str] = None
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def check_username(cls, value: str) -> str:
        value = value.strip()
        if not USERNAME_PATTERN.match(value):
            raise ValueError("Username can only contain letters, numbers, and underscores.")
        return value

    @field_validator("mobile")
    @classmethod
    def check_mobile(cls, value: Optional[str]) -> Optional[str]:
        if value and not MOBILE_PATTERN.match(value):
            raise ValueError("Invalid mobile number format (e.g., +1234567890).")
        return value or None


class ProfileEdits(BaseModel):
    """Settings form submission."""

    name: str = Field(min_length=2, max_length=50)
    username: str = Field(min_length=3)
    mobile: Optional[str] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None

    @field_validator("username")
    @classmethod
    def check_username(cls, value: str) -> str:
        value = value.strip()
        if not USERNAME_PATTERN.match(value):
            raise ValueError("Username can only contain letters, numbers, and underscores.")
        return value

    @field_validator("mobile")
    @classmethod
    def check_mobile(cls, value: Optional[str]) -> Optional[str]:
        value = (value or "").strip()
        if value and not MOBILE_PATTERN.match(value):
            raise ValueError("Invalid mobile number format (e.g., +1234567890).")
        return value or None

    @model_validator(mode="after")
    def check_passwords(self) -> "ProfileEdits":
        if self.new_password:
            if self.new_password != self.confirm_password or len(self.new_password) < MIN_PASSWORD_LENGTH:
                raise ValueError("Passwords don't match or new password is less than 6 characters.")
        return self


FormT = TypeVar("FormT", bound=BaseModel)


def parse_form(form_class: Type[FormT], data: Dict[str, Any]) -> FormT:
    """Validate raw form input, raising ``ValidationFailed`` with field errors."""
    try:
        return form_class.model_validate(data)
    except ValidationError as exc:
        errors = {}
        for error in exc.errors():
            # model-level password check is attached to the confirmation field
            field = str(error["loc"][0]) if error["loc"] else "confirm_password"
            message = error["msg"].removeprefix("Value error, ")
            errors.setdefault(field, message)
        raise ValidationFailed(errors=errors) from exc
