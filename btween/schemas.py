"""
Pydantic models for everything clients send us: the real-time events and
the HTTP request bodies. Field aliases carry the camelCase wire names.
"""
import uuid
from typing import Annotated, Literal, Optional, Union

import pydantic
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from . import crypto
from .errors import InvalidKeyError, ValidationError


def _check_public_id(value: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        raise ValueError("malformed id")
    return value


PublicId = Annotated[str, AfterValidator(_check_public_id)]


def _check_public_key(value: str) -> str:
    # empty means "no key yet"
    if not value:
        return value
    try:
        return crypto.check_public_key(value)
    except InvalidKeyError:
        raise ValueError("malformed X25519 public key")


PublicKey = Annotated[str, Field(max_length=64), AfterValidator(_check_public_key)]
Nonce = Annotated[str, Field(min_length=1, max_length=64)]
ClientToken = Annotated[str, Field(min_length=1, max_length=64)]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- real-time events ---

class LoginEvent(WireModel):
    user_id: PublicId = Field(alias="userId")


class JoinRoomEvent(WireModel):
    chat_id: PublicId = Field(alias="chatId")


class TypingEvent(WireModel):
    chat_id: PublicId = Field(alias="chatId")
    user_id: PublicId = Field(alias="userId")


class StopTypingEvent(TypingEvent):
    pass


class SendMessageEvent(WireModel):
    chat_id: PublicId = Field(alias="chatId")
    sender_id: PublicId = Field(alias="senderId")
    content: str = Field(min_length=1, max_length=65536)
    nonce: Optional[Nonce] = None
    type: Literal["text", "image", "audio"] = "text"
    media_url: Optional[str] = Field(None, alias="mediaUrl", max_length=500)
    client_token: Optional[ClientToken] = Field(None, alias="clientToken")


class MessageDeliveredEvent(WireModel):
    message_id: PublicId = Field(alias="messageId")
    user_id: PublicId = Field(alias="userId")


class MessageReadEvent(WireModel):
    message_id: Optional[PublicId] = Field(None, alias="messageId")
    user_id: PublicId = Field(alias="userId")
    chat_id: Optional[PublicId] = Field(None, alias="chatId")

    @model_validator(mode="after")
    def _needs_target(self):
        if not self.message_id and not self.chat_id:
            raise ValueError("messageId or chatId is required")
        return self


class AddReactionEvent(WireModel):
    message_id: PublicId = Field(alias="messageId")
    user_id: PublicId = Field(alias="userId")
    emoji: str = Field(min_length=1, max_length=32)


InboundEvent = Union[
    LoginEvent, JoinRoomEvent, TypingEvent, StopTypingEvent, SendMessageEvent,
    MessageDeliveredEvent, MessageReadEvent, AddReactionEvent,
]

EVENT_MODELS = {
    "login": LoginEvent,
    "join_room": JoinRoomEvent,
    "typing": TypingEvent,
    "stop_typing": StopTypingEvent,
    "send_message": SendMessageEvent,
    "message_delivered": MessageDeliveredEvent,
    "message_read": MessageReadEvent,
    "add_reaction": AddReactionEvent,
}

# events whose payload may be the bare id instead of an object
_BARE_ID_FIELDS = {"login": "userId", "join_room": "chatId"}


def _describe(error: pydantic.ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def parse(model, data):
    """Validate data into model, raising our ValidationError on failure."""
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(_describe(e)) from e


def parse_event(name, payload) -> InboundEvent:
    model = EVENT_MODELS.get(name)
    if model is None:
        raise ValidationError(f"Unknown event {name!r}")
    if name in _BARE_ID_FIELDS and isinstance(payload, str):
        payload = {_BARE_ID_FIELDS[name]: payload}
    return parse(model, payload)


def validate_public_id(value, what="id"):
    try:
        return _check_public_id(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {what} format")


# --- HTTP bodies ---

class RegisterRequest(WireModel):
    phone: str = Field(min_length=3, max_length=20)
    password: str = Field(min_length=6, max_length=128)
    first_name: str = Field(alias="firstName", min_length=1, max_length=100)
    last_name: str = Field(alias="lastName", min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=120, pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
    profile_pic: str = Field("", alias="profilePic", max_length=500)
    public_key: PublicKey = Field("", alias="publicKey")
    encrypted_private_key: Optional[str] = Field(None, alias="encryptedPrivateKey")
    iv: Optional[str] = Field(None, max_length=32)


class LoginRequest(WireModel):
    phone: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ProfileUpdateRequest(WireModel):
    first_name: Optional[str] = Field(None, alias="firstName", min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, alias="lastName", min_length=1, max_length=100)
    display_name: Optional[str] = Field(None, alias="displayName", max_length=200)
    bio: Optional[str] = Field(None, max_length=200)
    profile_pic: Optional[str] = Field(None, alias="profilePic", max_length=500)
    public_key: Optional[PublicKey] = Field(None, alias="publicKey")


class KeyBackupRequest(WireModel):
    public_key: PublicKey = Field(alias="publicKey", min_length=1)
    encrypted_private_key: str = Field(alias="encryptedPrivateKey", min_length=1)
    iv: str = Field(min_length=1, max_length=32)


class StartChatRequest(WireModel):
    target_phone: str = Field(alias="targetPhone", min_length=1, max_length=20)
