"""LeadZap – Gateway Message Schemas.

Request bodies of the relay endpoints.
"""

from enum import Enum

from pydantic import BaseModel, Field


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"
    VIDEO = "video"


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class SendAction(str, Enum):
    SEND = "send"
    TEST = "test"
    CHECK_TOKEN = "check_token"


class SendMessagePayload(BaseModel):
    """Body of ``POST /functions/whatsapp-cloud-send``."""

    contact_id: str | None = Field(default=None, description="Existing contact of the caller's company")
    phone: str | None = Field(default=None, description="Raw recipient number when no contact_id is given")
    content: str | None = Field(default=None, description="Text body; required for text messages")
    action: SendAction = Field(default=SendAction.SEND)
    message_type: MessageType = Field(default=MessageType.TEXT)
    media_url: str | None = Field(default=None, description="Public URL; required for every non-text type")
    media_filename: str | None = None
    media_caption: str | None = None
    audio_duration: float | None = Field(default=None, description="Recorder-measured duration in seconds")


class BridgeSendPayload(BaseModel):
    """Body of ``POST /functions/whatsapp-send`` (WhatsApp Web bridge)."""

    contact_id: str
    message: str
    message_type: str = "text"
