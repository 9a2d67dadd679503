"""Relay webhook payloads and their normalization into one inbound shape."""
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class WebhookEventType(str, Enum):
    MESSAGE = "message"
    STATUS = "status"
    QR = "qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class _RelayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class MessageKey(_RelayModel):
    remote_jid: str | None = Field(default=None, alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")
    id: str | None = None


class ExtendedText(_RelayModel):
    text: str | None = None


class MediaContent(_RelayModel):
    url: str | None = None
    caption: str | None = None
    mimetype: str | None = None
    file_name: str | None = Field(default=None, alias="fileName")
    title: str | None = None
    seconds: int | None = None


class MessageContent(_RelayModel):
    """Baileys-style message body. Only the recognised kinds are typed."""

    conversation: str | None = None
    extended_text_message: ExtendedText | None = Field(default=None, alias="extendedTextMessage")
    image_message: MediaContent | None = Field(default=None, alias="imageMessage")
    document_message: MediaContent | None = Field(default=None, alias="documentMessage")
    video_message: MediaContent | None = Field(default=None, alias="videoMessage")
    audio_message: MediaContent | None = Field(default=None, alias="audioMessage")

    @property
    def text(self) -> str | None:
        if self.conversation:
            return self.conversation
        if self.extended_text_message and self.extended_text_message.text:
            return self.extended_text_message.text
        return None


class WebhookEventData(_RelayModel):
    # flat message shape
    from_: str | None = Field(default=None, alias="from")
    to: str | None = None
    message_id: str | None = Field(default=None, alias="messageId")
    # keyed message shape
    key: MessageKey | None = None
    message: MessageContent | None = None
    message_timestamp: int | None = Field(default=None, alias="messageTimestamp")
    push_name: str | None = Field(default=None, alias="pushName")
    # status / connection events
    status: str | None = None
    error: str | None = None
    reason: str | None = None
    qr: str | None = None
    qr_code: str | None = Field(default=None, alias="qrCode")
    phone_number: str | None = Field(default=None, alias="phoneNumber")


class WebhookEnvelope(_RelayModel):
    """Envelope posted by the relay: {sessionId, event, data, timestamp}."""

    session_id: str = Field(alias="sessionId")
    event: str
    data: WebhookEventData = Field(default_factory=WebhookEventData)
    timestamp: datetime | None = None


class InboundMessage(BaseModel):
    """The single inbound message shape every downstream component sees."""

    session_id: str
    from_jid: str
    external_message_id: str
    content: MessageContent
    from_me: bool = False
    push_name: str | None = None
    timestamp: datetime

    @property
    def text(self) -> str | None:
        return self.content.text


def normalize_inbound_message(envelope: WebhookEnvelope) -> InboundMessage | None:
    """
    Collapse the flat and the `key`-nested payload variants into an InboundMessage.

    Returns None when the sender cannot be determined.
    """
    data = envelope.data
    key = data.key or MessageKey()

    from_jid = data.from_ or key.remote_jid
    if not from_jid:
        return None

    external_message_id = data.message_id or key.id or f"gen_{uuid.uuid4().hex}"

    if data.message_timestamp:
        timestamp = datetime.fromtimestamp(data.message_timestamp, tz=timezone.utc)
    elif envelope.timestamp:
        timestamp = envelope.timestamp
    else:
        timestamp = datetime.now(timezone.utc)

    return InboundMessage(
        session_id=envelope.session_id,
        from_jid=from_jid,
        external_message_id=external_message_id,
        content=data.message or MessageContent(),
        from_me=key.from_me,
        push_name=data.push_name,
        timestamp=timestamp,
    )
