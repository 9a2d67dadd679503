"""Mapping between relay messages and canonical chat messages, plus text shaping."""

import re
import uuid
from collections.abc import Sequence

from relaygate.schemas.message import (
    Attachment,
    AudioPart,
    CanonicalMessage,
    ContentPart,
    DocumentPart,
    ImagePart,
    ImageUrl,
    MediaRef,
    OutboundMessage,
    TextPart,
    VideoPart,
)
from relaygate.schemas.webhook import InboundMessage, MessageContent

MAX_MESSAGE_LENGTH = 4096
RESET_COMMANDS = frozenset({"reset", "new chat", "/reset"})
JID_SUFFIX = "@s.whatsapp.net"

_CANONICAL_NAMESPACE = uuid.UUID("6f1c9a52-4a0e-4c36-9a51-2b8f3d0c7e11")


# Addresses


def extract_phone_number(jid: str) -> str:
    """'15551234567:3@s.whatsapp.net' -> '15551234567'."""
    local = jid.split("@", 1)[0]
    return local.split(":", 1)[0]


def format_phone_number(phone: str) -> str:
    """Turn a phone number into a relay address, leaving addresses untouched."""
    if "@" in phone:
        return phone
    digits = re.sub(r"\D", "", phone)
    return f"{digits}{JID_SUFFIX}"


def is_reset_command(text: str | None) -> bool:
    return bool(text) and text.strip().lower() in RESET_COMMANDS


# Inbound


def extract_media(content: MessageContent) -> list[Attachment]:
    """Media that arrived with a reachable URL."""
    attachments = []
    for media, default_type in (
        (content.image_message, "image/jpeg"),
        (content.document_message, "application/octet-stream"),
        (content.video_message, "video/mp4"),
        (content.audio_message, "audio/ogg"),
    ):
        if media is not None and media.url:
            attachments.append(
                Attachment(
                    url=media.url,
                    content_type=media.mimetype or default_type,
                    name=media.file_name or media.title,
                )
            )
    return attachments


def to_canonical(message: InboundMessage, user_id: str) -> CanonicalMessage | None:
    """
    Build the canonical user message for an inbound relay message.

    Returns None when nothing recognisable was found, the caller drops the event.
    """
    content = message.content
    text = content.text
    parts: list[ContentPart] = []

    if text:
        parts.append(TextPart(text=text))

    image = content.image_message
    if image is not None:
        if image.url:
            parts.append(ImagePart(image_url=ImageUrl(url=image.url)))
        if image.caption and not text:
            parts.append(TextPart(text=image.caption))
        elif not image.url and not text:
            parts.append(TextPart(text="[Image]"))

    document = content.document_message
    if document is not None:
        parts.append(
            DocumentPart(
                document=MediaRef(
                    url=document.url,
                    name=document.file_name or document.title or "document",
                    caption=document.caption,
                    mime_type=document.mimetype,
                )
            )
        )
        if document.caption and not text:
            parts.append(TextPart(text=document.caption))

    video = content.video_message
    if video is not None:
        parts.append(
            VideoPart(video=MediaRef(url=video.url, caption=video.caption, mime_type=video.mimetype))
        )

    audio = content.audio_message
    if audio is not None:
        parts.append(AudioPart(audio=MediaRef(url=audio.url, mime_type=audio.mimetype)))

    if not parts:
        return None

    canonical_content: str | list[ContentPart]
    if len(parts) == 1 and isinstance(parts[0], TextPart):
        canonical_content = parts[0].text
    else:
        canonical_content = parts

    return CanonicalMessage(
        id=str(uuid.uuid5(_CANONICAL_NAMESPACE, f"{user_id}:{message.external_message_id}")),
        role="user",
        content=canonical_content,
        created_at=message.timestamp,
        attachments=extract_media(content),
    )


# Outbound


def to_outbound_message(content: str | Sequence[ContentPart]) -> OutboundMessage:
    """Collapse canonical content into one relay message body."""
    if isinstance(content, str):
        return OutboundMessage(text=content)

    texts = [part.text for part in content if isinstance(part, TextPart)]
    text = "\n".join(t for t in texts if t) or None

    for part in content:
        if isinstance(part, ImagePart):
            return OutboundMessage(image={"url": part.image_url.url, "caption": text})
        if isinstance(part, DocumentPart) and part.document.url:
            return OutboundMessage(
                text=text,
                document={
                    "url": part.document.url,
                    "filename": part.document.name or "document",
                    "mimetype": part.document.mime_type or "application/octet-stream",
                },
            )
    return OutboundMessage(text=text)


_CODE_FENCE = re.compile(r"```([\s\S]*?)```")
_FENCE_LANGUAGE = re.compile(r"[A-Za-z+#-]*")
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_IMAGE = re.compile(r"!\[([^\]]*)\]\(([^)\s]+)\)")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
_HEADING = re.compile(r"^#{1,6}[ \t]+(.+?)[ \t]*#*[ \t]*$", re.MULTILINE)
_BOLD = re.compile(r"\*\*(?=\S)(.+?)(?<=\S)\*\*")
_UNDERLINE = re.compile(r"(?<!\w)__(?=\S)(.+?)(?<=\S)__(?!\w)")
_STRIKE = re.compile(r"~~(?=\S)(.+?)(?<=\S)~~")
_ITALIC_STAR = re.compile(r"(?<![*\w])\*(?=\S)([^*\n]+?)(?<=\S)\*(?![*\w])")
_ITALIC_UNDERSCORE = re.compile(r"(?<![_\w])_(?=\S)([^_\n]+?)(?<=\S)_(?![_\w])")
_BLOCKQUOTE = re.compile(r"^[ \t]*>[ \t]?", re.MULTILINE)
_TABLE_RULE = re.compile(
    r"^[ \t]*\|?[ \t]*:?-{3,}:?[ \t]*(?:\|[ \t]*:?-{3,}:?[ \t]*)*\|?[ \t]*$", re.MULTILINE
)
_BULLET = re.compile(r"^([ \t]*)[•·▪▫◦‣⁃*+][ \t]+", re.MULTILINE)
_SPACES = re.compile(r"[ \t]+")
_TRAILING_SPACES = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")


def _link_text(match: re.Match) -> str:
    label, target = match.group(1), match.group(2)
    if not label:
        return target
    if label == target:
        return label
    return f"{label} ({target})"


def _unfence(match: re.Match) -> str:
    body = match.group(1)
    first, newline, rest = body.partition("\n")
    if newline and _FENCE_LANGUAGE.fullmatch(first.strip()):
        body = rest
    return "\n" + body.strip("\n") + "\n"


def format_plain_text(markdown_text: str) -> str:
    """
    Strip markdown for a plain-text channel.

    Every rule anchors on markup characters only, so digit runs, currency
    amounts and percentages pass through byte for byte. Link targets are
    kept in parentheses after the link text.
    """
    text = markdown_text.replace("\r\n", "\n")
    text = _CODE_FENCE.sub(_unfence, text)
    text = _INLINE_CODE.sub(r"\1", text)
    text = _IMAGE.sub(_link_text, text)
    text = _LINK.sub(_link_text, text)
    text = _HEADING.sub(r"\1", text)
    text = _BOLD.sub(r"\1", text)
    text = _UNDERLINE.sub(r"\1", text)
    text = _STRIKE.sub(r"\1", text)
    text = _ITALIC_STAR.sub(r"\1", text)
    text = _ITALIC_UNDERSCORE.sub(r"\1", text)
    text = _BLOCKQUOTE.sub("", text)
    text = _TABLE_RULE.sub("", text)
    text = text.replace("|", " ")
    text = _BULLET.sub(r"\1- ", text)
    text = _SPACES.sub(" ", text)
    text = _TRAILING_SPACES.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


def _wrap_line(line: str, max_length: int) -> list[str]:
    """A line longer than max_length is the one case that has to be cut."""
    if len(line) <= max_length:
        return [line]
    pieces = []
    while len(line) > max_length:
        cut = line.rfind(" ", 0, max_length + 1)
        if cut <= 0:
            cut = max_length
        pieces.append(line[:cut])
        line = line[cut:].lstrip(" ")
    if line:
        pieces.append(line)
    return pieces


def split_long_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """
    Split text into parts of at most max_length characters on line boundaries.

    Joining the parts with newlines gives back the input, as long as no single
    line exceeds max_length.
    """
    if len(text) <= max_length:
        return [text]

    parts: list[str] = []
    current: str | None = None
    for line in text.split("\n"):
        for piece in _wrap_line(line, max_length):
            if current is None:
                current = piece
            elif len(current) + 1 + len(piece) <= max_length:
                current = f"{current}\n{piece}"
            else:
                parts.append(current)
                current = piece
    if current is not None:
        parts.append(current)
    return parts
