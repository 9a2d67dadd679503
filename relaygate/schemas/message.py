from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TextPart(_CamelModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(_CamelModel):
    url: str


class ImagePart(_CamelModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class MediaRef(_CamelModel):
    url: str | None = None
    name: str | None = None
    caption: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")


class DocumentPart(_CamelModel):
    type: Literal["document"] = "document"
    document: MediaRef


class VideoPart(_CamelModel):
    type: Literal["video"] = "video"
    video: MediaRef


class AudioPart(_CamelModel):
    type: Literal["audio"] = "audio"
    audio: MediaRef


ContentPart = Annotated[
    Union[TextPart, ImagePart, DocumentPart, VideoPart, AudioPart],
    Field(discriminator="type"),
]


class Attachment(_CamelModel):
    url: str
    content_type: str = Field(alias="contentType")
    name: str | None = None


class CanonicalMessage(_CamelModel):
    """Channel-agnostic chat message made of ordered typed parts."""

    id: str
    role: Literal["user", "assistant", "system"]
    content: str | list[ContentPart]
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    attachments: list[Attachment] = Field(
        default_factory=list, alias="experimental_attachments"
    )

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if isinstance(part, TextPart))

    def to_completion_payload(self) -> dict[str, Any]:
        """
        Wire form for the completion backend.

        Video and audio parts are rendered as text placeholders, the backend only
        understands text, image and document parts.
        """
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if isinstance(self.content, list):
            rendered: list[dict[str, Any]] = []
            for part, dumped in zip(self.content, payload["content"]):
                if isinstance(part, VideoPart):
                    caption = part.video.caption
                    rendered.append(
                        {"type": "text", "text": f"[Video: {caption}]" if caption else "[Video]"}
                    )
                elif isinstance(part, AudioPart):
                    rendered.append({"type": "text", "text": "[Audio message]"})
                else:
                    rendered.append(dumped)
            payload["content"] = rendered
        if not payload.get("experimental_attachments"):
            payload.pop("experimental_attachments", None)
        return payload


class OutboundImage(_CamelModel):
    url: str
    caption: str | None = None


class OutboundDocument(_CamelModel):
    url: str
    filename: str
    mimetype: str


class OutboundMessage(_CamelModel):
    """Message body accepted by the relay's send endpoint."""

    text: str | None = None
    image: OutboundImage | None = None
    document: OutboundDocument | None = None

    @model_validator(mode="after")
    def _require_content(self) -> "OutboundMessage":
        if not (self.text or self.image or self.document):
            raise ValueError("Outbound message needs text, image or document content")
        return self

    @property
    def is_text_only(self) -> bool:
        return bool(self.text) and self.image is None and self.document is None

    def to_payload(self) -> str | dict[str, Any]:
        """Text-only messages travel as a bare string."""
        if self.is_text_only:
            return self.text  # type: ignore[return-value]
        return self.model_dump(exclude_none=True)
