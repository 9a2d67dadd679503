"""Unit tests for message conversion and text shaping."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from relaygate.schemas.message import (
    AudioPart,
    CanonicalMessage,
    DocumentPart,
    ImagePart,
    ImageUrl,
    MediaRef,
    TextPart,
    VideoPart,
)
from relaygate.schemas.webhook import InboundMessage, MessageContent
from relaygate.services.message_converter import (
    MAX_MESSAGE_LENGTH,
    extract_media,
    extract_phone_number,
    format_phone_number,
    format_plain_text,
    is_reset_command,
    split_long_message,
    to_canonical,
    to_outbound_message,
)


def inbound(content: dict, message_id: str = "msg-1") -> InboundMessage:
    return InboundMessage(
        session_id="sess-1",
        from_jid="15551234567@s.whatsapp.net",
        external_message_id=message_id,
        content=MessageContent.model_validate(content),
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class TestAddresses:
    def test_extract_phone_number(self):
        assert extract_phone_number("15551234567:3@s.whatsapp.net") == "15551234567"
        assert extract_phone_number("15551234567@s.whatsapp.net") == "15551234567"
        assert extract_phone_number("15551234567") == "15551234567"

    def test_format_phone_number(self):
        assert format_phone_number("+1 (555) 123-4567") == "15551234567@s.whatsapp.net"

    def test_format_phone_number_keeps_addresses(self):
        assert format_phone_number("12345@g.us") == "12345@g.us"

    @pytest.mark.parametrize("text", ["reset", " Reset ", "NEW CHAT", "/reset"])
    def test_reset_commands(self, text):
        assert is_reset_command(text)

    @pytest.mark.parametrize("text", [None, "", "resets", "please reset"])
    def test_not_reset_commands(self, text):
        assert not is_reset_command(text)


class TestFormatPlainText:
    def test_strips_emphasis(self):
        assert format_plain_text("**bold** and *italic* and ~~gone~~") == "bold and italic and gone"

    def test_strips_headings(self):
        assert format_plain_text("# Title\n\nSome text") == "Title\n\nSome text"

    def test_links_keep_their_target(self):
        assert format_plain_text("See [docs](https://x.io) now") == "See docs (https://x.io) now"

    def test_code_fences_lose_language_tag(self):
        assert format_plain_text("Run:\n```python\nprint(1)\n```") == "Run:\n\nprint(1)"

    def test_inline_code(self):
        assert format_plain_text("use `pip install` here") == "use pip install here"

    def test_bullets_normalized(self):
        assert format_plain_text("- item\n* other\n• third") == "- item\n- other\n- third"

    def test_blockquote(self):
        assert format_plain_text("> quoted") == "quoted"

    def test_numbers_pass_through(self):
        text = "Total: $1,234.56 (15% off), call 5551234567 or 0.0001"
        assert format_plain_text(text) == text

    def test_snake_case_untouched(self):
        assert format_plain_text("set snake_case_name = 2 * 3") == "set snake_case_name = 2 * 3"

    def test_table_rules_removed(self):
        result = format_plain_text("| a | b |\n|---|---|\n| 1 | 2 |")
        assert "|" not in result
        assert "---" not in result

    def test_blank_runs_collapsed(self):
        assert format_plain_text("one\n\n\n\ntwo") == "one\n\ntwo"


class TestSplitLongMessage:
    def test_short_text_is_one_part(self):
        assert split_long_message("hello") == ["hello"]

    def test_parts_rejoin_to_input(self):
        text = "\n".join(["x" * 10] * 10)

        parts = split_long_message(text, max_length=25)

        assert len(parts) == 5
        assert all(len(part) <= 25 for part in parts)
        assert "\n".join(parts) == text

    def test_long_line_wrapped_on_spaces(self):
        assert split_long_message("aaaa bbbb cccc", max_length=9) == ["aaaa bbbb", "cccc"]

    def test_unbroken_line_cut_hard(self):
        assert split_long_message("x" * 20, max_length=8) == ["x" * 8, "x" * 8, "x" * 4]

    def test_default_limit(self):
        line = "y" * 99
        text = "\n".join([line] * 100)

        parts = split_long_message(text)

        assert all(len(part) <= MAX_MESSAGE_LENGTH for part in parts)
        assert "\n".join(parts) == text


class TestToCanonical:
    def test_plain_text(self):
        message = to_canonical(inbound({"conversation": "hi there"}), "user-1")

        assert message.role == "user"
        assert message.content == "hi there"
        assert message.text == "hi there"
        assert message.attachments == []

    def test_extended_text(self):
        message = to_canonical(inbound({"extendedTextMessage": {"text": "quoted reply"}}), "u")

        assert message.content == "quoted reply"

    def test_id_is_deterministic(self):
        first = to_canonical(inbound({"conversation": "a"}, "m-1"), "user-1")
        again = to_canonical(inbound({"conversation": "b"}, "m-1"), "user-1")
        other = to_canonical(inbound({"conversation": "a"}, "m-2"), "user-1")

        assert first.id == again.id
        assert first.id != other.id

    def test_image_with_caption(self):
        message = to_canonical(
            inbound({"imageMessage": {"url": "https://cdn/x.jpg", "caption": "look"}}), "u"
        )

        assert isinstance(message.content, list)
        assert isinstance(message.content[0], ImagePart)
        assert message.content[0].image_url.url == "https://cdn/x.jpg"
        assert message.content[1] == TextPart(text="look")
        assert message.attachments[0].content_type == "image/jpeg"

    def test_image_without_url_becomes_placeholder(self):
        message = to_canonical(inbound({"imageMessage": {}}), "u")

        assert message.content == "[Image]"

    def test_document(self):
        message = to_canonical(
            inbound(
                {
                    "documentMessage": {
                        "url": "https://cdn/r.pdf",
                        "fileName": "r.pdf",
                        "mimetype": "application/pdf",
                    }
                }
            ),
            "u",
        )

        part = message.content[0]
        assert isinstance(part, DocumentPart)
        assert part.document.name == "r.pdf"
        assert part.document.mime_type == "application/pdf"

    def test_audio_and_video(self):
        message = to_canonical(
            inbound({"audioMessage": {"url": "https://cdn/a.ogg"}, "videoMessage": {"caption": "c"}}),
            "u",
        )

        kinds = {type(part) for part in message.content}
        assert kinds == {AudioPart, VideoPart}

    def test_unrecognized_content(self):
        assert to_canonical(inbound({"stickerMessage": {"url": "x"}}), "u") is None

    def test_extract_media_skips_missing_urls(self):
        content = MessageContent.model_validate(
            {"documentMessage": {"url": "https://cdn/f"}, "videoMessage": {"caption": "no url"}}
        )

        attachments = extract_media(content)

        assert len(attachments) == 1
        assert attachments[0].content_type == "application/octet-stream"


class TestCompletionPayload:
    def test_media_placeholders(self):
        message = CanonicalMessage(
            id="m",
            role="user",
            content=[
                TextPart(text="hi"),
                VideoPart(video=MediaRef(caption="fun")),
                AudioPart(audio=MediaRef(url="https://cdn/a.ogg")),
            ],
        )

        payload = message.to_completion_payload()

        assert payload["content"] == [
            {"type": "text", "text": "hi"},
            {"type": "text", "text": "[Video: fun]"},
            {"type": "text", "text": "[Audio message]"},
        ]
        assert "createdAt" in payload
        assert "experimental_attachments" not in payload


class TestToOutboundMessage:
    def test_text(self):
        message = to_outbound_message("hello")

        assert message.is_text_only
        assert message.to_payload() == "hello"

    def test_image_takes_text_as_caption(self):
        message = to_outbound_message(
            [TextPart(text="caption"), ImagePart(image_url=ImageUrl(url="https://cdn/i.png"))]
        )

        assert message.to_payload() == {"image": {"url": "https://cdn/i.png", "caption": "caption"}}

    def test_document(self):
        message = to_outbound_message(
            [DocumentPart(document=MediaRef(url="https://cdn/f.pdf", name="f.pdf"))]
        )

        assert message.document.filename == "f.pdf"
        assert message.document.mimetype == "application/octet-stream"

    def test_empty_content_rejected(self):
        with pytest.raises(ValidationError):
            to_outbound_message([])
