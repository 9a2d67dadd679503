"""Unit tests for streamed completion reassembly."""

import json

import pytest

from relaygate.services.stream_reassembler import (
    FrameKind,
    StreamReassembler,
    classify_frame,
    reassemble,
)


def run(*chunks) -> StreamReassembler:
    reassembler = StreamReassembler()
    for chunk in chunks:
        reassembler.feed(chunk)
    reassembler.finish()
    return reassembler


async def agen(*chunks):
    for chunk in chunks:
        yield chunk


class TestClassifyFrame:
    @pytest.mark.parametrize(
        "line, kind",
        [
            ('0:"hi"', FrameKind.TAGGED),
            ('data: {"a": 1}', FrameKind.SSE_DATA),
            ("data: [DONE]", FrameKind.SSE_DONE),
            ('"hi"', FrameKind.BARE_JSON),
            ("", FrameKind.SKIP),
            (": keep-alive", FrameKind.SKIP),
            ("event: message", FrameKind.SKIP),
            ("id: 4", FrameKind.SKIP),
        ],
    )
    def test_kinds(self, line, kind):
        assert classify_frame(line)[0] is kind


class TestStreamReassembler:
    def test_tagged_frames(self):
        reassembler = run(b'0:"Hello"\n0:" world"\n')

        assert reassembler.text == "Hello world"
        assert reassembler.skipped == 0

    def test_feed_returns_completed_deltas(self):
        reassembler = StreamReassembler()

        assert reassembler.feed(b'0:"Hel') == []
        assert reassembler.feed(b'lo"\n0:"!"\n') == ["Hello", "!"]

    def test_every_split_point(self):
        data = '0:"Hello"\n0:" wörld 👋"\ndata: {"type": "text-delta", "delta": "!"}\n'.encode()
        for i in range(len(data) + 1):
            reassembler = run(data[:i], data[i:])
            assert reassembler.text == "Hello wörld 👋!", i

    def test_byte_by_byte_multibyte(self):
        data = '0:"olá, 世界 🎉"\n'.encode()

        reassembler = run(*(data[i : i + 1] for i in range(len(data))))

        assert reassembler.text == "olá, 世界 🎉"

    def test_escaped_newlines_in_literal(self):
        reassembler = run(b'0:"line one\\nline two"\n')

        assert reassembler.text == "line one\nline two"

    def test_object_payload(self):
        assert run(b'0:{"textDelta": "x"}\n').text == "x"

    def test_string_encoding_an_object(self):
        payload = json.dumps(json.dumps({"textDelta": "nested"}))

        assert run(f"0:{payload}\n".encode()).text == "nested"

    def test_sse_chat_completion_chunks(self):
        chunk = {"choices": [{"delta": {"content": "Hi"}}]}
        reassembler = run(f"data: {json.dumps(chunk)}\n\n".encode(), b"data: [DONE]\n")

        assert reassembler.text == "Hi"
        assert reassembler.done

    def test_nothing_after_done(self):
        reassembler = StreamReassembler()
        reassembler.feed(b'data: [DONE]\n0:"late"\n')

        assert reassembler.feed(b'0:"later"\n') == []
        assert reassembler.finish() == ""

    def test_bare_json_string(self):
        assert run(b'"plain"\n').text == "plain"

    def test_error_frames_skipped(self):
        reassembler = run(b'0:"ok"\n3:"rate limited"\n')

        assert reassembler.text == "ok"
        assert reassembler.skipped == 1

    def test_garbage_skipped(self):
        reassembler = run(b"not json at all\n0:oops\n", b'0:"fine"\n', b"data: {broken\n")

        assert reassembler.text == "fine"
        assert reassembler.skipped == 3

    def test_control_frames_ignored(self):
        reassembler = run(b": ping\nevent: delta\nid: 1\nretry: 100\n0:\"x\"\n")

        assert reassembler.text == "x"
        assert reassembler.skipped == 0

    def test_crlf_line_endings(self):
        assert run(b'0:"a"\r\n0:"b"\r\n').text == "ab"

    def test_unterminated_last_line(self):
        assert run(b'0:"a"\n0:"b"').text == "ab"


@pytest.mark.asyncio
class TestReassemble:
    async def test_strips_result(self):
        assert await reassemble(agen(b'0:"  hi "\n', b'0:"\\n"\n')) == "hi"

    async def test_stops_at_done(self):
        consumed = []

        async def chunks():
            for chunk in (b'data: {"type": "text-delta", "delta": "a"}\n', b"data: [DONE]\n", b"x"):
                consumed.append(chunk)
                yield chunk

        assert await reassemble(chunks()) == "a"
        assert len(consumed) == 2

    async def test_empty_stream(self):
        assert await reassemble(agen()) == ""

    async def test_text_chunks(self):
        assert await reassemble(agen('0:"str', 'ing"\n')) == "string"
