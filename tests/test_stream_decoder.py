from __future__ import annotations

from llm.stream_decoder import StreamDecoder, extract_stream_delta
from tests.fakes import DONE_FRAME, sse_frame


def _decode_all(chunks: list[bytes]) -> tuple[str, StreamDecoder]:
    decoder = StreamDecoder()
    parts: list[str] = []
    for chunk in chunks:
        parts.extend(decoder.feed(chunk))
    parts.extend(decoder.flush())
    return "".join(parts), decoder


def test_decoder_yields_deltas_until_done() -> None:
    body = sse_frame("Hi") + sse_frame(" there") + DONE_FRAME + sse_frame("ignored")
    text, decoder = _decode_all([body])
    assert text == "Hi there"
    assert decoder.done is True
    assert decoder.warnings == []


def test_decoder_is_invariant_to_chunk_boundaries() -> None:
    body = sse_frame("Привет, ") + sse_frame("мир 👋") + DONE_FRAME
    whole, _ = _decode_all([body])
    one_byte, _ = _decode_all([body[i : i + 1] for i in range(len(body))])
    three_bytes, _ = _decode_all([body[i : i + 3] for i in range(0, len(body), 3)])
    assert whole == "Привет, мир 👋"
    assert one_byte == whole
    assert three_bytes == whole


def test_decoder_skips_malformed_frame_and_continues() -> None:
    body = sse_frame("a") + b"data: {not json}\n\n" + sse_frame("b") + DONE_FRAME
    text, decoder = _decode_all([body])
    assert text == "ab"
    assert len(decoder.warnings) == 1
    assert "invalid json" in decoder.warnings[0].reason


def test_decoder_ignores_comments_and_blank_lines() -> None:
    body = b": keep-alive\n\n\r\n" + sse_frame("x") + b"data:\n\n"
    text, decoder = _decode_all([body])
    assert text == "x"
    assert decoder.warnings == []


def test_decoder_skips_sse_field_lines() -> None:
    body = b"event: message\nid: 1\nretry: 3000\ndata: {\"content\":\"a\"}\n\n" + DONE_FRAME
    text, decoder = _decode_all([body])
    assert text == "a"
    assert decoder.warnings == []


def test_decoder_flushes_unterminated_last_line() -> None:
    body = sse_frame("a") + b'data: {"choices":[{"delta":{"content":"z"}}]}'
    text, decoder = _decode_all([body])
    assert text == "az"
    assert decoder.done is False


def test_decoder_stops_feeding_after_done() -> None:
    decoder = StreamDecoder()
    assert decoder.feed(DONE_FRAME) == []
    assert decoder.feed(sse_frame("late")) == []
    assert decoder.flush() == []


def test_extract_stream_delta_variants() -> None:
    assert extract_stream_delta({"choices": [{"delta": {"content": "x"}}]}) == "x"
    parts = {"choices": [{"delta": {"content": [{"text": "a"}, {"text": "b"}, 3]}}]}
    assert extract_stream_delta(parts) == "ab"
    assert extract_stream_delta({"choices": [{"delta": {"role": "assistant"}}]}) == ""
    assert extract_stream_delta({"content": "top"}) == "top"
    assert extract_stream_delta({"choices": ["bad"]}) == ""
