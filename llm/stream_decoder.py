from __future__ import annotations

import codecs
import json
import logging
from typing import Final

from llm.errors import DecodeWarning
from shared.models import JSONValue

logger = logging.getLogger("ChatRelay.StreamDecoder")

DATA_PREFIX: Final[str] = "data:"
DONE_SENTINEL: Final[str] = "[DONE]"
SSE_FIELDS: Final[frozenset[str]] = frozenset({"event", "id", "retry"})


def extract_stream_delta(data: dict[str, JSONValue]) -> str:
    choices_raw = data.get("choices")
    if isinstance(choices_raw, list) and choices_raw:
        first_choice = choices_raw[0]
        if not isinstance(first_choice, dict):
            return ""
        delta_raw = first_choice.get("delta")
        if not isinstance(delta_raw, dict):
            return ""
        return _content_text(delta_raw.get("content"))
    return _content_text(data.get("content"))


def _content_text(content_raw: JSONValue) -> str:
    if isinstance(content_raw, str):
        return content_raw
    if isinstance(content_raw, list):
        parts: list[str] = []
        for item in content_raw:
            if not isinstance(item, dict):
                continue
            text_raw = item.get("text")
            if isinstance(text_raw, str):
                parts.append(text_raw)
        return "".join(parts)
    return ""


class StreamDecoder:
    """Turns raw SSE body chunks into content deltas.

    Chunk boundaries may fall anywhere, including inside a multi-byte
    character or a ``data:`` line; the unfinished tail is buffered until the
    next ``feed``. A malformed line is recorded in ``warnings`` and skipped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.warnings: list[DecodeWarning] = []

    def feed(self, chunk: bytes) -> list[str]:
        if not chunk or self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._decode_lines([tail])

    def _decode_lines(self, lines: list[str]) -> list[str]:
        deltas: list[str] = []
        for raw_line in lines:
            if self.done:
                break
            delta = self._decode_line(raw_line.strip())
            if delta:
                deltas.append(delta)
        return deltas

    def _decode_line(self, line: str) -> str:
        if not line or line.startswith(":"):
            return ""
        payload = line
        if payload.startswith(DATA_PREFIX):
            payload = payload.removeprefix(DATA_PREFIX).strip()
        elif line.partition(":")[0].strip() in SSE_FIELDS:
            return ""
        if payload == DONE_SENTINEL:
            self.done = True
            return ""
        if not payload:
            return ""
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as exc:
            self._warn(line, f"invalid json ({exc.msg})")
            return ""
        if not isinstance(parsed, dict):
            self._warn(line, "frame is not an object")
            return ""
        return extract_stream_delta(parsed)

    def _warn(self, line: str, reason: str) -> None:
        warning = DecodeWarning(line, reason)
        self.warnings.append(warning)
        logger.warning("Skipping malformed stream frame: %s", warning)
