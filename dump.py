"""
Pretty printer for decoded token parts.

JSON documents are re-indented, plain text is written as is and anything
else (typically a binary signature) is written as a hex dump, so that any
byte buffer can be displayed without crashing.
"""
from __future__ import annotations

import json
from typing import Any, TextIO

HEX_LINE_BYTES = 32
_WHITESPACE = "\t\n\r"


def _parse_json(data: bytes) -> Any:
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


def _printable_text(data: bytes) -> str | None:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if all(ch.isprintable() or ch in _WHITESPACE for ch in text):
        return text
    return None


def hex_lines(data: bytes, width: int = HEX_LINE_BYTES) -> list[str]:
    return [data[i:i + width].hex() for i in range(0, len(data), width)]


def pretty(stream: TextIO, data: bytes) -> None:
    """
    Write a human readable rendering of data to stream.

    Args:
        stream: Text stream to write to
        data: Raw bytes, JSON or not
    """
    if not data:
        return

    # a literal 'null' also parses to None
    parsed = _parse_json(data)
    if parsed is not None or data.strip() == b"null":
        stream.write(json.dumps(parsed, indent=2, ensure_ascii=False))
        stream.write("\n")
        return

    text = _printable_text(data)
    if text is not None:
        stream.write(text.rstrip("\n"))
        stream.write("\n")
        return

    for line in hex_lines(data):
        stream.write(line)
        stream.write("\n")
