"""Streaming tool-name rewrite for relay responses.

The relay prefixes tool names on the way out; the model answers with
the prefixed names, so the prefix has to come off again before the
client sees them. Responses are usually SSE streams, and the client
wants every chunk as soon as it arrives, so this works one chunk at a
time: decode (UTF-8, incrementally, so a multi-byte character split
across chunks survives), rewrite, re-encode, emit.

Matching is per chunk. A `"name": "mcp_..."` pair split across two
network chunks is passed through unchanged.
"""

import codecs
import re
from typing import AsyncIterable, AsyncIterator

TOOL_PREFIX = "mcp_"


def _name_pattern(prefix: str) -> re.Pattern:
    return re.compile(r'"name"\s*:\s*"' + re.escape(prefix) + r'([^"]+)"')


class ToolPrefixStripper:
    """Byte-chunk transformer: feed() one chunk in, get its rewrite out."""

    def __init__(self, prefix: str = TOOL_PREFIX):
        self.prefix = prefix
        self._pattern = _name_pattern(prefix)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _rewrite(self, text: str) -> bytes:
        return self._pattern.sub(r'"name": "\1"', text).encode("utf-8")

    def feed(self, chunk: bytes) -> bytes:
        return self._rewrite(self._decoder.decode(chunk))

    def flush(self) -> bytes:
        """Whatever the decoder was still holding (a truncated character)."""
        return self._rewrite(self._decoder.decode(b"", final=True))


def strip_tool_prefix_text(text: str, prefix: str = TOOL_PREFIX) -> str:
    return _name_pattern(prefix).sub(r'"name": "\1"', text)


async def strip_tool_prefix(
    chunks: AsyncIterable[bytes],
    prefix: str = TOOL_PREFIX,
) -> AsyncIterator[bytes]:
    """Pull-based rewrite: each chunk requested reads exactly one upstream chunk."""
    stripper = ToolPrefixStripper(prefix)
    async for chunk in chunks:
        yield stripper.feed(chunk)
    tail = stripper.flush()
    if tail:
        yield tail
