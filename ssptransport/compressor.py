"""zlib compression of transport payloads, with a fixed size ceiling."""

from __future__ import annotations

import functools
import zlib

BUFFER_SIZE = 2048 * 2048
"""Largest payload, compressed or not, that is accepted (bounds the terminal size)."""


class Compressor:
    """Compresses and decompresses byte strings with zlib."""

    def __init__(self, limit: int = BUFFER_SIZE) -> None:
        self.limit = limit

    def compress_str(self, data: bytes) -> bytes:
        """Return the zlib stream for ``data``; raise ValueError if it is too large."""
        result = zlib.compress(bytes(data))
        if len(result) > self.limit:
            raise ValueError("compressed payload exceeds buffer size")
        return result

    def uncompress_str(self, data: bytes) -> bytes:
        """Return the contents of a zlib stream; raise ValueError if bad or too large."""
        decompressor = zlib.decompressobj()
        try:
            result = decompressor.decompress(bytes(data), self.limit)
        except zlib.error as exc:
            raise ValueError(f"invalid compressed payload: {exc}") from exc
        if decompressor.unconsumed_tail:
            raise ValueError("uncompressed payload exceeds buffer size")
        if not decompressor.eof:
            raise ValueError("truncated compressed payload")
        return result


@functools.lru_cache(maxsize=None)
def get_compressor() -> Compressor:
    """Return the shared compressor, created on first use."""
    return Compressor()