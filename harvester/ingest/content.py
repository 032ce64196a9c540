"""Content fingerprinting and bounded gzip handling."""

import hashlib
import zlib

GZIP_MAGIC = b"\x1f\x8b"
_CHUNK = 64 * 1024


class DecompressedTooLargeError(ValueError):
    """Decompressed output would exceed the allowed size."""

    def __init__(self, limit: int):
        super().__init__(f"Decompressed content exceeds {limit} bytes")
        self.limit = limit


def compute_content_hash(content: str | bytes) -> str:
    """SHA-256 hex digest of the assembled content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def is_gzip(url: str, data: bytes) -> bool:
    """Gzip by URL suffix or magic bytes, regardless of declared content type."""
    path = url.split("?", 1)[0].lower()
    return path.endswith(".gz") or data[:2] == GZIP_MAGIC


def gunzip_bounded(data: bytes, max_bytes: int) -> bytes:
    """
    Incrementally decompress gzip data, stopping once output exceeds max_bytes.

    Raises:
        DecompressedTooLargeError: If the output would exceed max_bytes
        zlib.error: If the data is not valid gzip
    """
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    out = bytearray()
    view = memoryview(data)

    for offset in range(0, len(data), _CHUNK):
        # max_length bounds each step so a decompression bomb never expands fully
        chunk = decompressor.decompress(view[offset:offset + _CHUNK], max_bytes + 1 - len(out))
        out.extend(chunk)
        if len(out) > max_bytes:
            raise DecompressedTooLargeError(max_bytes)
        while decompressor.unconsumed_tail:
            chunk = decompressor.decompress(decompressor.unconsumed_tail, max_bytes + 1 - len(out))
            out.extend(chunk)
            if len(out) > max_bytes:
                raise DecompressedTooLargeError(max_bytes)
        if decompressor.eof:
            break

    out.extend(decompressor.flush())
    if len(out) > max_bytes:
        raise DecompressedTooLargeError(max_bytes)
    return bytes(out)


def decode_body(data: bytes) -> str:
    """Decode bytes as UTF-8, replacing invalid sequences."""
    return data.decode("utf-8", errors="replace")
