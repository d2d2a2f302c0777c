# src/tracelink/delivery/compression.py
"""Opportunistic gzip compression of batch bodies.

Compression never fails a delivery: if gzip raises, the body goes out
uncompressed.
"""

from __future__ import annotations

import gzip

import structlog

logger = structlog.get_logger(__name__)

GZIP_ENCODING = "gzip"

_COMPRESSION_LEVEL = 6


def maybe_compress(body: bytes, *, enabled: bool, threshold: int) -> tuple[bytes, str | None]:
    """Compress ``body`` when enabled and larger than ``threshold`` bytes.

    Returns:
        (body_to_send, content_encoding). content_encoding is None when the
        body is sent as-is.
    """
    if not enabled or len(body) <= threshold:
        return body, None
    try:
        compressed = gzip.compress(body, compresslevel=_COMPRESSION_LEVEL)
    except Exception as e:
        logger.warning("Compression failed, sending uncompressed", size=len(body), error=str(e))
        return body, None
    return compressed, GZIP_ENCODING
