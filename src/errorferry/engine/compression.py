"""Conditional gzip compression of outbound payloads.

A payload is compressed only when compression is enabled, the payload is
at least ``threshold_bytes`` long, and the byte-diversity estimate predicts
a worthwhile reduction. The result is kept only if the encoded form is
actually smaller than the input; otherwise the original bytes go out
unchanged.

Compressed payloads travel as base64 text inside a JSON envelope
(``{"compressed": true, "encoding": "gzip+base64", "payload": ...}``) so
the request body is always JSON.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
from collections.abc import Callable
from typing import Any

import structlog

from errorferry.contracts.results import CompressionResult
from errorferry.core.config import CompressionSettings

logger = structlog.get_logger(__name__)

ENCODING_GZIP_BASE64 = "gzip+base64"
PAYLOAD_ENCODING_HEADER = "X-Payload-Encoding"

# Text/JSON typically compresses to 20-40% of its size
_BASE_RATIO = 0.3

Codec = Callable[[bytes, int], bytes]


def _gzip_codec(data: bytes, level: int) -> bytes:
    return gzip.compress(data, compresslevel=level)


def estimate_ratio(data: bytes) -> float:
    """Predict compressed/original size from byte diversity.

    More repetitive input (fewer distinct bytes relative to its length)
    compresses better. Clamped to [0.1, 1.0]; empty input estimates 1.0.
    """
    if not data:
        return 1.0
    repetition = 1 - len(set(data)) / len(data)
    return min(1.0, max(0.1, _BASE_RATIO * (1 - repetition * 0.5)))


class Compressor:
    """Compresses payloads when it pays off and reverses its own output.

    Example:
        compressor = Compressor(settings.compression)
        result = compressor.compress_json(payload)
        body = compressor.envelope(result, payload)
    """

    def __init__(self, settings: CompressionSettings, *, codec: Codec | None = _gzip_codec) -> None:
        """Initialize compressor.

        Args:
            settings: Compression settings
            codec: Compression function; None models a runtime without gzip
                support, in which case every payload goes out uncompressed
        """
        self._settings = settings
        self._codec = codec

    @property
    def available(self) -> bool:
        return self._codec is not None

    def should_compress(self, data: bytes) -> tuple[bool, dict[str, Any]]:
        """Decide whether data is worth compressing, with the reasons."""
        s = self._settings
        ratio = estimate_ratio(data)
        reasons: dict[str, Any] = {
            "enabled": s.enabled,
            "above_threshold": len(data) >= s.threshold_bytes,
            "available": self.available,
            "worth_compressing": ratio < 1.0 - s.min_estimated_reduction,
            "size": len(data),
            "threshold": s.threshold_bytes,
            "estimated_ratio": ratio,
        }
        should = all(reasons[k] for k in ("enabled", "above_threshold", "available", "worth_compressing"))
        return should, reasons

    @staticmethod
    def _uncompressed(data: bytes, reason: str) -> CompressionResult:
        return CompressionResult(
            payload=data,
            compressed=False,
            original_size=len(data),
            compressed_size=len(data),
            ratio=1.0,
            reason=reason,
        )

    def compress(self, data: bytes) -> CompressionResult:
        """Compress data if conditions are met; never raises."""
        should, reasons = self.should_compress(data)
        if not should:
            if not reasons["enabled"]:
                return self._uncompressed(data, "compression disabled")
            if not reasons["above_threshold"]:
                return self._uncompressed(data, "below threshold")
            if not reasons["available"]:
                return self._uncompressed(data, "gzip unavailable")
            return self._uncompressed(data, "estimated reduction too small")

        assert self._codec is not None
        try:
            encoded = base64.b64encode(self._codec(data, self._settings.level))
        except Exception as e:
            logger.warning("Compression failed, sending uncompressed", error=str(e), size=len(data))
            return self._uncompressed(data, f"compression failed: {e}")

        if len(encoded) >= len(data):
            return self._uncompressed(data, "compression did not reduce size")

        return CompressionResult(
            payload=encoded,
            compressed=True,
            original_size=len(data),
            compressed_size=len(encoded),
            ratio=len(encoded) / len(data),
            encoding=ENCODING_GZIP_BASE64,
        )

    def decompress(self, payload: bytes, encoding: str | None = ENCODING_GZIP_BASE64) -> bytes:
        """Reverse compress().

        Raises:
            ValueError: If encoding is unknown or payload is corrupt.
        """
        if encoding is None:
            return payload
        if encoding != ENCODING_GZIP_BASE64:
            raise ValueError(f"Unknown payload encoding: {encoding!r}")
        try:
            return gzip.decompress(base64.b64decode(payload, validate=True))
        except (binascii.Error, OSError, EOFError) as e:
            raise ValueError(f"Corrupt {encoding} payload: {e}") from e

    def compress_json(self, obj: Any) -> CompressionResult:
        return self.compress(json.dumps(obj, default=str).encode("utf-8"))

    def envelope(self, result: CompressionResult, original: dict[str, Any]) -> dict[str, Any]:
        """Return the JSON body to send for a compression result."""
        if not result.compressed:
            return original
        return {
            "compressed": True,
            "encoding": result.encoding,
            "payload": result.payload.decode("ascii"),
            "original_size": result.original_size,
        }

    def decode_envelope(self, body: dict[str, Any]) -> dict[str, Any]:
        """Inverse of envelope(): recover the original JSON object."""
        if body.get("compressed") is not True:
            return body
        raw = self.decompress(str(body["payload"]).encode("ascii"), body.get("encoding"))
        decoded: dict[str, Any] = json.loads(raw)
        return decoded

    @staticmethod
    def headers(compressed: bool) -> dict[str, str]:
        if not compressed:
            return {}
        return {PAYLOAD_ENCODING_HEADER: ENCODING_GZIP_BASE64}
