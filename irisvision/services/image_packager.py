"""Normalize captured photos into a transport-safe JPEG payload.

Sizes are measured on the base64 wire form, which is what the analysis
request body carries.
"""
from __future__ import annotations

import base64
import hashlib
import io
import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from irisvision.config import MIB, Settings
from irisvision.errors import PayloadTooLarge

logger = logging.getLogger(__name__)

RawImage = Union[bytes, bytearray, str, "os.PathLike[str]", BinaryIO]

# Fixed downscale applied by the second pass when lower quality is not enough
SECOND_PASS_SCALE = 0.5


def wire_size(size: int) -> int:
    """Length of the base64 encoding of ``size`` bytes."""
    return ((size + 2) // 3) * 4


@dataclass(frozen=True)
class EncodedPayload:
    data: bytes
    width: int
    height: int
    quality: int | None
    passes: int
    content_type: str = "image/jpeg"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def wire_size(self) -> int:
        return wire_size(len(self.data))

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_uri(self) -> str:
        return f"data:{self.content_type};base64,{self.to_base64()}"


def _read_raw(raw: RawImage) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, (str, os.PathLike)):
        with open(raw, "rb") as fh:
            return fh.read()
    return raw.read()


class ImagePackager:
    def __init__(
        self,
        *,
        max_edge: int = 800,
        soft_limit: int = 2 * MIB,
        hard_limit: int = 3 * MIB,
        quality: int = 85,
        second_pass_quality: int = 60,
    ):
        if soft_limit > hard_limit:
            raise ValueError("soft_limit must not exceed hard_limit")
        self.max_edge = max_edge
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit
        self.quality = quality
        self.second_pass_quality = second_pass_quality

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ImagePackager":
        return cls(
            max_edge=cfg.image_max_edge,
            soft_limit=cfg.image_soft_limit_bytes,
            hard_limit=cfg.image_hard_limit_bytes,
            quality=cfg.image_quality,
            second_pass_quality=cfg.image_second_pass_quality,
        )

    def pack(self, raw: RawImage) -> EncodedPayload:
        """Resample and re-encode ``raw``; raises :class:`PayloadTooLarge`."""
        data = _read_raw(raw)
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError("unsupported or corrupt image") from exc

        if self._is_compliant(image, data):
            # Already packed: do not compress twice
            return EncodedPayload(
                data=data,
                width=image.width,
                height=image.height,
                quality=None,
                passes=0,
            )

        normalized = self._normalize(image)
        first = self._encode(normalized, self.quality)
        if image.format == "JPEG" and first.size > len(data) and self._fits(image, data):
            first = EncodedPayload(
                data=data, width=image.width, height=image.height, quality=None, passes=0
            )
        if first.wire_size <= self.hard_limit:
            return first

        logger.info(
            "First pass produced %s wire bytes (limit %s), re-encoding",
            first.wire_size,
            self.hard_limit,
        )
        second = self._second_pass(normalized)
        if second.wire_size > self.hard_limit:
            raise PayloadTooLarge(second.wire_size, self.hard_limit)
        return second

    def _fits(self, image: Image.Image, data: bytes) -> bool:
        return (
            max(image.size) <= self.max_edge
            and wire_size(len(data)) <= self.hard_limit
        )

    def _is_compliant(self, image: Image.Image, data: bytes) -> bool:
        return (
            image.format == "JPEG"
            and image.mode in ("RGB", "L")
            and max(image.size) <= self.max_edge
            and wire_size(len(data)) <= self.soft_limit
        )

    def _normalize(self, image: Image.Image) -> Image.Image:
        image = ImageOps.exif_transpose(image)
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        if max(image.size) > self.max_edge:
            image = image.copy()
            image.thumbnail((self.max_edge, self.max_edge), Image.Resampling.LANCZOS)
        return image

    def _second_pass(self, image: Image.Image) -> EncodedPayload:
        """Re-encode at the lower quality, halving the canvas at most once."""
        payload = self._encode(image, self.second_pass_quality, passes=2)
        if payload.wire_size <= self.soft_limit:
            return payload
        width, height = image.size
        smaller = image.resize(
            (max(1, int(width * SECOND_PASS_SCALE)), max(1, int(height * SECOND_PASS_SCALE))),
            Image.Resampling.LANCZOS,
        )
        return self._encode(smaller, self.second_pass_quality, passes=2)

    def _encode(self, image: Image.Image, quality: int, passes: int = 1) -> EncodedPayload:
        buf = io.BytesIO()
        image.save(buf, format="JPEG", quality=quality, optimize=True)
        return EncodedPayload(
            data=buf.getvalue(),
            width=image.width,
            height=image.height,
            quality=quality,
            passes=passes,
        )


__all__ = ["EncodedPayload", "ImagePackager", "wire_size"]
