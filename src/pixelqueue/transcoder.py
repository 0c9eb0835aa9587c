"""Image transcoder: source bytes + one VariantTask → encoded bytes.

This is the only place pixels are touched. It knows nothing about jobs,
storage or the database, so correctness of the output (size, crop, format)
is unit-tested here in isolation.

Resize rules per fit mode:
- contain: scale to fit inside the target box, aspect preserved, no crop
- cover:   scale to fill the box exactly, overflow axis cropped from the center
- stretch: resize to the exact box, aspect ignored
"""

import io
from typing import Dict

from PIL import Image, ImageOps, UnidentifiedImageError, features

from .errors import DecodeError, EncodeError
from .models import Fit, ImageMetadata, OutputFormat, VariantTask
from .planner import SOURCE_FORMATS

RESAMPLE = Image.Resampling.LANCZOS

PIL_FORMATS = {
    OutputFormat.JPEG: "JPEG",
    OutputFormat.PNG: "PNG",
    OutputFormat.WEBP: "WEBP",
    OutputFormat.AVIF: "AVIF",
}

# Background used when flattening alpha for encoders without transparency
JPEG_BACKGROUND = (255, 255, 255)


def encoder_available(fmt: OutputFormat) -> bool:
    """Whether this Pillow build can encode the given format."""
    fmt = OutputFormat(fmt)
    if fmt == OutputFormat.WEBP:
        return features.check("webp")
    if fmt == OutputFormat.AVIF:
        return bool(features.check("avif"))
    return fmt in PIL_FORMATS


def supported_formats() -> Dict[str, bool]:
    return {fmt.value: encoder_available(fmt) for fmt in PIL_FORMATS}


def _open(source_bytes: bytes) -> Image.Image:
    if not source_bytes:
        raise DecodeError("source image is empty")
    try:
        img = Image.open(io.BytesIO(source_bytes))
        img.load()
    except UnidentifiedImageError as e:
        raise DecodeError(f"unsupported or unrecognized source format: {e}") from e
    except Image.DecompressionBombError as e:
        raise DecodeError(f"source image too large: {e}") from e
    except (OSError, SyntaxError, ValueError) as e:
        # Truncated or corrupt data surfaces as OSError from the decoders
        raise DecodeError(f"corrupt source image: {e}") from e
    return img


def probe(source_bytes: bytes) -> ImageMetadata:
    """Decode the source and report its oriented size and format.

    Raises:
        DecodeError: If the bytes are not a decodable image
    """
    img = _open(source_bytes)
    source_format = img.format or "UNKNOWN"
    oriented = ImageOps.exif_transpose(img)
    return ImageMetadata(width=oriented.width, height=oriented.height, format=source_format)


def transcode(source_bytes: bytes, task: VariantTask) -> bytes:
    """Produce the encoded bytes for one variant.

    Args:
        source_bytes: Original image as uploaded
        task: Planned variant (target size, fit, format, quality)

    Returns:
        Encoded image bytes in the task's format

    Raises:
        DecodeError: Source is corrupt or in an unsupported format
        EncodeError: Non-positive target size, or the encoder failed
    """
    size = (task.target_w, task.target_h)
    if task.target_w <= 0 or task.target_h <= 0:
        raise EncodeError("target dimensions must be positive", variant=task.name, size=size)

    img = _open(source_bytes)
    source_format = img.format or ""

    fmt = OutputFormat(task.format)
    if fmt == OutputFormat.ORIGINAL:
        fmt = SOURCE_FORMATS.get(source_format.upper())
        if fmt is None:
            raise EncodeError(
                f"source format {source_format or 'unknown'} cannot be re-encoded as-is",
                variant=task.name,
                size=size,
            )

    if not encoder_available(fmt):
        raise EncodeError(
            f"no {fmt.value} encoder in this Pillow build", variant=task.name, size=size
        )

    try:
        img = ImageOps.exif_transpose(img)
        img = _normalize_mode(img)
        img = _resize(img, size, Fit(task.fit))
        img = _prepare_for(img, fmt)

        buffer = io.BytesIO()
        img.save(buffer, format=PIL_FORMATS[fmt], **_save_options(fmt, task.quality))
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"{fmt.value} encode failed: {e}", variant=task.name, size=size) from e

    return buffer.getvalue()


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (
        img.mode == "P" and "transparency" in img.info
    )


def _normalize_mode(img: Image.Image) -> Image.Image:
    # Palette and bilevel images only resize with NEAREST; expand them first
    if img.mode in ("L", "LA", "RGB", "RGBA"):
        return img
    if img.mode == "1":
        return img.convert("L")
    return img.convert("RGBA" if _has_alpha(img) else "RGB")


def _resize(img: Image.Image, size: tuple, fit: Fit) -> Image.Image:
    if img.size == size:
        return img
    if fit == Fit.COVER:
        return ImageOps.fit(img, size, method=RESAMPLE, centering=(0.5, 0.5))
    if fit == Fit.STRETCH:
        return img.resize(size, RESAMPLE)
    return ImageOps.contain(img, size, method=RESAMPLE)


def _prepare_for(img: Image.Image, fmt: OutputFormat) -> Image.Image:
    if fmt == OutputFormat.JPEG:
        if _has_alpha(img):
            rgba = img.convert("RGBA")
            background = Image.new("RGB", rgba.size, JPEG_BACKGROUND)
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        return img if img.mode in ("RGB", "L") else img.convert("RGB")

    if fmt in (OutputFormat.WEBP, OutputFormat.AVIF):
        if img.mode in ("RGB", "RGBA"):
            return img
        return img.convert("RGBA" if _has_alpha(img) else "RGB")

    return img


def _save_options(fmt: OutputFormat, quality: int) -> dict:
    if fmt == OutputFormat.JPEG:
        return {"quality": quality, "optimize": True}
    if fmt == OutputFormat.PNG:
        return {"optimize": True}
    if fmt == OutputFormat.WEBP:
        return {"quality": quality, "method": 4}
    if fmt == OutputFormat.AVIF:
        return {"quality": quality}
    return {}
