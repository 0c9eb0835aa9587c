"""Tests for the Pillow transcoder.

Output size, crop and format are checked by decoding the produced bytes.
"""

import io

import pytest
from PIL import Image, features

from pixelqueue.errors import DecodeError, EncodeError
from pixelqueue.models import VariantTask
from pixelqueue.transcoder import encoder_available, probe, supported_formats, transcode

from conftest import encode_image

requires_avif = pytest.mark.skipif(
    not features.check("avif"), reason="Pillow built without AVIF support"
)


def make_task(fmt="jpeg", size=(400, 200), fit="contain", name="medium", quality=80):
    ext = {"jpeg": "jpg"}.get(fmt, fmt)
    return VariantTask(
        name=name,
        format=fmt,
        target_w=size[0],
        target_h=size[1],
        fit=fit,
        quality=quality,
        storage_key=f"ns-1/images/{name}/abc.{ext}",
        content_type=f"image/{fmt}",
    )


def decode(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def split_image(size=(300, 100)) -> bytes:
    """Left third red, middle third green, right third blue."""
    img = Image.new("RGB", size, (255, 0, 0))
    third = size[0] // 3
    img.paste((0, 255, 0), (third, 0, 2 * third, size[1]))
    img.paste((0, 0, 255), (2 * third, 0, size[0], size[1]))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class TestProbe:
    """Test source inspection."""

    def test_probe_jpeg(self, jpeg_bytes):
        metadata = probe(jpeg_bytes)
        assert (metadata.width, metadata.height) == (1000, 500)
        assert metadata.format == "JPEG"

    def test_probe_applies_exif_orientation(self):
        """Orientation 6 (rotate 90) swaps the reported dimensions."""
        exif = Image.Exif()
        exif[0x0112] = 6
        data = encode_image(size=(1000, 500), exif=exif.tobytes())

        metadata = probe(data)
        assert (metadata.width, metadata.height) == (500, 1000)

    @pytest.mark.parametrize("data", [b"", b"not an image at all", b"\xff\xd8\xff\xe0garbage"])
    def test_probe_rejects_garbage(self, data):
        with pytest.raises(DecodeError):
            probe(data)

    def test_probe_rejects_truncated(self, jpeg_bytes):
        with pytest.raises(DecodeError):
            probe(jpeg_bytes[: len(jpeg_bytes) // 3])


class TestTranscodeSizes:
    """Output dimensions per fit mode."""

    def test_scenario_medium(self, jpeg_bytes):
        """1000x500 JPEG → 400x200 JPEG."""
        img = decode(transcode(jpeg_bytes, make_task("jpeg", (400, 200))))
        assert img.size == (400, 200)
        assert img.format == "JPEG"

    def test_scenario_thumb(self, jpeg_bytes):
        """1000x500 JPEG → 100x100 WebP, cover."""
        img = decode(transcode(jpeg_bytes, make_task("webp", (100, 100), "cover", "thumb")))
        assert img.size == (100, 100)
        assert img.format == "WEBP"

    def test_contain_never_exceeds_box(self, jpeg_bytes):
        img = decode(transcode(jpeg_bytes, make_task("png", (300, 300))))
        assert img.size == (300, 150)

    def test_stretch_is_exact(self, jpeg_bytes):
        img = decode(transcode(jpeg_bytes, make_task("png", (120, 400), "stretch")))
        assert img.size == (120, 400)

    def test_cover_crops_from_center(self):
        """Cover keeps the middle band of a wide source."""
        img = decode(transcode(split_image(), make_task("png", (100, 100), "cover")))
        assert img.size == (100, 100)
        center = img.convert("RGB").getpixel((50, 50))
        assert center[1] > 200 and center[0] < 50 and center[2] < 50

    def test_same_size_passthrough(self, jpeg_bytes):
        img = decode(transcode(jpeg_bytes, make_task("png", (1000, 500))))
        assert img.size == (1000, 500)

    def test_exif_orientation_applied(self):
        exif = Image.Exif()
        exif[0x0112] = 6
        data = encode_image(size=(1000, 500), exif=exif.tobytes())

        img = decode(transcode(data, make_task("jpeg", (250, 500))))
        assert img.size == (250, 500)


class TestTranscodeFormats:
    """Encoding and mode handling."""

    def test_alpha_flattened_for_jpeg(self):
        data = encode_image(size=(200, 100), mode="RGBA", fmt="PNG", color=(0, 0, 0, 0))
        img = decode(transcode(data, make_task("jpeg", (100, 50))))

        assert img.mode == "RGB"
        assert img.getpixel((50, 25)) == pytest.approx((255, 255, 255), abs=3)

    def test_alpha_kept_for_webp(self):
        data = encode_image(size=(200, 100), mode="RGBA", fmt="PNG")
        img = decode(transcode(data, make_task("webp", (100, 50))))
        assert img.mode == "RGBA"

    def test_palette_source(self):
        data = encode_image(size=(200, 100), mode="P", fmt="PNG", color=3)
        img = decode(transcode(data, make_task("webp", (100, 50))))
        assert img.size == (100, 50)

    def test_original_keeps_source_format(self):
        data = encode_image(size=(200, 100), fmt="PNG")
        img = decode(transcode(data, make_task("original", (100, 50))))
        assert img.format == "PNG"

    def test_original_of_unsupported_source(self):
        data = encode_image(size=(200, 100), fmt="GIF", mode="P", color=1)
        with pytest.raises(EncodeError, match="cannot be re-encoded"):
            transcode(data, make_task("original", (100, 50)))

    def test_quality_changes_size(self):
        noisy = Image.effect_noise((400, 200), 80).convert("RGB")
        buffer = io.BytesIO()
        noisy.save(buffer, format="PNG")
        low = transcode(buffer.getvalue(), make_task("jpeg", (400, 200), quality=10))
        high = transcode(buffer.getvalue(), make_task("jpeg", (400, 200), quality=95))
        assert len(low) < len(high)

    @requires_avif
    def test_avif(self, jpeg_bytes):
        img = decode(transcode(jpeg_bytes, make_task("avif", (200, 100))))
        assert img.size == (200, 100)
        assert img.format == "AVIF"


class TestTranscodeErrors:
    """DecodeError for the source, EncodeError for one variant."""

    def test_corrupt_source(self):
        with pytest.raises(DecodeError):
            transcode(b"definitely not pixels", make_task())

    def test_encoder_failure_names_variant(self, jpeg_bytes, monkeypatch):
        def broken_save(self, fp, format=None, **params):
            raise OSError("encoder exploded")

        monkeypatch.setattr(Image.Image, "save", broken_save)
        with pytest.raises(EncodeError) as exc_info:
            transcode(jpeg_bytes, make_task("webp", (100, 100), name="thumb"))

        assert exc_info.value.variant == "thumb"
        assert exc_info.value.size == (100, 100)
        assert "encoder exploded" in str(exc_info.value)

    @pytest.mark.parametrize("size", [(0, 200), (400, 0), (-5, 10)])
    def test_non_positive_target_names_variant(self, jpeg_bytes, size):
        with pytest.raises(EncodeError) as exc_info:
            transcode(jpeg_bytes, make_task(size=size, name="banner"))

        assert exc_info.value.variant == "banner"
        assert exc_info.value.size == size
        assert str(exc_info.value) == (
            f"variant 'banner' {size[0]}x{size[1]}: target dimensions must be positive"
        )

    def test_missing_encoder(self, jpeg_bytes, monkeypatch):
        monkeypatch.setattr("pixelqueue.transcoder.encoder_available", lambda fmt: False)
        with pytest.raises(EncodeError, match="no webp encoder"):
            transcode(jpeg_bytes, make_task("webp", (100, 100)))


class TestEncoders:
    def test_core_formats_available(self):
        formats = supported_formats()
        assert set(formats) == {"jpeg", "png", "webp", "avif"}
        assert formats["jpeg"] and formats["png"]

    def test_encoder_available_matches_features(self):
        assert encoder_available("avif") == bool(features.check("avif"))
