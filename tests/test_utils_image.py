"""Unit tests for dslr_photobooth.utils.image.

Covers data URL encoding used for preview frames and captures, and the
OpenCV-backed encoder the digital twin renders with.
"""

import base64

import numpy as np
import pytest

from dslr_photobooth.utils.image import (
    CV2ImageEncoder,
    ImageEncoder,
    encode_data_url,
    guess_mime_type,
    read_data_url,
)
from tests.helpers import FAKE_JPEG, FakeEncoder

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


class TestGuessMimeType:
    """Tests for magic-byte and suffix MIME detection."""

    @pytest.mark.parametrize(
        ("data", "filename", "expected"),
        [
            (FAKE_JPEG, None, "image/jpeg"),
            (PNG_MAGIC + b"rest", None, "image/png"),
            (b"GIF89a...", None, "image/gif"),
            (b"unknown", "shot.PNG", "image/png"),
            (b"unknown", "IMG_0001.CR2", "image/jpeg"),
            (b"unknown", None, "image/jpeg"),
        ],
    )
    def test_detection(self, data, filename, expected):
        assert guess_mime_type(data, filename) == expected

    def test_magic_bytes_beat_suffix(self):
        """A JPEG saved with a .png name is still a JPEG."""
        assert guess_mime_type(FAKE_JPEG, "wrong.png") == "image/jpeg"


class TestDataUrls:
    """Tests for encode_data_url and read_data_url."""

    def test_encode_round_trip(self):
        url = encode_data_url(FAKE_JPEG)
        prefix, payload = url.split(",", 1)
        assert prefix == "data:image/jpeg;base64"
        assert base64.b64decode(payload) == FAKE_JPEG

    def test_explicit_mime(self):
        assert encode_data_url(b"abc", "image/png").startswith("data:image/png;")

    def test_empty_data_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            encode_data_url(b"")

    def test_read_data_url(self, tmp_path):
        path = tmp_path / "IMG_0001.JPG"
        path.write_bytes(FAKE_JPEG)
        assert read_data_url(path) == encode_data_url(FAKE_JPEG)

    def test_read_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            read_data_url(tmp_path / "missing.jpg")

    def test_read_empty_file(self, tmp_path):
        path = tmp_path / "empty.jpg"
        path.write_bytes(b"")
        with pytest.raises(ValueError):
            read_data_url(path)


class TestImageEncoderProtocol:
    """Tests for ImageEncoder Protocol runtime checking."""

    def test_fake_encoder_satisfies_protocol(self) -> None:
        assert isinstance(FakeEncoder(), ImageEncoder)

    def test_protocol_rejects_incomplete_implementation(self) -> None:
        class EncodeOnly:
            def encode_jpeg(self, img, quality=85):
                return b""

        assert not isinstance(EncodeOnly(), ImageEncoder)


class TestCV2ImageEncoder:
    """Tests for CV2ImageEncoder with real OpenCV."""

    def test_encode_color_image(self) -> None:
        encoder = CV2ImageEncoder()
        jpeg = encoder.encode_jpeg(np.zeros((24, 32, 3), dtype=np.uint8), quality=70)
        assert jpeg[:2] == b"\xff\xd8"
        assert guess_mime_type(jpeg) == "image/jpeg"

    def test_encode_grayscale_image(self) -> None:
        jpeg = CV2ImageEncoder().encode_jpeg(np.zeros((24, 32), dtype=np.uint8))
        assert jpeg[:2] == b"\xff\xd8"

    @pytest.mark.parametrize("quality", [0, 101, -5])
    def test_quality_out_of_range(self, quality) -> None:
        with pytest.raises(ValueError, match="quality"):
            CV2ImageEncoder().encode_jpeg(np.zeros((8, 8), dtype=np.uint8), quality)

    def test_put_text_draws_in_place(self) -> None:
        img = np.zeros((40, 120, 3), dtype=np.uint8)
        CV2ImageEncoder().put_text(img, "LIVE", (5, 30), 0.8, (255, 255, 255), 2)
        assert img.any()
