"""Image helpers: transport encoding and JPEG rendering.

Two concerns live here:

* ``encode_data_url`` / ``read_data_url`` turn preview frames and
  downloaded captures into ``data:<mime>;base64,...`` strings, the
  representation pushed to browser clients for both ``preview-frame``
  and ``capture-ready``.
* ``ImageEncoder`` / ``CV2ImageEncoder`` render synthetic frames for the
  digital twin camera. The cv2 import is deferred to construction so
  that modules importing this one do not pay for OpenCV unless they
  actually render.
"""

from __future__ import annotations

import base64
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "CV2ImageEncoder",
    "ImageEncoder",
    "encode_data_url",
    "guess_mime_type",
    "read_data_url",
]

_MAGIC_MIME: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF8", "image/gif"),
)

_SUFFIX_MIME: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
}

DEFAULT_MIME = "image/jpeg"


def guess_mime_type(data: bytes, filename: str | None = None) -> str:
    """Identify the image type from magic bytes, then from the file suffix.

    Camera previews and captures are JPEG in practice, so JPEG is the
    fallback when neither source is conclusive (RAW files included).

    Example:
        >>> guess_mime_type(b"\\x89PNG\\r\\n\\x1a\\n...")
        'image/png'
    """
    for magic, mime in _MAGIC_MIME:
        if data.startswith(magic):
            return mime
    if filename:
        return _SUFFIX_MIME.get(Path(filename).suffix.lower(), DEFAULT_MIME)
    return DEFAULT_MIME


def encode_data_url(data: bytes, mime_type: str | None = None) -> str:
    """Encode raw image bytes as a base64 data URL.

    Args:
        data: Encoded image bytes (JPEG from the camera).
        mime_type: Explicit MIME type; sniffed from ``data`` when None.

    Returns:
        ``data:image/jpeg;base64,...`` string.

    Raises:
        ValueError: If ``data`` is empty.
    """
    if not data:
        raise ValueError("Cannot encode empty image data")
    mime = mime_type or guess_mime_type(data)
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def read_data_url(path: Path) -> str:
    """Read an image file back from disk and encode it as a data URL.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the file is empty.
    """
    data = path.read_bytes()
    return encode_data_url(data, guess_mime_type(data, path.name))


@runtime_checkable
class ImageEncoder(Protocol):
    """Rendering operations needed to fabricate camera frames."""

    def encode_jpeg(self, img: NDArray[Any], quality: int = 85) -> bytes:
        """Encode an image array (grayscale or BGR) as JPEG bytes.

        Raises:
            ValueError: If quality is outside 1-100 or encoding fails.
        """
        ...  # pragma: no cover

    def put_text(
        self,
        img: NDArray[Any],
        text: str,
        position: tuple[int, int],
        scale: float,
        color: int | tuple[int, int, int],
        thickness: int,
    ) -> None:
        """Draw text on ``img`` in place."""
        ...  # pragma: no cover


class CV2ImageEncoder:
    """OpenCV implementation of ``ImageEncoder``.

    Example:
        >>> encoder = CV2ImageEncoder()
        >>> jpeg = encoder.encode_jpeg(np.zeros((120, 160, 3), dtype=np.uint8))
        >>> jpeg[:2]
        b'\\xff\\xd8'
    """

    def __init__(self) -> None:
        import cv2

        self._cv2 = cv2

    def encode_jpeg(self, img: NDArray[Any], quality: int = 85) -> bytes:
        if not 1 <= quality <= 100:
            raise ValueError(f"JPEG quality must be 1-100, got {quality}")
        ok, buffer = self._cv2.imencode(
            ".jpg", img, [self._cv2.IMWRITE_JPEG_QUALITY, quality]
        )
        if not ok:
            raise ValueError("JPEG encoding failed")
        return bytes(buffer.tobytes())

    def put_text(
        self,
        img: NDArray[Any],
        text: str,
        position: tuple[int, int],
        scale: float,
        color: int | tuple[int, int, int],
        thickness: int,
    ) -> None:
        self._cv2.putText(
            img,
            text,
            position,
            self._cv2.FONT_HERSHEY_SIMPLEX,
            scale,
            color,
            thickness,
        )
