"""Utility modules for dslr-photobooth.

Example:
    from dslr_photobooth.utils import encode_data_url
    payload = encode_data_url(jpeg_bytes)
"""

from dslr_photobooth.utils.image import (
    CV2ImageEncoder,
    ImageEncoder,
    encode_data_url,
    guess_mime_type,
    read_data_url,
)

__all__ = [
    "CV2ImageEncoder",
    "ImageEncoder",
    "encode_data_url",
    "guess_mime_type",
    "read_data_url",
]
