"""Image and blob-path utilities for the images workflow engine."""

import io
import mimetypes
import posixpath
import re
import struct
from typing import Any, Dict, Optional, Tuple

from PIL import Image, ImageFilter, ImageOps

THUMBNAIL_FILENAME = "thumbnail.jpg"
PREVIEW_FILENAME = "preview.jpg"
DERIVED_CONTENT_TYPE = "image/jpeg"

# Pillow decoders signal malformed input with more than OSError.
DECODE_ERRORS = (
    OSError,
    ValueError,
    SyntaxError,
    EOFError,
    IndexError,
    KeyError,
    TypeError,
    struct.error,
    Image.DecompressionBombError,
)

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_.-]")


def file_extension(file_name: str) -> str:
    """Lower-cased extension including the dot, or "" when absent."""
    return posixpath.splitext(file_name.strip())[1].lower()


def guess_content_type(file_name: str) -> Optional[str]:
    """Content type implied by the file extension."""
    content_type, _ = mimetypes.guess_type(f"file{file_extension(file_name)}")
    return content_type


def safe_path_segment(value: str) -> str:
    """Make an opaque identifier safe to embed as one blob path segment."""
    cleaned = _UNSAFE_SEGMENT.sub("_", value)
    return cleaned.strip(".") or "_"


def original_blob_path(prefix: str, owner_id: str, image_id: str, extension: str) -> str:
    """
    Path of an original upload.

    Args:
        prefix: Originals prefix, e.g. "originals"
        owner_id: Uploading user
        image_id: Freshly generated image id, never reused
        extension: File extension including the dot

    Returns:
        "<prefix>/<owner>/<image_id><extension>"
    """
    key = f"{safe_path_segment(owner_id)}/{image_id}{extension}"
    if prefix:
        return f"{prefix.rstrip('/')}/{key}"
    return key


def derived_asset_paths(prefix: str, image_id: str) -> Tuple[str, str]:
    """Deterministic (thumbnail, preview) paths keyed by the image id."""
    base = f"{prefix.rstrip('/')}/{image_id}" if prefix else image_id
    return f"{base}/{THUMBNAIL_FILENAME}", f"{base}/{PREVIEW_FILENAME}"


def load_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into a fully loaded, EXIF-orientation-corrected image."""
    image = Image.open(io.BytesIO(image_bytes))
    image.load()
    source_format = image.format
    image = ImageOps.exif_transpose(image)
    image.format = source_format
    return image


def extract_image_info(img: Image.Image) -> Dict[str, Any]:
    """Basic dimensions and format of a decoded image."""
    return {
        "width": img.width,
        "height": img.height,
        "format": img.format or "unknown",
        "mode": img.mode,
    }


def make_thumbnail(img: Image.Image, max_dimension: int) -> Image.Image:
    """
    Resize into a max_dimension bounding box, preserving aspect ratio.

    Images already inside the box are not upscaled.
    """
    thumbnail = img.copy()
    thumbnail.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    return thumbnail


def make_blurred_preview(
    img: Image.Image, max_dimension: int, blur_radius: float
) -> Image.Image:
    """Downscale into a max_dimension box, then apply a Gaussian blur."""
    preview = make_thumbnail(flatten_to_rgb(img), max_dimension)
    if blur_radius > 0:
        preview = preview.filter(ImageFilter.GaussianBlur(radius=blur_radius))
    return preview


def flatten_to_rgb(img: Image.Image) -> Image.Image:
    """Convert to RGB, compositing any transparency onto white."""
    if img.mode == "RGB":
        return img
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def encode_jpeg(img: Image.Image, quality: int) -> bytes:
    output_stream = io.BytesIO()
    flatten_to_rgb(img).save(output_stream, format="JPEG", quality=quality, optimize=True)
    return output_stream.getvalue()
