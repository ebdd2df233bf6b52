"""
Image resize-on-upload.

Uploaded photos are EXIF-transposed, converted to RGB, shrunk to fit the
target box (never enlarged, aspect ratio kept) and re-encoded as WebP.
"""
import io
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from proplinka.core.exceptions import ValidationError

logger = structlog.get_logger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}

MAX_WIDTH = 1920
MAX_HEIGHT = 1080
THUMBNAIL_WIDTH = 400
THUMBNAIL_HEIGHT = 300
THUMBNAIL_QUALITY = 60
OUTPUT_FORMAT = "WEBP"
UPLOAD_CHUNK_BYTES = 64 * 1024


class ImageProcessingError(ValidationError):
    """Raised for uploads that are not usable images."""

    error_code = "invalid_image"


@dataclass
class OptimizedImage:
    content: bytes
    width: int
    height: int
    format: str

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return self.format.lower()


def validate_upload(content: bytes, content_type: Optional[str], max_size_mb: int) -> None:
    """
    Check an upload before decoding it.

    Raises:
        ImageProcessingError: If the type is not allowed or the file is too large
    """
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ImageProcessingError(
            f"Unsupported image type: {content_type}. Allowed: JPEG, PNG, WebP"
        )
    if not content:
        raise ImageProcessingError("Empty upload")
    if len(content) > max_size_mb * 1024 * 1024:
        raise ImageProcessingError(f"Image exceeds the {max_size_mb}MB limit")


async def read_upload(
    upload: Any, max_size_mb: int, chunk_size: int = UPLOAD_CHUNK_BYTES
) -> bytes:
    """
    Read an uploaded file in chunks, giving up once it passes the size limit.

    Args:
        upload: Anything with an async read(size), such as a FastAPI UploadFile
        max_size_mb: Largest accepted upload
        chunk_size: Bytes per read

    Raises:
        ImageProcessingError: If the upload is larger than the limit
    """
    limit = max_size_mb * 1024 * 1024
    buffer = bytearray()
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise ImageProcessingError(f"Image exceeds the {max_size_mb}MB limit")
    return bytes(buffer)


def _open_rgb(content: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(content)) as img:
            img.load()
            return ImageOps.exif_transpose(img).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ImageProcessingError("File is not a readable image") from e


def _fit(
    img: Image.Image, max_width: int, max_height: int, quality: int, fmt: str
) -> OptimizedImage:
    # thumbnail() only ever shrinks and keeps the aspect ratio
    img.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt, quality=quality, method=4)
    return OptimizedImage(
        content=buffer.getvalue(), width=img.width, height=img.height, format=fmt
    )


def optimize_image(
    content: bytes,
    max_width: int = MAX_WIDTH,
    max_height: int = MAX_HEIGHT,
    quality: int = 80,
    fmt: str = OUTPUT_FORMAT,
) -> OptimizedImage:
    """
    Resize and re-encode an uploaded image.

    Args:
        content: Raw upload bytes
        max_width: Bounding box width
        max_height: Bounding box height
        quality: Encoder quality 1-100
        fmt: Pillow output format

    Returns:
        OptimizedImage: Encoded image and its final dimensions

    Raises:
        ImageProcessingError: If the bytes are not an image
    """
    img = _open_rgb(content)
    original_size = img.size
    result = _fit(img, max_width, max_height, quality, fmt)
    logger.debug(
        "image_optimized",
        original_size=original_size,
        final_size=(result.width, result.height),
        bytes_in=len(content),
        bytes_out=result.size_bytes,
    )
    return result


def create_thumbnail(
    content: bytes,
    width: int = THUMBNAIL_WIDTH,
    height: int = THUMBNAIL_HEIGHT,
    quality: int = THUMBNAIL_QUALITY,
) -> OptimizedImage:
    """Small preview used in search results."""
    return _fit(_open_rgb(content), width, height, quality, OUTPUT_FORMAT)


class ImageStorage:
    """Writes processed images under a media root and returns public URLs."""

    def __init__(self, media_root: str, media_url: str):
        self.media_root = Path(media_root)
        self.media_url = media_url.rstrip("/")

    def save(self, property_id: uuid.UUID, image: OptimizedImage, suffix: str = "") -> str:
        name = f"{uuid.uuid4().hex}{suffix}.{image.extension}"
        relative = Path("properties") / str(property_id) / name
        path = self.media_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image.content)
        return f"{self.media_url}/{relative.as_posix()}"

    def delete(self, url: str) -> None:
        prefix = f"{self.media_url}/"
        if not url.startswith(prefix):
            return
        path = self.media_root / url[len(prefix):]
        path.unlink(missing_ok=True)
