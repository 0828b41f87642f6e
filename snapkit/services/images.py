import io

from PIL import Image, UnidentifiedImageError

from ..errors import InvalidUpload

ALLOWED_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def inspect_image(data: bytes, max_bytes: int) -> str:
    """
    Checks that an upload really is an image the model accepts.
    Returns the mime type derived from the file contents, not the client header.
    """
    if not data:
        raise InvalidUpload("Empty upload")
    if len(data) > max_bytes:
        raise InvalidUpload(f"Image is too large (max {max_bytes // (1024 * 1024)} MB)")

    try:
        im = Image.open(io.BytesIO(data))
        im.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidUpload("File is not a readable image") from e

    mime = ALLOWED_FORMATS.get(im.format or "")
    if not mime:
        raise InvalidUpload(f"Unsupported image format: {im.format}")
    return mime
