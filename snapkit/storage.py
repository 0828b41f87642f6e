"""
Media storage for uploaded source images.

``LocalMediaStorage`` writes into MEDIA_DIR, which the app serves under
``/media``. ``CloudinaryStorage`` goes through the
Cloudinary SDK. Both return ``StoredImage(url, public_id)`` from ``upload``
and raise ``StorageUnavailable`` when the backend cannot be reached.
"""

import io
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path

import cloudinary
import cloudinary.uploader

from . import config
from .errors import StorageUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredImage:
    url: str
    public_id: str


class LocalMediaStorage:
    def __init__(self, media_dir: str, url_prefix: str = "/media"):
        self.media_dir = Path(media_dir)
        self.url_prefix = url_prefix.rstrip("/")

    def upload(self, data: bytes, mime_type: str, filename: str = "") -> StoredImage:
        ext = mimetypes.guess_extension(mime_type) or Path(filename).suffix or ".bin"
        public_id = f"{uuid.uuid4().hex}{ext}"
        try:
            self.media_dir.mkdir(parents=True, exist_ok=True)
            (self.media_dir / public_id).write_bytes(data)
        except OSError as e:
            raise StorageUnavailable(f"could not write media file: {e}") from e
        return StoredImage(url=f"{self.url_prefix}/{public_id}", public_id=public_id)

    def delete(self, public_id: str) -> None:
        path = self.media_dir / Path(public_id).name
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info("Media file %s already gone", public_id)
        except OSError as e:
            raise StorageUnavailable(f"could not delete media file: {e}") from e


class CloudinaryStorage:
    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str = "", timeout: float = 30.0):
        if not (cloud_name and api_key and api_secret):
            raise RuntimeError("Cloudinary storage needs CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET")
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )
        self.folder = folder
        self.timeout = timeout

    def upload(self, data: bytes, mime_type: str, filename: str = "") -> StoredImage:
        options = {"resource_type": "image", "timeout": self.timeout}
        if self.folder:
            options["folder"] = self.folder
        try:
            result = cloudinary.uploader.upload(io.BytesIO(data), **options)
        except Exception as e:
            # SDK raises cloudinary.exceptions.Error for API errors and bad
            # responses, urllib3 errors for transport failures
            raise StorageUnavailable(f"cloudinary upload failed: {e}") from e

        url = (result or {}).get("secure_url")
        public_id = (result or {}).get("public_id")
        if not url or not public_id:
            raise StorageUnavailable(f"cloudinary upload returned no asset: {result!r}")
        return StoredImage(url=url, public_id=public_id)

    def delete(self, public_id: str) -> None:
        try:
            result = cloudinary.uploader.destroy(public_id, resource_type="image", timeout=self.timeout)
        except Exception as e:
            raise StorageUnavailable(f"cloudinary destroy failed: {e}") from e
        if (result or {}).get("result") not in ("ok", "not found"):
            raise StorageUnavailable(f"cloudinary destroy returned {(result or {}).get('result')!r}")


def get_storage():
    if config.STORAGE_BACKEND == "cloudinary":
        return CloudinaryStorage(
            config.CLOUDINARY_CLOUD_NAME,
            config.CLOUDINARY_API_KEY,
            config.CLOUDINARY_API_SECRET,
            folder=config.CLOUDINARY_FOLDER,
        )
    return LocalMediaStorage(config.MEDIA_DIR)
