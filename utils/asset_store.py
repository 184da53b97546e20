import os
import logging
from dataclasses import dataclass
from typing import Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

from errors import AssetStoreNotConfiguredError, AssetUploadError

logger = logging.getLogger(__name__)


@dataclass
class UploadedAsset:
    url: str
    public_id: str


class CloudinaryAssetStore:
    """Uploads rendered videos to Cloudinary under stable per-item public ids"""

    def __init__(self, cloud_name: Optional[str], api_key: Optional[str], api_secret: Optional[str],
                 folder: str = "echo-catering/videos"):
        if not (cloud_name and api_key and api_secret):
            raise AssetStoreNotConfiguredError(
                "Cloudinary is not configured (CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET)"
            )
        self.folder = folder
        cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)

    @classmethod
    def from_settings(cls, settings):
        return cls(
            settings.cloudinary_cloud_name,
            settings.cloudinary_api_key,
            settings.cloudinary_api_secret,
            settings.cloudinary_folder,
        )

    def upload(self, path: str, public_id: str) -> UploadedAsset:
        if not os.path.exists(path):
            raise AssetUploadError(f"Upload failed for {public_id}: {path} does not exist")

        logger.info(f"Uploading {os.path.basename(path)} as {self.folder}/{public_id}")
        try:
            result = cloudinary.uploader.upload(
                path,
                resource_type="video",
                public_id=public_id,
                folder=self.folder,
                overwrite=True,
                invalidate=True,
            )
        except (cloudinary.exceptions.Error, OSError) as e:
            raise AssetUploadError(f"Cloudinary upload failed for {public_id}: {e}")

        url = result.get("secure_url") or result.get("url")
        if not url:
            raise AssetUploadError(f"Cloudinary returned no URL for {public_id}")
        return UploadedAsset(url=url, public_id=result.get("public_id") or f"{self.folder}/{public_id}")
