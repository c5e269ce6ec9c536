"""
Avatar Service using Cloudinary

DESIGN DECISION: We use Cloudinary because:
1. Reliable image hosting with stable HTTPS URLs
2. Overwriting by public ID means one image per family member
3. Free tier sufficient for a family

This service handles:
1. Validating the uploaded picture
2. Cropping it to a centred square and shrinking it (Pillow)
3. Uploading the JPEG to Cloudinary
4. Returning the hosted image URL

Small square JPEGs keep the login screen fast on a phone.
"""

import asyncio
from io import BytesIO
from typing import Optional

import cloudinary
import cloudinary.uploader
from PIL import Image, ImageOps, UnidentifiedImageError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kidsbank.config import AppSettings, CloudinarySettings, get_settings


class AvatarError(Exception):
    """Base exception for avatar errors."""
    pass


class InvalidAvatarImageError(AvatarError):
    """The upload is not a usable image."""
    pass


class AvatarUploadError(AvatarError):
    """Failed to upload the avatar to Cloudinary."""
    pass


class CloudinaryAvatarService:
    """
    Service for avatar uploads using Cloudinary.

    Flow:
    1. Receive raw image bytes
    2. Crop to a square and resize to the configured size
    3. Upload, overwriting the member's previous avatar
    4. Return the secure URL
    """

    def __init__(
        self,
        settings: Optional[CloudinarySettings] = None,
        app_settings: Optional[AppSettings] = None,
    ):
        self._settings = settings or get_settings().cloudinary
        self._app_settings = app_settings or get_settings().app
        self._configured = False

    def _configure(self):
        """Configure Cloudinary SDK."""
        if not self._configured:
            cloudinary.config(
                cloud_name=self._settings.cloud_name,
                api_key=self._settings.api_key,
                api_secret=self._settings.api_secret,
                secure=True,
            )
            self._configured = True

    def prepare_image(self, image_bytes: bytes) -> bytes:
        """
        Turn any supported picture into a square JPEG.

        The largest centred square is kept (like a profile photo crop),
        then scaled to avatar_size_px.

        Raises:
            InvalidAvatarImageError: Empty, too large, or not an image
        """
        if not image_bytes:
            raise InvalidAvatarImageError("No image data received")
        if len(image_bytes) > self._app_settings.max_avatar_upload_bytes:
            raise InvalidAvatarImageError(
                f"Image is larger than {self._app_settings.max_avatar_upload_mb} MB"
            )

        try:
            img = Image.open(BytesIO(image_bytes))
            img = ImageOps.exif_transpose(img)
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidAvatarImageError(f"Could not read image: {e}")

        size = self._app_settings.avatar_size_px
        square = ImageOps.fit(img.convert("RGB"), (size, size), method=Image.Resampling.LANCZOS)

        out = BytesIO()
        square.save(out, format="JPEG", quality=self._app_settings.avatar_jpeg_quality)
        return out.getvalue()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(AvatarUploadError),
        reraise=True,
    )
    async def _upload(self, public_id: str, jpeg_bytes: bytes) -> str:
        try:
            result = await asyncio.to_thread(
                cloudinary.uploader.upload,
                BytesIO(jpeg_bytes),
                public_id=public_id,
                folder=self._settings.avatar_folder,
                resource_type="image",
                overwrite=True,
                invalidate=True,
            )
        except Exception as e:
            raise AvatarUploadError(f"Cloudinary error: {e}")

        url = result.get("secure_url", result.get("url", ""))
        if not url:
            raise AvatarUploadError("No URL returned from Cloudinary")
        return url

    async def upload_avatar(self, user_id: str, image_bytes: bytes) -> str:
        """
        Upload a family member's avatar.

        Args:
            user_id: Owner of the avatar (used as the Cloudinary public ID)
            image_bytes: Raw uploaded image

        Returns:
            HTTPS URL of the hosted avatar

        Raises:
            InvalidAvatarImageError: If the upload is not a usable image
            AvatarUploadError: If Cloudinary keeps failing
        """
        jpeg_bytes = self.prepare_image(image_bytes)
        self._configure()
        return await self._upload(user_id.lower(), jpeg_bytes)
