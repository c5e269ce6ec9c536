"""Avatar image services package."""

from kidsbank.services.avatar.cloudinary_service import (
    AvatarError,
    AvatarUploadError,
    CloudinaryAvatarService,
    InvalidAvatarImageError,
)

__all__ = [
    "AvatarError",
    "AvatarUploadError",
    "CloudinaryAvatarService",
    "InvalidAvatarImageError",
]
