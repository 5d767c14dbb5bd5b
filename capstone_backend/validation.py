"""
Input validation shared by every gateway implementation.

All checks run before anything is written.
"""

from __future__ import annotations

from typing import Any, Optional

from capstone_backend.errors import ValidationError

MIN_RATING = 1
MAX_RATING = 4

ALLOWED_PICTURE_TYPES = ("image/jpeg", "image/png", "image/jpg")
MAX_PICTURE_BYTES = 5 * 1024 * 1024


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def require_fields(**fields: Any) -> None:
    missing = [name for name, value in fields.items() if _is_blank(value)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


def validate_rating(rating: Any) -> int:
    # bool is an int subclass; True must not count as rating 1.
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError("Rating must be an integer")
    if rating < MIN_RATING or rating > MAX_RATING:
        raise ValidationError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
    return rating


def validate_flag(name: str, value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    raise ValidationError(f"{name} must be a boolean")


def validate_picture(content_type: Optional[str], size: int) -> None:
    if (content_type or "").lower() not in ALLOWED_PICTURE_TYPES:
        raise ValidationError("Profile picture must be a JPEG or PNG image")
    if size > MAX_PICTURE_BYTES:
        raise ValidationError("Profile picture must be 5 MB or smaller")
