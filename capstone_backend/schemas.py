"""
Pydantic request schemas and the JSON response envelope.

Fields are optional so that missing values reach the shared validation step
and come back as the uniform 400 envelope instead of a framework error.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, StrictBool, StrictInt


class CreateHistoryPayload(BaseModel):
    title: Optional[str] = None
    message: Optional[str] = None
    email: Optional[str] = None
    is_speech_to_text: Optional[StrictBool] = None


class CreateIdentityPayload(BaseModel):
    title: Optional[str] = None
    email: Optional[str] = None


class AttachMessagePayload(BaseModel):
    message: Optional[str] = None
    is_speech_to_text: Optional[StrictBool] = None


class FeedbackPayload(BaseModel):
    comment: Optional[str] = None
    rating: Optional[StrictInt] = None


class SoundboardPayload(BaseModel):
    text: Optional[str] = None


def envelope(
    success: bool = True,
    message: Optional[str] = None,
    data: Any = None,
    error: Optional[str] = None,
    **extra: Any,
) -> dict:
    """Build the `{success, message?, data?, error?}` response body."""
    body: dict = {"success": success}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    body.update(extra)
    return body
