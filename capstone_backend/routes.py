"""
HTTP routes for the Capstone API.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from capstone_backend.db import DbClient
from capstone_backend.dependencies import get_db_client, get_media_service
from capstone_backend.media import MediaService
from capstone_backend.schemas import (
    AttachMessagePayload,
    CreateHistoryPayload,
    CreateIdentityPayload,
    FeedbackPayload,
    SoundboardPayload,
    envelope,
)
from capstone_backend.validation import MAX_PICTURE_BYTES, require_fields

logger = logging.getLogger(__name__)

SERVICE_NAME = "Capstone API"
SERVICE_VERSION = "1.0.0"

router = APIRouter()
root_router = APIRouter()


@root_router.get("/")
def index(request: Request):
    prefix = request.app.state.settings.api_prefix
    return envelope(
        message=f"Welcome to {SERVICE_NAME}",
        version=SERVICE_VERSION,
        endpoints={
            "soundboards": f"{prefix}/soundboards",
            "history": f"{prefix}/history",
            "profile": f"{prefix}/profile",
            "feedback": f"{prefix}/feedback",
        },
    )


@root_router.get("/health")
def health(request: Request):
    return envelope(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=round(time.monotonic() - request.app.state.started_at, 3),
        status="healthy",
    )


# History

@router.post("/history", status_code=201)
def create_history(payload: CreateHistoryPayload, db: DbClient = Depends(get_db_client)):
    record = db.create_entry(
        payload.title,
        payload.message,
        email=payload.email,
        is_speech_to_text=payload.is_speech_to_text,
    )
    return envelope(message="History created", data=record.as_dict())


@router.post("/history/email", status_code=201)
def create_history_identity(
    payload: CreateIdentityPayload, db: DbClient = Depends(get_db_client)
):
    record = db.create_identity(payload.email, payload.title)
    return envelope(message="History created", data=record.as_dict())


@router.post("/history/{email}", status_code=201)
def attach_history_message(
    email: str,
    payload: AttachMessagePayload,
    db: DbClient = Depends(get_db_client),
):
    record = db.attach_message(email, payload.message, payload.is_speech_to_text)
    return envelope(message="Message saved", data=record.as_dict())


@router.get("/history")
def list_history(db: DbClient = Depends(get_db_client)):
    records = db.list_history()
    return envelope(data=[r.as_dict() for r in records])


@router.get("/history/{key}")
def get_history(key: str, db: DbClient = Depends(get_db_client)):
    logger.info("Looking up history for %s", key)
    records = db.get_history(key)
    return envelope(data=[r.as_dict() for r in records])


@router.delete("/history/{key}")
def delete_history(key: str, db: DbClient = Depends(get_db_client)):
    deleted = db.delete_history(key)
    return envelope(message=f"History for {key} deleted", data={"deleted": deleted})


# Profile

@router.get("/profile")
def get_profile(db: DbClient = Depends(get_db_client)):
    return envelope(data=db.get_profile().as_dict())


@router.put("/profile")
def update_profile(
    name: Optional[str] = Form(None),
    profile_picture: Optional[UploadFile] = File(None),
    db: DbClient = Depends(get_db_client),
    media: MediaService = Depends(get_media_service),
):
    require_fields(name=name)
    picture_url = None
    if profile_picture is not None and profile_picture.filename:
        picture_url = media.upload_profile_picture(
            # One byte past the limit is enough to reject oversized uploads.
            profile_picture.file.read(MAX_PICTURE_BYTES + 1),
            profile_picture.filename,
            profile_picture.content_type,
        )
    profile = db.update_profile(name, picture_url)
    return envelope(message="Profile updated", data=profile.as_dict())


# Feedback

@router.post("/feedback", status_code=201)
def create_feedback(payload: FeedbackPayload, db: DbClient = Depends(get_db_client)):
    record = db.create_feedback(payload.comment, payload.rating)
    return envelope(message="Feedback saved", data=record.as_dict())


@router.get("/feedback")
def list_feedback(db: DbClient = Depends(get_db_client)):
    return envelope(data=[r.as_dict() for r in db.list_feedback()])


# Soundboards

@router.post("/soundboards", status_code=201)
def create_soundboard(
    payload: SoundboardPayload,
    db: DbClient = Depends(get_db_client),
    media: MediaService = Depends(get_media_service),
):
    record = media.create_soundboard(db, payload.text)
    return envelope(message="Soundboard created successfully", data=record.as_dict())


@router.get("/soundboards")
def list_soundboards(db: DbClient = Depends(get_db_client)):
    records = db.list_soundboards()
    return envelope(
        message="Soundboards retrieved successfully",
        data=[r.as_dict() for r in records],
    )
