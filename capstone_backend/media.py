"""
Soundboard and profile-picture flows that chain an upload before the insert.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from capstone_backend.db import DbClient, SoundboardRecord
from capstone_backend.speech import (
    AUDIO_CONTENT_TYPE,
    AUDIO_EXTENSION,
    SpeechSynthesizer,
)
from capstone_backend.storage import StorageClient
from capstone_backend.validation import require_fields, validate_picture

logger = logging.getLogger(__name__)

PROFILE_PICTURE_PREFIX = "profiles"


def generate_audio_name() -> str:
    return f"{uuid.uuid4()}{AUDIO_EXTENSION}"


def profile_picture_name(filename: Optional[str]) -> str:
    base = (filename or "picture").replace("/", "_").replace("\\", "_")
    return f"{PROFILE_PICTURE_PREFIX}/{int(time.time() * 1000)}-{base}"


@dataclass
class MediaService:
    speech: SpeechSynthesizer
    storage: StorageClient

    def create_soundboard(self, db: DbClient, text: str) -> SoundboardRecord:
        """
        Synthesize `text`, upload the MP3 and only then insert the row.

        Any failure before the insert propagates and leaves nothing persisted.
        """
        require_fields(text=text)
        logger.info("Generating speech for %d characters", len(text))
        audio = self.speech.synthesize(text)

        file_name = generate_audio_name()
        logger.info("Uploading soundboard audio as %s", file_name)
        audio_url = self.storage.store(audio, file_name, AUDIO_CONTENT_TYPE)

        return db.create_soundboard(text, audio_url, file_name)

    def upload_profile_picture(
        self, data: bytes, filename: Optional[str], content_type: Optional[str]
    ) -> str:
        validate_picture(content_type, len(data))
        name = profile_picture_name(filename)
        logger.info("Uploading profile picture as %s", name)
        return self.storage.store(data, name, content_type)
