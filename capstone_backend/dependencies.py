"""
Dependency wiring for the FastAPI app.

Clients are built once per app by `build_*` and read back from `app.state`
by the request dependencies.
"""

from __future__ import annotations

import logging

from fastapi import Request

from capstone_backend.config import Settings
from capstone_backend.db import DbClient, InMemoryDbClient, SqlDbClient
from capstone_backend.media import MediaService
from capstone_backend.speech import (
    EdgeSpeechSynthesizer,
    InMemorySpeechSynthesizer,
    SpeechSynthesizer,
)
from capstone_backend.storage import (
    GcsStorageClient,
    InMemoryStorageClient,
    StorageClient,
)

logger = logging.getLogger(__name__)


def build_db_client(settings: Settings) -> DbClient:
    database_url = settings.resolved_database_url()
    if settings.use_in_memory_backends or not database_url:
        logger.warning("No database configured; using in-memory storage")
        return InMemoryDbClient()
    return SqlDbClient(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


def build_storage_client(settings: Settings) -> StorageClient:
    if settings.use_in_memory_backends or not settings.gcs_bucket_name:
        logger.warning("No bucket configured; uploads are kept in memory")
        return InMemoryStorageClient()
    return GcsStorageClient(
        bucket=settings.gcs_bucket_name,
        endpoint=settings.gcs_endpoint,
        public_base_url=settings.gcs_public_base_url,
        project_id=settings.gcp_project_id,
        credentials_file=settings.gcs_credentials_file,
        access_key_id=settings.gcs_hmac_access_key_id,
        secret_access_key=settings.gcs_hmac_secret,
    )


def build_speech_synthesizer(settings: Settings) -> SpeechSynthesizer:
    if settings.use_in_memory_backends:
        return InMemorySpeechSynthesizer()
    return EdgeSpeechSynthesizer(voice=settings.tts_voice)


def get_db_client(request: Request) -> DbClient:
    return request.app.state.db


def get_media_service(request: Request) -> MediaService:
    return request.app.state.media
