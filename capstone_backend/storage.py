"""
Storage abstraction for Google Cloud Storage (S3-compatible XML API) and in-memory testing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import boto3
import botocore.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from capstone_backend.errors import UpstreamError

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def store(self, data: bytes, name: str, content_type: str) -> str:
        ...

    def public_url(self, name: str) -> str:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://storage.example.test"
    bucket: str = "capstone-test"
    stored_objects: dict = None
    fail_uploads: bool = False

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def public_url(self, name: str) -> str:
        return f"{self.base_url}/{self.bucket}/{name}"

    def store(self, data: bytes, name: str, content_type: str) -> str:
        if self.fail_uploads:
            raise UpstreamError(f"Upload of {name} failed")
        self.stored_objects[name] = {
            "data": bytes(data),
            "content_type": content_type,
            "cache_control": CACHE_CONTROL,
        }
        return self.public_url(name)


@dataclass
class GcsStorageClient:
    """
    Google Cloud Storage client speaking the S3-compatible XML API.

    Authenticates with HMAC keys, either passed explicitly or read from an
    AWS-style credentials file.
    """

    bucket: str
    endpoint: str = "https://storage.googleapis.com"
    public_base_url: str = "https://storage.googleapis.com"
    project_id: Optional[str] = None
    credentials_file: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None

    def __post_init__(self):
        botocore_session = botocore.session.get_session()
        if self.credentials_file:
            botocore_session.set_config_variable(
                "credentials_file", self.credentials_file
            )
        session = boto3.session.Session(botocore_session=botocore_session)
        # GCS expects path-style addressing and "auto" as the region.
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = session.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name="auto",
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )
        if self.project_id:
            self._client.meta.events.register(
                "before-sign.s3", self._add_project_header
            )

    def _add_project_header(self, request, **kwargs) -> None:
        request.headers["x-goog-project-id"] = self.project_id

    def public_url(self, name: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{self.bucket}/{name}"

    def store(self, data: bytes, name: str, content_type: str) -> str:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=name,
                Body=data,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.exception("Upload of %s to bucket %s failed", name, self.bucket)
            raise UpstreamError(f"Error uploading to cloud storage: {exc}") from exc
        return self.public_url(name)
