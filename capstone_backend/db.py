"""
Persistence gateway for SQL databases and an in-memory test implementation.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Protocol

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    or_,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from capstone_backend.errors import ConflictError, InternalError, NotFoundError
from capstone_backend.validation import (
    require_fields,
    validate_flag,
    validate_rating,
)

logger = logging.getLogger(__name__)

PROFILE_ID = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class DbClient(Protocol):
    """Interface for database access."""

    def create_identity(self, email: str, title: str) -> "HistoryRecord":
        ...

    def create_entry(
        self,
        title: str,
        message: str,
        email: Optional[str] = None,
        is_speech_to_text: Optional[bool] = None,
    ) -> "HistoryRecord":
        ...

    def attach_message(
        self, email: str, message: str, is_speech_to_text: bool
    ) -> "HistoryRecord":
        ...

    def list_history(self) -> list["HistoryRecord"]:
        ...

    def get_history(self, key: str) -> list["HistoryRecord"]:
        ...

    def delete_history(self, key: str) -> int:
        ...

    def get_profile(self) -> "ProfileRecord":
        ...

    def update_profile(
        self, name: str, profile_picture_url: Optional[str] = None
    ) -> "ProfileRecord":
        ...

    def create_feedback(self, comment: str, rating: int) -> "FeedbackRecord":
        ...

    def list_feedback(self) -> list["FeedbackRecord"]:
        ...

    def create_soundboard(
        self, text: str, audio_url: str, file_name: str
    ) -> "SoundboardRecord":
        ...

    def list_soundboards(self) -> list["SoundboardRecord"]:
        ...


@dataclass
class MessageRecord:
    message_id: str
    email: str
    message: str
    is_speech_to_text: bool
    created_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "email": self.email,
            "message": self.message,
            "is_speech_to_text": self.is_speech_to_text,
            "created_at": _iso(self.created_at),
        }


@dataclass
class HistoryRecord:
    id: str
    title: str
    email: Optional[str] = None
    message: Optional[str] = None
    is_speech_to_text: Optional[bool] = None
    created_at: datetime = field(default_factory=_utcnow)
    messages: List[MessageRecord] = field(default_factory=list)

    @property
    def detection_type(self) -> str:
        return "Speech to Text" if self.is_speech_to_text else "Gesture Detection"

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "email": self.email,
            "message": self.message,
            "is_speech_to_text": self.is_speech_to_text,
            "created_at": _iso(self.created_at),
            "detection_type": self.detection_type,
            "messages": [m.as_dict() for m in self.messages],
        }


@dataclass
class ProfileRecord:
    name: str
    profile_picture_url: Optional[str] = None
    id: int = PROFILE_ID
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "profile_picture_url": self.profile_picture_url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class FeedbackRecord:
    id: int
    comment: str
    rating: int
    created_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "comment": self.comment,
            "rating": self.rating,
            "created_at": _iso(self.created_at),
        }


@dataclass
class SoundboardRecord:
    id: str
    text: str
    audio_url: str
    file_name: str
    created_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "audioUrl": self.audio_url,
            "fileName": self.file_name,
            "created_at": _iso(self.created_at),
        }


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.history: Dict[str, HistoryRecord] = {}
        self.messages: Dict[str, MessageRecord] = {}
        self.profile: Optional[ProfileRecord] = None
        self.feedback: Dict[int, FeedbackRecord] = {}
        self.soundboards: Dict[str, SoundboardRecord] = {}
        self._feedback_seq = 0

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.history.clear()
        self.messages.clear()
        self.profile = None
        self.feedback.clear()
        self.soundboards.clear()
        self._feedback_seq = 0

    def _messages_for(self, email: Optional[str]) -> list[MessageRecord]:
        if not email:
            return []
        found = [m for m in self.messages.values() if m.email == email]
        return sorted(found, key=lambda m: m.created_at)

    def _with_messages(self, record: HistoryRecord) -> HistoryRecord:
        record.messages = self._messages_for(record.email)
        return record

    def _newest_first(self, records) -> list:
        # Stable sort then reverse so equal timestamps keep latest-inserted first.
        return list(reversed(sorted(records, key=lambda r: r.created_at)))

    def _matching(self, key: str) -> list[HistoryRecord]:
        return [r for r in self.history.values() if r.id == key or r.email == key]

    def create_identity(self, email: str, title: str) -> HistoryRecord:
        require_fields(title=title, email=email)
        if any(r.email == email for r in self.history.values()):
            raise ConflictError(f"Email {email} is already registered")
        record = HistoryRecord(id=uuid.uuid4().hex, title=title, email=email)
        self.history[record.id] = record
        return record

    def create_entry(
        self,
        title: str,
        message: str,
        email: Optional[str] = None,
        is_speech_to_text: Optional[bool] = None,
    ) -> HistoryRecord:
        require_fields(title=title, message=message)
        validate_flag("is_speech_to_text", is_speech_to_text)
        record = HistoryRecord(
            id=uuid.uuid4().hex,
            title=title,
            email=email or None,
            message=message,
            is_speech_to_text=is_speech_to_text,
        )
        self.history[record.id] = record
        return record

    def attach_message(
        self, email: str, message: str, is_speech_to_text: bool
    ) -> HistoryRecord:
        require_fields(message=message, is_speech_to_text=is_speech_to_text)
        validate_flag("is_speech_to_text", is_speech_to_text)
        owners = self._newest_first(r for r in self.history.values() if r.email == email)
        if not owners:
            raise NotFoundError(f"No history found for email {email}")
        now = _utcnow()
        entry = MessageRecord(
            message_id=uuid.uuid4().hex,
            email=email,
            message=message,
            is_speech_to_text=is_speech_to_text,
            created_at=now,
        )
        self.messages[entry.message_id] = entry
        identity = owners[0]
        identity.message = message
        identity.is_speech_to_text = is_speech_to_text
        identity.created_at = now
        return self._with_messages(identity)

    def list_history(self) -> list[HistoryRecord]:
        return [self._with_messages(r) for r in self._newest_first(self.history.values())]

    def get_history(self, key: str) -> list[HistoryRecord]:
        found = self._newest_first(self._matching(key))
        if not found:
            raise NotFoundError(f"No history found for {key}")
        return [self._with_messages(r) for r in found]

    def delete_history(self, key: str) -> int:
        found = self._matching(key)
        if not found:
            raise NotFoundError(f"No history found for {key}")
        for record in found:
            del self.history[record.id]
        remaining = {r.email for r in self.history.values()}
        orphaned = {r.email for r in found if r.email and r.email not in remaining}
        for message_id in [k for k, m in self.messages.items() if m.email in orphaned]:
            del self.messages[message_id]
        return len(found)

    def get_profile(self) -> ProfileRecord:
        if self.profile is None:
            raise NotFoundError("Profile not found")
        return self.profile

    def update_profile(
        self, name: str, profile_picture_url: Optional[str] = None
    ) -> ProfileRecord:
        require_fields(name=name)
        if self.profile is None:
            self.profile = ProfileRecord(name=name, profile_picture_url=profile_picture_url)
            return self.profile
        self.profile.name = name
        if profile_picture_url is not None:
            self.profile.profile_picture_url = profile_picture_url
        self.profile.updated_at = _utcnow()
        return self.profile

    def create_feedback(self, comment: str, rating: int) -> FeedbackRecord:
        require_fields(comment=comment, rating=rating)
        validate_rating(rating)
        self._feedback_seq += 1
        record = FeedbackRecord(id=self._feedback_seq, comment=comment, rating=rating)
        self.feedback[record.id] = record
        return record

    def list_feedback(self) -> list[FeedbackRecord]:
        return self._newest_first(self.feedback.values())

    def create_soundboard(
        self, text: str, audio_url: str, file_name: str
    ) -> SoundboardRecord:
        require_fields(text=text, audio_url=audio_url, file_name=file_name)
        record = SoundboardRecord(
            id=uuid.uuid4().hex, text=text, audio_url=audio_url, file_name=file_name
        )
        self.soundboards[record.id] = record
        return record

    def list_soundboards(self) -> list[SoundboardRecord]:
        return self._newest_first(self.soundboards.values())


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 0,
        pool_timeout: int = 30,
        pool_recycle: int = 1800,
    ):
        if not database_url:
            raise ValueError("A database URL is required for SqlDbClient")
        url = make_url(database_url)
        # Serializes sessions when every session shares one connection.
        self._lock = nullcontext()
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            # One shared connection so an in-memory database survives across sessions.
            engine_kwargs = dict(
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
            self._lock = threading.RLock()
        elif url.get_backend_name() == "sqlite":
            engine_kwargs = dict(
                connect_args={"check_same_thread": False, "timeout": pool_timeout},
            )
        else:
            engine_kwargs = dict(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                pool_pre_ping=True,
            )
        self.engine = create_engine(url, future=True, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._lock, self.Session.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Database operation failed")
            raise InternalError("Database operation failed") from exc

    def _messages_for(self, session: Session, email: Optional[str]) -> list[MessageRecord]:
        if not email:
            return []
        rows = session.execute(
            select(MessageRow)
            .where(MessageRow.email == email)
            .order_by(MessageRow.created_at.asc())
        ).scalars().all()
        return [
            MessageRecord(
                message_id=row.message_id,
                email=row.email,
                message=row.message,
                is_speech_to_text=row.is_speech_to_text,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def _to_history_record(
        self, session: Session, row: "HistoryRow", with_messages: bool = True
    ) -> HistoryRecord:
        return HistoryRecord(
            id=row.id,
            title=row.title,
            email=row.email,
            message=row.message,
            is_speech_to_text=row.is_speech_to_text,
            created_at=row.created_at,
            messages=self._messages_for(session, row.email) if with_messages else [],
        )

    def _to_profile_record(self, row: "ProfileRow") -> ProfileRecord:
        return ProfileRecord(
            id=row.id,
            name=row.name,
            profile_picture_url=row.profile_picture_url,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_feedback_record(self, row: "FeedbackRow") -> FeedbackRecord:
        return FeedbackRecord(
            id=row.id, comment=row.comment, rating=row.rating, created_at=row.created_at
        )

    def _to_soundboard_record(self, row: "SoundboardRow") -> SoundboardRecord:
        return SoundboardRecord(
            id=row.id,
            text=row.text,
            audio_url=row.audio_url,
            file_name=row.file_name,
            created_at=row.created_at,
        )

    def _matching_stmt(self, key: str):
        return (
            select(HistoryRow)
            .where(or_(HistoryRow.id == key, HistoryRow.email == key))
            .order_by(HistoryRow.created_at.desc())
        )

    def create_identity(self, email: str, title: str) -> HistoryRecord:
        require_fields(title=title, email=email)
        with self._transaction() as session:
            existing = session.execute(
                select(HistoryRow.id).where(HistoryRow.email == email).limit(1)
            ).first()
            if existing:
                raise ConflictError(f"Email {email} is already registered")
            row = HistoryRow(
                id=uuid.uuid4().hex,
                title=title,
                email=email,
                identity_email=email,
                created_at=_utcnow(),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as exc:
                # Another request registered the same email after the check above.
                raise ConflictError(f"Email {email} is already registered") from exc
            return self._to_history_record(session, row, with_messages=False)

    def create_entry(
        self,
        title: str,
        message: str,
        email: Optional[str] = None,
        is_speech_to_text: Optional[bool] = None,
    ) -> HistoryRecord:
        require_fields(title=title, message=message)
        validate_flag("is_speech_to_text", is_speech_to_text)
        with self._transaction() as session:
            row = HistoryRow(
                id=uuid.uuid4().hex,
                title=title,
                email=email or None,
                message=message,
                is_speech_to_text=is_speech_to_text,
                created_at=_utcnow(),
            )
            session.add(row)
            session.flush()
            return self._to_history_record(session, row, with_messages=False)

    def attach_message(
        self, email: str, message: str, is_speech_to_text: bool
    ) -> HistoryRecord:
        require_fields(message=message, is_speech_to_text=is_speech_to_text)
        validate_flag("is_speech_to_text", is_speech_to_text)
        with self._transaction() as session:
            identity = session.execute(
                select(HistoryRow)
                .where(HistoryRow.email == email)
                .order_by(HistoryRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if identity is None:
                raise NotFoundError(f"No history found for email {email}")
            now = _utcnow()
            session.add(
                MessageRow(
                    message_id=uuid.uuid4().hex,
                    email=email,
                    message=message,
                    is_speech_to_text=is_speech_to_text,
                    created_at=now,
                )
            )
            identity.message = message
            identity.is_speech_to_text = is_speech_to_text
            identity.created_at = now
            session.flush()
            return self._to_history_record(session, identity)

    def list_history(self) -> list[HistoryRecord]:
        with self._transaction() as session:
            rows = session.execute(
                select(HistoryRow).order_by(HistoryRow.created_at.desc())
            ).scalars().all()
            return [self._to_history_record(session, row) for row in rows]

    def get_history(self, key: str) -> list[HistoryRecord]:
        with self._transaction() as session:
            rows = session.execute(self._matching_stmt(key)).scalars().all()
            if not rows:
                raise NotFoundError(f"No history found for {key}")
            return [self._to_history_record(session, row) for row in rows]

    def delete_history(self, key: str) -> int:
        with self._transaction() as session:
            rows = session.execute(self._matching_stmt(key)).scalars().all()
            if not rows:
                raise NotFoundError(f"No history found for {key}")
            emails = {row.email for row in rows if row.email}
            for row in rows:
                session.delete(row)
            session.flush()
            if emails:
                remaining = set(
                    session.execute(
                        select(HistoryRow.email).where(HistoryRow.email.in_(sorted(emails)))
                    ).scalars().all()
                )
                orphaned = emails - remaining
                if orphaned:
                    session.execute(
                        delete(MessageRow).where(MessageRow.email.in_(sorted(orphaned)))
                    )
            return len(rows)

    def get_profile(self) -> ProfileRecord:
        with self._transaction() as session:
            row = session.get(ProfileRow, PROFILE_ID)
            if row is None:
                raise NotFoundError("Profile not found")
            return self._to_profile_record(row)

    def update_profile(
        self, name: str, profile_picture_url: Optional[str] = None
    ) -> ProfileRecord:
        require_fields(name=name)
        now = _utcnow()
        with self._transaction() as session:
            row = session.get(ProfileRow, PROFILE_ID)
            if row is None:
                row = ProfileRow(
                    id=PROFILE_ID,
                    name=name,
                    profile_picture_url=profile_picture_url,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.name = name
                if profile_picture_url is not None:
                    row.profile_picture_url = profile_picture_url
                row.updated_at = now
            session.flush()
            return self._to_profile_record(row)

    def create_feedback(self, comment: str, rating: int) -> FeedbackRecord:
        require_fields(comment=comment, rating=rating)
        validate_rating(rating)
        with self._transaction() as session:
            row = FeedbackRow(comment=comment, rating=rating, created_at=_utcnow())
            session.add(row)
            session.flush()
            return self._to_feedback_record(row)

    def list_feedback(self) -> list[FeedbackRecord]:
        with self._transaction() as session:
            rows = session.execute(
                select(FeedbackRow).order_by(
                    FeedbackRow.created_at.desc(), FeedbackRow.id.desc()
                )
            ).scalars().all()
            return [self._to_feedback_record(row) for row in rows]

    def create_soundboard(
        self, text: str, audio_url: str, file_name: str
    ) -> SoundboardRecord:
        require_fields(text=text, audio_url=audio_url, file_name=file_name)
        now = _utcnow()
        with self._transaction() as session:
            row = SoundboardRow(
                id=uuid.uuid4().hex,
                text=text,
                audio_url=audio_url,
                file_name=file_name,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return self._to_soundboard_record(row)

    def list_soundboards(self) -> list[SoundboardRecord]:
        with self._transaction() as session:
            rows = session.execute(
                select(SoundboardRow).order_by(SoundboardRow.created_at.desc())
            ).scalars().all()
            return [self._to_soundboard_record(row) for row in rows]


Base = declarative_base()


class HistoryRow(Base):
    __tablename__ = "history"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    # Set only on identity rows; free-form entries may share an email.
    identity_email = Column(String(255), nullable=True, unique=True)
    message = Column(Text, nullable=True)
    is_speech_to_text = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class MessageRow(Base):
    __tablename__ = "message"

    message_id = Column(String(64), primary_key=True)
    # Matches history.email; removed together with the last history row for it.
    email = Column(String(255), nullable=False, index=True)
    message = Column(Text, nullable=False)
    is_speech_to_text = Column(Boolean, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ProfileRow(Base):
    __tablename__ = "profile"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    profile_picture_url = Column(String(1024), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class FeedbackRow(Base):
    __tablename__ = "feedback"
    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 4", name="ck_feedback_rating"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    comment = Column(Text, nullable=False)
    rating = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class SoundboardRow(Base):
    __tablename__ = "soundboard"

    id = Column(String(64), primary_key=True)
    text = Column(Text, nullable=False)
    audio_url = Column("audioUrl", String(1024), nullable=False)
    file_name = Column("fileName", String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
