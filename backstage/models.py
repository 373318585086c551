import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from backstage.db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Event(Base):
    __tablename__ = "events"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    date = Column(DateTime(timezone=True), nullable=False)
    location = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class EventUser(Base):
    __tablename__ = "event_users"
    __table_args__ = (UniqueConstraint("event_id", "user_id"),)
    id = Column(Integer, primary_key=True)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String, nullable=False)  # ADMIN / MANAGER / STAFF
    added_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    added_at = Column(DateTime(timezone=True), default=utcnow)


class Category(Base):
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)


class EventFile(Base):
    __tablename__ = "event_files"
    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_path = Column(String, nullable=False)  # object store key: <event_id>/<file_name>
    file_size = Column(Integer, nullable=False)
    file_type = Column(String, nullable=False)
    category = Column(String, nullable=False)
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    uploaded_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    extracted_text = Column(Text, nullable=True)  # null for legacy uploads or failed extraction


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)  # insertion order breaks created_at ties
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    role = Column(String, nullable=False)  # "user" or "assistant"
    content = Column(Text, nullable=False)
    source_file_id = Column(String(36), ForeignKey("event_files.id", ondelete="SET NULL"), nullable=True)
    source_document_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class EventTimeline(Base):
    __tablename__ = "event_timelines"
    id = Column(Integer, primary_key=True)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    timeline_json = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class TimelineEntry(Base):
    __tablename__ = "timeline_entries"
    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    time = Column(DateTime(timezone=True), nullable=False)
    description = Column(String, nullable=False)
    type = Column(String, nullable=False)  # rehearsal/soundcheck/logistics/show/meeting
    location = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


def as_utc(value):
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
