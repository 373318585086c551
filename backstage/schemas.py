from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field, field_validator
from typing_extensions import Annotated


def _required_text(value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError("must not be empty")
    return value


RequiredText = Annotated[str, AfterValidator(_required_text)]


# ---------------------------
# Requests
# ---------------------------
class LoginRequest(BaseModel):
    name: RequiredText
    email: RequiredText

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return v.lower()


class EventCreate(BaseModel):
    name: RequiredText
    date: datetime
    location: RequiredText
    description: Optional[str] = None


class EventUpdate(BaseModel):
    name: Optional[RequiredText] = None
    date: Optional[datetime] = None
    location: Optional[RequiredText] = None
    description: Optional[str] = None


class DocumentDelete(BaseModel):
    fileId: RequiredText


class ChatRequest(BaseModel):
    # emptiness is checked by the chat engine, not here
    message: str = ""
    stream: bool = False


EntryType = Literal["rehearsal", "soundcheck", "logistics", "show", "meeting"]


class TimelineEntryCreate(BaseModel):
    time: datetime
    description: RequiredText
    type: EntryType
    location: Optional[str] = None
    notes: Optional[str] = None


# ---------------------------
# Generated timeline
# ---------------------------
class TimelineItem(BaseModel):
    label: str
    date: str


class TimelineCategory(BaseModel):
    category: str = "General"
    items: List[TimelineItem] = Field(default_factory=list)

    @field_validator("category")
    @classmethod
    def _default_category(cls, v: str) -> str:
        return v if v and v.strip() else "General"


class TimelineDocument(BaseModel):
    timelines: List[TimelineCategory]


# ---------------------------
# Chat stream envelopes (one JSON object per line)
# ---------------------------
class UserMessageEvent(BaseModel):
    type: Literal["user_message"] = "user_message"
    message: Optional[Dict[str, Any]]


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    content: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    message: Optional[Dict[str, Any]]
    content: str


StreamEvent = Annotated[
    Union[UserMessageEvent, ChunkEvent, DoneEvent],
    Field(discriminator="type"),
]


def encode_event(event: BaseModel) -> str:
    return event.model_dump_json() + "\n"
