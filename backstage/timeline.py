import json
import logging

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backstage.corpus import DocumentCorpus, assemble_context
from backstage.errors import NoDocuments, NotFound, StorageError, TimelineParseError
from backstage.models import Event, EventFile, EventTimeline, utcnow
from backstage.schemas import TimelineDocument

logger = logging.getLogger("backstage.timeline")

SYSTEM_INSTRUCTION = """You are a specialist in extracting data from event documents.
Your task is to analyse the event documents and extract a detailed timeline.

Instructions:
1. Identify every item that has a time or date.
2. Group the items into logical categories (e.g. "General", "Main Stage", "Catering", "VIP", "Technical"). If there is no clear category, use "General".
3. Extract the combined date and time (e.g. "30 Nov - 14:00") and a short label for the item.
4. Your answer must strictly follow the provided JSON schema.
"""

SCHEMA_NAME = "event_timeline"

TIMELINE_SCHEMA = {
    "type": "object",
    "properties": {
        "timelines": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "category": {
                        "type": "string",
                        "description": "Group the items belong to, e.g. Main Stage or General",
                    },
                    "items": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "date": {
                                    "type": "string",
                                    "description": "Readable date/time, e.g. 14:00 or 30 Nov 14:00",
                                },
                                "label": {
                                    "type": "string",
                                    "description": "Name or short description of the item",
                                },
                            },
                            "required": ["date", "label"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["category", "items"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["timelines"],
    "additionalProperties": False,
}


def parse_timeline(raw: str) -> TimelineDocument:
    try:
        return TimelineDocument.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("Model returned an unusable timeline: %s", e)
        raise TimelineParseError()


class TimelineEngine:
    def __init__(self, db: Session, llm, corpus: DocumentCorpus):
        self.db = db
        self.llm = llm
        self.corpus = corpus

    def generate(self, event_id: str) -> dict:
        if not self.corpus.list_documents(event_id):
            raise NoDocuments("No documents found for this event to generate a timeline.")

        context = assemble_context(self.corpus.read(event_id))
        if context.is_empty:
            raise NoDocuments("Could not read content from any of the event files.")

        raw = self.llm.generate_json(SYSTEM_INSTRUCTION, context.text, SCHEMA_NAME, TIMELINE_SCHEMA)
        timeline = parse_timeline(raw).model_dump()
        self.replace_cache(event_id, timeline)
        return timeline

    def replace_cache(self, event_id: str, timeline: dict):
        """
        Clear then insert, as two commits. A failed clear aborts before the
        insert; a failed insert leaves the event with no cached timeline.
        Concurrent regenerations are last-writer-wins: the insert holds a lock
        on the event row and clears again, so one cache row survives.
        """
        try:
            self.db.query(EventTimeline).filter(EventTimeline.event_id == event_id).delete(
                synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to clear cached timeline for event %s", event_id)
            raise StorageError("Failed to store generated timeline")

        try:
            self.db.query(Event.id).filter(Event.id == event_id).with_for_update().first()
            self.db.query(EventTimeline).filter(EventTimeline.event_id == event_id).delete(
                synchronize_session=False
            )
            self.db.add(EventTimeline(event_id=event_id, timeline_json=timeline, updated_at=utcnow()))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Cached timeline for event %s was cleared but not replaced", event_id)
            raise StorageError("Failed to store generated timeline")

    def fetch_cached(self, event_id: str) -> dict:
        count = (
            self.db.query(func.count(EventFile.id)).filter(EventFile.event_id == event_id).scalar()
        )
        if not count:
            raise NotFound("No documents found for this event to provide a cached timeline")

        row = (
            self.db.query(EventTimeline)
            .filter(EventTimeline.event_id == event_id)
            .order_by(EventTimeline.updated_at.desc())
            .first()
        )
        if row is None:
            raise NotFound("No cached timeline found for this event")

        return {
            "event_id": event_id,
            "timeline": row.timeline_json,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }
