import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from backstage.errors import StorageError
from backstage.extraction import extract_text
from backstage.models import EventFile

logger = logging.getLogger("backstage.corpus")


@dataclass
class CorpusDocument:
    id: str
    name: str
    text: str


@dataclass
class AssembledContext:
    text: str
    first_document: Optional[CorpusDocument]

    @property
    def is_empty(self) -> bool:
        return self.first_document is None


class DocumentCorpus:
    """
    Reads the text of an event's documents.

    ``cached`` uses the text stored at upload time; ``live`` fetches each blob
    from the object store and extracts it again. A document whose text cannot
    be obtained is skipped.
    """

    def __init__(self, db: Session, store, strategy: str = "cached"):
        self.db = db
        self.store = store
        self.strategy = strategy

    def list_documents(self, event_id: str) -> List[EventFile]:
        return (
            self.db.query(EventFile)
            .filter(EventFile.event_id == event_id)
            .order_by(EventFile.uploaded_at.asc(), EventFile.file_name.asc())
            .all()
        )

    def load_text(self, doc: EventFile) -> Optional[str]:
        if self.strategy == "cached":
            return doc.extracted_text

        try:
            blob = self.store.get(doc.file_path)
        except StorageError as e:
            logger.warning("Could not fetch %s from storage: %s", doc.file_path, e)
            return None
        return extract_text(blob, doc.file_type, doc.file_name)

    def read(self, event_id: str) -> List[CorpusDocument]:
        docs = []
        for f in self.list_documents(event_id):
            text = self.load_text(f)
            if text is None:
                logger.warning("Skipping %s (%s): no readable text", f.file_name, f.id)
                continue
            docs.append(CorpusDocument(id=f.id, name=f.file_name, text=text))
        return docs


def assemble_context(docs: List[CorpusDocument]) -> AssembledContext:
    # listing order, no dedup, no truncation
    text = "".join(f"\n\n--- Document: {d.name} ---\n{d.text}" for d in docs)
    return AssembledContext(text=text, first_document=docs[0] if docs else None)
