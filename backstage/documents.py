import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backstage.errors import NotFound, ObjectExists, ObjectMissing, RequestInvalid, StorageError
from backstage.extraction import ALLOWED_TYPES, extract_text
from backstage.models import Category, EventFile
from backstage.storage import RESERVED_NAMES, object_key, safe_name

logger = logging.getLogger("backstage.documents")


def serialize_file(f: EventFile) -> dict:
    return {
        "id": f.id,
        "event_id": f.event_id,
        "file_name": f.file_name,
        "file_path": f.file_path,
        "file_size": f.file_size,
        "file_type": f.file_type,
        "category": f.category,
        "uploaded_by": f.uploaded_by,
        "uploaded_at": f.uploaded_at.isoformat() if f.uploaded_at else None,
        "has_text": f.extracted_text is not None,
    }


def list_files(db: Session, event_id: str) -> List[EventFile]:
    return (
        db.query(EventFile)
        .filter(EventFile.event_id == event_id)
        .order_by(EventFile.uploaded_at.desc())
        .all()
    )


def validate_upload(
    db: Session,
    file_name: Optional[str],
    media_type: Optional[str],
    size: int,
    category: Optional[str],
    max_bytes: int,
):
    if not file_name:
        raise RequestInvalid("No file uploaded")
    if safe_name(file_name).strip() in RESERVED_NAMES:
        raise RequestInvalid(f"Invalid file name: {file_name}")
    if not (category or "").strip():
        raise RequestInvalid("Category is required")
    if media_type not in ALLOWED_TYPES:
        raise RequestInvalid("File type not supported. Please upload a PDF or TXT file.")
    if size > max_bytes:
        raise RequestInvalid(f"File too large (max {max_bytes} bytes)")
    if db.query(Category).filter(Category.name == category.strip()).first() is None:
        raise RequestInvalid(f"Unknown category: {category.strip()}")


def upload_document(
    db: Session,
    store,
    event_id: str,
    user_id: int,
    file_name: str,
    media_type: str,
    data: bytes,
    category: str,
    max_bytes: int,
) -> EventFile:
    """
    Blob first, then metadata. If the metadata insert fails the blob is
    removed again; a crash between the two steps can still leave an orphan,
    which find_orphaned_blobs reports.
    """
    validate_upload(db, file_name, media_type, len(data), category, max_bytes)

    key = object_key(event_id, file_name)
    try:
        store.put(key, data)
    except ObjectExists:
        logger.warning("Upload rejected, %s already exists", key)
        raise StorageError("Failed to upload file to storage")
    except OSError:
        logger.exception("Blob write failed for %s", key)
        raise StorageError("Failed to upload file to storage")
    logger.info("Stored blob %s (%d bytes)", key, len(data))

    record = EventFile(
        event_id=event_id,
        file_name=file_name,
        file_path=key,
        file_size=len(data),
        file_type=media_type,
        category=category.strip(),
        uploaded_by=user_id,
        extracted_text=extract_text(data, media_type, file_name),
    )
    try:
        db.add(record)
        db.commit()
        db.refresh(record)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Metadata insert failed for %s, removing blob", key)
        try:
            store.remove(key)
        except (StorageError, OSError):
            logger.exception("Compensating delete failed, %s is orphaned", key)
        raise StorageError("Failed to save file metadata")

    return record


def delete_document(db: Session, store, event_id: str, file_id: str) -> EventFile:
    record = (
        db.query(EventFile)
        .filter(EventFile.id == file_id, EventFile.event_id == event_id)
        .first()
    )
    if record is None:
        raise NotFound("File not found")

    try:
        store.remove(record.file_path)
    except ObjectMissing:
        logger.warning("Blob %s already missing, deleting metadata only", record.file_path)
    except OSError:
        logger.exception("Blob delete failed for %s", record.file_path)
        raise StorageError("Failed to delete file from storage")

    try:
        db.delete(record)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Blob %s deleted but metadata row %s remains", record.file_path, record.id)
        raise StorageError("Failed to delete file metadata")

    logger.info("Deleted document %s (%s)", record.id, record.file_path)
    return record


def find_orphaned_blobs(db: Session, store) -> List[str]:
    known = {path for (path,) in db.query(EventFile.file_path).all()}
    return [key for key in store.list_paths() if key not in known]


def remove_orphaned_blobs(db: Session, store) -> List[str]:
    removed = []
    for key in find_orphaned_blobs(db, store):
        try:
            store.remove(key)
            removed.append(key)
        except (StorageError, OSError):
            logger.exception("Could not remove orphaned blob %s", key)
    return removed
