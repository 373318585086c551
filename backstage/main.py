from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from sqlalchemy import or_
from sqlalchemy.orm import Session

from backstage import __version__
from backstage.auth import Role, UserIdentity, current_user, make_token, require_event
from backstage.chat import ChatEngine, ConversationStore, serialize_message
from backstage.config import Settings
from backstage.corpus import DocumentCorpus
from backstage.db import build_engine, init_db, make_session_factory
from backstage.deps import get_db, get_llm, get_settings, get_store
from backstage.documents import delete_document, list_files, serialize_file, upload_document
from backstage.errors import NotFound, StorageError, register_error_handlers
from backstage.llm import LLMClient
from backstage.logging_setup import configure_logging
from backstage.models import Category, Event, EventFile, EventUser, TimelineEntry, User, as_utc
from backstage.schemas import (
    ChatRequest,
    DocumentDelete,
    EventCreate,
    EventUpdate,
    LoginRequest,
    TimelineEntryCreate,
    encode_event,
)
from backstage.storage import LocalObjectStore
from backstage.timeline import TimelineEngine

router = APIRouter()


def _iso(value):
    return value.isoformat() if value else None


def serialize_event(e: Event, role: Optional[Role] = None) -> dict:
    out = {
        "id": e.id,
        "name": e.name,
        "date": _iso(e.date),
        "location": e.location,
        "description": e.description,
        "created_by": e.created_by,
        "created_at": _iso(e.created_at),
        "updated_at": _iso(e.updated_at),
        "is_archived": e.is_archived,
    }
    if role is not None:
        out["userRole"] = Role(role).value
    return out


def serialize_entry(t: TimelineEntry) -> dict:
    return {
        "id": t.id,
        "event_id": t.event_id,
        "time": _iso(t.time),
        "description": t.description,
        "type": t.type,
        "location": t.location,
        "notes": t.notes,
        "created_by": t.created_by,
        "created_at": _iso(t.created_at),
    }


def _corpus(db: Session, store, settings: Settings) -> DocumentCorpus:
    return DocumentCorpus(db, store, settings.corpus_strategy)


def _download_url(settings: Settings, f: EventFile) -> str:
    return f"{settings.public_base_url}/events/{f.event_id}/files/{f.id}/download"


# ---------------------------
# Public endpoints
# ---------------------------
@router.get("/health")
def health():
    return {"ok": True}


@router.post("/auth/login")
def login(
    payload: LoginRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    user = db.query(User).filter(User.email == payload.email).first()
    if not user:
        user = User(name=payload.name, email=payload.email)
        db.add(user)
        db.commit()
        db.refresh(user)

    token = make_token(user.id, settings.jwt_secret, settings.jwt_exp_minutes)
    return {
        "token": token,
        "user": {"id": user.id, "name": user.name, "email": user.email},
    }


@router.get("/categories")
def list_categories(me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    rows = db.query(Category).order_by(Category.name).all()
    return {"categories": [{"id": c.id, "name": c.name} for c in rows]}


@router.get("/dashboard/stats")
def dashboard_stats(me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    event_ids = [
        eid
        for (eid,) in db.query(EventUser.event_id)
        .join(Event, Event.id == EventUser.event_id)
        .filter(EventUser.user_id == me.id, Event.is_archived.is_(False))
        .all()
    ]
    if not event_ids:
        return {"totalFiles": 0, "filesToday": 0, "lastUpdate": None, "showsToday": 0}

    today = datetime.now(timezone.utc).date()
    uploads = [as_utc(u) for (u,) in db.query(EventFile.uploaded_at).filter(EventFile.event_id.in_(event_ids)).all()]
    shows = [
        as_utc(t)
        for (t,) in db.query(TimelineEntry.time)
        .filter(TimelineEntry.event_id.in_(event_ids), TimelineEntry.type == "show")
        .all()
    ]
    return {
        "totalFiles": len(uploads),
        "filesToday": sum(1 for u in uploads if u.date() == today),
        "lastUpdate": _iso(max(uploads)) if uploads else None,
        "showsToday": sum(1 for t in shows if t.date() == today),
    }


# ---------------------------
# Events
# ---------------------------
@router.get("/events")
def list_events(
    search: Optional[str] = Query(default=None),
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
):
    q = (
        db.query(Event, EventUser.role)
        .join(EventUser, EventUser.event_id == Event.id)
        .filter(EventUser.user_id == me.id, Event.is_archived.is_(False))
    )
    if search:
        pattern = f"%{search}%"
        q = q.filter(or_(Event.name.ilike(pattern), Event.description.ilike(pattern)))
    rows = q.order_by(Event.date.asc()).all()
    return {"events": [serialize_event(e, role) for e, role in rows]}


@router.post("/events", status_code=201)
def create_event(payload: EventCreate, me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    event = Event(
        name=payload.name,
        date=payload.date,
        location=payload.location,
        description=payload.description,
        created_by=me.id,
    )
    db.add(event)
    db.flush()
    db.add(EventUser(event_id=event.id, user_id=me.id, role=Role.ADMIN.value, added_by=me.id))
    db.commit()
    db.refresh(event)
    return {"event": serialize_event(event, Role.ADMIN)}


@router.get("/events/{event_id}")
def get_event(event_id: str, me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    event, role = require_event(db, me, event_id)
    return {"event": serialize_event(event, role)}


@router.put("/events/{event_id}")
def update_event(
    event_id: str,
    payload: EventUpdate,
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
):
    event, role = require_event(db, me, event_id, Role.MANAGER)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field in ("name", "date", "location") and value is None:
            continue
        setattr(event, field, value)
    db.commit()
    db.refresh(event)
    return {"event": serialize_event(event, role)}


@router.delete("/events/{event_id}")
def archive_event(event_id: str, me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    event, _ = require_event(db, me, event_id, Role.ADMIN)
    event.is_archived = True
    db.commit()
    return {"success": True}


# ---------------------------
# Documents
# ---------------------------
@router.get("/events/{event_id}/files")
def get_files(event_id: str, me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    require_event(db, me, event_id)
    return {"files": [serialize_file(f) for f in list_files(db, event_id)]}


@router.get("/events/{event_id}/files/{file_id}/download")
def download_file(
    event_id: str,
    file_id: str,
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
    store=Depends(get_store),
):
    require_event(db, me, event_id)
    f = db.query(EventFile).filter(EventFile.id == file_id, EventFile.event_id == event_id).first()
    if f is None:
        raise NotFound("File not found")
    try:
        data = store.get(f.file_path)
    except StorageError:
        raise NotFound("File content not found")
    return Response(
        content=data,
        media_type=f.file_type,
        headers={"Content-Disposition": f'attachment; filename="{f.file_name}"'},
    )


@router.post("/events/{event_id}/upload")
def upload(
    event_id: str,
    file: Optional[UploadFile] = File(default=None),
    category: Optional[str] = Form(default=None),
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    require_event(db, me, event_id, Role.MANAGER)

    data = file.file.read() if file is not None else b""
    record = upload_document(
        db,
        store,
        event_id=event_id,
        user_id=me.id,
        file_name=file.filename if file is not None else None,
        media_type=file.content_type if file is not None else None,
        data=data,
        category=category,
        max_bytes=settings.max_upload_bytes,
    )
    return {
        "message": "File uploaded successfully",
        "file": serialize_file(record),
        "publicUrl": _download_url(settings, record),
    }


@router.delete("/events/{event_id}/upload")
def delete_upload(
    event_id: str,
    payload: DocumentDelete,
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
    store=Depends(get_store),
):
    require_event(db, me, event_id, Role.MANAGER)
    record = delete_document(db, store, event_id, payload.fileId)
    return {"message": f"File {record.file_name} deleted successfully"}


# ---------------------------
# Chat
# ---------------------------
@router.get("/events/{event_id}/chat")
def chat_history(event_id: str, me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    require_event(db, me, event_id)
    rows = ConversationStore(db).list_for_user(me.id, event_id)
    return {"messages": [serialize_message(m) for m in rows]}


@router.post("/events/{event_id}/chat")
def chat(
    event_id: str,
    payload: ChatRequest,
    request: Request,
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
    llm=Depends(get_llm),
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    require_event(db, me, event_id)

    if not payload.stream:
        engine = ChatEngine(llm, _corpus(db, store, settings), ConversationStore(db))
        return engine.answer(me.id, event_id, payload.message).to_response()

    # The stream outlives this handler, so it gets its own session.
    stream_db = request.app.state.session_factory()
    try:
        engine = ChatEngine(llm, _corpus(stream_db, store, settings), ConversationStore(stream_db))
        events = engine.answer_stream(me.id, event_id, payload.message)
    except Exception:
        stream_db.close()
        raise

    def body():
        try:
            for event in events:
                yield encode_event(event)
        finally:
            stream_db.close()

    return StreamingResponse(body(), media_type="application/x-ndjson")


# ---------------------------
# Timeline
# ---------------------------
@router.get("/events/{event_id}/timeline")
def list_timeline_entries(event_id: str, me: UserIdentity = Depends(current_user), db: Session = Depends(get_db)):
    require_event(db, me, event_id)
    rows = (
        db.query(TimelineEntry)
        .filter(TimelineEntry.event_id == event_id)
        .order_by(TimelineEntry.time.asc())
        .all()
    )
    return {"timeline": [serialize_entry(t) for t in rows]}


@router.post("/events/{event_id}/timeline", status_code=201)
def create_timeline_entry(
    event_id: str,
    payload: TimelineEntryCreate,
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
):
    require_event(db, me, event_id, Role.MANAGER)
    entry = TimelineEntry(event_id=event_id, created_by=me.id, **payload.model_dump())
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return {"entry": serialize_entry(entry)}


@router.post("/events/{event_id}/timeline/generate")
def generate_timeline(
    event_id: str,
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
    llm=Depends(get_llm),
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    require_event(db, me, event_id)
    return TimelineEngine(db, llm, _corpus(db, store, settings)).generate(event_id)


@router.get("/events/{event_id}/timeline/cache")
def cached_timeline(
    event_id: str,
    me: UserIdentity = Depends(current_user),
    db: Session = Depends(get_db),
    llm=Depends(get_llm),
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    require_event(db, me, event_id)
    return TimelineEngine(db, llm, _corpus(db, store, settings)).fetch_cached(event_id)


# ---------------------------
# App factory
# ---------------------------
def create_app(settings: Optional[Settings] = None, engine=None, llm=None, store=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_file)

    engine = engine if engine is not None else build_engine(settings.database_url)
    init_db(engine)

    app = FastAPI(title="Backstage Brain API", version=__version__)
    app.state.settings = settings
    app.state.session_factory = make_session_factory(engine)
    app.state.llm = llm if llm is not None else LLMClient.from_settings(settings)
    app.state.store = store if store is not None else LocalObjectStore(settings.upload_dir)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.include_router(router)
    return app
