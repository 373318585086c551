import pytest
from fastapi.testclient import TestClient

from backstage.auth import Role, make_token
from backstage.config import Settings
from backstage.db import build_engine, make_session_factory
from backstage.main import create_app
from backstage.models import Event, EventFile, EventUser, User, utcnow
from backstage.storage import LocalObjectStore, object_key

JWT_SECRET = "test-secret"


class FakeLLM:
    """Records every call; replies with canned text, chunks or JSON."""

    def __init__(self):
        self.reply = "ok"
        self.chunks = None
        self.json_reply = '{"timelines": []}'
        self.error = None
        self.stream_error = None
        self.calls = []

    def generate(self, system, prompt):
        self.calls.append(("generate", system, prompt))
        if self.error:
            raise self.error
        return self.reply

    def stream(self, system, prompt):
        self.calls.append(("stream", system, prompt))
        if self.error:
            raise self.error

        def pieces():
            for c in self.chunks or [self.reply]:
                yield c
            if self.stream_error:
                raise self.stream_error

        return pieces()

    def generate_json(self, system, prompt, name, schema):
        self.calls.append(("generate_json", system, prompt))
        if self.error:
            raise self.error
        return self.json_reply


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret=JWT_SECRET,
        upload_dir=str(tmp_path / "blobs"),
        public_base_url="http://testserver",
        log_level="DEBUG",
    )


@pytest.fixture
def engine(settings):
    eng = build_engine(settings.database_url)
    yield eng
    eng.dispose()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def store(settings):
    return LocalObjectStore(settings.upload_dir)


@pytest.fixture
def app(settings, engine, llm, store):
    return create_app(settings, engine=engine, llm=llm, store=store)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db(app, engine):
    session = make_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(name="Ana", email=None):
        user = User(name=name, email=email or f"{name.lower()}@example.com")
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_event(db):
    def _make(owner, name="Hackathon Fest", role=Role.ADMIN, **kwargs):
        event = Event(
            name=name,
            date=kwargs.pop("date", utcnow()),
            location=kwargs.pop("location", "Main Hall"),
            created_by=owner.id,
            **kwargs,
        )
        db.add(event)
        db.flush()
        db.add(EventUser(event_id=event.id, user_id=owner.id, role=role.value))
        db.commit()
        db.refresh(event)
        return event

    return _make


@pytest.fixture
def grant(db):
    def _grant(event, user, role):
        db.add(EventUser(event_id=event.id, user_id=user.id, role=role.value))
        db.commit()

    return _grant


@pytest.fixture
def add_document(db, store):
    """Stores a blob and its metadata row, as a finished upload would."""

    def _add(event, name, content="", cache_text=True, media_type="text/plain", category="Technical"):
        data = content.encode("utf-8") if isinstance(content, str) else content
        key = object_key(event.id, name)
        store.put(key, data, upsert=True)
        doc = EventFile(
            event_id=event.id,
            file_name=name,
            file_path=key,
            file_size=len(data),
            file_type=media_type,
            category=category,
            extracted_text=content if cache_text and isinstance(content, str) else None,
        )
        db.add(doc)
        db.commit()
        db.refresh(doc)
        return doc

    return _add


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {make_token(user.id, JWT_SECRET)}"}

    return _headers
