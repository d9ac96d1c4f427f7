import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from portal.database import get_db, init_db
from portal.errors import QueueUnavailable
from portal.main import app
from portal.models.company import Company
from portal.models.file import FileRecord
from portal.models.user import User
from portal.services.notification_service import LoggingNotifier
from portal.services.pipeline import Pipeline, get_pipeline
from portal.services.storage_service import LocalStorage, incoming_path
from portal.utils.clock import now_iso
from portal.utils.hashing import sha256_bytes


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class StubParser:
    """Returns canned fields keyed by file content; unknown content parses to ``{}``."""

    def __init__(self):
        self.by_content: dict[bytes, dict] = {}
        self.calls: list[str] = []
        self.on_parse = None
        self.error: Exception | None = None

    def register(self, content: bytes, fields: dict):
        self.by_content[content] = fields

    def parse(self, file_path):
        self.calls.append(file_path.name)
        if self.on_parse is not None:
            self.on_parse(file_path)
        if self.error is not None:
            raise self.error
        return dict(self.by_content.get(file_path.read_bytes(), {}))


class RecordingNotifier(LoggingNotifier):
    """Keeps every notice so tests can inspect recipients and context."""

    def __init__(self):
        self.sent: list[dict] = []

    def notify(self, template, recipients, context):
        self.sent.append({"template": template, "recipients": list(recipients), "context": dict(context)})
        super().notify(template, recipients, context)


class RecordingQueue:
    """Stands in for the processing queue in synchronous tests."""

    def __init__(self):
        self.running = True
        self.jobs: list[tuple] = []
        self._ids: set[str] = set()

    def enqueue(self, job, priority=10):
        if not self.running:
            raise QueueUnavailable("Processing queue is not running")
        if job.job_id in self._ids:
            return False
        self._ids.add(job.job_id)
        self.jobs.append((job, priority))
        return True

    def pending(self):
        return len(self.jobs)


@pytest.fixture
def session_factory(tmp_path):
    db_path = tmp_path / "db.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    init_db(db_path)
    TestSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield TestSession
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def storage(tmp_path):
    store = LocalStorage(tmp_path / "storage")
    store.ensure_dirs()
    return store


@pytest.fixture
def parser():
    return StubParser()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pipeline(session_factory, storage, parser, queue, notifier):
    return Pipeline(session_factory, storage, parser=parser, notifier=notifier, queue=queue)


@pytest.fixture
def client(session_factory, pipeline):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    c = TestClient(app)
    yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_company(db):
    def _make(name="Acme Ltd", reference_no=None, code=None, parent=None, **kwargs):
        company = Company(
            id=str(uuid.uuid4()),
            name=name,
            reference_no=reference_no,
            code=code,
            parent_id=parent.id if parent else None,
            contact_emails=kwargs.pop("contact_emails", []),
            created_at=kwargs.pop("created_at", now_iso()),
            **kwargs,
        )
        db.add(company)
        db.commit()
        return company
    return _make


@pytest.fixture
def make_user(db):
    def _make(role="staff", companies=(), all_companies=False, email=None):
        user = User(
            id=str(uuid.uuid4()),
            email=email or f"{uuid.uuid4().hex[:8]}@example.com",
            role=role,
            all_companies=all_companies,
            created_at=now_iso(),
        )
        user.companies = list(companies)
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_file(db, storage, parser):
    def _make(content=None, file_name="invoice.pdf", status="pending", parsed_data=None, fields=None, **kwargs):
        content = content or uuid.uuid4().bytes
        if fields is not None:
            parser.register(content, fields)
        content_hash = sha256_bytes(content)
        stored = storage.write(incoming_path(content_hash, file_name), content)
        now = now_iso()
        file = FileRecord(
            id=str(uuid.uuid4()),
            file_name=file_name,
            file_path=stored,
            content_hash=content_hash,
            file_size=len(content),
            status=status,
            parsed_data=parsed_data,
            edit_log=[],
            metadata_={},
            uploaded_at=kwargs.pop("uploaded_at", now),
            updated_at=now,
            **kwargs,
        )
        db.add(file)
        db.commit()
        return file
    return _make
