import sqlite3
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from portal.config import settings


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_path: Path | None = None):
    path = db_path or settings.db_path
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_DOCUMENT_COLUMNS = """\
    id                    TEXT PRIMARY KEY,
    company_id            TEXT NOT NULL REFERENCES companies(id),
    file_id               TEXT REFERENCES files(id) ON DELETE SET NULL,
    document_number       TEXT NOT NULL,
    issue_date            TEXT,
    amount                REAL NOT NULL DEFAULT 0,
    vat_amount            REAL NOT NULL DEFAULT 0,
    file_url              TEXT,
    document_status       TEXT NOT NULL DEFAULT 'ready'
                          CHECK(document_status IN ('ready','review','viewed','downloaded','queried')),
    retention_start_date  TEXT,
    retention_expiry_date TEXT,
    metadata              TEXT NOT NULL DEFAULT '{}',
    created_at            TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    updated_at            TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    deleted_at            TEXT"""


SCHEMA_SQL = f"""\
-- ============================================================
-- SETTINGS (external settings store, key/value)
-- ============================================================
CREATE TABLE IF NOT EXISTS app_settings (
    key        TEXT PRIMARY KEY,
    value      TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

-- ============================================================
-- COMPANIES
-- ============================================================
CREATE TABLE IF NOT EXISTS companies (
    id                 TEXT PRIMARY KEY,
    name               TEXT NOT NULL,
    reference_no       INTEGER,
    code               TEXT,
    parent_id          TEXT REFERENCES companies(id) ON DELETE SET NULL,
    is_active          INTEGER NOT NULL DEFAULT 1,
    machine_integrated INTEGER NOT NULL DEFAULT 0,
    contact_emails     TEXT NOT NULL DEFAULT '[]',
    created_at         TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

CREATE INDEX IF NOT EXISTS idx_companies_reference_no ON companies(reference_no);
CREATE INDEX IF NOT EXISTS idx_companies_code ON companies(code);
CREATE INDEX IF NOT EXISTS idx_companies_parent ON companies(parent_id);

-- ============================================================
-- USERS
-- ============================================================
CREATE TABLE IF NOT EXISTS users (
    id            TEXT PRIMARY KEY,
    email         TEXT NOT NULL UNIQUE,
    name          TEXT,
    role          TEXT NOT NULL DEFAULT 'external_user'
                  CHECK(role IN ('global_admin','administrator','manager','staff','external_user')),
    all_companies INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

CREATE TABLE IF NOT EXISTS user_companies (
    user_id    TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    company_id TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
    PRIMARY KEY (user_id, company_id)
);

-- ============================================================
-- FILES (ingested artifacts)
-- ============================================================
CREATE TABLE IF NOT EXISTS files (
    id                 TEXT PRIMARY KEY,
    file_name          TEXT NOT NULL,
    file_path          TEXT NOT NULL,
    content_hash       TEXT NOT NULL,
    file_size          INTEGER NOT NULL,
    mime_type          TEXT,
    status             TEXT NOT NULL DEFAULT 'pending'
                       CHECK(status IN ('pending','parsed','unallocated','failed','duplicate')),
    failure_reason     TEXT,
    error_message      TEXT,
    parsed_data        TEXT,
    company_id         TEXT REFERENCES companies(id) ON DELETE SET NULL,
    document_type      TEXT CHECK(document_type IN ('invoice','credit_note','statement')),
    document_id        TEXT,
    edit_log           TEXT NOT NULL DEFAULT '[]',
    metadata           TEXT NOT NULL DEFAULT '{{}}',
    uploaded_by        TEXT,
    manually_edited_by TEXT,
    allocated_by       TEXT,
    allocated_at       TEXT,
    processed_at       TEXT,
    uploaded_at        TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    updated_at         TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    deleted_at         TEXT
);

-- Duplicate rows are hash-exempt; every other row (soft-deleted included) owns its hash.
CREATE UNIQUE INDEX IF NOT EXISTS idx_files_hash ON files(content_hash) WHERE status <> 'duplicate';
CREATE INDEX IF NOT EXISTS idx_files_hash_all ON files(content_hash);
CREATE INDEX IF NOT EXISTS idx_files_status ON files(status);
CREATE INDEX IF NOT EXISTS idx_files_document ON files(document_type, document_id);
CREATE INDEX IF NOT EXISTS idx_files_deleted ON files(deleted_at);

-- ============================================================
-- DOCUMENTS
-- ============================================================
CREATE TABLE IF NOT EXISTS invoices (
{_DOCUMENT_COLUMNS}
);

CREATE TABLE IF NOT EXISTS credit_notes (
{_DOCUMENT_COLUMNS}
);

CREATE TABLE IF NOT EXISTS statements (
{_DOCUMENT_COLUMNS},
    period_end            TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_invoices_number ON invoices(company_id, document_number) WHERE deleted_at IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_notes_number ON credit_notes(company_id, document_number) WHERE deleted_at IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_statements_number ON statements(company_id, document_number) WHERE deleted_at IS NULL;

CREATE INDEX IF NOT EXISTS idx_invoices_expiry ON invoices(retention_expiry_date);
CREATE INDEX IF NOT EXISTS idx_credit_notes_expiry ON credit_notes(retention_expiry_date);
CREATE INDEX IF NOT EXISTS idx_statements_expiry ON statements(retention_expiry_date);

CREATE INDEX IF NOT EXISTS idx_invoices_company ON invoices(company_id);
CREATE INDEX IF NOT EXISTS idx_credit_notes_company ON credit_notes(company_id);
CREATE INDEX IF NOT EXISTS idx_statements_company ON statements(company_id);
"""


def init_db(db_path: Path | None = None):
    path = db_path or settings.db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.executescript(SCHEMA_SQL)
    conn.close()
