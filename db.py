import logging
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import DictCursor

import config
from errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def get_db():
    """Create a PostgreSQL DB connection."""
    return psycopg2.connect(
        config.get_database_url(),
        cursor_factory=DictCursor,
        connect_timeout=config.DB_CONNECT_TIMEOUT,
    )


@contextmanager
def db_connection(commit=False):
    """Context manager for connections with optional commit.

    Work that is not committed is rolled back when the connection closes.
    """
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()


def set_statement_timeout(cursor, timeout_ms):
    """Bound every statement in the current transaction."""
    db_execute(cursor, 'SET LOCAL statement_timeout = ?', (int(timeout_ms),))


@contextmanager
def store_errors(operation, **context):
    """Translate connectivity failures into StoreUnavailableError."""
    try:
        yield
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
        logger.error("%s failed: store unavailable (%s) context=%s", operation, exc, context, exc_info=True)
        raise StoreUnavailableError() from exc


def ping():
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT 1')
        return c.fetchone() is not None


SCHEMA_STATEMENTS = [
    '''CREATE TABLE IF NOT EXISTS schools (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            address TEXT DEFAULT '',
            city TEXT DEFAULT '',
            state TEXT DEFAULT '',
            country TEXT DEFAULT '',
            phone TEXT DEFAULT '',
            email TEXT DEFAULT '',
            principal TEXT DEFAULT '',
            logo TEXT
        )''',
    '''CREATE TABLE IF NOT EXISTS academic_sessions (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            start_date DATE,
            end_date DATE,
            is_current BOOLEAN NOT NULL DEFAULT FALSE
        )''',
    '''CREATE TABLE IF NOT EXISTS school_classes (
            id SERIAL PRIMARY KEY,
            school_id TEXT,
            name TEXT NOT NULL,
            form_teacher_name TEXT
        )''',
    '''CREATE TABLE IF NOT EXISTS students (
            id SERIAL PRIMARY KEY,
            student_code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            gender TEXT,
            date_of_birth DATE,
            class_id INTEGER,
            class_name TEXT,
            school_id TEXT
        )''',
    '''CREATE TABLE IF NOT EXISTS student_attendance (
            id SERIAL PRIMARY KEY,
            student_id INTEGER NOT NULL,
            date DATE NOT NULL,
            status TEXT
        )''',
    'CREATE INDEX IF NOT EXISTS idx_student_attendance_student_date ON student_attendance (student_id, date)',
    '''CREATE TABLE IF NOT EXISTS student_traits (
            id SERIAL PRIMARY KEY,
            student_code TEXT NOT NULL,
            session_id TEXT NOT NULL,
            term TEXT NOT NULL,
            category TEXT NOT NULL,
            trait TEXT NOT NULL,
            score INTEGER NOT NULL,
            created_by TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    'CREATE INDEX IF NOT EXISTS idx_student_traits_lookup ON student_traits (student_code, term, session_id)',
    '''CREATE TABLE IF NOT EXISTS teacher_class_assignments (
            teacher_id INTEGER NOT NULL,
            class_id INTEGER NOT NULL,
            PRIMARY KEY (teacher_id, class_id)
        )''',
    '''CREATE TABLE IF NOT EXISTS teacher_subjects (
            teacher_id INTEGER NOT NULL,
            subject_name TEXT NOT NULL,
            PRIMARY KEY (teacher_id, subject_name)
        )''',
    '''CREATE TABLE IF NOT EXISTS parent_students (
            parent_user_id TEXT NOT NULL,
            student_id INTEGER NOT NULL,
            PRIMARY KEY (parent_user_id, student_id)
        )''',
    '''CREATE TABLE IF NOT EXISTS score_records (
            id TEXT PRIMARY KEY,
            student_id INTEGER NOT NULL,
            student_name TEXT NOT NULL,
            class_id TEXT NOT NULL,
            class_name TEXT NOT NULL,
            subject TEXT NOT NULL,
            exam_type TEXT NOT NULL,
            term TEXT NOT NULL,
            session_id TEXT NOT NULL,
            components TEXT NOT NULL DEFAULT '[]',
            total_score DOUBLE PRECISION,
            max_score DOUBLE PRECISION,
            percentage DOUBLE PRECISION,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    'CREATE INDEX IF NOT EXISTS idx_score_records_group ON score_records (class_id, session_id, term, exam_type)',
    'CREATE INDEX IF NOT EXISTS idx_score_records_student ON score_records (student_id, session_id, term)',
    'CREATE INDEX IF NOT EXISTS idx_score_records_updated ON score_records (updated_at DESC)',
    '''CREATE TABLE IF NOT EXISTS result_locks (
            id SERIAL PRIMARY KEY,
            class_id INTEGER NOT NULL,
            session_id TEXT NOT NULL,
            term TEXT NOT NULL,
            exam_type TEXT NOT NULL,
            is_locked BOOLEAN NOT NULL DEFAULT FALSE,
            locked_by TEXT,
            locked_at TIMESTAMP,
            allowed_teacher_ids INTEGER[] NOT NULL DEFAULT '{}',
            notes TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT uq_result_locks UNIQUE (class_id, session_id, term, exam_type)
        )''',
    '''CREATE TABLE IF NOT EXISTS mark_distributions (
            id TEXT PRIMARY KEY,
            school_id TEXT,
            session_id TEXT NOT NULL,
            term TEXT NOT NULL,
            exam_type TEXT NOT NULL,
            title TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE UNIQUE INDEX IF NOT EXISTS uq_mark_distributions
       ON mark_distributions (COALESCE(school_id, ''), session_id, term, exam_type)''',
    '''CREATE TABLE IF NOT EXISTS mark_distribution_components (
            id SERIAL PRIMARY KEY,
            distribution_id TEXT NOT NULL REFERENCES mark_distributions (id) ON DELETE CASCADE,
            component_id TEXT NOT NULL,
            label TEXT NOT NULL,
            weight INTEGER NOT NULL,
            sort_order INTEGER NOT NULL DEFAULT 0,
            CONSTRAINT uq_mark_distribution_components UNIQUE (distribution_id, component_id)
        )''',
]


def init_db():
    """Create every table the results engine reads or writes, if missing."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            db_execute(c, statement)
    logger.info("Database schema ensured (%d statements).", len(SCHEMA_STATEMENTS))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
