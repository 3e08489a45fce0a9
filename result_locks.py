"""Publish/draft lock per (class, session, term, exam type) with teacher overrides.

A group starts in draft (unlocked). Locking publishes it: parents and students
can see the scores and teachers can no longer edit them unless an admin grants
them an override. Unlocking returns the group to draft and clears every
override.
"""

import logging
from collections import namedtuple
from datetime import datetime

from actors import require_admin
from db import db_connection, db_execute, store_errors
from errors import ValidationError
from grading import normalize_exam_type, normalize_term

logger = logging.getLogger(__name__)

LockKey = namedtuple('LockKey', ['class_id', 'session_id', 'term', 'exam_type'])

UNSET = object()

_ACTION_ALIASES = {
    'lock': 'lock',
    'unlock': 'unlock',
    'grant': 'grant',
    'grantoverride': 'grant',
    'grant_override': 'grant',
    'revoke': 'revoke',
    'revokeoverride': 'revoke',
    'revoke_override': 'revoke',
}

_LOCK_COLUMNS = 'id, class_id, session_id, term, exam_type, is_locked, locked_by, locked_at, allowed_teacher_ids, notes'


def parse_positive_int(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def build_lock_key(class_id, session_id, term, exam_type):
    """Validate the four identity parts of a lock and return its key."""
    errors = {}
    parsed_class_id = parse_positive_int(class_id)
    if parsed_class_id is None:
        errors['classId'] = 'A valid classId is required.'
    session_value = session_id.strip() if isinstance(session_id, str) else ''
    if not session_value:
        errors['sessionId'] = 'A valid sessionId is required.'
    term_label = normalize_term(term)
    if not term_label:
        errors['term'] = 'A valid term is required.'
    exam = normalize_exam_type(exam_type)
    if not exam:
        errors['examType'] = 'examType must be either midterm or final.'
    if errors:
        raise ValidationError('Invalid result lock key.', fields=errors)
    return LockKey(parsed_class_id, session_value, term_label, exam)


def lock_key_for_record(record):
    """Derive the lock key from a score record; None when it has no lock identity."""
    class_id = parse_positive_int(record.get('classId'))
    session_id = record.get('sessionId')
    term = normalize_term(record.get('term'))
    exam = normalize_exam_type(record.get('examType'))
    if class_id is None or not isinstance(session_id, str) or not session_id.strip() or not term or not exam:
        return None
    return LockKey(class_id, session_id.strip(), term, exam)


def default_lock(key):
    return {
        'id': None,
        'class_id': key.class_id,
        'session_id': key.session_id,
        'term': key.term,
        'exam_type': key.exam_type,
        'is_locked': False,
        'locked_by': None,
        'locked_at': None,
        'allowed_teacher_ids': [],
        'notes': None,
    }


def normalize_lock_action(action):
    if not isinstance(action, str):
        return None
    return _ACTION_ALIASES.get(action.strip().lower())


def pick_note_value(value):
    """Blank text clears notes; a missing value leaves them untouched."""
    if value is UNSET or not isinstance(value, str):
        return UNSET
    return value if value.strip() else None


def transition_lock(lock, action, actor_id=None, teacher_id=None, notes=UNSET, now=None):
    """Apply one state-machine action to a lock row and return the new row."""
    updated = dict(lock)
    updated['allowed_teacher_ids'] = list(lock.get('allowed_teacher_ids') or [])

    if action == 'lock':
        updated['is_locked'] = True
        updated['locked_by'] = actor_id
        updated['locked_at'] = now or datetime.now()
    elif action == 'unlock':
        updated['is_locked'] = False
        updated['locked_by'] = None
        updated['locked_at'] = None
        updated['allowed_teacher_ids'] = []
    elif action in ('grant', 'revoke'):
        teacher = parse_positive_int(teacher_id)
        if teacher is None:
            raise ValidationError(
                f'teacherId is required to {action} an override.',
                fields={'teacherId': 'A positive teacher id is required.'},
            )
        if action == 'grant':
            if teacher not in updated['allowed_teacher_ids']:
                updated['allowed_teacher_ids'].append(teacher)
        else:
            updated['allowed_teacher_ids'] = [t for t in updated['allowed_teacher_ids'] if t != teacher]
    else:
        raise ValidationError('Unsupported action supplied.', fields={'action': 'Unsupported action.'})

    if action in ('lock', 'unlock') and notes is not UNSET:
        updated['notes'] = notes
    return updated


def may_write(lock, actor):
    """Admins always write; teachers write drafts or published groups they hold an override for."""
    if actor.is_admin:
        return True
    if not actor.is_teacher:
        return False
    if not lock or not lock.get('is_locked'):
        return True
    return actor.teacher_id is not None and actor.teacher_id in (lock.get('allowed_teacher_ids') or [])


def may_view(lock, actor):
    if actor.is_staff:
        return True
    return actor.is_viewer and bool(lock and lock.get('is_locked'))


def summarize_lock(lock):
    locked_at = lock.get('locked_at')
    return {
        'id': lock.get('id'),
        'classId': lock.get('class_id'),
        'sessionId': lock.get('session_id'),
        'term': lock.get('term'),
        'examType': lock.get('exam_type'),
        'isLocked': bool(lock.get('is_locked')),
        'lockedBy': lock.get('locked_by'),
        'lockedAt': locked_at.isoformat() if hasattr(locked_at, 'isoformat') else locked_at,
        'allowedTeacherIds': sorted(int(t) for t in (lock.get('allowed_teacher_ids') or [])),
        'notes': lock.get('notes'),
    }


def _row_to_lock(row):
    if row is None:
        return None
    lock = dict(row)
    lock['allowed_teacher_ids'] = [int(t) for t in (lock.get('allowed_teacher_ids') or []) if t is not None]
    lock['is_locked'] = bool(lock.get('is_locked'))
    return lock


def fetch_locks_for_keys(keys):
    """Existing lock rows for the given keys; missing keys mean draft."""
    keys = sorted(set(keys))
    if not keys:
        return {}
    with store_errors('fetch_locks_for_keys', count=len(keys)):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                f'''SELECT {_LOCK_COLUMNS}
                    FROM result_locks
                    WHERE (class_id, session_id, term, exam_type) IN ?''',
                (tuple(tuple(key) for key in keys),),
            )
            rows = [_row_to_lock(row) for row in c.fetchall()]
    return {LockKey(r['class_id'], r['session_id'], r['term'], r['exam_type']): r for r in rows}


def _query_locks(filters):
    query = f'SELECT {_LOCK_COLUMNS} FROM result_locks WHERE 1 = 1'
    params = []
    for column, value in (
        ('class_id', filters.get('class_id')),
        ('session_id', filters.get('session_id')),
        ('term', filters.get('term')),
        ('exam_type', filters.get('exam_type')),
    ):
        if value is not None:
            query += f' AND {column} = ?'
            params.append(value)
    query += ' ORDER BY session_id DESC, class_id ASC, term ASC, exam_type ASC'
    with store_errors('list_locks', filters=filters):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(c, query, tuple(params))
            return [_row_to_lock(row) for row in c.fetchall()]


def list_locks(filters, actor):
    """Lock summaries matching optional classId/sessionId/term/examType filters."""
    require_admin(actor)
    filters = filters or {}
    errors = {}
    parsed = {}

    raw_class = filters.get('classId')
    if raw_class not in (None, ''):
        parsed['class_id'] = parse_positive_int(raw_class)
        if parsed['class_id'] is None:
            errors['classId'] = 'classId must be a positive integer.'
    raw_session = filters.get('sessionId')
    if isinstance(raw_session, str) and raw_session.strip():
        parsed['session_id'] = raw_session.strip()
    raw_term = filters.get('term')
    if raw_term not in (None, ''):
        parsed['term'] = normalize_term(raw_term)
        if not parsed['term']:
            errors['term'] = 'term must be a recognised value.'
    raw_exam = filters.get('examType')
    if raw_exam not in (None, ''):
        parsed['exam_type'] = normalize_exam_type(raw_exam)
        if not parsed['exam_type']:
            errors['examType'] = 'examType must be either midterm or final.'
    if errors:
        raise ValidationError('Invalid result lock filters.', fields=errors)

    return [summarize_lock(lock) for lock in _query_locks(parsed)]


def _read_modify_write(key, mutate):
    """Ensure the row exists, lock it, apply ``mutate`` and persist in one transaction."""
    with store_errors('mutate_lock', key=key._asdict()):
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''INSERT INTO result_locks (class_id, session_id, term, exam_type, is_locked, allowed_teacher_ids)
                   VALUES (?, ?, ?, ?, FALSE, '{}')
                   ON CONFLICT (class_id, session_id, term, exam_type) DO NOTHING''',
                tuple(key),
            )
            db_execute(
                c,
                f'''SELECT {_LOCK_COLUMNS}
                    FROM result_locks
                    WHERE class_id = ? AND session_id = ? AND term = ? AND exam_type = ?
                    FOR UPDATE''',
                tuple(key),
            )
            current = _row_to_lock(c.fetchone()) or default_lock(key)
            updated = mutate(current)
            db_execute(
                c,
                '''UPDATE result_locks
                   SET is_locked = ?, locked_by = ?, locked_at = ?, allowed_teacher_ids = ?,
                       notes = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE class_id = ? AND session_id = ? AND term = ? AND exam_type = ?''',
                (
                    updated['is_locked'],
                    updated['locked_by'],
                    updated['locked_at'],
                    list(updated['allowed_teacher_ids']),
                    updated['notes'],
                ) + tuple(key),
            )
    return updated


def mutate_lock(action, key, actor, teacher_id=None, notes=UNSET):
    """Run lock/unlock/grant/revoke for one group and return its summary."""
    require_admin(actor)
    normalized = normalize_lock_action(action)
    if not normalized:
        raise ValidationError('Unsupported action supplied.', fields={'action': 'Unsupported action.'})
    if normalized in ('grant', 'revoke') and parse_positive_int(teacher_id) is None:
        raise ValidationError(
            f'teacherId is required to {normalized} an override.',
            fields={'teacherId': 'A positive teacher id is required.'},
        )
    note_value = pick_note_value(notes)
    now = datetime.now()

    updated = _read_modify_write(
        key,
        lambda current: transition_lock(
            current, normalized, actor_id=actor.user_id, teacher_id=teacher_id, notes=note_value, now=now,
        ),
    )
    logger.info(
        "Result lock %s by %s on class=%s session=%s term=%s exam=%s teacher=%s",
        normalized, actor.user_id, key.class_id, key.session_id, key.term, key.exam_type, teacher_id,
    )
    return summarize_lock(updated)
