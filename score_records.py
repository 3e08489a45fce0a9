"""Batched, lock-aware upsert and scoped reads of per-subject score records."""

import json
import logging
from concurrent.futures import ThreadPoolExecutor

import psycopg2
from psycopg2.extras import execute_values

import config
from actors import require_authenticated, subject_key
from db import db_connection, db_execute, set_statement_timeout, store_errors
from errors import AuthorizationError, PartialSaveError, StoreUnavailableError, ValidationError
from grading import (
    coerce_number,
    compute_score_totals,
    duplicate_component_ids,
    normalize_components,
    normalize_exam_type,
    normalize_term,
)
from result_locks import fetch_locks_for_keys, lock_key_for_record, may_view, may_write

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    'id, student_id, student_name, class_id, class_name, subject, exam_type, term, session_id, '
    'components, total_score, max_score, percentage, updated_at'
)

_UPSERT_SQL = f'''
    INSERT INTO score_records (
        id, student_id, student_name, class_id, class_name, subject, exam_type, term, session_id,
        components, total_score, max_score, percentage, created_at, updated_at
    )
    VALUES %s
    ON CONFLICT (id) DO UPDATE SET
        student_id = EXCLUDED.student_id,
        student_name = EXCLUDED.student_name,
        class_id = EXCLUDED.class_id,
        class_name = EXCLUDED.class_name,
        subject = EXCLUDED.subject,
        exam_type = EXCLUDED.exam_type,
        term = EXCLUDED.term,
        session_id = EXCLUDED.session_id,
        components = EXCLUDED.components,
        total_score = EXCLUDED.total_score,
        max_score = EXCLUDED.max_score,
        percentage = EXCLUDED.percentage,
        updated_at = CURRENT_TIMESTAMP
    RETURNING {_RECORD_COLUMNS}
'''
_UPSERT_TEMPLATE = '(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)'

# Non-numeric class ids never match a lock row, so they never count as published.
_PUBLISHED_CLAUSE = '''
    AND EXISTS (
        SELECT 1 FROM result_locks rl
        WHERE rl.is_locked
          AND rl.session_id = score_records.session_id
          AND rl.term = score_records.term
          AND rl.exam_type = score_records.exam_type
          AND rl.class_id = CASE
              WHEN TRIM(score_records.class_id) ~ '^[0-9]{1,9}$' THEN TRIM(score_records.class_id)::integer
          END
    )'''

_warmup_pool = None


def _required_text(row, name):
    value = row.get(name)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def _student_id(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def validate_score_rows(rows):
    """Check a whole batch before anything is written.

    Returns the normalised rows, or raises ValidationError with every problem
    keyed as ``rows[<index>].<field>``.
    """
    if not isinstance(rows, (list, tuple)) or not rows:
        raise ValidationError('No score rows provided.', fields={'rows': 'At least one score row is required.'})

    errors = {}
    prepared = []
    seen_ids = {}
    for index, row in enumerate(rows):
        prefix = f'rows[{index}]'
        if not isinstance(row, dict):
            errors[prefix] = 'Score row must be an object.'
            continue

        record = {
            'id': _required_text(row, 'id'),
            'studentId': _student_id(row.get('studentId')),
            'studentName': _required_text(row, 'studentName'),
            'classId': _required_text(row, 'classId'),
            'className': _required_text(row, 'className'),
            'subject': _required_text(row, 'subject'),
            'examType': normalize_exam_type(row.get('examType')),
            'term': normalize_term(row.get('term')),
            'sessionId': _required_text(row, 'sessionId'),
        }
        messages = {
            'id': 'Score row is missing an id.',
            'studentId': 'A valid studentId is required.',
            'studentName': 'studentName is required.',
            'classId': 'classId is required.',
            'className': 'className is required.',
            'subject': 'subject is required.',
            'examType': 'examType must be either midterm or final.',
            'term': 'A valid term is required.',
            'sessionId': 'sessionId is required.',
        }
        for name, message in messages.items():
            if record[name] is None:
                errors[f'{prefix}.{name}'] = message

        for name in ('totalScore', 'maxScore', 'percentage'):
            raw = row.get(name)
            if raw is not None and raw != '' and coerce_number(raw) is None:
                errors[f'{prefix}.{name}'] = f'{name} must be a number.'

        raw_components = row.get('components')
        if raw_components is not None and not isinstance(raw_components, (list, tuple)):
            errors[f'{prefix}.components'] = 'components must be a list.'
            raw_components = []
        components = normalize_components(raw_components or [])
        duplicates = duplicate_component_ids(components)
        if duplicates:
            errors[f'{prefix}.components'] = f'Duplicate component ids: {", ".join(duplicates)}.'

        if record['id'] is not None:
            if record['id'] in seen_ids:
                errors[f'{prefix}.id'] = f'Duplicate row id (also used by rows[{seen_ids[record["id"]]}]).'
            else:
                seen_ids[record['id']] = index

        record['components'] = components
        record.update(compute_score_totals(
            components,
            total_score=row.get('totalScore'),
            max_score=row.get('maxScore'),
            percentage=row.get('percentage'),
        ))
        prepared.append(record)

    if errors:
        raise ValidationError('Some score rows are invalid.', fields=errors)
    return prepared


def authorize_write(rows, actor):
    """Reject the whole batch if any row falls outside the actor's write rights."""
    require_authenticated(actor)
    if actor.is_admin:
        return
    if not actor.is_teacher:
        raise AuthorizationError('You are not allowed to modify scores.')
    if actor.teacher_id is None:
        raise AuthorizationError('Teacher profile is not configured for this account.')
    if not actor.allowed_class_ids or not actor.allowed_subject_names:
        raise AuthorizationError('You are not allowed to upload scores yet. Contact an administrator.')

    for row in rows:
        if row['classId'] not in actor.allowed_class_ids:
            raise AuthorizationError(f"You are not allowed to upload scores for class {row['className']}.")
        if subject_key(row['subject']) not in actor.allowed_subject_names:
            raise AuthorizationError(f"You are not allowed to upload scores for subject {row['subject']}.")

    keyed = [(row, lock_key_for_record(row)) for row in rows]
    locks = fetch_locks_for_keys([key for _row, key in keyed if key is not None])
    for row, key in keyed:
        if not may_write(locks.get(key), actor):
            raise AuthorizationError(
                f"Results for {row['className']} ({row['term']}, {row['examType']}) are published and locked."
            )


def chunked(items, size):
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _record_params(record):
    return (
        record['id'],
        record['studentId'],
        record['studentName'],
        record['classId'],
        record['className'],
        record['subject'],
        record['examType'],
        record['term'],
        record['sessionId'],
        json.dumps(record['components']),
        record['totalScore'],
        record['maxScore'],
        record['percentage'],
    )


def row_to_record(row):
    """Map a stored row to the API shape, re-normalising its components."""
    row = dict(row)
    updated_at = row.get('updated_at')
    return {
        'id': row['id'],
        'studentId': row['student_id'],
        'studentName': row['student_name'],
        'classId': row['class_id'],
        'className': row['class_name'],
        'subject': row['subject'],
        'examType': row['exam_type'],
        'term': row['term'],
        'sessionId': row['session_id'],
        'components': normalize_components(row.get('components')),
        'totalScore': row.get('total_score'),
        'maxScore': row.get('max_score'),
        'percentage': row.get('percentage'),
        'updatedAt': updated_at.isoformat() if hasattr(updated_at, 'isoformat') else updated_at,
    }


def _write_chunk(chunk):
    """Upsert one chunk in its own transaction; any failure rolls the chunk back."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        returned = execute_values(
            c,
            _UPSERT_SQL,
            [_record_params(record) for record in chunk],
            template=_UPSERT_TEMPLATE,
            page_size=len(chunk),
            fetch=True,
        )
    by_id = {row['id']: row_to_record(row) for row in returned}
    return [by_id[record['id']] for record in chunk if record['id'] in by_id]


def save_scores(rows, actor, chunk_size=None):
    """Validate, authorise and persist a batch of score rows.

    Nothing is written unless every row validates and the actor may write
    every row. Writes then go out in fixed-size chunks, one transaction each;
    chunks committed before a failure stay committed.
    """
    prepared = validate_score_rows(rows)
    authorize_write(prepared, actor)

    size = chunk_size or config.SCORE_SAVE_CHUNK_SIZE
    persisted = []
    committed_ids = []
    for chunk in chunked(prepared, size):
        try:
            persisted.extend(_write_chunk(chunk))
        except psycopg2.Error as exc:
            failed_ids = [record['id'] for record in prepared[len(committed_ids):]]
            logger.error(
                "save_scores chunk failed actor=%s committed=%d failed=%d: %s",
                actor.user_id, len(committed_ids), len(failed_ids), exc, exc_info=True,
            )
            if not committed_ids:
                raise StoreUnavailableError() from exc
            raise PartialSaveError(committed_ids, failed_ids) from exc
        committed_ids.extend(record['id'] for record in chunk)

    logger.info("Saved %d score row(s) for actor=%s role=%s", len(persisted), actor.user_id, actor.role)
    schedule_warmup(prepared)
    return persisted


def parse_score_filters(filters):
    filters = filters or {}
    errors = {}
    parsed = {}
    for name in ('classId', 'subject', 'sessionId'):
        value = filters.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            parsed[name] = value.strip()
    raw_term = filters.get('term')
    if raw_term not in (None, ''):
        parsed['term'] = normalize_term(raw_term)
        if not parsed['term']:
            errors['term'] = 'term must be a recognised value.'
    raw_exam = filters.get('examType')
    if raw_exam not in (None, ''):
        parsed['examType'] = normalize_exam_type(raw_exam)
        if not parsed['examType']:
            errors['examType'] = 'examType must be either midterm or final.'
    if errors:
        raise ValidationError('Invalid score filters.', fields=errors)
    return parsed


def query_score_records(filters, class_ids=None, subject_keys=None, student_ids=None, limit=None, timeout_ms=None,
                        published_only=False):
    """Unscoped read used by the store, the report card builder and warm-up.

    ``published_only`` keeps rows whose group is locked, before ``limit`` applies.
    """
    query = f'SELECT {_RECORD_COLUMNS} FROM score_records WHERE 1 = 1'
    params = []
    for name, column in (('classId', 'class_id'), ('sessionId', 'session_id'), ('term', 'term'), ('examType', 'exam_type')):
        if filters.get(name) is not None:
            query += f' AND {column} = ?'
            params.append(filters[name])
    if filters.get('studentId') is not None:
        query += ' AND student_id = ?'
        params.append(filters['studentId'])
    if filters.get('subject') is not None:
        query += ' AND LOWER(TRIM(subject)) = ?'
        params.append(subject_key(filters['subject']))
    if class_ids is not None:
        query += ' AND class_id = ANY(?)'
        params.append(sorted(class_ids))
    if subject_keys is not None:
        query += ' AND LOWER(TRIM(subject)) = ANY(?)'
        params.append(sorted(subject_keys))
    if student_ids is not None:
        query += ' AND student_id = ANY(?)'
        params.append(sorted(student_ids))
    if published_only:
        query += _PUBLISHED_CLAUSE
    query += ' ORDER BY updated_at DESC, id ASC'
    if limit:
        query += ' LIMIT ?'
        params.append(int(limit))

    with store_errors('query_score_records', filters=filters):
        with db_connection() as conn:
            c = conn.cursor()
            set_statement_timeout(c, timeout_ms or config.DB_READ_TIMEOUT_MS)
            db_execute(c, query, tuple(params))
            return [row_to_record(row) for row in c.fetchall()]


def list_scores(filters, actor, limit=None):
    """Scores visible to ``actor``, most recently updated first."""
    require_authenticated(actor)
    parsed = parse_score_filters(filters)
    cap = config.SCORE_LIST_MAX_ROWS
    limit = min(int(limit), cap) if limit else cap

    scope = {}
    if actor.is_teacher:
        if not actor.allowed_class_ids:
            return []
        if 'classId' in parsed:
            if parsed['classId'] not in actor.allowed_class_ids:
                raise AuthorizationError('You are not allowed to view scores for this class.')
        else:
            scope['class_ids'] = actor.allowed_class_ids
        if actor.allowed_subject_names:
            if 'subject' in parsed and subject_key(parsed['subject']) not in actor.allowed_subject_names:
                raise AuthorizationError('You are not allowed to view scores for this subject.')
            scope['subject_keys'] = actor.allowed_subject_names
    elif actor.is_viewer:
        if not actor.student_ids:
            return []
        scope['student_ids'] = actor.student_ids
        scope['published_only'] = True

    records = query_score_records(parsed, limit=limit, **scope)

    if actor.is_viewer:
        keyed = [(record, lock_key_for_record(record)) for record in records]
        locks = fetch_locks_for_keys([key for _record, key in keyed if key is not None])
        records = [record for record, key in keyed if key is not None and may_view(locks.get(key), actor)]
    return records


def _get_warmup_pool():
    global _warmup_pool
    if _warmup_pool is None:
        _warmup_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix='results-warmup')
    return _warmup_pool


def _warm_group(filters):
    try:
        query_score_records(filters, limit=config.SCORE_LIST_MAX_ROWS, timeout_ms=config.RESULTS_WARMUP_TIMEOUT_MS)
    except Exception as exc:
        logger.warning("Warm-up read failed for %s: %s", filters, exc)


def _warm_distribution(session_id):
    from mark_distribution import infer_mark_distribution

    try:
        infer_mark_distribution(session_id, timeout_ms=config.RESULTS_WARMUP_TIMEOUT_MS)
    except Exception as exc:
        logger.warning("Warm-up distribution read failed for session %s: %s", session_id, exc)


def schedule_warmup(records):
    """Queue a bounded number of background reads; never waits on them."""
    if not config.RESULTS_WARMUP_ENABLED or not records:
        return []
    budget = config.RESULTS_WARMUP_MAX_CALLS
    groups = []
    for record in records:
        group = {
            'classId': record['classId'],
            'sessionId': record['sessionId'],
            'term': record['term'],
            'examType': record['examType'],
        }
        if group not in groups:
            groups.append(group)
    sessions = sorted({record['sessionId'] for record in records})

    pool = _get_warmup_pool()
    futures = []
    for group in groups[:budget]:
        futures.append(pool.submit(_warm_group, group))
    for session_id in sessions[:max(0, budget - len(futures))]:
        futures.append(pool.submit(_warm_distribution, session_id))
    return futures
