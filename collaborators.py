"""Reads from the surrounding school records: sessions, students, attendance, traits."""

import logging
from datetime import date

from db import db_connection, db_execute, store_errors
from errors import StoreUnavailableError
from grading import round_one_decimal

logger = logging.getLogger(__name__)

SEED_SESSIONS = [
    {
        'id': '2024-2025',
        'name': '2024 / 2025',
        'startDate': '2024-09-02',
        'endDate': '2025-07-18',
        'isCurrent': True,
    },
    {
        'id': '2023-2024',
        'name': '2023 / 2024',
        'startDate': '2023-09-04',
        'endDate': '2024-07-19',
        'isCurrent': False,
    },
    {
        'id': '2022-2023',
        'name': '2022 / 2023',
        'startDate': '2022-09-05',
        'endDate': '2023-07-21',
        'isCurrent': False,
    },
]


def _iso(value):
    return value.isoformat() if hasattr(value, 'isoformat') else value


def _map_session(row):
    return {
        'id': row['id'],
        'name': row['name'],
        'startDate': _iso(row['start_date']),
        'endDate': _iso(row['end_date']),
        'isCurrent': bool(row['is_current']),
    }


def _query_sessions():
    with store_errors('list_sessions'):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''SELECT id, name, start_date, end_date, is_current
                   FROM academic_sessions
                   ORDER BY start_date DESC NULLS LAST, id DESC''',
            )
            return [_map_session(row) for row in c.fetchall()]


def list_sessions():
    """Academic sessions, newest first; seed sessions when the store is down."""
    try:
        return _query_sessions()
    except StoreUnavailableError:
        logger.warning("Academic sessions unavailable; serving %d seed sessions.", len(SEED_SESSIONS))
        return [dict(item) for item in SEED_SESSIONS]


def load_session(session_id):
    with store_errors('load_session', session_id=session_id):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                'SELECT id, name, start_date, end_date, is_current FROM academic_sessions WHERE id = ?',
                (session_id,),
            )
            row = c.fetchone()
    return dict(row) if row is not None else None


def load_student_profile(student_id):
    """Student row joined with its school and the class form teacher."""
    with store_errors('load_student_profile', student_id=student_id):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''SELECT s.id, s.student_code, s.name, s.gender, s.date_of_birth, s.class_id,
                          COALESCE(s.class_name, sc.name) AS class_name, s.school_id,
                          sc.form_teacher_name,
                          sch.name AS school_name, sch.address AS school_address, sch.city AS school_city,
                          sch.state AS school_state, sch.country AS school_country, sch.phone AS school_phone,
                          sch.email AS school_email, sch.principal AS school_principal, sch.logo AS school_logo
                   FROM students s
                   LEFT JOIN school_classes sc ON sc.id = s.class_id
                   LEFT JOIN schools sch ON sch.id = s.school_id
                   WHERE s.id = ?''',
                (student_id,),
            )
            row = c.fetchone()
    if row is None:
        return None
    row = dict(row)
    school = None
    if row.get('school_id') and row.get('school_name') is not None:
        school = {
            'id': row['school_id'],
            'name': row['school_name'],
            'address': row.get('school_address') or '',
            'city': row.get('school_city') or '',
            'state': row.get('school_state') or '',
            'country': row.get('school_country') or '',
            'phone': row.get('school_phone') or '',
            'email': row.get('school_email') or '',
            'principal': row.get('school_principal') or '',
            'logo': row.get('school_logo'),
        }
    return {
        'id': row['id'],
        'student_code': row['student_code'],
        'name': row['name'],
        'gender': row.get('gender'),
        'date_of_birth': row.get('date_of_birth'),
        'class_id': row.get('class_id'),
        'class_name': row.get('class_name'),
        'form_teacher_name': row.get('form_teacher_name'),
        'school': school,
    }


def empty_attendance():
    return {'total': 0, 'present': 0, 'absent': 0, 'late': 0, 'percentage': None}


def summarize_attendance(statuses):
    present = late = absent = 0
    for status in statuses:
        label = str(status or '').strip().lower()
        if not label:
            continue
        if label.startswith('pre') or label == 'p':
            present += 1
        elif label.startswith('lat') or label == 'l':
            late += 1
        else:
            absent += 1
    total = present + late + absent
    percentage = round_one_decimal((present + late) / total * 100) if total else None
    return {'total': total, 'present': present, 'absent': absent, 'late': late, 'percentage': percentage}


def load_attendance_summary(student_id, start_date, end_date):
    if not isinstance(start_date, date) or not isinstance(end_date, date):
        return empty_attendance()
    with store_errors('load_attendance_summary', student_id=student_id):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                'SELECT status FROM student_attendance WHERE student_id = ? AND date >= ? AND date <= ?',
                (student_id, start_date, end_date),
            )
            statuses = [row['status'] for row in c.fetchall()]
    return summarize_attendance(statuses)


def load_trait_ratings(student_code, session_id, term):
    with store_errors('load_trait_ratings', student_code=student_code):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''SELECT category, trait, score
                   FROM student_traits
                   WHERE student_code = ? AND session_id = ? AND term = ?
                   ORDER BY category ASC, trait ASC''',
                (student_code, session_id, term),
            )
            return [
                {'category': row['category'], 'trait': row['trait'], 'score': row['score']}
                for row in c.fetchall()
            ]
