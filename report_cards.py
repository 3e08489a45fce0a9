"""Per-student term report card, composed from score records and school records.

Nothing here writes to the store. Soft inconsistencies (no attendance, an
unknown trait score, a stored total that disagrees with its components) are
replaced with safe defaults and noted under ``warnings``.
"""

import logging

from actors import subject_key
from collaborators import (
    load_attendance_summary,
    load_session,
    load_student_profile,
    load_trait_ratings,
)
from errors import NotFoundError, ValidationError
from grading import coerce_number, normalize_components, normalize_term, resolve_grade, round_one_decimal
from score_records import query_score_records

logger = logging.getLogger(__name__)

CA1_KEYWORDS = ('ca1', 'continuous assessment 1', 'weekly test 1')
CA2_KEYWORDS = ('ca2', 'continuous assessment 2', 'assignment', 'project', 'test')
EXAM_KEYWORDS = ('exam', 'examination', 'paper')

PSYCHOMOTOR_TRAITS = [
    ('accuracy', 'Accuracy'),
    ('arts_and_craft', 'Arts and Craft'),
    ('dexterity', 'Dexterity'),
    ('punctuality', 'Punctuality'),
    ('musical_skills', 'Musical Skills'),
    ('handwriting', 'Handwriting'),
]
AFFECTIVE_TRAITS = [
    ('neatness', 'Neatness'),
    ('initiative', 'Initiative'),
    ('honesty', 'Honesty'),
    ('friendship', 'Friendship'),
    ('diligence', 'Diligence'),
    ('creativity', 'Creativity'),
    ('concentration', 'Concentration'),
    ('cooperative', 'Co-operative'),
    ('attendance', 'Attendance'),
    ('behaviour', 'Behaviour'),
]
TRAIT_CATEGORIES = {'psychomotor': PSYCHOMOTOR_TRAITS, 'affective': AFFECTIVE_TRAITS}
TRAIT_SCORE_DESCRIPTIONS = {
    5: 'Excellent',
    4: 'High level',
    3: 'Acceptable level',
    2: 'Minimal level',
    1: 'No observable trait',
}

# Stored totals may drift from the component sum by rounding.
TOTAL_TOLERANCE = 0.5


def same_score(a, b):
    return abs(float(a or 0) - float(b or 0)) <= 1e-9


def _component_keys(components):
    keyed = []
    for component in normalize_components(components):
        key = (component['label'] or component['componentId']).strip().lower()
        keyed.append((key, component['score']))
    return keyed


def _first_match(keyed, keywords):
    for index, (key, score) in enumerate(keyed):
        if any(keyword in key for keyword in keywords):
            return index, score
    return None, None


def compute_subject_breakdown(final_record, midterm_record=None):
    """CA1, CA2, exam and term total for one subject.

    CA1 falls back to the midterm total when the final record has none.
    """
    keyed = _component_keys(final_record.get('components'))
    used = set()

    ca1_index, ca1 = _first_match(keyed, CA1_KEYWORDS)
    # A zero-scored CA1 component stays available to the CA2 sum.
    if ca1:
        used.add(ca1_index)
    if not ca1 and midterm_record is not None:
        fallback = coerce_number(midterm_record.get('totalScore'))
        if fallback is not None:
            ca1 = fallback
    ca1 = ca1 or 0.0

    exam_index, exam = _first_match(keyed, EXAM_KEYWORDS)
    if exam_index is not None:
        used.add(exam_index)
    exam = exam or 0.0

    ca2 = sum(
        score for index, (key, score) in enumerate(keyed)
        if index not in used and any(keyword in key for keyword in CA2_KEYWORDS)
    )

    term_total = ca1 + ca2 + exam
    stored_total = coerce_number(final_record.get('totalScore'))
    adjusted = stored_total is not None and abs(stored_total - term_total) > TOTAL_TOLERANCE
    if adjusted:
        term_total = stored_total

    return {
        'ca1': round_one_decimal(ca1),
        'ca2': round_one_decimal(ca2),
        'exam': round_one_decimal(exam),
        'termTotal': round_one_decimal(term_total),
        'adjusted': adjusted,
    }


def rank_position(value, values):
    """1 + number of values strictly greater than ``value``."""
    return 1 + sum(1 for other in values if other > value and not same_score(other, value))


def assign_positions(scores):
    values = list(scores.values())
    return {key: rank_position(value, values) for key, value in scores.items()}


def analyse_subjects(subjects):
    if not subjects:
        return {'bestSubject': None, 'weakestSubject': None, 'totalScore': 0.0, 'averageScore': 0.0, 'totalSubjects': 0}
    best = weakest = None
    total = 0.0
    for subject in subjects:
        total += subject['termTotal']
        if best is None or subject['termTotal'] > best['score']:
            best = {'name': subject['subject'], 'score': subject['termTotal']}
        if weakest is None or subject['termTotal'] < weakest['score']:
            weakest = {'name': subject['subject'], 'score': subject['termTotal']}
    return {
        'bestSubject': best,
        'weakestSubject': weakest,
        'totalScore': round_one_decimal(total),
        'averageScore': round_one_decimal(total / len(subjects)),
        'totalSubjects': len(subjects),
    }


def compute_age(date_of_birth, reference):
    if date_of_birth is None or reference is None:
        return None
    age = reference.year - date_of_birth.year
    if (reference.month, reference.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def describe_trait_score(score):
    number = coerce_number(score)
    if number is None or not number.is_integer():
        return 'N/A'
    return TRAIT_SCORE_DESCRIPTIONS.get(int(number), 'N/A')


def group_traits(entries):
    grouped = {category: [] for category in TRAIT_CATEGORIES}
    for entry in entries:
        category = str(entry.get('category') or '').strip().lower()
        if category not in grouped:
            continue
        labels = dict(TRAIT_CATEGORIES[category])
        grouped[category].append({
            'trait': entry['trait'],
            'label': labels.get(entry['trait'], entry['trait']),
            'score': entry['score'],
            'description': describe_trait_score(entry['score']),
        })
    return [{'category': category, 'traits': traits} for category, traits in grouped.items()]


def _class_breakdowns(class_finals, class_midterms):
    """Term totals per subject and per student for the whole class."""
    midterm_lookup = {(subject_key(r['subject']), r['studentId']): r for r in class_midterms}
    by_subject = {}
    by_student = {}
    for record in class_finals:
        key = subject_key(record['subject'])
        breakdown = compute_subject_breakdown(record, midterm_lookup.get((key, record['studentId'])))
        by_subject.setdefault(key, {})[record['studentId']] = breakdown['termTotal']
        by_student.setdefault(record['studentId'], []).append(breakdown['termTotal'])
    averages = {student: sum(totals) / len(totals) for student, totals in by_student.items() if totals}
    return by_subject, averages


def build_report_card(student_id, session_id, term):
    """Assemble one student's report card for a session and term."""
    errors = {}
    if isinstance(student_id, bool) or not isinstance(student_id, int) or student_id <= 0:
        errors['studentId'] = 'Student identifier is invalid.'
    if not isinstance(session_id, str) or not session_id.strip():
        errors['sessionId'] = 'Session identifier is required.'
    term_label = normalize_term(term)
    if not term_label:
        errors['term'] = 'Unsupported academic term supplied.'
    if errors:
        raise ValidationError('Invalid report card request.', fields=errors)
    session_id = session_id.strip()

    student = load_student_profile(student_id)
    if student is None:
        raise NotFoundError('Student record could not be found.')
    if student['school'] is None:
        raise ValidationError('Student is not linked to a school record.')
    session = load_session(session_id)
    if session is None:
        raise NotFoundError('Academic session could not be found.')

    base = {'sessionId': session_id, 'term': term_label}
    finals = query_score_records(dict(base, studentId=student_id, examType='final'))
    if not finals:
        raise NotFoundError('No final exam records found for the selected student.')
    midterms = query_score_records(dict(base, studentId=student_id, examType='midterm'))

    if student['class_id'] is not None:
        class_filter = dict(base, classId=str(student['class_id']))
        class_finals = query_score_records(dict(class_filter, examType='final'))
        class_midterms = query_score_records(dict(class_filter, examType='midterm'))
    else:
        class_finals, class_midterms = finals, midterms

    warnings = []
    subject_totals, averages = _class_breakdowns(class_finals, class_midterms)
    subject_positions = {key: assign_positions(totals) for key, totals in subject_totals.items()}

    midterm_lookup = {subject_key(record['subject']): record for record in midterms}
    subjects = []
    for record in finals:
        key = subject_key(record['subject'])
        breakdown = compute_subject_breakdown(record, midterm_lookup.get(key))
        if breakdown['adjusted']:
            warnings.append(f"Stored total used for {record['subject']}; components do not add up.")
        band = resolve_grade(breakdown['termTotal'])
        subjects.append({
            'subject': record['subject'],
            'ca1': breakdown['ca1'],
            'ca2': breakdown['ca2'],
            'exam': breakdown['exam'],
            'termTotal': breakdown['termTotal'],
            'grade': band['grade'],
            'remark': band['remark'],
            'position': subject_positions.get(key, {}).get(student_id),
        })
    subjects.sort(key=lambda item: item['subject'].lower())

    analysis = analyse_subjects(subjects)
    if student_id not in averages and subjects:
        averages[student_id] = sum(s['termTotal'] for s in subjects) / len(subjects)
    class_position = assign_positions(averages).get(student_id)

    attendance = load_attendance_summary(student['id'], session.get('start_date'), session.get('end_date'))
    if attendance['percentage'] is None:
        warnings.append('No attendance recorded for this session.')

    traits = group_traits(load_trait_ratings(student['student_code'], session_id, term_label))
    if any(trait['description'] == 'N/A' for group in traits for trait in group['traits']):
        warnings.append('Some trait ratings are outside the 1-5 scale.')

    start_date = session.get('start_date')
    end_date = session.get('end_date')
    logger.info(
        "Report card built for student=%s session=%s term=%s subjects=%d",
        student_id, session_id, term_label, len(subjects),
    )
    return {
        'school': student['school'],
        'session': {
            'id': session['id'],
            'name': session['name'],
            'term': term_label,
            'startDate': start_date.isoformat() if start_date else None,
            'endDate': end_date.isoformat() if end_date else None,
        },
        'student': {
            'id': student['id'],
            'code': student['student_code'],
            'name': student['name'],
            'gender': student['gender'],
            'classId': student['class_id'],
            'className': student['class_name'],
            'age': compute_age(student['date_of_birth'], end_date),
            'bestSubject': analysis['bestSubject'],
            'weakestSubject': analysis['weakestSubject'],
        },
        'summaries': {
            'totalScore': analysis['totalScore'],
            'averageScore': analysis['averageScore'],
            'classPosition': class_position,
            'totalSubjects': analysis['totalSubjects'],
            'totalPossible': analysis['totalSubjects'] * 100,
            'attendance': attendance,
        },
        'classTeacher': {'name': student['form_teacher_name']},
        'subjects': subjects,
        'traits': traits,
        'warnings': warnings,
    }
