"""Grade bands, term/exam-type vocabulary and score component normalisation."""

import json
import math
from decimal import Decimal, ROUND_HALF_UP

TERM_LABELS = ('First Term', 'Second Term', 'Third Term')
_TERM_ALIASES = {
    'first term': 'First Term',
    'first': 'First Term',
    'second term': 'Second Term',
    'second': 'Second Term',
    'third term': 'Third Term',
    'third': 'Third Term',
}

EXAM_TYPES = ('midterm', 'final')
EXAM_TYPE_SCALE = {'midterm': 50, 'final': 100}

# Highest threshold first; the last band is the catch-all.
GRADE_BANDS = [
    {'grade': 'A1', 'remark': 'Excellent', 'min': 75},
    {'grade': 'B2', 'remark': 'Very Good', 'min': 70},
    {'grade': 'B3', 'remark': 'Good', 'min': 65},
    {'grade': 'C4', 'remark': 'Credit', 'min': 60},
    {'grade': 'C5', 'remark': 'Credit', 'min': 55},
    {'grade': 'C6', 'remark': 'Credit', 'min': 50},
    {'grade': 'D7', 'remark': 'Pass', 'min': 45},
    {'grade': 'E8', 'remark': 'Pass', 'min': 40},
    {'grade': 'F9', 'remark': 'Fail', 'min': 0},
]

_ONE_DECIMAL = Decimal('0.1')


def normalize_term(value):
    """Map a term label, alias or enum name to its canonical label."""
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    if not key:
        return None
    return _TERM_ALIASES.get(key)


def term_sort_value(term):
    label = normalize_term(term)
    return TERM_LABELS.index(label) + 1 if label else 99


def normalize_exam_type(value):
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    return key if key in EXAM_TYPES else None


def round_one_decimal(value):
    """Round half-up to one decimal place (91.25 -> 91.3)."""
    return float(to_decimal(value).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def to_decimal(value):
    return Decimal(str(value))


def coerce_number(value):
    """Return a finite float for numbers and numeric strings, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def clamp_percentage(value):
    number = coerce_number(value)
    if number is None:
        return 0.0
    return min(100.0, max(0.0, number))


def resolve_grade(percentage):
    """Grade and remark for a 0-100 percentage; out-of-range input is clamped."""
    normalised = clamp_percentage(percentage)
    for band in GRADE_BANDS:
        if normalised >= band['min']:
            return {'grade': band['grade'], 'remark': band['remark']}
    last = GRADE_BANDS[-1]
    return {'grade': last['grade'], 'remark': last['remark']}


def resolve_midterm_grade(score_out_of_fifty):
    score = coerce_number(score_out_of_fifty) or 0.0
    return resolve_grade(score / EXAM_TYPE_SCALE['midterm'] * 100)


def resolve_grade_for_exam(score, exam_type):
    if normalize_exam_type(exam_type) == 'midterm':
        return resolve_midterm_grade(score)
    return resolve_grade(score)


def grade_rank(grade):
    """Position of a grade in the band table; 0 is the best band."""
    for index, band in enumerate(GRADE_BANDS):
        if band['grade'] == grade:
            return index
    return len(GRADE_BANDS)


def _component_id(raw_id, raw_label, index):
    if isinstance(raw_id, str) and raw_id.strip():
        return raw_id.strip()
    if isinstance(raw_id, (int, float)) and not isinstance(raw_id, bool) and math.isfinite(raw_id):
        number = int(raw_id) if float(raw_id).is_integer() else raw_id
        return f"component-{number}"
    if isinstance(raw_label, str) and raw_label.strip():
        return raw_label.strip()
    return f"component-{index}"


def normalize_components(raw_components):
    """Clean a raw component list without ever dropping an entry.

    Missing ids fall back to ``component-<n>`` (or the label), a missing label
    falls back to the id, a non-numeric score becomes 0 and a non-numeric max
    score becomes None. Stored JSON text is accepted as well.
    """
    if isinstance(raw_components, str):
        try:
            raw_components = json.loads(raw_components)
        except ValueError:
            return []
    if not isinstance(raw_components, (list, tuple)):
        return []

    components = []
    for index, entry in enumerate(raw_components):
        record = entry if isinstance(entry, dict) else {}
        raw_label = record.get('label')
        component_id = _component_id(record.get('componentId'), raw_label, index)
        label = raw_label.strip() if isinstance(raw_label, str) and raw_label.strip() else component_id
        score = coerce_number(record.get('score'))
        components.append({
            'componentId': component_id,
            'label': label,
            'score': score if score is not None else 0.0,
            'maxScore': coerce_number(record.get('maxScore')),
        })
    return components


def duplicate_component_ids(components):
    seen = set()
    duplicates = []
    for component in components:
        key = component['componentId'].lower()
        if key in seen:
            duplicates.append(component['componentId'])
        seen.add(key)
    return duplicates


def compute_score_totals(components, total_score=None, max_score=None, percentage=None):
    """Derive total, max and percentage so stored records stay consistent."""
    total = coerce_number(total_score)
    maximum = coerce_number(max_score)
    pct = coerce_number(percentage)

    if components:
        total = float(sum(to_decimal(c['score']) for c in components))
        max_values = [c['maxScore'] for c in components]
        if all(value is not None for value in max_values):
            maximum = float(sum(to_decimal(value) for value in max_values))

    if total is not None and maximum is not None and maximum > 0:
        pct = round_one_decimal(to_decimal(total) / to_decimal(maximum) * 100)

    return {'totalScore': total, 'maxScore': maximum, 'percentage': pct}
