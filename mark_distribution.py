"""Component weights inferred from the max scores teachers actually use.

Admins may also author a template for a (session, term, exam type); a
template replaces the inferred weights for the same group at read time.
"""

import logging
import re
import uuid
from decimal import Decimal, ROUND_HALF_UP

from psycopg2.extras import execute_batch

import config
from actors import require_admin
from db import db_connection, db_execute, set_statement_timeout, store_errors
from errors import NotFoundError, ValidationError
from grading import normalize_components, normalize_exam_type, normalize_term, term_sort_value

logger = logging.getLogger(__name__)

ALL_TERMS = 'All Terms'
_HUNDRED = Decimal(100)
_ONE_DECIMAL = Decimal('0.1')


def build_title(term_label, exam_type):
    suffix = 'Final Exam' if exam_type == 'final' else 'Midterm Assessment'
    return f"{term_label} {suffix}"


def distribution_id(session_id, term_label, exam_type):
    slug = re.sub(r'\s+', '-', term_label.strip()).lower()
    return f"{session_id}-{slug}-{exam_type}"


def compute_weights(aggregates):
    """Turn ``[(componentId, label, avgMax), ...]`` into weights summing to 100.

    Weights are proportional to the average max score, or an equal split when
    no max score was ever recorded. Each weight is rounded to one decimal and
    the rounding remainder goes to the component with the largest raw weight.
    """
    if not aggregates:
        return []
    averages = [Decimal(str(avg_max)) for _id, _label, avg_max in aggregates]
    total = sum(averages, Decimal(0))
    if total > 0:
        raw = [avg / total * _HUNDRED for avg in averages]
    else:
        raw = [_HUNDRED / len(aggregates)] * len(aggregates)

    rounded = [value.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP) for value in raw]
    diff = _HUNDRED - sum(rounded, Decimal(0))
    if diff:
        largest = max(range(len(raw)), key=lambda index: (raw[index], -index))
        rounded[largest] += diff

    return [
        {'id': component_id, 'label': label, 'weight': float(weight)}
        for (component_id, label, _avg), weight in zip(aggregates, rounded)
    ]


def infer_distribution_groups(records, session_id, term_filter=None):
    """Group score records by (term, exam type) and infer each group's weights."""
    groups = {}
    for record in records:
        exam_type = normalize_exam_type(record.get('examType'))
        if not exam_type:
            continue
        term_label = normalize_term(record.get('term')) or term_filter or ALL_TERMS
        group = groups.setdefault((term_label, exam_type), {})
        for component in normalize_components(record.get('components')):
            # Grouped case-insensitively; the first spelling seen is reported.
            key = component['componentId'].lower()
            entry = group.setdefault(key, {
                'id': component['componentId'],
                'label': component['label'],
                'total_max': 0.0,
                'count': 0,
            })
            entry['total_max'] += component['maxScore'] or 0.0
            entry['count'] += 1

    results = []
    for (term_label, exam_type), components in groups.items():
        aggregates = [
            (entry['id'], entry['label'], entry['total_max'] / entry['count'] if entry['count'] else 0.0)
            for entry in components.values()
        ]
        if not aggregates:
            continue
        weighted = compute_weights(aggregates)
        results.append({
            'id': distribution_id(session_id, term_label, exam_type),
            'title': build_title(term_label, exam_type),
            'sessionId': session_id,
            'term': term_label,
            'examType': exam_type,
            'components': weighted,
            'totalWeight': float(sum((Decimal(str(c['weight'])) for c in weighted), Decimal(0))),
            'source': 'inferred',
        })
    return sort_groups(results)


def sort_groups(groups):
    return sorted(groups, key=lambda g: (term_sort_value(g['term']), g['examType'] != 'midterm'))


def _parse_query(session_id, term=None, class_id=None, exam_type=None):
    errors = {}
    session_value = session_id.strip() if isinstance(session_id, str) else ''
    if not session_value:
        errors['sessionId'] = 'sessionId is required.'
    term_label = None
    if term not in (None, ''):
        term_label = normalize_term(term)
        if not term_label:
            errors['term'] = 'term must be a recognised value.'
    exam = None
    if exam_type not in (None, ''):
        exam = normalize_exam_type(exam_type)
        if not exam:
            errors['examType'] = 'examType must be either midterm or final.'
    if errors:
        raise ValidationError('Invalid mark distribution query.', fields=errors)
    class_value = str(class_id).strip() if class_id not in (None, '') else None
    return session_value, term_label, class_value, exam


def _load_component_rows(session_id, term=None, class_id=None, exam_type=None, timeout_ms=None):
    query = 'SELECT term, exam_type, components FROM score_records WHERE session_id = ?'
    params = [session_id]
    if term:
        query += ' AND term = ?'
        params.append(term)
    if class_id:
        query += ' AND class_id = ?'
        params.append(class_id)
    if exam_type:
        query += ' AND exam_type = ?'
        params.append(exam_type)
    with store_errors('load_distribution_components', session_id=session_id, term=term):
        with db_connection() as conn:
            c = conn.cursor()
            set_statement_timeout(c, timeout_ms or config.DB_READ_TIMEOUT_MS)
            db_execute(c, query, tuple(params))
            return [
                {'term': row['term'], 'examType': row['exam_type'], 'components': row['components']}
                for row in c.fetchall()
            ]


def infer_mark_distribution(session_id, term=None, class_id=None, exam_type=None, timeout_ms=None):
    session_value, term_label, class_value, exam = _parse_query(session_id, term, class_id, exam_type)
    records = _load_component_rows(session_value, term_label, class_value, exam, timeout_ms=timeout_ms)
    return infer_distribution_groups(records, session_value, term_filter=term_label)


def _template_group(template):
    return {
        'id': template['id'],
        'title': template['title'],
        'sessionId': template['sessionId'],
        'term': template['term'],
        'examType': template['examType'],
        'components': [
            {'id': c['componentId'], 'label': c['label'], 'weight': float(c['weight'])}
            for c in template['components']
        ],
        'totalWeight': float(template['totalWeight']),
        'source': 'template',
    }


def merge_with_templates(inferred, templates, school_id=None):
    """Overlay templates on inferred groups; a school template beats a shared one."""
    chosen = {}
    for template in templates:
        if template['schoolId'] not in (None, school_id):
            continue
        key = (template['term'], template['examType'])
        current = chosen.get(key)
        if current is None or (current['schoolId'] is None and template['schoolId'] is not None):
            chosen[key] = template

    merged = []
    for group in inferred:
        template = chosen.pop((group['term'], group['examType']), None)
        merged.append(_template_group(template) if template else group)
    merged.extend(_template_group(template) for template in chosen.values())
    return sort_groups(merged)


def get_mark_distribution(session_id, term=None, class_id=None, exam_type=None, school_id=None):
    """Distribution groups for a session, with authored templates applied."""
    session_value, term_label, class_value, exam = _parse_query(session_id, term, class_id, exam_type)
    records = _load_component_rows(session_value, term_label, class_value, exam)
    inferred = infer_distribution_groups(records, session_value, term_filter=term_label)
    templates = list_distribution_templates({
        'sessionId': session_value,
        'term': term_label,
        'examType': exam,
    })
    return merge_with_templates(inferred, templates, school_id=school_id or None)


def _map_template(row, components):
    ordered = sorted(components, key=lambda c: (c['order'], c['componentId']))
    return {
        'id': row['id'],
        'schoolId': row['school_id'],
        'sessionId': row['session_id'],
        'term': row['term'],
        'examType': row['exam_type'],
        'title': row['title'],
        'components': ordered,
        'totalWeight': sum(c['weight'] for c in ordered),
    }


def _fetch_templates(c, where_sql='', params=()):
    db_execute(
        c,
        f'''SELECT id, school_id, session_id, term, exam_type, title
            FROM mark_distributions
            WHERE 1 = 1{where_sql}
            ORDER BY session_id DESC, term ASC, exam_type ASC''',
        tuple(params),
    )
    rows = c.fetchall()
    if not rows:
        return []
    ids = [row['id'] for row in rows]
    db_execute(
        c,
        '''SELECT distribution_id, component_id, label, weight, sort_order
           FROM mark_distribution_components
           WHERE distribution_id = ANY(?)
           ORDER BY sort_order ASC, component_id ASC''',
        (ids,),
    )
    components = {}
    for comp in c.fetchall():
        components.setdefault(comp['distribution_id'], []).append({
            'componentId': comp['component_id'],
            'label': comp['label'],
            'weight': int(comp['weight']),
            'order': int(comp['sort_order']),
        })
    return [_map_template(row, components.get(row['id'], [])) for row in rows]


def list_distribution_templates(filters=None):
    filters = filters or {}
    where_sql = ''
    params = []
    for name, column in (('sessionId', 'session_id'), ('term', 'term'), ('examType', 'exam_type')):
        if filters.get(name):
            where_sql += f' AND {column} = ?'
            params.append(filters[name])
    if filters.get('schoolId'):
        where_sql += ' AND school_id = ?'
        params.append(filters['schoolId'])
    with store_errors('list_distribution_templates', filters=filters):
        with db_connection() as conn:
            return _fetch_templates(conn.cursor(), where_sql, params)


def _non_negative_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def validate_template_payload(payload):
    if not isinstance(payload, dict):
        raise ValidationError('Invalid mark distribution template.', fields={'body': 'Expected a JSON object.'})
    errors = {}

    session_id = payload.get('sessionId')
    session_id = session_id.strip() if isinstance(session_id, str) else ''
    if not session_id:
        errors['sessionId'] = 'sessionId is required.'
    term_label = normalize_term(payload.get('term'))
    if not term_label:
        errors['term'] = 'A valid term is required.'
    exam = normalize_exam_type(payload.get('examType'))
    if not exam:
        errors['examType'] = 'examType must be either midterm or final.'
    school_id = payload.get('schoolId')
    school_id = school_id.strip() if isinstance(school_id, str) and school_id.strip() else None
    template_id = payload.get('id')
    template_id = template_id.strip() if isinstance(template_id, str) and template_id.strip() else None

    raw_components = payload.get('components')
    components = []
    if not isinstance(raw_components, list) or not raw_components:
        errors['components'] = 'At least one component is required.'
        raw_components = []
    seen = set()
    for index, raw in enumerate(raw_components):
        prefix = f'components[{index}]'
        raw = raw if isinstance(raw, dict) else {}
        component_id = raw.get('componentId')
        component_id = component_id.strip() if isinstance(component_id, str) else ''
        if not component_id:
            errors[f'{prefix}.componentId'] = 'componentId is required.'
        elif component_id.lower() in seen:
            errors[f'{prefix}.componentId'] = f'Duplicate component id {component_id}.'
        seen.add(component_id.lower())
        label = raw.get('label')
        label = label.strip() if isinstance(label, str) and label.strip() else component_id
        weight = _non_negative_int(raw.get('weight'))
        if weight is None:
            errors[f'{prefix}.weight'] = 'weight must be a whole number of at least 0.'
        order = _non_negative_int(raw.get('order')) if raw.get('order') is not None else index
        if order is None:
            errors[f'{prefix}.order'] = 'order must be a whole number of at least 0.'
        components.append({'componentId': component_id, 'label': label, 'weight': weight or 0, 'order': order or 0})

    if components and 'components' not in errors:
        total_weight = sum(c['weight'] for c in components)
        if total_weight != 100:
            errors['components'] = f'Component weights must add up to 100 (got {total_weight}).'
    if errors:
        raise ValidationError('Invalid mark distribution template.', fields=errors)

    title = payload.get('title')
    title = title.strip() if isinstance(title, str) and title.strip() else build_title(term_label, exam)
    return {
        'id': template_id,
        'schoolId': school_id,
        'sessionId': session_id,
        'term': term_label,
        'examType': exam,
        'title': title,
        'components': components,
    }


def _save_template(template):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        existing = None
        if template['id']:
            db_execute(c, 'SELECT id FROM mark_distributions WHERE id = ?', (template['id'],))
            existing = c.fetchone()
        if existing is None:
            db_execute(
                c,
                '''SELECT id FROM mark_distributions
                   WHERE COALESCE(school_id, '') = ? AND session_id = ? AND term = ? AND exam_type = ?''',
                (template['schoolId'] or '', template['sessionId'], template['term'], template['examType']),
            )
            existing = c.fetchone()

        created = existing is None
        template_id = existing['id'] if existing else (template['id'] or uuid.uuid4().hex)
        if created:
            db_execute(
                c,
                '''INSERT INTO mark_distributions (id, school_id, session_id, term, exam_type, title)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                (template_id, template['schoolId'], template['sessionId'], template['term'],
                 template['examType'], template['title']),
            )
        else:
            db_execute(
                c,
                '''UPDATE mark_distributions
                   SET school_id = ?, session_id = ?, term = ?, exam_type = ?, title = ?,
                       updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?''',
                (template['schoolId'], template['sessionId'], template['term'], template['examType'],
                 template['title'], template_id),
            )
            db_execute(c, 'DELETE FROM mark_distribution_components WHERE distribution_id = ?', (template_id,))

        execute_batch(
            c,
            '''INSERT INTO mark_distribution_components (distribution_id, component_id, label, weight, sort_order)
               VALUES (%s, %s, %s, %s, %s)''',
            [(template_id, comp['componentId'], comp['label'], comp['weight'], comp['order'])
             for comp in template['components']],
        )
        saved = _fetch_templates(c, ' AND id = ?', [template_id])
    return saved[0], created


def upsert_distribution_template(payload, actor):
    require_admin(actor)
    template = validate_template_payload(payload)
    with store_errors('upsert_distribution_template', session_id=template['sessionId']):
        saved, created = _save_template(template)
    logger.info(
        "Mark distribution template %s %s by %s (session=%s term=%s exam=%s)",
        saved['id'], 'created' if created else 'updated', actor.user_id,
        saved['sessionId'], saved['term'], saved['examType'],
    )
    return saved, created


def _delete_template(template_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM mark_distributions WHERE id = ? RETURNING id', (template_id,))
        return c.fetchone() is not None


def delete_distribution_template(template_id, actor):
    require_admin(actor)
    if not isinstance(template_id, str) or not template_id.strip():
        raise ValidationError('A template id is required.', fields={'id': 'A template id is required.'})
    with store_errors('delete_distribution_template', template_id=template_id):
        deleted = _delete_template(template_id.strip())
    if not deleted:
        raise NotFoundError('Mark distribution template not found.')
    logger.info("Mark distribution template %s deleted by %s", template_id, actor.user_id)
