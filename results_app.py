"""
Academic Results Engine - HTTP surface

JSON endpoints for score entry, publish/lock workflow, mark distributions and
report cards. All domain rules live in the imported modules; routes only
resolve the actor, validate the request shape and serialise results.
"""

import logging
import os

from flask import Flask, jsonify, request, session
from flask_wtf.csrf import CSRFProtect, CSRFError
from werkzeug.exceptions import HTTPException

import config
from actors import require_admin, require_authenticated, resolve_request_actor
from collaborators import list_sessions, load_student_profile
from db import init_db, ping
from errors import AuthorizationError, NotFoundError, ResultsError, ValidationError
from forms import (
    DistributionQueryForm,
    LockActionForm,
    LockFilterForm,
    ReportCardQueryForm,
    ScoreFilterForm,
    first_errors,
)
from grading import normalize_exam_type, normalize_term
from mark_distribution import (
    delete_distribution_template,
    get_mark_distribution,
    list_distribution_templates,
    upsert_distribution_template,
)
from report_cards import build_report_card
from result_locks import UNSET, LockKey, build_lock_key, fetch_locks_for_keys, list_locks, may_view, mutate_lock
from score_records import list_scores, save_scores

app = Flask(__name__)
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if config.ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not config.ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

# Initialize CSRF Protection
csrf = CSRFProtect(app)

config.get_database_url()

# Set up logging
logging.basicConfig(filename=config.LOG_FILE, level=getattr(logging, config.LOG_LEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
if config.ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

# Initialize database (can be disabled when schema is managed by migrations).
if config.RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")


def json_body():
    payload = request.get_json(silent=True)
    if payload is None:
        raise ValidationError('Request body must be JSON.')
    return payload


def validated(form, message):
    if not form.validate():
        raise ValidationError(message, fields=first_errors(form))
    return form


def optional_text(value):
    return value.strip() if isinstance(value, str) and value.strip() else None


# ==================== ERRORS ====================

@app.errorhandler(ResultsError)
def handle_results_error(error):
    level = logging.ERROR if error.status_code >= 500 else logging.WARNING
    logger.log(level, "%s %s -> %s %s fields=%s user=%s", request.method, request.path,
               error.status_code, type(error).__name__, error.fields, session.get('user_id'))
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    logger.warning("CSRF rejected %s %s: %s", request.method, request.path, error.description)
    return jsonify({'message': 'Form token expired/invalid. Please retry your last action.'}), 400


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return jsonify({'message': error.description}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({'message': 'Unable to complete the request.'}), 500


# ==================== ROUTES ====================

@app.route('/api/health')
def health():
    try:
        database_up = ping()
    except Exception as exc:
        logger.warning("Health check could not reach the database: %s", exc)
        database_up = False
    status = 200 if database_up else 503
    return jsonify({'status': 'ok' if database_up else 'degraded', 'database': 'up' if database_up else 'down'}), status


@app.route('/api/sessions')
def sessions():
    require_authenticated(resolve_request_actor())
    return jsonify({'sessions': list_sessions()})


@app.route('/api/results/scores', methods=['GET'])
def get_scores():
    actor = require_authenticated(resolve_request_actor())
    form = validated(ScoreFilterForm(request.args), 'Invalid score filters.')
    filters = {name: form[name].data for name in ('classId', 'subject', 'sessionId', 'term', 'examType')}
    records = list_scores(filters, actor, limit=form.limit.data)
    return jsonify({'records': records, 'count': len(records)})


@app.route('/api/results/scores', methods=['POST'])
def post_scores():
    actor = require_authenticated(resolve_request_actor())
    payload = json_body()
    rows = payload.get('rows') if isinstance(payload, dict) else payload
    saved = save_scores(rows, actor)
    return jsonify({'records': saved, 'saved': len(saved)})


@app.route('/api/results/locks', methods=['GET'])
def get_locks():
    actor = require_admin(resolve_request_actor())
    validated(LockFilterForm(request.args), 'Invalid result lock filters.')
    return jsonify({'locks': list_locks(request.args.to_dict(), actor)})


@app.route('/api/results/locks', methods=['POST'])
def post_lock():
    actor = require_admin(resolve_request_actor())
    payload = json_body()
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')
    form = validated(LockActionForm(), 'Invalid result lock request.')
    key = build_lock_key(form.classId.data, form.sessionId.data, form.term.data, form.examType.data)
    notes = payload['notes'] if 'notes' in payload else UNSET
    summary = mutate_lock(form.action.data, key, actor, teacher_id=form.teacherId.data, notes=notes)
    return jsonify({'lock': summary})


@app.route('/api/exams/mark-distribution')
def mark_distribution():
    require_authenticated(resolve_request_actor())
    form = validated(DistributionQueryForm(request.args), 'Invalid mark distribution query.')
    groups = get_mark_distribution(
        form.sessionId.data,
        term=form.term.data,
        class_id=form.classId.data,
        exam_type=form.examType.data,
        school_id=optional_text(form.schoolId.data) or session.get('school_id'),
    )
    return jsonify({'sessionId': form.sessionId.data.strip(), 'distributions': groups})


@app.route('/api/exams/mark-distributions', methods=['GET'])
def get_distribution_templates():
    require_authenticated(resolve_request_actor())
    templates = list_distribution_templates({
        'sessionId': optional_text(request.args.get('sessionId')),
        'term': normalize_term(request.args.get('term')),
        'examType': normalize_exam_type(request.args.get('examType')),
        'schoolId': optional_text(request.args.get('schoolId')),
    })
    return jsonify({'templates': templates})


@app.route('/api/exams/mark-distributions', methods=['POST'])
def post_distribution_template():
    actor = require_admin(resolve_request_actor())
    saved, created = upsert_distribution_template(json_body(), actor)
    return jsonify({'template': saved}), 201 if created else 200


@app.route('/api/exams/mark-distributions/<template_id>', methods=['DELETE'])
def remove_distribution_template(template_id):
    actor = require_admin(resolve_request_actor())
    delete_distribution_template(template_id, actor)
    return jsonify({'deleted': template_id})


def authorize_report_card(actor, student_id, session_id, term):
    """Admins always; teachers of the class; linked viewers once finals are published."""
    require_authenticated(actor)
    if actor.is_admin:
        return
    if actor.is_viewer and student_id not in actor.student_ids:
        raise AuthorizationError('You can only view your own report card.')

    student = load_student_profile(student_id)
    if student is None:
        raise NotFoundError('Student record could not be found.')

    if actor.is_teacher:
        if student['class_id'] is None or not actor.can_access_class(student['class_id']):
            raise AuthorizationError('You are not assigned to this student\'s class.')
        return

    term_label = normalize_term(term)
    if student['class_id'] is None or not term_label:
        raise AuthorizationError('Results have not been published yet.')
    key = LockKey(int(student['class_id']), session_id.strip(), term_label, 'final')
    if not may_view(fetch_locks_for_keys([key]).get(key), actor):
        raise AuthorizationError('Results have not been published yet.')


@app.route('/api/report-cards/<int:student_id>')
def report_card(student_id):
    actor = require_authenticated(resolve_request_actor())
    form = validated(ReportCardQueryForm(request.args), 'Invalid report card request.')
    authorize_report_card(actor, student_id, form.sessionId.data, form.term.data)
    return jsonify(build_report_card(student_id, form.sessionId.data, form.term.data))


# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
