from flask_wtf import FlaskForm
from wtforms import Form, IntegerField, StringField, TextAreaField, validators

from grading import normalize_exam_type, normalize_term

LOCK_ACTIONS = ('lock', 'unlock', 'grant', 'grantoverride', 'grant_override', 'revoke', 'revokeoverride', 'revoke_override')


def known_term(form, field):
    if field.data and not normalize_term(field.data):
        raise validators.ValidationError('term must be a recognised value.')


def known_exam_type(form, field):
    if field.data and not normalize_exam_type(field.data):
        raise validators.ValidationError('examType must be either midterm or final.')


def first_errors(form):
    """Collapse WTForms' error lists to one message per field."""
    return {name: messages[0] for name, messages in form.errors.items() if messages}


class LockActionForm(FlaskForm):
    """JSON body for POST /api/results/locks; CSRFProtect guards the route itself."""

    class Meta:
        csrf = False

    action = StringField('action', [
        validators.DataRequired('action is required.'),
        validators.AnyOf(LOCK_ACTIONS, message='Unsupported action.'),
    ], filters=[lambda value: value.strip().lower() if isinstance(value, str) else value])
    classId = IntegerField('classId', [
        validators.DataRequired('A valid classId is required.'),
        validators.NumberRange(min=1, message='A valid classId is required.'),
    ])
    sessionId = StringField('sessionId', [validators.DataRequired('A valid sessionId is required.')])
    term = StringField('term', [validators.DataRequired('A valid term is required.'), known_term])
    examType = StringField('examType', [validators.DataRequired('examType is required.'), known_exam_type])
    teacherId = IntegerField('teacherId', [
        validators.Optional(),
        validators.NumberRange(min=1, message='A positive teacher id is required.'),
    ])
    notes = TextAreaField('notes', [validators.Optional(), validators.Length(max=2000)])


class LockFilterForm(Form):
    classId = IntegerField('classId', [
        validators.Optional(),
        validators.NumberRange(min=1, message='classId must be a positive integer.'),
    ])
    sessionId = StringField('sessionId')
    term = StringField('term', [known_term])
    examType = StringField('examType', [known_exam_type])


class ScoreFilterForm(Form):
    classId = StringField('classId')
    subject = StringField('subject')
    sessionId = StringField('sessionId')
    term = StringField('term', [known_term])
    examType = StringField('examType', [known_exam_type])
    limit = IntegerField('limit', [
        validators.Optional(),
        validators.NumberRange(min=1, message='limit must be a positive integer.'),
    ])


class DistributionQueryForm(Form):
    sessionId = StringField('sessionId', [validators.DataRequired('sessionId is required.')])
    term = StringField('term', [known_term])
    classId = StringField('classId')
    examType = StringField('examType', [known_exam_type])
    schoolId = StringField('schoolId')


class ReportCardQueryForm(Form):
    sessionId = StringField('sessionId', [validators.DataRequired('sessionId is required.')])
    term = StringField('term', [validators.DataRequired('term is required.'), known_term])
