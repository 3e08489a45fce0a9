"""Resolved request actor: the one capability object every operation consumes."""

from dataclasses import dataclass, field

from flask import session

from db import db_connection, db_execute, store_errors
from errors import AuthenticationRequired, AuthorizationError

ROLES = ('admin', 'teacher', 'student', 'parent')


def subject_key(name):
    """Subject identity used for every permission and grouping comparison."""
    if not isinstance(name, str):
        return None
    trimmed = name.strip()
    return trimmed.lower() if trimmed else None


def _to_positive_int(value):
    if isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


@dataclass(frozen=True)
class Actor:
    user_id: str = None
    role: str = None
    teacher_id: int = None
    allowed_class_ids: frozenset = field(default_factory=frozenset)
    allowed_subject_names: frozenset = field(default_factory=frozenset)
    student_ids: frozenset = field(default_factory=frozenset)

    @property
    def is_authenticated(self):
        return bool(self.user_id) and self.role in ROLES

    @property
    def is_admin(self):
        return self.is_authenticated and self.role == 'admin'

    @property
    def is_teacher(self):
        return self.is_authenticated and self.role == 'teacher'

    @property
    def is_viewer(self):
        return self.is_authenticated and self.role in ('student', 'parent')

    @property
    def is_staff(self):
        return self.is_admin or self.is_teacher

    def can_access_class(self, class_id):
        if self.is_admin:
            return True
        return self.is_teacher and str(class_id) in self.allowed_class_ids

    def can_access_subject(self, subject):
        if self.is_admin:
            return True
        key = subject_key(subject)
        return self.is_teacher and key is not None and key in self.allowed_subject_names


ANONYMOUS = Actor()


def require_authenticated(actor):
    if not actor.is_authenticated:
        raise AuthenticationRequired()
    return actor


def require_admin(actor):
    require_authenticated(actor)
    if not actor.is_admin:
        raise AuthorizationError('Administrator permissions are required.')
    return actor


def load_teacher_scope(teacher_id):
    """Class ids and lower-cased subject names assigned to a teacher."""
    with store_errors('load_teacher_scope', teacher_id=teacher_id):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(c, 'SELECT class_id FROM teacher_class_assignments WHERE teacher_id = ?', (teacher_id,))
            class_ids = {str(row[0]) for row in c.fetchall() if row[0] is not None}
            db_execute(c, 'SELECT subject_name FROM teacher_subjects WHERE teacher_id = ?', (teacher_id,))
            subjects = {subject_key(row[0]) for row in c.fetchall()}
    subjects.discard(None)
    return frozenset(class_ids), frozenset(subjects)


def load_parent_student_ids(parent_user_id):
    with store_errors('load_parent_student_ids', parent_user_id=parent_user_id):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(c, 'SELECT student_id FROM parent_students WHERE parent_user_id = ?', (parent_user_id,))
            return frozenset(int(row[0]) for row in c.fetchall() if row[0] is not None)


def resolve_request_actor():
    """Build the actor for the current Flask session."""
    user_id = session.get('user_id')
    role = session.get('role')
    if not user_id or role not in ROLES:
        return ANONYMOUS
    user_id = str(user_id)

    if role == 'teacher':
        teacher_id = _to_positive_int(session.get('teacher_id'))
        class_ids, subjects = load_teacher_scope(teacher_id) if teacher_id else (frozenset(), frozenset())
        return Actor(
            user_id=user_id,
            role=role,
            teacher_id=teacher_id,
            allowed_class_ids=class_ids,
            allowed_subject_names=subjects,
        )
    if role == 'student':
        student_id = _to_positive_int(session.get('student_id'))
        return Actor(user_id=user_id, role=role, student_ids=frozenset([student_id]) if student_id else frozenset())
    if role == 'parent':
        return Actor(user_id=user_id, role=role, student_ids=load_parent_student_ids(user_id))
    return Actor(user_id=user_id, role=role)
