"""Initial schema for the academic results engine.

Revision ID: 001_initial
Revises:
Create Date: 2026-02-26 00:00:00.000000

"""
from alembic import op

from db import SCHEMA_STATEMENTS


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

TABLES = [
    'mark_distribution_components',
    'mark_distributions',
    'result_locks',
    'score_records',
    'parent_students',
    'teacher_subjects',
    'teacher_class_assignments',
    'student_traits',
    'student_attendance',
    'students',
    'school_classes',
    'academic_sessions',
    'schools',
]


def upgrade() -> None:
    """Create every table and index; the same statements back RUN_STARTUP_DDL."""
    for statement in SCHEMA_STATEMENTS:
        op.execute(statement)


def downgrade() -> None:
    """Drop all tables (destructive)."""
    for table in TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
