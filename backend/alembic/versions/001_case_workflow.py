"""Create case workflow tables

Revision ID: 001_case_workflow
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = '001_case_workflow'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Cases
    op.create_table(
        'cases',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('case_template_id', sa.String(64), nullable=False),
        sa.Column('student_id', sa.String(64), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=True),
        sa.Column('planner_id', sa.String(64), nullable=False),
        sa.Column('counselor_id', sa.String(64), nullable=True),
        sa.Column('analyst_id', sa.String(64), nullable=True),
        sa.Column('stage', sa.String(20), nullable=False, server_default='planning'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('cycle_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('line_group_url', sa.String(500), nullable=True),
        sa.Column('payment_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('cycle_count >= 0', name='cases_cycle_count_check'),
        sa.CheckConstraint(
            "stage IN ('planning', 'counseling', 'analyzing', 'cycling', 'completed', 'cancelled')",
            name='cases_stage_check'
        ),
    )
    op.create_index('ix_cases_case_template_id', 'cases', ['case_template_id'])
    op.create_index('ix_cases_student_id', 'cases', ['student_id'])
    op.create_index('ix_cases_planner_id', 'cases', ['planner_id'])
    op.create_index('ix_cases_counselor_id', 'cases', ['counselor_id'])
    op.create_index('ix_cases_analyst_id', 'cases', ['analyst_id'])
    op.create_index('idx_cases_student_stage', 'cases', ['student_id', 'stage'])
    op.create_index('idx_cases_counselor_stage', 'cases', ['counselor_id', 'stage'])
    op.create_index('idx_cases_analyst_stage', 'cases', ['analyst_id', 'stage'])

    # Course catalog mirror
    op.create_table(
        'course_templates',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )

    # Tasks and dependency edges
    op.create_table(
        'case_tasks',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('case_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('assignee_id', sa.String(64), nullable=False),
        sa.Column('subject_type', sa.String(20), nullable=False, server_default='case'),
        sa.Column('subject_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('priority', sa.String(20), nullable=False, server_default='normal'),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['case_id'], ['cases.id']),
        sa.CheckConstraint(
            "status IN ('pending', 'in_progress', 'blocked', 'completed', 'cancelled')",
            name='case_tasks_status_check'
        ),
    )
    op.create_index('ix_case_tasks_case_id', 'case_tasks', ['case_id'])
    op.create_index('ix_case_tasks_assignee_id', 'case_tasks', ['assignee_id'])
    op.create_index('ix_case_tasks_type', 'case_tasks', ['type'])
    op.create_index('idx_case_tasks_case_status', 'case_tasks', ['case_id', 'status'])
    op.create_index('idx_case_tasks_assignee_status', 'case_tasks', ['assignee_id', 'status'])
    op.create_index('idx_case_tasks_subject', 'case_tasks', ['subject_type', 'subject_id'])

    op.create_table(
        'case_task_dependencies',
        sa.Column('task_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('depends_on_task_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('task_id', 'depends_on_task_id'),
        sa.ForeignKeyConstraint(['task_id'], ['case_tasks.id']),
        sa.ForeignKeyConstraint(['depends_on_task_id'], ['case_tasks.id']),
        sa.CheckConstraint('task_id != depends_on_task_id', name='case_task_dependencies_no_self_check'),
    )

    # Prescriptions
    op.create_table(
        'prescriptions',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('case_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('counselor_id', sa.String(64), nullable=False),
        sa.Column('counseling_session_id', sa.String(64), nullable=True),
        sa.Column('cycle_number', sa.Integer(), nullable=False),
        sa.Column('strategy_report', sa.Text(), nullable=True),
        sa.Column('counseling_notes', sa.Text(), nullable=True),
        sa.Column('learning_goals', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['case_id'], ['cases.id']),
        sa.UniqueConstraint('case_id', 'cycle_number', name='uq_prescriptions_case_cycle'),
        sa.CheckConstraint('cycle_number >= 1', name='prescriptions_cycle_number_check'),
        sa.CheckConstraint(
            "status IN ('draft', 'issued', 'completed', 'cancelled')",
            name='prescriptions_status_check'
        ),
    )
    op.create_index('ix_prescriptions_case_id', 'prescriptions', ['case_id'])
    op.create_index('ix_prescriptions_counselor_id', 'prescriptions', ['counselor_id'])

    op.create_table(
        'prescription_courses',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('prescription_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('course_template_id', sa.String(64), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('recommended_sessions', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['prescription_id'], ['prescriptions.id']),
        sa.ForeignKeyConstraint(['course_template_id'], ['course_templates.id']),
        sa.UniqueConstraint('prescription_id', 'course_template_id', name='uq_prescription_courses_pair'),
        sa.CheckConstraint('recommended_sessions >= 1', name='prescription_courses_sessions_check'),
    )
    op.create_index('ix_prescription_courses_prescription_id', 'prescription_courses', ['prescription_id'])

    op.create_table(
        'learning_tasks',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('prescription_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('resources', sa.JSON(), nullable=True),
        sa.Column('estimated_hours', sa.Float(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['prescription_id'], ['prescriptions.id']),
        sa.CheckConstraint('progress >= 0 AND progress <= 100', name='learning_tasks_progress_check'),
    )
    op.create_index('ix_learning_tasks_prescription_id', 'learning_tasks', ['prescription_id'])

    op.create_table(
        'prescription_items',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('prescription_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('item_type', sa.String(20), nullable=False, server_default='other'),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('completion_notes', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['prescription_id'], ['prescriptions.id']),
    )
    op.create_index('ix_prescription_items_prescription_id', 'prescription_items', ['prescription_id'])

    # Assessments
    op.create_table(
        'assessments',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('prescription_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('analyst_id', sa.String(64), nullable=False),
        sa.Column('test_content', sa.Text(), nullable=True),
        sa.Column('test_results', sa.JSON(), nullable=True),
        sa.Column('test_score', sa.Float(), nullable=True),
        sa.Column('analysis_report', sa.Text(), nullable=True),
        sa.Column('metrics', sa.JSON(), nullable=True),
        sa.Column('recommendations', sa.JSON(), nullable=True),
        sa.Column('study_hours', sa.Float(), nullable=True),
        sa.Column('tasks_completed', sa.Integer(), nullable=True),
        sa.Column('courses_attended', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['prescription_id'], ['prescriptions.id']),
        sa.UniqueConstraint('prescription_id', name='uq_assessments_prescription'),
        sa.CheckConstraint(
            "status IN ('draft', 'in_review', 'completed', 'cancelled')",
            name='assessments_status_check'
        ),
    )
    op.create_index('ix_assessments_analyst_id', 'assessments', ['analyst_id'])

    # Append-only notes
    op.create_table(
        'case_notes',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('case_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('author_id', sa.String(64), nullable=False),
        sa.Column('note_type', sa.String(20), nullable=False, server_default='general'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('attachments', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['case_id'], ['cases.id']),
    )
    op.create_index('idx_case_notes_case_created', 'case_notes', ['case_id', 'created_at'])


def downgrade():
    op.drop_index('idx_case_notes_case_created', table_name='case_notes')
    op.drop_table('case_notes')

    op.drop_index('ix_assessments_analyst_id', table_name='assessments')
    op.drop_table('assessments')

    op.drop_index('ix_prescription_items_prescription_id', table_name='prescription_items')
    op.drop_table('prescription_items')
    op.drop_index('ix_learning_tasks_prescription_id', table_name='learning_tasks')
    op.drop_table('learning_tasks')
    op.drop_index('ix_prescription_courses_prescription_id', table_name='prescription_courses')
    op.drop_table('prescription_courses')
    op.drop_index('ix_prescriptions_counselor_id', table_name='prescriptions')
    op.drop_index('ix_prescriptions_case_id', table_name='prescriptions')
    op.drop_table('prescriptions')

    op.drop_table('case_task_dependencies')
    for index_name in (
        'idx_case_tasks_subject',
        'idx_case_tasks_assignee_status',
        'idx_case_tasks_case_status',
        'ix_case_tasks_type',
        'ix_case_tasks_assignee_id',
        'ix_case_tasks_case_id',
    ):
        op.drop_index(index_name, table_name='case_tasks')
    op.drop_table('case_tasks')

    op.drop_table('course_templates')

    for index_name in (
        'idx_cases_analyst_stage',
        'idx_cases_counselor_stage',
        'idx_cases_student_stage',
        'ix_cases_analyst_id',
        'ix_cases_counselor_id',
        'ix_cases_planner_id',
        'ix_cases_student_id',
        'ix_cases_case_template_id',
    ):
        op.drop_index(index_name, table_name='cases')
    op.drop_table('cases')
