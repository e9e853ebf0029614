"""initial exam schema: users, question bank, sessions

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('telegram_id', sa.BigInteger(), nullable=False),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('last_failed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_users_telegram_id', 'users', ['telegram_id'], unique=True)

    op.create_table(
        'questions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('category', sa.String(32), nullable=False),
        sa.Column('qtype', sa.String(10), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('code_snippet', sa.Text(), nullable=True),
        sa.Column('explanation', sa.Text(), nullable=True),
        sa.Column('reference_url', sa.String(512), nullable=True),
        sa.Column('reference_title', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_questions_category', 'questions', ['category'])

    op.create_table(
        'answers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('question_id', sa.Integer(), sa.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('is_correct', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('order_index', sa.Integer(), server_default='0', nullable=False),
    )
    op.create_index('ix_answers_question_id', 'answers', ['question_id'])

    op.create_table(
        'exam_sessions',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.telegram_id'), nullable=False),
        sa.Column('exam_id', sa.Integer(), nullable=False),
        sa.Column('mode', sa.String(10), nullable=False),
        sa.Column('status', sa.String(10), server_default='active', nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('current_index', sa.Integer(), server_default='1', nullable=False),
        sa.Column('total_count', sa.Integer(), nullable=False),
        sa.Column('warn10_sent', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('warn5_sent', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('warn1_sent', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('correct_count', sa.Integer(), nullable=True),
        sa.Column('score_percent', sa.Integer(), nullable=True),
        sa.Column('result_json', sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_exam_sessions_user_id', 'exam_sessions', ['user_id'])
    op.create_index('idx_exam_sessions_sweep', 'exam_sessions', ['status', 'mode'])
    op.create_index('idx_exam_sessions_user_status', 'exam_sessions', ['user_id', 'status'])

    op.create_table(
        'session_questions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(32), sa.ForeignKey('exam_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('question_id', sa.Integer(), sa.ForeignKey('questions.id'), nullable=False),
        sa.Column('q_index', sa.Integer(), nullable=False),
        sa.Column('flagged', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.UniqueConstraint('session_id', 'q_index', name='uq_session_questions_index'),
        sa.UniqueConstraint('session_id', 'question_id', name='uq_session_questions_question'),
    )
    op.create_index('ix_session_questions_session_id', 'session_questions', ['session_id'])

    op.create_table(
        'session_answers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(32), sa.ForeignKey('exam_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('question_id', sa.Integer(), sa.ForeignKey('questions.id'), nullable=False),
        sa.Column('answer_id', sa.Integer(), sa.ForeignKey('answers.id'), nullable=False),
        sa.UniqueConstraint('session_id', 'question_id', 'answer_id', name='uq_session_answers_option'),
    )
    op.create_index('ix_session_answers_session_id', 'session_answers', ['session_id'])


def downgrade() -> None:
    op.drop_table('session_answers')
    op.drop_table('session_questions')
    op.drop_table('exam_sessions')
    op.drop_table('answers')
    op.drop_table('questions')
    op.drop_table('users')
