"""Initial schema.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=False),
        sa.Column("position", sa.String(length=120), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="board_member"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "votable_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("item_type", sa.String(length=16), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("voting_opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voting_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_eligible_voters", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requires_majority", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("minimum_quorum", sa.Float(), nullable=False, server_default="50.0"),
        sa.Column("approval_threshold", sa.Float(), nullable=False, server_default="75.0"),
        sa.Column("approve_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reject_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("abstain_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ballot_revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completion_reason", sa.String(length=32), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_episode", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("outcome", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("item_type IN ('resolution', 'minutes')", name="ck_votable_items_type"),
        sa.CheckConstraint(
            "minimum_quorum >= 0 AND minimum_quorum <= 100 "
            "AND approval_threshold >= 0 AND approval_threshold <= 100",
            name="ck_votable_items_thresholds",
        ),
    )
    op.create_index("ix_votable_items_item_type", "votable_items", ["item_type"])
    op.create_index("ix_votable_items_status", "votable_items", ["status"])
    op.create_index("ix_votable_items_voting_deadline", "votable_items", ["voting_deadline"])

    op.create_table(
        "item_eligible_voters",
        sa.Column(
            "item_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("votable_items.id"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "ballots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "item_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("votable_items.id"),
            nullable=False,
        ),
        sa.Column("voter_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("choice", sa.String(length=16), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("cast_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("item_id", "voter_id", name="uq_ballots_item_voter"),
        sa.CheckConstraint("choice IN ('approve', 'reject', 'abstain')", name="ck_ballots_choice"),
    )
    op.create_index("ix_ballots_item_id", "ballots", ["item_id"])
    op.create_index("ix_ballots_voter_id", "ballots", ["voter_id"])

    op.create_table(
        "completion_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("item_type", sa.String(length=16), nullable=False),
        sa.Column("item_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("episode", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("prev_hash", sa.String(length=64), nullable=False),
    )
    op.create_index("ix_completion_ledger_item_id", "completion_ledger", ["item_id"])
    op.create_index("ix_completion_ledger_hash", "completion_ledger", ["hash"])
    op.create_index(
        "ix_completion_ledger_item_action", "completion_ledger", ["item_id", "action", "episode"]
    )

    op.create_table(
        "scheduler_heartbeat",
        sa.Column("job_name", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="ok"),
        sa.Column("detail", sa.String(length=512), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("scheduler_heartbeat")
    op.drop_index("ix_completion_ledger_item_action", table_name="completion_ledger")
    op.drop_index("ix_completion_ledger_hash", table_name="completion_ledger")
    op.drop_index("ix_completion_ledger_item_id", table_name="completion_ledger")
    op.drop_table("completion_ledger")
    op.drop_index("ix_ballots_voter_id", table_name="ballots")
    op.drop_index("ix_ballots_item_id", table_name="ballots")
    op.drop_table("ballots")
    op.drop_table("item_eligible_voters")
    op.drop_index("ix_votable_items_voting_deadline", table_name="votable_items")
    op.drop_index("ix_votable_items_status", table_name="votable_items")
    op.drop_index("ix_votable_items_item_type", table_name="votable_items")
    op.drop_table("votable_items")
    op.drop_index("ix_users_role", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
