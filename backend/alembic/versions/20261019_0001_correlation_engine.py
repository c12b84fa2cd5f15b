"""create correlation rules, thresholds, cases, jobs and audit ledger

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "correlation_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("connector_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("source_attribute", sa.String(length=255), nullable=False),
        sa.Column("target_attribute", sa.String(length=255), nullable=False),
        sa.Column("match_type", sa.String(length=16), nullable=False),
        sa.Column("algorithm", sa.String(length=32), nullable=True),
        sa.Column("threshold", sa.Float(), nullable=False, server_default=sa.text("0.85")),
        sa.Column("weight", sa.Float(), nullable=False, server_default=sa.text("1.0")),
        sa.Column("expression", sa.Text(), nullable=True),
        sa.Column("tier", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_definitive", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("normalize", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("threshold >= 0 AND threshold <= 1", name="ck_correlation_rules_threshold"),
        sa.CheckConstraint("weight >= 0", name="ck_correlation_rules_weight"),
        sa.CheckConstraint("tier >= 1", name="ck_correlation_rules_tier"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_correlation_rules_connector_id", "correlation_rules", ["connector_id"], unique=False)
    op.create_index(
        "ix_correlation_rules_connector_order",
        "correlation_rules",
        ["connector_id", "is_active", "tier", "priority"],
        unique=False,
    )

    op.create_table(
        "correlation_thresholds",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("connector_id", sa.String(length=255), nullable=False),
        sa.Column("auto_confirm_threshold", sa.Float(), nullable=False),
        sa.Column("manual_review_threshold", sa.Float(), nullable=False),
        sa.Column("min_margin", sa.Float(), nullable=False, server_default=sa.text("0.0")),
        sa.Column("auto_provision", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tuning_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("include_deactivated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("batch_size", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "auto_confirm_threshold >= manual_review_threshold",
            name="ck_correlation_thresholds_order",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("connector_id", name="uq_correlation_thresholds_connector_id"),
    )

    op.create_table(
        "correlation_cases",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("connector_id", sa.String(length=255), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("trigger_type", sa.String(length=32), nullable=False, server_default=sa.text("'batch'")),
        sa.Column("account_attributes_json", sa.JSON(), nullable=False),
        sa.Column("candidates_json", sa.JSON(), nullable=False),
        sa.Column("highest_confidence", sa.Float(), nullable=True),
        sa.Column("candidate_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("rules_snapshot_json", sa.JSON(), nullable=False),
        sa.Column("assigned_to", sa.String(length=255), nullable=True),
        sa.Column("resolved_by", sa.String(length=255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_reason", sa.Text(), nullable=True),
        sa.Column("resolved_identity_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_correlation_cases_connector_id", "correlation_cases", ["connector_id"], unique=False)
    op.create_index("ix_correlation_cases_account_id", "correlation_cases", ["account_id"], unique=False)
    op.create_index("ix_correlation_cases_status", "correlation_cases", ["status"], unique=False)

    op.create_table(
        "correlation_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("connector_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("total_accounts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed_accounts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("auto_confirmed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("queued_for_review", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("no_match", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("identities_created", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("errors", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("requeued_account_ids_json", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_correlation_jobs_connector_id", "correlation_jobs", ["connector_id"], unique=False)

    op.create_table(
        "correlation_audit_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_key", sa.String(length=64), nullable=False),
        sa.Column("connector_id", sa.String(length=255), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("case_id", sa.Integer(), nullable=True),
        sa.Column("identity_id", sa.String(length=255), nullable=True),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("candidate_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("candidates_summary", sa.JSON(), nullable=False),
        sa.Column("rules_snapshot", sa.JSON(), nullable=False),
        sa.Column("thresholds_snapshot", sa.JSON(), nullable=False),
        sa.Column("actor_type", sa.String(length=16), nullable=False, server_default=sa.text("'system'")),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(actor_type = 'user' AND actor_id IS NOT NULL) OR (actor_type = 'system' AND actor_id IS NULL)",
            name="ck_correlation_audit_events_actor",
        ),
        sa.CheckConstraint(
            "event_type NOT IN ('reject', 'reassign') OR reason IS NOT NULL",
            name="ck_correlation_audit_events_reason",
        ),
        sa.ForeignKeyConstraint(["case_id"], ["correlation_cases.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_key", name="uq_correlation_audit_events_event_key"),
    )
    for column in ("connector_id", "account_id", "case_id", "event_type", "outcome", "created_at"):
        op.create_index(
            f"ix_correlation_audit_events_{column}",
            "correlation_audit_events",
            [column],
            unique=False,
        )

    op.execute(
        """
        CREATE FUNCTION correlation_audit_events_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'correlation_audit_events is append-only';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_correlation_audit_events_append_only
        BEFORE UPDATE OR DELETE ON correlation_audit_events
        FOR EACH ROW EXECUTE FUNCTION correlation_audit_events_append_only()
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_correlation_audit_events_append_only ON correlation_audit_events")
    op.execute("DROP FUNCTION IF EXISTS correlation_audit_events_append_only()")
    for column in ("created_at", "outcome", "event_type", "case_id", "account_id", "connector_id"):
        op.drop_index(f"ix_correlation_audit_events_{column}", table_name="correlation_audit_events")
    op.drop_table("correlation_audit_events")
    op.drop_index("ix_correlation_jobs_connector_id", table_name="correlation_jobs")
    op.drop_table("correlation_jobs")
    op.drop_index("ix_correlation_cases_status", table_name="correlation_cases")
    op.drop_index("ix_correlation_cases_account_id", table_name="correlation_cases")
    op.drop_index("ix_correlation_cases_connector_id", table_name="correlation_cases")
    op.drop_table("correlation_cases")
    op.drop_table("correlation_thresholds")
    op.drop_index("ix_correlation_rules_connector_order", table_name="correlation_rules")
    op.drop_index("ix_correlation_rules_connector_id", table_name="correlation_rules")
    op.drop_table("correlation_rules")
