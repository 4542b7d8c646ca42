"""vendor acquisition pipeline schema

Revision ID: 0001_vendor_pipeline
Revises:
Create Date: 2026-10-17 09:00:00.000000

This migration:
  UPGRADE:
    1. Creates ``deals``, ``vendor_leads``, ``sms_messages``,
       ``pipeline_events`` and ``lead_intake_syncs``.
    2. Adds the CHECK constraints guarding stage, motivation, retry
       count, condition and offer-vs-asking on ``vendor_leads``.
    3. Adds a trigger that rejects UPDATEs on ``sms_messages`` so the
       SMS log stays append-only even outside the ORM.

  DOWNGRADE:
    Drops everything above.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_vendor_pipeline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Keep in sync with vendor_pipeline.schemas.common.PipelineStage
_STAGES_IN = (
    "'NEW_LEAD', 'AI_CONVERSATION', 'DEAL_VALIDATION', 'OFFER_MADE', "
    "'OFFER_ACCEPTED', 'VIDEO_SENT', 'RETRY_1', 'RETRY_2', 'RETRY_3', "
    "'PAPERWORK_SENT', 'READY_FOR_INVESTORS', 'DEAD_LEAD'"
)

_UUID_PK = dict(
    type_=postgresql.UUID(as_uuid=True),
    primary_key=True,
    server_default=sa.text("gen_random_uuid()"),
)


def _ts(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade() -> None:
    op.create_table(
        "deals",
        sa.Column("deal_id", **_UUID_PK),
        sa.Column("vendor_lead_id", postgresql.UUID(as_uuid=True), unique=True),
        sa.Column("address", sa.String(255), nullable=False),
        sa.Column("postcode", sa.String(10)),
        sa.Column("purchase_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("market_value", sa.Numeric(12, 2)),
        sa.Column("estimated_refurb_cost", sa.Numeric(12, 2)),
        sa.Column("bmv_percentage", sa.Numeric(6, 2)),
        sa.Column("property_type", sa.String(50)),
        sa.Column("bedrooms", sa.Integer),
        sa.Column("bathrooms", sa.Integer),
        sa.Column("vendor_solicitor_name", sa.String(200)),
        sa.Column("vendor_solicitor_firm", sa.String(200)),
        sa.Column("vendor_solicitor_email", sa.String(255)),
        sa.Column("vendor_solicitor_phone", sa.String(20)),
        sa.Column("lockout_agreement_sent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("data_source", sa.String(50), nullable=False, server_default="vendor_acquisition"),
        sa.Column("status", sa.String(20), nullable=False, server_default="ready"),
        _ts("created_at", server_default=sa.func.now()),
    )

    op.create_table(
        "vendor_leads",
        sa.Column("lead_id", **_UUID_PK),
        sa.Column("external_lead_id", sa.String(100), unique=True),
        sa.Column("lead_source", sa.String(50), nullable=False, server_default="manual"),
        sa.Column("campaign_id", sa.String(100)),
        sa.Column("vendor_name", sa.String(200), nullable=False),
        sa.Column("vendor_phone", sa.String(20), nullable=False),
        sa.Column("vendor_email", sa.String(255)),
        sa.Column("property_address", sa.String(255)),
        sa.Column("property_postcode", sa.String(10)),
        sa.Column("asking_price", sa.Numeric(12, 2)),
        sa.Column("property_type", sa.String(50)),
        sa.Column("bedrooms", sa.Integer),
        sa.Column("bathrooms", sa.Integer),
        sa.Column("condition", sa.String(30)),
        sa.Column("square_feet", sa.Integer),
        sa.Column("stage", sa.String(30), nullable=False, server_default="NEW_LEAD"),
        sa.Column("motivation_score", sa.Integer),
        sa.Column("urgency_level", sa.String(20)),
        sa.Column("reason_for_selling", sa.String(30)),
        sa.Column("timeline_days", sa.Integer),
        sa.Column("competing_offers", sa.Boolean),
        sa.Column(
            "conversation_state",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _ts("conversation_started_at"),
        _ts("last_contact_at"),
        _ts("last_inbound_at"),
        _ts("last_outbound_at"),
        sa.Column("bmv_score", sa.Numeric(6, 2)),
        sa.Column("estimated_market_value", sa.Numeric(12, 2)),
        sa.Column("estimated_refurb_cost", sa.Numeric(12, 2)),
        sa.Column("profit_potential", sa.Numeric(12, 2)),
        sa.Column("validation_passed", sa.Boolean),
        sa.Column("validation_notes", sa.Text),
        _ts("validated_at"),
        sa.Column("offer_amount", sa.Numeric(12, 2)),
        sa.Column("offer_percentage", sa.Numeric(6, 2)),
        sa.Column("offer_breakdown", postgresql.JSONB),
        _ts("offer_sent_at"),
        _ts("offer_accepted_at"),
        _ts("offer_rejected_at"),
        sa.Column("rejection_reason", sa.Text),
        sa.Column("video_sent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("video_url", sa.String(500)),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        _ts("next_retry_at"),
        sa.Column("solicitor_name", sa.String(200)),
        sa.Column("solicitor_firm", sa.String(200)),
        sa.Column("solicitor_phone", sa.String(20)),
        sa.Column("solicitor_email", sa.String(255)),
        sa.Column("lockout_agreement_sent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "deal_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("deals.deal_id", ondelete="SET NULL"),
        ),
        _ts("deal_closed_at"),
        sa.Column("version", sa.Integer, nullable=False),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.CheckConstraint(f"stage IN ({_STAGES_IN})", name="ck_vendor_lead_stage"),
        sa.CheckConstraint(
            "motivation_score IS NULL OR motivation_score BETWEEN 1 AND 10",
            name="ck_motivation_score_range",
        ),
        sa.CheckConstraint("retry_count BETWEEN 0 AND 3", name="ck_retry_count_range"),
        sa.CheckConstraint(
            "condition IS NULL OR condition IN ('excellent', 'good', 'needs_work', "
            "'needs_modernisation', 'poor')",
            name="ck_property_condition",
        ),
        sa.CheckConstraint(
            "offer_amount IS NULL OR asking_price IS NULL OR offer_amount <= asking_price",
            name="ck_offer_not_above_asking",
        ),
    )
    op.create_index(
        "idx_vendor_leads_phone_created", "vendor_leads", ["vendor_phone", "created_at"]
    )
    op.create_index("idx_vendor_leads_stage", "vendor_leads", ["stage"])
    op.create_index(
        "idx_vendor_leads_retry_due",
        "vendor_leads",
        ["next_retry_at"],
        postgresql_where=sa.text("next_retry_at IS NOT NULL"),
    )

    # deals <-> vendor_leads reference each other
    op.create_foreign_key(
        "fk_deals_vendor_lead_id",
        "deals",
        "vendor_leads",
        ["vendor_lead_id"],
        ["lead_id"],
        ondelete="SET NULL",
    )

    op.create_table(
        "sms_messages",
        sa.Column("message_id", **_UUID_PK),
        sa.Column(
            "sequence",
            sa.BigInteger,
            sa.Identity(always=True),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "vendor_lead_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vendor_leads.lead_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("provider_message_id", sa.String(64), unique=True),
        sa.Column("from_number", sa.String(20)),
        sa.Column("to_number", sa.String(20)),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("ai_generated", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("intent", sa.String(30)),
        sa.Column("extraction_metadata", postgresql.JSONB),
        sa.Column("status", sa.String(20)),
        _ts("created_at", server_default=sa.func.now()),
        sa.CheckConstraint(
            "direction IN ('inbound', 'outbound')", name="ck_message_direction"
        ),
    )
    op.create_index(
        "idx_sms_messages_lead_sequence", "sms_messages", ["vendor_lead_id", "sequence"]
    )

    op.create_table(
        "pipeline_events",
        sa.Column("event_id", **_UUID_PK),
        sa.Column(
            "vendor_lead_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vendor_leads.lead_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("from_stage", sa.String(30)),
        sa.Column("to_stage", sa.String(30)),
        sa.Column("details", postgresql.JSONB),
        sa.Column("actor", sa.String(100), nullable=False, server_default="pipeline"),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_pipeline_events_lead_created",
        "pipeline_events",
        ["vendor_lead_id", "created_at"],
    )

    op.create_table(
        "lead_intake_syncs",
        sa.Column("sync_id", **_UUID_PK),
        sa.Column("external_lead_id", sa.String(100), nullable=False, unique=True),
        sa.Column(
            "vendor_lead_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vendor_leads.lead_id", ondelete="SET NULL"),
        ),
        _ts("submitted_at"),
        sa.Column("payload", postgresql.JSONB),
        _ts("synced_at", server_default=sa.func.now()),
    )

    # ---------------------------------------------------------------
    # Trigger: the SMS log is append-only
    # ---------------------------------------------------------------
    op.execute("""
        CREATE OR REPLACE FUNCTION block_sms_message_update()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'sms_messages rows are append-only (message %)', OLD.message_id;
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_block_sms_message_update
        BEFORE UPDATE ON sms_messages
        FOR EACH ROW
        EXECUTE FUNCTION block_sms_message_update();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_block_sms_message_update ON sms_messages")
    op.execute("DROP FUNCTION IF EXISTS block_sms_message_update()")
    op.drop_table("lead_intake_syncs")
    op.drop_index("idx_pipeline_events_lead_created", table_name="pipeline_events")
    op.drop_table("pipeline_events")
    op.drop_index("idx_sms_messages_lead_sequence", table_name="sms_messages")
    op.drop_table("sms_messages")
    op.drop_constraint("fk_deals_vendor_lead_id", "deals", type_="foreignkey")
    op.drop_index("idx_vendor_leads_retry_due", table_name="vendor_leads")
    op.drop_index("idx_vendor_leads_stage", table_name="vendor_leads")
    op.drop_index("idx_vendor_leads_phone_created", table_name="vendor_leads")
    op.drop_table("vendor_leads")
    op.drop_table("deals")
