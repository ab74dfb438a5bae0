"""Initial schema: leads, contacts, consent ledger, lead journeys and event log.

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200)),
        sa.Column("source", sa.String(50), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(30), nullable=False, server_default="open"),
        sa.Column("locality", sa.String(120)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leads_status", "leads", ["status"])
    op.create_index("ix_leads_created_at", "leads", ["created_at"])

    # Contacts
    op.create_table(
        "contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("name", sa.String(200)),
        sa.Column("phone", sa.String(20)),
        sa.Column("role", sa.String(50)),
        sa.Column("preferred_channel", sa.String(20)),
        sa.Column("whatsapp_opt_in", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("dnd_flag", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_contacts_lead_id", "contacts", ["lead_id"])
    op.create_index("ix_contacts_phone", "contacts", ["phone"])

    # Consent ledger (append-only)
    op.create_table(
        "consent_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("contacts.id"), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False, server_default="whatsapp"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("proof", postgresql.JSONB),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_consent_contact_channel", "consent_records", ["contact_id", "channel", "recorded_at"]
    )

    # Lead journeys (one per lead)
    op.create_table(
        "lead_journeys",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False, unique=True),
        sa.Column("state", sa.String(30), nullable=False, server_default="NEW"),
        sa.Column("next_action_at", sa.DateTime(timezone=True)),
        sa.Column("last_action_at", sa.DateTime(timezone=True)),
        sa.Column("last_user_activity_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("manual_suppressed_until", sa.DateTime(timezone=True)),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_journeys_state", "lead_journeys", ["state"])
    op.create_index("ix_journeys_next_action_at", "lead_journeys", ["next_action_at"])

    # Event log
    op.create_table(
        "event_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id")),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="success"),
        sa.Column("message", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_lead_id", "event_logs", ["lead_id"])
    op.create_index("ix_events_action", "event_logs", ["action"])
    op.create_index("ix_events_created_at", "event_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("event_logs")
    op.drop_table("lead_journeys")
    op.drop_table("consent_records")
    op.drop_table("contacts")
    op.drop_table("leads")
