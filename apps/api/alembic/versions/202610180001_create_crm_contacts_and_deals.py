"""create crm contact, contact tag and deal tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False, server_default="lead"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("loss_reason", sa.Text(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("document_number", sa.String(length=32), nullable=True),
        sa.Column("origin", sa.String(length=64), nullable=True),
        sa.Column("temperature", sa.String(length=16), nullable=True),
        sa.Column("interests", sa.JSON(), nullable=False),
        sa.Column("kanban_position", sa.BigInteger(), nullable=True),
        sa.Column("lifetime_value_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("address_street", sa.Text(), nullable=True),
        sa.Column("address_number", sa.String(length=32), nullable=True),
        sa.Column("address_complement", sa.Text(), nullable=True),
        sa.Column("address_district", sa.Text(), nullable=True),
        sa.Column("address_city", sa.String(length=128), nullable=True),
        sa.Column("address_state", sa.String(length=64), nullable=True),
        sa.Column("address_zip_code", sa.String(length=16), nullable=True),
        sa.Column("address_country", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "phone", name="uq_crm_contact_company_phone"),
        sa.UniqueConstraint("company_id", "email", name="uq_crm_contact_company_email"),
        sa.UniqueConstraint("company_id", "document_number", name="uq_crm_contact_company_document"),
    )
    op.create_index("ix_crm_contact_company_type", "crm_contact", ["company_id", "type", "deleted_at"], unique=False)
    op.create_index("ix_crm_contact_kanban", "crm_contact", ["company_id", "status", "kanban_position"], unique=False)

    op.create_table(
        "crm_contact_tag",
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("tag", sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("contact_id", "tag"),
    )
    op.create_index("ix_crm_contact_tag_tag", "crm_contact_tag", ["tag"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("funnel_stage", sa.String(length=64), nullable=False, server_default="new"),
        sa.Column("total_value_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("origin", sa.String(length=64), nullable=True),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_reason", sa.String(length=16), nullable=True),
        sa.Column("loss_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_company_contact", "crm_deal", ["company_id", "contact_id"], unique=False)
    op.create_index("ix_crm_deal_company_stage", "crm_deal", ["company_id", "funnel_stage"], unique=False)
    op.create_index("ix_crm_deal_company_closed", "crm_deal", ["company_id", "closed_reason", "closed_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_deal_company_closed", table_name="crm_deal")
    op.drop_index("ix_crm_deal_company_stage", table_name="crm_deal")
    op.drop_index("ix_crm_deal_company_contact", table_name="crm_deal")
    op.drop_table("crm_deal")
    op.drop_index("ix_crm_contact_tag_tag", table_name="crm_contact_tag")
    op.drop_table("crm_contact_tag")
    op.drop_index("ix_crm_contact_kanban", table_name="crm_contact")
    op.drop_index("ix_crm_contact_company_type", table_name="crm_contact")
    op.drop_table("crm_contact")
