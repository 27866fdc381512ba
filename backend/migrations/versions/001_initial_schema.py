"""Initial schema: designs, design_preferences, design_outputs.

Revision ID: 001
Revises: (none)
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- designs (self-referential forest) ---
    op.create_table(
        "designs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column(
            "parent_id",
            UUID(as_uuid=True),
            sa.ForeignKey("designs.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("generation_number", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("status", sa.String(20), server_default="PENDING", nullable=False),
        sa.Column("input_prompt", sa.Text(), nullable=False),
        sa.Column("uploaded_image_url", sa.Text(), nullable=True),
        sa.Column("ai_model_used", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint("generation_number >= 1", name="ck_designs_generation_positive"),
        sa.CheckConstraint("parent_id IS NULL OR parent_id <> id", name="ck_designs_not_self_parent"),
    )
    op.create_index("idx_designs_owner", "designs", ["owner_id", "created_at"])
    op.create_index("idx_designs_parent", "designs", ["parent_id", "created_at"])

    # --- design_preferences (1:1 with root designs) ---
    op.create_table(
        "design_preferences",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "design_id",
            UUID(as_uuid=True),
            sa.ForeignKey("designs.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("room_type", sa.String(100), nullable=False),
        sa.Column("size", sa.String(50), nullable=False),
        sa.Column("style_preference", sa.String(100), nullable=False),
        sa.Column("budget", sa.String(20), nullable=False),
        sa.Column("color_scheme", sa.String(100), nullable=True),
        sa.Column("material_preferences", JSONB(), nullable=True),
        sa.Column("other_requirements", sa.Text(), nullable=True),
    )

    # --- design_outputs ---
    op.create_table(
        "design_outputs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "design_id",
            UUID(as_uuid=True),
            sa.ForeignKey("designs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("output_image_url", sa.Text(), nullable=False),
        sa.Column("variation_name", sa.String(200), nullable=True),
        sa.Column("generation_parameters", JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_design_outputs_design", "design_outputs", ["design_id", "created_at"])


def downgrade() -> None:
    op.drop_table("design_outputs")
    op.drop_table("design_preferences")
    op.drop_table("designs")
