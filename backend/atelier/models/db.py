"""SQLAlchemy ORM models for Atelier.

Designs form a per-owner forest through the self-referential parent_id FK.
Outputs are append-only children of a design and cascade with it.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class DesignRow(Base):
    __tablename__ = "designs"
    __table_args__ = (
        Index("idx_designs_owner", "owner_id", "created_at"),
        Index("idx_designs_parent", "parent_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # RESTRICT: a design with regenerations cannot be deleted out from under them
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("designs.id", ondelete="RESTRICT"), nullable=True
    )
    generation_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    input_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    preferences: Mapped["DesignPreferencesRow | None"] = relationship(
        back_populates="design", cascade="all, delete"
    )
    outputs: Mapped[list["DesignOutputRow"]] = relationship(
        back_populates="design", cascade="all, delete", order_by="DesignOutputRow.created_at"
    )


class DesignPreferencesRow(Base):
    __tablename__ = "design_preferences"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    design_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("designs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    room_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[str] = mapped_column(String(50), nullable=False)
    style_preference: Mapped[str] = mapped_column(String(100), nullable=False)
    budget: Mapped[str] = mapped_column(String(20), nullable=False)
    color_scheme: Mapped[str | None] = mapped_column(String(100), nullable=True)
    material_preferences: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    other_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    design: Mapped["DesignRow"] = relationship(back_populates="preferences")


class DesignOutputRow(Base):
    __tablename__ = "design_outputs"
    __table_args__ = (Index("idx_design_outputs_design", "design_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    design_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("designs.id", ondelete="CASCADE"), nullable=False
    )
    output_image_url: Mapped[str] = mapped_column(Text, nullable=False)
    variation_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    generation_parameters: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    design: Mapped["DesignRow"] = relationship(back_populates="outputs")
