"""Persistence boundary for designs, their preferences and their outputs.

Two implementations share one protocol: an in-memory store (default in
development and tests, like the mock-mode state dict of the API) and a
SQLAlchemy async repository over asyncpg. Services depend only on the
protocol and receive the instance from the process bootstrap.
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from atelier.errors import (
    DesignNotFoundError,
    HasRegenerationsError,
    InvalidTransitionError,
    ParentNotFoundError,
)
from atelier.models.contracts import Design, DesignOutput, DesignStatus, Preferences
from atelier.models.db import DesignOutputRow, DesignPreferencesRow, DesignRow

logger = structlog.get_logger()

# PENDING -> PROCESSING -> COMPLETED | FAILED; terminal states never move.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "PENDING": frozenset({"PROCESSING", "FAILED"}),
    "PROCESSING": frozenset({"COMPLETED", "FAILED"}),
    "COMPLETED": frozenset(),
    "FAILED": frozenset(),
}


def check_transition(design_id: str, current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(design_id, current, target)


@dataclass(frozen=True)
class NewDesign:
    """Column values for a design insert; id and timestamps are assigned by the store."""

    owner_id: str
    input_prompt: str
    parent_id: str | None = None
    generation_number: int = 1
    uploaded_image_url: str | None = None
    ai_model_used: str | None = None


class DesignRepository(Protocol):
    async def get_design(self, design_id: str) -> Design | None: ...

    async def list_children(self, design_id: str) -> list[Design]: ...

    async def count_children(self, design_id: str) -> int: ...

    async def create_design(
        self, fields: NewDesign, preferences: Preferences | None = None
    ) -> Design: ...

    async def get_preferences(self, design_id: str) -> Preferences | None: ...

    async def update_status(self, design_id: str, status: DesignStatus) -> Design: ...

    async def delete_design(self, design_id: str) -> None: ...

    async def add_output(
        self,
        design_id: str,
        output_image_url: str,
        variation_name: str | None = None,
        generation_parameters: dict[str, Any] | None = None,
    ) -> DesignOutput: ...

    async def list_outputs(self, design_id: str) -> list[DesignOutput]: ...

    async def get_output(self, output_id: str) -> DesignOutput | None: ...

    async def count_designs_for_owner(self, owner_id: str) -> int: ...

    async def ping(self) -> bool: ...


def _now() -> datetime:
    return datetime.now(UTC)


# === In-memory ===


class InMemoryDesignRepository:
    """Dict-backed store. `designs` is public so tests can seed odd graphs."""

    def __init__(self) -> None:
        self.designs: dict[str, Design] = {}
        self.preferences: dict[str, Preferences] = {}
        self.outputs: dict[str, DesignOutput] = {}
        # Insertion sequence breaks created_at ties (same-microsecond inserts)
        self._seq = itertools.count()
        self._order: dict[str, int] = {}

    def _sort_key(self, entity_id: str, created_at: datetime) -> tuple[datetime, int]:
        return created_at, self._order.get(entity_id, 0)

    async def get_design(self, design_id: str) -> Design | None:
        return self.designs.get(design_id)

    async def list_children(self, design_id: str) -> list[Design]:
        children = [d for d in self.designs.values() if d.parent_id == design_id]
        return sorted(children, key=lambda d: self._sort_key(d.id, d.created_at))

    async def count_children(self, design_id: str) -> int:
        return sum(1 for d in self.designs.values() if d.parent_id == design_id)

    async def create_design(
        self, fields: NewDesign, preferences: Preferences | None = None
    ) -> Design:
        if fields.parent_id is not None and fields.parent_id not in self.designs:
            raise ParentNotFoundError(fields.parent_id)
        now = _now()
        design = Design(
            id=str(uuid.uuid4()),
            owner_id=fields.owner_id,
            parent_id=fields.parent_id,
            generation_number=fields.generation_number,
            status="PENDING",
            input_prompt=fields.input_prompt,
            uploaded_image_url=fields.uploaded_image_url,
            ai_model_used=fields.ai_model_used,
            created_at=now,
            updated_at=now,
        )
        self.designs[design.id] = design
        self._order[design.id] = next(self._seq)
        if preferences is not None:
            self.preferences[design.id] = preferences.model_copy(deep=True)
        return design

    async def get_preferences(self, design_id: str) -> Preferences | None:
        return self.preferences.get(design_id)

    async def update_status(self, design_id: str, status: DesignStatus) -> Design:
        design = self.designs.get(design_id)
        if design is None:
            raise DesignNotFoundError(design_id)
        check_transition(design_id, design.status, status)
        updated = design.model_copy(update={"status": status, "updated_at": _now()})
        self.designs[design_id] = updated
        return updated

    async def delete_design(self, design_id: str) -> None:
        if design_id not in self.designs:
            raise DesignNotFoundError(design_id)
        if await self.count_children(design_id):
            raise HasRegenerationsError(design_id)
        del self.designs[design_id]
        self.preferences.pop(design_id, None)
        for output_id in [o.id for o in self.outputs.values() if o.design_id == design_id]:
            del self.outputs[output_id]

    async def add_output(
        self,
        design_id: str,
        output_image_url: str,
        variation_name: str | None = None,
        generation_parameters: dict[str, Any] | None = None,
    ) -> DesignOutput:
        if design_id not in self.designs:
            raise DesignNotFoundError(design_id)
        output = DesignOutput(
            id=str(uuid.uuid4()),
            design_id=design_id,
            output_image_url=output_image_url,
            variation_name=variation_name,
            generation_parameters=generation_parameters,
            created_at=_now(),
        )
        self.outputs[output.id] = output
        self._order[output.id] = next(self._seq)
        return output

    async def list_outputs(self, design_id: str) -> list[DesignOutput]:
        outputs = [o for o in self.outputs.values() if o.design_id == design_id]
        return sorted(outputs, key=lambda o: self._sort_key(o.id, o.created_at))

    async def get_output(self, output_id: str) -> DesignOutput | None:
        return self.outputs.get(output_id)

    async def count_designs_for_owner(self, owner_id: str) -> int:
        return sum(1 for d in self.designs.values() if d.owner_id == owner_id)

    async def ping(self) -> bool:
        return True


# === SQLAlchemy ===


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _design_from_row(row: DesignRow) -> Design:
    return Design(
        id=str(row.id),
        owner_id=row.owner_id,
        parent_id=str(row.parent_id) if row.parent_id else None,
        generation_number=row.generation_number,
        status=row.status,
        input_prompt=row.input_prompt,
        uploaded_image_url=row.uploaded_image_url,
        ai_model_used=row.ai_model_used,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _output_from_row(row: DesignOutputRow) -> DesignOutput:
    return DesignOutput(
        id=str(row.id),
        design_id=str(row.design_id),
        output_image_url=row.output_image_url,
        variation_name=row.variation_name,
        generation_parameters=row.generation_parameters,
        created_at=row.created_at,
    )


class SqlDesignRepository:
    """Postgres-backed repository. One session (and transaction) per call."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], engine: AsyncEngine | None = None):
        self._sessionmaker = sessionmaker
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> SqlDesignRepository:
        engine = create_async_engine(database_url, pool_pre_ping=True, echo=False)
        return cls(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def get_design(self, design_id: str) -> Design | None:
        pk = _parse_uuid(design_id)
        if pk is None:
            return None
        async with self._sessionmaker() as session:
            row = await session.get(DesignRow, pk)
            return _design_from_row(row) if row else None

    async def list_children(self, design_id: str) -> list[Design]:
        pk = _parse_uuid(design_id)
        if pk is None:
            return []
        async with self._sessionmaker() as session:
            rows = await session.scalars(
                select(DesignRow)
                .where(DesignRow.parent_id == pk)
                .order_by(DesignRow.created_at, DesignRow.id)
            )
            return [_design_from_row(row) for row in rows]

    async def count_children(self, design_id: str) -> int:
        pk = _parse_uuid(design_id)
        if pk is None:
            return 0
        async with self._sessionmaker() as session:
            count = await session.scalar(
                select(func.count()).select_from(DesignRow).where(DesignRow.parent_id == pk)
            )
            return count or 0

    async def create_design(
        self, fields: NewDesign, preferences: Preferences | None = None
    ) -> Design:
        parent_pk = None
        if fields.parent_id is not None:
            parent_pk = _parse_uuid(fields.parent_id)
            if parent_pk is None:
                raise ParentNotFoundError(fields.parent_id)

        row = DesignRow(
            id=uuid.uuid4(),
            owner_id=fields.owner_id,
            parent_id=parent_pk,
            generation_number=fields.generation_number,
            status="PENDING",
            input_prompt=fields.input_prompt,
            uploaded_image_url=fields.uploaded_image_url,
            ai_model_used=fields.ai_model_used,
        )
        async with self._sessionmaker() as session:
            try:
                async with session.begin():
                    session.add(row)
                    if preferences is not None:
                        session.add(
                            DesignPreferencesRow(
                                design_id=row.id, **preferences.model_dump()
                            )
                        )
            except IntegrityError as exc:
                # FK violation on parent_id: the parent vanished or never existed
                if fields.parent_id is not None:
                    logger.warning(
                        "design_parent_missing", parent_id=fields.parent_id, error=str(exc.orig)
                    )
                    raise ParentNotFoundError(fields.parent_id) from exc
                raise
            await session.refresh(row)
            return _design_from_row(row)

    async def get_preferences(self, design_id: str) -> Preferences | None:
        pk = _parse_uuid(design_id)
        if pk is None:
            return None
        async with self._sessionmaker() as session:
            row = await session.scalar(
                select(DesignPreferencesRow).where(DesignPreferencesRow.design_id == pk)
            )
            if row is None:
                return None
            return Preferences(
                room_type=row.room_type,
                size=row.size,
                style_preference=row.style_preference,
                budget=row.budget,
                color_scheme=row.color_scheme,
                material_preferences=row.material_preferences or [],
                other_requirements=row.other_requirements,
            )

    async def update_status(self, design_id: str, status: DesignStatus) -> Design:
        pk = _parse_uuid(design_id)
        if pk is None:
            raise DesignNotFoundError(design_id)
        async with self._sessionmaker() as session:
            async with session.begin():
                row = await session.get(DesignRow, pk, with_for_update=True)
                if row is None:
                    raise DesignNotFoundError(design_id)
                check_transition(design_id, row.status, status)
                row.status = status
                row.updated_at = _now()
            return _design_from_row(row)

    async def delete_design(self, design_id: str) -> None:
        pk = _parse_uuid(design_id)
        if pk is None:
            raise DesignNotFoundError(design_id)
        async with self._sessionmaker() as session:
            try:
                async with session.begin():
                    row = await session.get(DesignRow, pk)
                    if row is None:
                        raise DesignNotFoundError(design_id)
                    await session.delete(row)
            except IntegrityError as exc:
                # ON DELETE RESTRICT from a child's parent_id
                raise HasRegenerationsError(design_id) from exc

    async def add_output(
        self,
        design_id: str,
        output_image_url: str,
        variation_name: str | None = None,
        generation_parameters: dict[str, Any] | None = None,
    ) -> DesignOutput:
        pk = _parse_uuid(design_id)
        if pk is None:
            raise DesignNotFoundError(design_id)
        row = DesignOutputRow(
            id=uuid.uuid4(),
            design_id=pk,
            output_image_url=output_image_url,
            variation_name=variation_name,
            generation_parameters=generation_parameters,
        )
        async with self._sessionmaker() as session:
            try:
                async with session.begin():
                    session.add(row)
            except IntegrityError as exc:
                raise DesignNotFoundError(design_id) from exc
            await session.refresh(row)
            return _output_from_row(row)

    async def list_outputs(self, design_id: str) -> list[DesignOutput]:
        pk = _parse_uuid(design_id)
        if pk is None:
            return []
        async with self._sessionmaker() as session:
            rows = await session.scalars(
                select(DesignOutputRow)
                .where(DesignOutputRow.design_id == pk)
                .order_by(DesignOutputRow.created_at, DesignOutputRow.id)
            )
            return [_output_from_row(row) for row in rows]

    async def get_output(self, output_id: str) -> DesignOutput | None:
        pk = _parse_uuid(output_id)
        if pk is None:
            return None
        async with self._sessionmaker() as session:
            row = await session.get(DesignOutputRow, pk)
            return _output_from_row(row) if row else None

    async def count_designs_for_owner(self, owner_id: str) -> int:
        async with self._sessionmaker() as session:
            count = await session.scalar(
                select(func.count()).select_from(DesignRow).where(DesignRow.owner_id == owner_id)
            )
            return count or 0

    async def ping(self) -> bool:
        async with self._sessionmaker() as session:
            await session.execute(text("SELECT 1"))
        return True
