"""Design lineage: regeneration forests, root lookup, chains and chain stats.

Each user's designs form a forest through parent_id. Traversals are explicit
stack walks with a visited set; a revisited id or a walk deeper than
MAX_CHAIN_DEPTH is a data-integrity failure (CycleDetectedError), never an
infinite loop. Ownership checks live at the HTTP boundary, not here.
"""

from __future__ import annotations

import structlog

from atelier.errors import CycleDetectedError, DesignNotFoundError, ParentNotFoundError
from atelier.models.contracts import ChainStats, Design, Preferences
from atelier.repository import DesignRepository, NewDesign

logger = structlog.get_logger()

MAX_CHAIN_DEPTH = 1000


def chain_stats(chain: list[Design]) -> ChainStats:
    """Stats over an already materialized chain; latest is the last node visited."""
    return ChainStats(
        total_nodes=len(chain),
        root_id=chain[0].id if chain else None,
        latest_id=chain[-1].id if chain else None,
        generation_numbers=[d.generation_number for d in chain],
        created_dates=[d.created_at for d in chain],
    )


class LineageEngine:
    def __init__(self, repo: DesignRepository) -> None:
        self.repo = repo

    async def create_root(
        self,
        owner_id: str,
        prompt: str,
        *,
        uploaded_image_url: str | None = None,
        ai_model_used: str | None = None,
        preferences: Preferences | None = None,
    ) -> Design:
        design = await self.repo.create_design(
            NewDesign(
                owner_id=owner_id,
                input_prompt=prompt,
                uploaded_image_url=uploaded_image_url,
                ai_model_used=ai_model_used,
            ),
            preferences,
        )
        logger.info("design_created", design_id=design.id, owner_id=owner_id, root=True)
        return design

    async def create_regeneration(
        self,
        parent_design_id: str,
        owner_id: str,
        prompt: str,
        ai_model: str,
        uploaded_image_url: str | None = None,
    ) -> Design:
        parent = await self.repo.get_design(parent_design_id)
        if parent is None:
            raise ParentNotFoundError(parent_design_id)

        # Numbering reads the parent as-is; concurrent siblings may share a number.
        design = await self.repo.create_design(
            NewDesign(
                owner_id=owner_id,
                input_prompt=prompt,
                parent_id=parent.id,
                generation_number=parent.generation_number + 1,
                uploaded_image_url=uploaded_image_url,
                ai_model_used=ai_model,
            )
        )
        logger.info(
            "design_regenerated",
            design_id=design.id,
            parent_id=parent.id,
            generation_number=design.generation_number,
        )
        return design

    async def find_root(self, design_id: str) -> Design:
        current = await self.repo.get_design(design_id)
        if current is None:
            raise DesignNotFoundError(design_id)

        visited = {current.id}
        depth = 0
        while current.parent_id is not None:
            depth += 1
            if depth > MAX_CHAIN_DEPTH:
                raise CycleDetectedError(current.id, depth)
            if current.parent_id in visited:
                logger.error("lineage_cycle_detected", design_id=design_id, at=current.parent_id)
                raise CycleDetectedError(current.parent_id, depth)
            parent = await self.repo.get_design(current.parent_id)
            if parent is None:
                logger.warning(
                    "lineage_missing_ancestor",
                    design_id=design_id,
                    orphan_id=current.id,
                    missing_parent_id=current.parent_id,
                )
                break
            visited.add(parent.id)
            current = parent
        return current

    async def get_chain(self, design_id: str) -> list[Design]:
        """Root first, then pre-order: parents before children, siblings oldest first."""
        root = await self.find_root(design_id)

        chain: list[Design] = []
        visited: set[str] = set()
        stack: list[tuple[Design, int]] = [(root, 0)]
        while stack:
            node, depth = stack.pop()
            if node.id in visited:
                logger.warning("lineage_duplicate_edge", design_id=node.id)
                continue
            if depth > MAX_CHAIN_DEPTH:
                raise CycleDetectedError(node.id, depth)
            visited.add(node.id)
            chain.append(node)

            children = await self.repo.list_children(node.id)
            # Reversed so the oldest sibling is popped (visited) first
            for child in reversed(children):
                if child.id not in visited:
                    stack.append((child, depth + 1))
        return chain

    async def get_stats(self, design_id: str) -> ChainStats:
        return chain_stats(await self.get_chain(design_id))

    async def get_latest(self, design_id: str) -> Design:
        chain = await self.get_chain(design_id)
        return chain[-1]

    async def has_children(self, design_id: str) -> bool:
        return await self.repo.count_children(design_id) > 0

    async def get_direct_children(self, design_id: str) -> list[Design]:
        return await self.repo.list_children(design_id)
