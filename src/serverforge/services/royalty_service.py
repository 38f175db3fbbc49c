"""Royalty Ledger - creator/platform split of hosted charges."""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from serverforge.config import settings
from serverforge.domain.errors import InvalidRequestError, NotFoundError
from serverforge.domain.models import Project, Royalty, new_id
from serverforge.services.record_store import KIND_PROJECT, KIND_ROYALTY, RecordStore

logger = structlog.get_logger()

MAX_PAGE_SIZE = 200
_QUANTUM = Decimal("0.000001")


def royalty_key(project_id: str, created_image_id: str) -> str:
    return f"{project_id}:{created_image_id}"


class RoyaltyLedger:
    """Append-only royalty records; one per (project, created image)."""

    def __init__(self, store: RecordStore, creator_share_percent: Optional[float] = None):
        self.store = store
        percent = (
            settings.royalty_creator_share_percent
            if creator_share_percent is None
            else creator_share_percent
        )
        self.creator_share_percent = Decimal(str(percent))
        if not Decimal(0) <= self.creator_share_percent <= Decimal(100):
            raise InvalidRequestError(f"Creator share must be within 0..100, got {percent}")

    def split(self, credits_charged: float) -> Tuple[Decimal, Decimal]:
        """Return ``(creator_share, platform_share)``; the two always sum to the charge."""
        charged = Decimal(str(credits_charged))
        creator = (charged * self.creator_share_percent / Decimal(100)).quantize(
            _QUANTUM, rounding=ROUND_HALF_EVEN
        )
        return creator, charged - creator

    def record(self, project_id: str, created_image_id: str, credits_charged: float) -> Royalty:
        """Persist the split and credit the creator in one transaction.

        A repeated call for the same created image returns the stored record
        without crediting again.
        """
        if float(credits_charged) < 0:
            raise InvalidRequestError("credits_charged must be non-negative")
        if not str(created_image_id or "").strip():
            raise InvalidRequestError("created_image_id is required")

        key = royalty_key(project_id, str(created_image_id))
        creator_share, platform_share = self.split(credits_charged)

        with self.store.transaction() as tx:
            project_data = tx.get(KIND_PROJECT, project_id)
            if project_data is None:
                raise NotFoundError(f"Project not found: {project_id}")
            project = Project.from_dict(project_data)

            existing = tx.find_by_key(KIND_ROYALTY, key)
            if existing is not None:
                logger.info(
                    "royalty_already_recorded",
                    project_id=project_id,
                    created_image_id=created_image_id,
                )
                return Royalty.from_dict(existing)

            royalty = Royalty(
                royalty_id=new_id("roy"),
                project_id=project_id,
                created_image_id=str(created_image_id),
                credits_charged=float(credits_charged),
                creator_share=float(creator_share),
                platform_share=float(platform_share),
            )
            tx.insert(
                KIND_ROYALTY,
                royalty.royalty_id,
                royalty.to_dict(),
                parent_id=project_id,
                unique_key=key,
            )
            tx.adjust_balance(project.owner_id, float(creator_share))

        logger.info(
            "royalty_recorded",
            project_id=project_id,
            created_image_id=created_image_id,
            credits_charged=royalty.credits_charged,
            creator_share=royalty.creator_share,
            platform_share=royalty.platform_share,
        )
        return royalty

    def list_for_project(self, project_id: str, limit: int = 50, offset: int = 0) -> List[Royalty]:
        limit = max(1, min(int(limit or 50), MAX_PAGE_SIZE))
        offset = max(0, int(offset or 0))
        rows = self.store.list_by_parent(
            KIND_ROYALTY,
            project_id,
            limit=limit,
            offset=offset,
            newest_first=True,
        )
        return [Royalty.from_dict(row) for row in rows]

    def stats(self, project_id: str) -> Dict[str, Any]:
        rows = self.store.list_by_parent(KIND_ROYALTY, project_id)
        charged = sum((Decimal(str(r["credits_charged"])) for r in rows), Decimal(0))
        creator = sum((Decimal(str(r["creator_share"])) for r in rows), Decimal(0))
        platform = sum((Decimal(str(r["platform_share"])) for r in rows), Decimal(0))
        return {
            "total_royalties": len(rows),
            "total_credits_charged": float(charged),
            "total_creator_share": float(creator),
            "total_platform_share": float(platform),
        }
