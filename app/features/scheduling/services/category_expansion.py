"""
Category expansion and invite merging.

Manual invites come first, then members of each category in submission
order. A customer reachable more than once keeps its first position and
source.
"""

import asyncio
from collections.abc import Sequence

from app.features.scheduling.domain.errors import EmptyInviteSet, UnknownCategory
from app.features.scheduling.domain.models import InviteSource, ResolvedInvite
from app.features.scheduling.domain.normalization import unique_ordered
from app.features.scheduling.ports import CustomerDirectory
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class CategoryExpansionResolver:
    def __init__(self, directory: CustomerDirectory):
        self.directory = directory

    async def expand(self, categories: Sequence[str]) -> list[ResolvedInvite]:
        """
        Expand categories into member invites.

        Lookups run concurrently; results are assembled in submission order
        and deduplicated by customer. Any unknown category aborts the whole
        expansion with UnknownCategory.
        """
        category_ids = unique_ordered(categories)
        if not category_ids:
            return []

        memberships = await asyncio.gather(
            *(self.directory.get_category_members(category_id) for category_id in category_ids)
        )

        expanded: list[ResolvedInvite] = []
        seen: set[str] = set()
        for category_id, members in zip(category_ids, memberships, strict=True):
            if members is None:
                logger.info("Unknown category in proposed meeting", category_id=category_id)
                raise UnknownCategory(category_id)
            for customer_id in unique_ordered(members):
                if customer_id in seen:
                    continue
                seen.add(customer_id)
                expanded.append(
                    ResolvedInvite(
                        customer_id=customer_id,
                        source=InviteSource.CATEGORY,
                        source_category_id=category_id,
                        position=len(expanded),
                    )
                )
        return expanded

    async def resolve_invites(
        self, invites: Sequence[str], categories: Sequence[str], *, meeting_id: str | None = None
    ) -> list[ResolvedInvite]:
        """Merge manual invites with expanded categories. Raises EmptyInviteSet when nothing remains."""
        merged: list[ResolvedInvite] = []
        seen: set[str] = set()

        for customer_id in unique_ordered(invites):
            seen.add(customer_id)
            merged.append(ResolvedInvite(customer_id=customer_id, source=InviteSource.MANUAL, position=len(merged)))

        for invite in await self.expand(categories):
            if invite.customer_id in seen:
                continue
            seen.add(invite.customer_id)
            merged.append(
                ResolvedInvite(
                    customer_id=invite.customer_id,
                    source=invite.source,
                    source_category_id=invite.source_category_id,
                    position=len(merged),
                )
            )

        if not merged:
            raise EmptyInviteSet(meeting_id)

        logger.debug(
            "Invites resolved",
            meeting_id=meeting_id,
            manual=sum(1 for invite in merged if invite.source is InviteSource.MANUAL),
            total=len(merged),
        )
        return merged
