"""Pure computation of the changes that converge a collection on its catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ..config import DEFAULT_ALIAS_PRIORITY
from ..models import CatalogItem, LibraryItem


@dataclass(slots=True)
class ReconciliationPlan:
    """Removals and additions for one run, additions in catalog order."""

    remove: list[LibraryItem] = field(default_factory=list)
    add: list[CatalogItem] = field(default_factory=list)
    retained_count: int = 0
    slots: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.remove or self.add)


def reconcile(
    local_items: Sequence[LibraryItem],
    fetched_items: Sequence[CatalogItem],
    max_items: int,
    *,
    priority: Iterable[str] = DEFAULT_ALIAS_PRIORITY,
) -> ReconciliationPlan:
    """Compute which members to drop and which catalog entries to add.

    Members sharing no alias with any fetched entry are removed. The
    remaining capacity under ``max_items`` is filled with fetched entries
    that are not yet present, strictly in source order; entries past the
    cap are left for a later run.
    """

    priority = tuple(priority)
    fetched_universe: set[str] = set()
    for item in fetched_items:
        fetched_universe.update(item.aliases(priority))

    remove: list[LibraryItem] = []
    local_universe: set[str] = set()
    for member in local_items:
        aliases = member.aliases(priority)
        if fetched_universe.isdisjoint(aliases):
            remove.append(member)
        else:
            local_universe.update(aliases)

    retained_count = len(local_items) - len(remove)
    slots = max(0, max_items - retained_count)

    add: list[CatalogItem] = []
    for item in fetched_items:
        if len(add) >= slots:
            break
        aliases = item.aliases(priority)
        if not aliases or not local_universe.isdisjoint(aliases):
            continue
        add.append(item)
        # a catalog listing the same title twice only claims one slot
        local_universe.update(aliases)

    return ReconciliationPlan(
        remove=remove,
        add=add,
        retained_count=retained_count,
        slots=slots,
    )
