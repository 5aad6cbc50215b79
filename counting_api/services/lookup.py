"""
Manual product lookup for operators: by description inside a run's scope,
and by catalog group.
"""
from typing import List

from counting_api.crud.protocols import CatalogStore, CountingStore
from counting_api.exceptions import ValidationError
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.catalog import Item, ScopeMatch
from counting_api.services.columns import simplify
from counting_api.services.sessions import get_run_or_404, run_scope

logger = get_child_logger("services.lookup")

MIN_TERM_LENGTH = 2
MAX_SEARCH_RESULTS = 50


def split_groups(groups: List[str]) -> List[str]:
    """Accepts repeated values and comma-separated lists; keeps first-seen order."""
    names: List[str] = []
    for value in groups or []:
        for name in value.split(","):
            name = name.strip()
            if name and name not in names:
                names.append(name)
    return names


async def items_by_group(catalog: CatalogStore, groups: List[str]) -> List[Item]:
    names = split_groups(groups)
    if not names:
        raise ValidationError("At least one group is required", field="group")
    return await catalog.list_items_by_group(names)


async def search_scope(
    store: CountingStore,
    catalog: CatalogStore,
    run_id: str,
    term: str,
    limit: int = MAX_SEARCH_RESULTS,
) -> List[ScopeMatch]:
    """
    Items of the run whose description contains every word of ``term``,
    ignoring case and accents, ordered by description. An item without a
    barcode in the run gets its first active catalog barcode.
    """
    words = simplify(term).split()
    if len("".join(words)) < MIN_TERM_LENGTH:
        raise ValidationError(
            f"Search term needs at least {MIN_TERM_LENGTH} characters", field="q"
        )

    with tracer.start_as_current_span("search_scope") as span:
        span.set_attribute("run.id", run_id)
        span.set_attribute("term", term)

        run = await get_run_or_404(store, run_id)
        scope = await run_scope(store, run)
        rows = sorted(
            (
                row for row in scope.values()
                if all(word in simplify(row.description) for word in words)
            ),
            key=lambda row: (row.description, row.item_id),
        )[:limit]

        matches = []
        for row in rows:
            barcode = row.barcode
            if not barcode:
                units = await catalog.list_item_barcodes(row.item_id)
                barcode = units[0].barcode if units else None
            matches.append(ScopeMatch(item_id=row.item_id, description=row.description, barcode=barcode))

        span.set_attribute("matches", len(matches))
        logger.debug("Scope search", extra={"run_id": run_id, "term": term, "matches": len(matches)})
        return matches
