"""
Scanned code -> catalog item.

The cascade stops at the first stage that matches:

1. the code is an active barcode;
2. the code is an active item id;
3. similar active barcodes (trigram score >= ``SIMILARITY_THRESHOLD``).

Stage 3 never picks for the caller: every candidate comes back in an
AmbiguousMatchError and a person chooses.
"""
from typing import Optional, Tuple

from counting_api.crud.protocols import CatalogStore
from counting_api.exceptions import AmbiguousMatchError, NotFoundError, ValidationError
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.catalog import Item, Resolution, SimilarCandidate, UnitVariant
from counting_api.services.units import unit_multiplier

logger = get_child_logger("services.resolver")

SIMILARITY_THRESHOLD = 0.6
MAX_CANDIDATES = 20


async def _exact_match(catalog: CatalogStore, code: str) -> Optional[Tuple[Item, str]]:
    unit = await catalog.get_barcode(code)
    if unit is not None and unit.active:
        item = await catalog.get_item(unit.item_id)
        if item is not None and item.active:
            return item, "barcode"

    item = await catalog.get_item(code)
    if item is not None and item.active:
        return item, "item_id"
    return None


async def resolve(catalog: CatalogStore, scanned_code: str) -> Resolution:
    """
    Resolve ``scanned_code`` to an item and all of its active unit variants.

    Raises:
        ValidationError: blank code
        AmbiguousMatchError: only similarity candidates were found
        NotFoundError: nothing matched
    """
    code = (scanned_code or "").strip()
    if not code:
        raise ValidationError("scanned_code is required", field="scanned_code")

    with tracer.start_as_current_span("resolve_code") as span:
        span.set_attribute("scanned_code", code)

        exact = await _exact_match(catalog, code)
        if exact is not None:
            item, matched_by = exact
            units = await catalog.list_item_barcodes(item.item_id)
            variants = [
                UnitVariant(
                    barcode=u.barcode,
                    unit_of_measure=u.unit_of_measure,
                    multiplier=unit_multiplier(u.unit_of_measure),
                )
                for u in units
            ]
            barcodes = [v.barcode for v in variants]
            default = code if code in barcodes else (barcodes[0] if barcodes else None)

            span.set_attribute("match_type", "exact")
            span.set_attribute("matched_by", matched_by)
            logger.info(
                "Exact match for scanned code",
                extra={"scanned_code": code, "item_id": item.item_id, "matched_by": matched_by},
            )
            return Resolution(
                matched_by=matched_by,
                item=item,
                unit_variants=variants,
                default_barcode=default,
            )

        similar = await catalog.find_similar_barcodes(code, SIMILARITY_THRESHOLD, MAX_CANDIDATES)
        if similar:
            candidates = []
            for unit, score in similar:
                item = await catalog.get_item(unit.item_id)
                candidates.append(
                    SimilarCandidate(
                        barcode=unit.barcode,
                        item_id=unit.item_id,
                        unit_of_measure=unit.unit_of_measure,
                        description=item.description if item else None,
                        score=round(score, 4),
                    )
                )
            span.set_attribute("match_type", "similar")
            span.set_attribute("candidates.count", len(candidates))
            logger.info(
                f"No exact match for '{code}', {len(candidates)} similar candidates",
                extra={"scanned_code": code, "candidates": len(candidates)},
            )
            raise AmbiguousMatchError(
                f"Code '{code}' only matched by similarity", candidates=candidates
            )

        span.set_attribute("match_type", "none")
        logger.info("Scanned code not recognised", extra={"scanned_code": code})
        raise NotFoundError(f"Code '{code}' is not recognised in the catalog")
