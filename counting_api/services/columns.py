"""
Master spreadsheet headers -> catalog roles.

Exports from the ERP name their columns inconsistently ("Código barras",
"EAN13", "Desc. item", "U.M."...). Headers are compared accent-insensitive and
lower-cased against an ordered rule table; the first rule matching a header
claims it, and each role keeps the first header it was given.
"""
import re
import unicodedata
from typing import Any, Callable, Dict, List, Sequence, Tuple

from counting_api.exceptions import ValidationError
from counting_api.models.catalog import (
    DEFAULT_DESCRIPTION,
    DEFAULT_GROUP,
    DEFAULT_UNIT,
    CatalogSnapshot,
    SnapshotBarcode,
    SnapshotItem,
)

ITEM = "item"
DESCRIPTION = "description"
GROUP = "group"
UNIT = "unit"
BARCODE = "barcode"

MAX_REPORTED_ROWS = 8

_BARCODE_WORD = re.compile(r"(^| )(barcode|ean(13)?|gtin(14)?|upc)( |$)")


def simplify(header: Any) -> str:
    text = unicodedata.normalize("NFD", str(header if header is not None else ""))
    text = "".join(c for c in text if unicodedata.category(c) != "Mn")
    return text.lower().strip()


def _is_barcode(header: str, headers: Sequence[str]) -> bool:
    if _BARCODE_WORD.search(header):
        return True
    if "cod" in header and "barra" in header:
        return True
    # a bare "codigo" is the item code unless the file has an explicit item column
    return header == "codigo" and ITEM in headers


Predicate = Callable[[str, Sequence[str]], bool]

COLUMN_RULES: List[Tuple[Predicate, str]] = [
    (lambda h, _: h == "item", ITEM),
    (lambda h, _: h in ("desc. item", "desc item", "descripcion", "description"), DESCRIPTION),
    (lambda h, _: h in ("grupo", "group"), GROUP),
    (lambda h, _: h in ("u.m.", "u.m", "um", "unidad", "unidad de medida"), UNIT),
    (_is_barcode, BARCODE),
]


def classify_columns(headers: Sequence[str]) -> Dict[str, str]:
    """Map each role to the original text of the first header that plays it."""
    simplified = [simplify(h) for h in headers]
    roles: Dict[str, str] = {}
    for original, header in zip(headers, simplified):
        for predicate, role in COLUMN_RULES:
            if predicate(header, simplified):
                roles.setdefault(role, original)
                break
    return roles


def _cell(row: Dict[str, Any], header: str) -> str:
    if not header:
        return ""
    value = row.get(header)
    return str(value).strip() if value is not None else ""


def snapshot_from_rows(rows: List[Dict[str, Any]]) -> CatalogSnapshot:
    """
    Build a catalog snapshot from spreadsheet rows.

    Item ids starting with "0" are rejected: the spreadsheet tool has eaten a
    leading zero elsewhere in the file, so the whole upload is refused.
    """
    if not rows:
        raise ValidationError("The spreadsheet has no rows", field="rows")

    headers = list(rows[0].keys())
    columns = classify_columns(headers)
    item_header = columns.get(ITEM)
    if item_header is None:
        raise ValidationError(
            f"No item column found among headers {headers}", field="rows"
        )

    # row numbers as the user sees them: header is row 1
    bad = [
        f"F{index + 2}: {_cell(row, item_header)}"
        for index, row in enumerate(rows)
        if _cell(row, item_header).startswith("0")
    ]
    if bad:
        raise ValidationError(
            f"Item ids must not start with '0'. Examples: {', '.join(bad[:MAX_REPORTED_ROWS])}",
            field=item_header,
        )

    items: Dict[str, SnapshotItem] = {}
    barcodes: List[SnapshotBarcode] = []
    for row in rows:
        item_id = _cell(row, item_header)
        if not item_id:
            continue
        if item_id not in items:
            items[item_id] = SnapshotItem(
                item_id=item_id,
                description=_cell(row, columns.get(DESCRIPTION, "")) or DEFAULT_DESCRIPTION,
                group=_cell(row, columns.get(GROUP, "")) or DEFAULT_GROUP,
            )
        barcode = _cell(row, columns.get(BARCODE, ""))
        if barcode:
            barcodes.append(
                SnapshotBarcode(
                    barcode=barcode,
                    item_id=item_id,
                    unit_of_measure=_cell(row, columns.get(UNIT, "")) or DEFAULT_UNIT,
                )
            )

    return CatalogSnapshot(items=list(items.values()), barcodes=barcodes)
