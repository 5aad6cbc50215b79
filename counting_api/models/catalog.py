from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from enum import Enum


DEFAULT_DESCRIPTION = "No description"
DEFAULT_GROUP = "No group"
DEFAULT_UNIT = "UND"


class Item(BaseModel):
    """
    Catalog item. ``item_id`` is the stable business key.
    Items are never deleted, only deactivated by the catalog sync.
    """

    item_id: str
    description: str = DEFAULT_DESCRIPTION
    group: str = DEFAULT_GROUP
    active: bool = True

    model_config = ConfigDict(extra="ignore")


class BarcodeUnit(BaseModel):
    """
    One barcode of an item in one unit of measure (base unit or a pack size).
    """

    barcode: str
    item_id: str
    unit_of_measure: str = DEFAULT_UNIT
    active: bool = True

    model_config = ConfigDict(extra="ignore")


class SnapshotItem(BaseModel):
    item_id: str
    description: str = DEFAULT_DESCRIPTION
    group: str = DEFAULT_GROUP

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @field_validator("item_id", mode="before")
    @classmethod
    def coerce_item_id(cls, value: Any) -> str:
        # spreadsheets hand numeric ids over as numbers
        return str(value).strip() if value is not None else value


class SnapshotBarcode(BaseModel):
    barcode: str
    item_id: str
    unit_of_measure: str = DEFAULT_UNIT

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @field_validator("barcode", "item_id", mode="before")
    @classmethod
    def coerce_code(cls, value: Any) -> str:
        return str(value).strip() if value is not None else value


class CatalogSnapshot(BaseModel):
    """
    Full external catalog state. Anything active in the store and absent here
    gets deactivated by the sync.
    """

    items: List[SnapshotItem]
    barcodes: List[SnapshotBarcode] = []

    model_config = ConfigDict(extra="forbid")


class SpreadsheetRows(BaseModel):
    """
    Rows of the master spreadsheet, keyed by their original header text.
    """

    rows: List[Dict[str, Any]]

    model_config = ConfigDict(extra="forbid")


class SyncResult(BaseModel):
    items_upserted: int = 0
    barcodes_upserted: int = 0
    items_deactivated: int = 0
    barcodes_deactivated: int = 0


class SyncPhase(str, Enum):
    UPSERT_ITEMS = "upsert_items"
    UPSERT_BARCODES = "upsert_barcodes"
    DEACTIVATE_ITEMS = "deactivate_items"
    DEACTIVATE_BARCODES = "deactivate_barcodes"


class BatchFailure(BaseModel):
    phase: SyncPhase
    batch_index: int
    keys: List[str]
    message: str


class SyncFailureReport(BaseModel):
    """
    Returned with 207 when some batches failed. Committed batches stay
    committed; re-running the sync completes the rest.
    """

    detail: str
    result: SyncResult
    failures: List[BatchFailure]


class UnitVariant(BaseModel):
    barcode: str
    unit_of_measure: str
    multiplier: int


class MatchType(str, Enum):
    EXACT = "exact"
    SIMILAR = "similar"


class Resolution(BaseModel):
    """
    Successful exact resolution of a scanned code.
    ``matched_by`` tells whether the code was a barcode or an item id.
    """

    match_type: MatchType = MatchType.EXACT
    matched_by: str
    item: Item
    unit_variants: List[UnitVariant]
    default_barcode: Optional[str] = None


class SimilarCandidate(BaseModel):
    barcode: str
    item_id: str
    unit_of_measure: str
    description: Optional[str] = None
    score: float = Field(..., ge=0, le=1)


class AmbiguousResolution(BaseModel):
    match_type: MatchType = MatchType.SIMILAR
    candidates: List[SimilarCandidate]


class ScopeMatch(BaseModel):
    """
    An item of a run's scope found by description, for products whose
    barcode cannot be scanned. ``barcode`` is what the operator submits.
    """

    item_id: str
    description: str
    barcode: Optional[str] = None
