from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from counting_api.models.catalog import SimilarCandidate


class ZoneState(str, Enum):
    IN_PROGRESS = "in_progress"
    FINALIZED = "finalized"


class VerificationState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LocationTag(str, Enum):
    POINT_OF_SALE = "point_of_sale"
    WAREHOUSE = "warehouse"


class Zone(BaseModel):
    """
    One operator counting one physical area of one inventory run.
    """

    id: str
    inventory_run_id: str
    operator_email: str
    location_description: Optional[str] = None
    state: ZoneState = ZoneState.IN_PROGRESS
    verification_state: VerificationState = VerificationState.PENDING
    created_at: datetime
    finalized_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    etag: Optional[str] = Field(default=None, alias="_etag")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SessionStart(BaseModel):
    operator_email: str = Field(..., min_length=1)
    inventory_run_id: Optional[str] = None
    location_description: Optional[str] = None

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class SessionStarted(BaseModel):
    zone_id: str
    inventory_run_id: str
    resumed: bool
    scope_item_ids: List[str]


class CountSubmission(BaseModel):
    """
    ``unit_selection`` is either one of the item's barcodes or a unit code;
    when omitted the resolver's default variant is used.
    A ``quantity_multiplier`` of 0 counts as 1.
    """

    scanned_code: str
    unit_selection: Optional[str] = None
    quantity_multiplier: float = Field(1, allow_inf_nan=False)
    location_tag: Optional[LocationTag] = None

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class CountEvent(BaseModel):
    id: str
    zone_id: str
    inventory_run_id: str
    item_id: str
    scanned_code: str
    unit_of_measure: str
    quantity: float
    location_tag: Optional[LocationTag] = None
    timestamp: datetime
    operator_email: str

    model_config = ConfigDict(extra="ignore")


class CountSubmissionResult(BaseModel):
    accepted: bool
    resolved_item_id: Optional[str] = None
    computed_quantity: Optional[float] = None
    unit_of_measure: Optional[str] = None
    event_id: Optional[str] = None
    candidates: List[SimilarCandidate] = []


class MissingItem(BaseModel):
    item_id: str
    description: Optional[str] = None
    expected: float


class ZoneFinalized(BaseModel):
    zone: Zone
    pending_zero_count_items: List[MissingItem]


class ZoneVerification(BaseModel):
    decision: VerificationState
    reviewer_id: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class ItemTotal(BaseModel):
    item_id: str
    quantity: float
    point_of_sale: float = 0
    warehouse: float = 0


class ZoneTotals(BaseModel):
    zone_id: str
    totals: List[ItemTotal]
