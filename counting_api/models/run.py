import math

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, List, Optional
from datetime import date, datetime
from enum import Enum


class RunState(str, Enum):
    ACTIVE = "active"
    FINALIZED = "finalized"


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


def parse_quantity(value: Any) -> float:
    """
    Parse a theoretical quantity as exported by the ERP.

    Strings may carry thousands separators ("1,250.5"); blanks count as 0.
    NaN and infinities are rejected.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        quantity = float(value)
    else:
        text = str(value).replace(",", "").strip()
        if not text:
            return 0.0
        quantity = float(text)
    if not math.isfinite(quantity):
        raise ValueError(f"quantity must be a finite number, got {value!r}")
    return quantity


class ExpectedQuantityIn(BaseModel):
    """
    One row of the theoretical snapshot supplied when a run is created.
    """

    item_id: str
    quantity: float = Field(0, allow_inf_nan=False)
    description: str = "No description"
    barcode: Optional[str] = None
    warehouse: Optional[str] = None  # ERP store-room code, carried to the export

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @field_validator("item_id", mode="before")
    @classmethod
    def coerce_item_id(cls, value: Any) -> str:
        return str(value).strip() if value is not None else value

    @field_validator("quantity", mode="before")
    @classmethod
    def coerce_quantity(cls, value: Any) -> float:
        return parse_quantity(value)


class InventoryRunCreate(BaseModel):
    consecutive_number: int = Field(..., gt=0)
    site: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    start_date: date
    created_by: Optional[str] = None
    expected: List[ExpectedQuantityIn] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class InventoryRun(BaseModel):
    """
    One counting campaign. ``consecutive_number`` is unique per ``site`` only.
    """

    id: str
    consecutive_number: int
    site: str
    category: str
    description: Optional[str] = None
    created_by: Optional[str] = None
    start_date: date
    state: RunState = RunState.ACTIVE
    approval_state: ApprovalState = ApprovalState.PENDING
    created_at: datetime
    finished_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    etag: Optional[str] = Field(default=None, alias="_etag")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ExpectedQuantity(BaseModel):
    consecutive_number: int
    site: str
    item_id: str
    quantity: float
    description: str = "No description"
    barcode: Optional[str] = None
    warehouse: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class RunReview(BaseModel):
    decision: ReviewDecision
    reviewer_id: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class ConsecutiveAvailability(BaseModel):
    """
    ``verified`` is False when the store could not be reached; ``available``
    is then unknown and the administrator confirms manually.
    """

    site: str
    consecutive_number: int
    available: Optional[bool] = None
    verified: bool
    warning: Optional[str] = None


class ZoneSummary(BaseModel):
    zone_id: str
    operator_email: str
    location_description: Optional[str] = None
    state: str
    verification_state: str
    event_count: int
    total_count: float


class RunDetail(BaseModel):
    run: InventoryRun
    zones: List[ZoneSummary]
