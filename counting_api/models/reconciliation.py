from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class ReconciliationRow(BaseModel):
    """
    Theoretical vs. first physical count vs. recount for one item.

    ``variance`` is always measured against ``first_physical``; ``adjusted``
    only becomes authoritative once promoted (``final_count``).
    """

    item_id: str
    description: Optional[str] = None
    barcode: Optional[str] = None
    warehouse: Optional[str] = None
    expected: float
    first_physical: float
    point_of_sale: float
    warehouse_count: float
    adjusted: Optional[float] = None
    effective_count: float
    final_count: float
    variance: float


class NotableDifference(BaseModel):
    item_id: str
    description: Optional[str] = None
    expected: float
    physical: float
    variance: float
    variance_pct: float  # relative difference in percent, two decimals
    magnitude: float


class RecountAdjustmentCreate(BaseModel):
    consecutive_number: int = Field(..., gt=0)
    site: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)
    adjusted_quantity: float = Field(..., ge=0, allow_inf_nan=False)
    previous_quantity: float = Field(..., allow_inf_nan=False)
    recorded_by: Optional[str] = None

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class RecountAdjustment(BaseModel):
    """
    Append-only. The latest by ``recorded_at`` (then ``sequence``) wins.
    """

    id: str
    consecutive_number: int
    site: str
    item_id: str
    adjusted_quantity: float
    previous_quantity: float
    recorded_by: Optional[str] = None
    recorded_at: datetime
    sequence: int = 0

    model_config = ConfigDict(extra="ignore")


class FinalCount(BaseModel):
    consecutive_number: int
    site: str
    item_id: str
    quantity: float
    source: str = "adjustment"
    promoted_by: Optional[str] = None
    promoted_at: datetime

    model_config = ConfigDict(extra="ignore")


class PromotionRequest(BaseModel):
    promoted_by: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class PhysicalCountExportRow(BaseModel):
    """
    Row of the final physical count handed to the ERP. The quantity keeps the
    ERP's format: two decimals with a comma separator.
    """

    consecutive_number: int
    item_id: str
    warehouse: Optional[str] = None
    quantity: str
