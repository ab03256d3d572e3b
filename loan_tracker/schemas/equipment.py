from datetime import date, datetime
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, StrictInt, StringConstraints, model_validator

from loan_tracker.db.record_store import as_utc, parse_timestamp, utc_now


def _as_date(value: Any) -> Any:
    if isinstance(value, str) and "T" in value:
        parsed = parse_timestamp(value.strip())
        if parsed is not None:
            value = parsed
    if isinstance(value, datetime):
        # Timestamps are checked to the instant, not just the calendar day.
        if as_utc(value) > utc_now():
            raise ValueError("purchaseDate cannot be in the future")
        return as_utc(value).date()
    return value


def _not_in_future(value: date) -> date:
    if value > utc_now().date():
        raise ValueError("purchaseDate cannot be in the future")
    return value


EquipmentName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
CategoryName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=50)]
Description = Annotated[str, StringConstraints(max_length=500)]
Quantity = Annotated[StrictInt, Field(ge=0, le=10000)]
PurchaseDate = Annotated[date, BeforeValidator(_as_date), AfterValidator(_not_in_future)]
UsefulLife = Annotated[StrictInt, Field(ge=1, le=100)]


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: EquipmentName
    category: CategoryName
    description: Description = ""
    totalQuantity: Quantity
    purchaseDate: PurchaseDate
    usefulLife: Optional[UsefulLife] = None


class EquipmentPatch(BaseModel):
    """Partial update; only the fields present in the payload are validated.

    Defaults are never validated, so an absent field stays ``None`` while an
    explicit ``null`` fails the field's type check.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: EquipmentName = None
    category: CategoryName = None
    description: Description = None
    totalQuantity: Quantity = None
    purchaseDate: PurchaseDate = None
    usefulLife: UsefulLife = None

    @model_validator(mode="before")
    @classmethod
    def _reject_stock_override(cls, data: Any) -> Any:
        if isinstance(data, dict) and "availableQuantity" in data:
            raise ValueError("availableQuantity is managed by borrow and return and cannot be set directly")
        return data
