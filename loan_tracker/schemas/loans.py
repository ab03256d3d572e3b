import uuid
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, StringConstraints


def _canonical_uuid(value: str) -> str:
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError as exc:
        raise ValueError("must be a valid UUID") from exc


RecordId = Annotated[str, AfterValidator(_canonical_uuid)]
UserId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class BorrowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentId: RecordId
    userId: UserId


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: UserId
