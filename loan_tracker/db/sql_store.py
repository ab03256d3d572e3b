from __future__ import annotations

import functools
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import case, distinct, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loan_tracker.db.record_store import (
    EQUIPMENT,
    LOAN_ACTIVE,
    LOANS,
    TIMESTAMPED_COLLECTIONS,
    USERS,
    RecordStoreError,
    StaleRecordError,
    StockLevelError,
    as_utc,
    sort_by_borrowed_at,
    utc_now,
)
from loan_tracker.models.loan_models import Equipment, Loan, User


LOGGER = logging.getLogger("loan_tracker.store")

EQUIPMENT_FIELDS = {
    "id": "EquipmentID",
    "name": "Name",
    "category": "Category",
    "description": "Description",
    "totalQuantity": "TotalQuantity",
    "availableQuantity": "AvailableQuantity",
    "purchaseDate": "PurchaseDate",
    "usefulLife": "UsefulLife",
    "version": "Version",
    "createdAt": "CreatedAt",
    "updatedAt": "UpdatedAt",
}

LOAN_FIELDS = {
    "id": "LoanID",
    "equipmentId": "EquipmentID",
    "userId": "UserID",
    "borrowedAt": "BorrowedAt",
    "returnedAt": "ReturnedAt",
    "status": "Status",
    "version": "Version",
}

USER_FIELDS = {
    "id": "UserID",
    "name": "Name",
    "email": "Email",
    "role": "Role",
}

_MODELS = {
    EQUIPMENT: (Equipment, EQUIPMENT_FIELDS),
    LOANS: (Loan, LOAN_FIELDS),
    USERS: (User, USER_FIELDS),
}


def serialize_equipment(equipment: Equipment) -> dict:
    payload = {
        "id": equipment.EquipmentID,
        "name": equipment.Name,
        "category": equipment.Category,
        "description": equipment.Description or "",
        "totalQuantity": equipment.TotalQuantity,
        "availableQuantity": equipment.AvailableQuantity,
        "purchaseDate": equipment.PurchaseDate,
        "version": equipment.Version,
        "createdAt": as_utc(equipment.CreatedAt),
        "updatedAt": as_utc(equipment.UpdatedAt),
    }
    if equipment.UsefulLife is not None:
        payload["usefulLife"] = equipment.UsefulLife
    return payload


def serialize_loan(loan: Loan) -> dict:
    return {
        "id": loan.LoanID,
        "equipmentId": loan.EquipmentID,
        "userId": loan.UserID,
        "borrowedAt": as_utc(loan.BorrowedAt),
        "returnedAt": as_utc(loan.ReturnedAt),
        "status": loan.Status,
        "version": loan.Version,
    }


def serialize_user(user: User) -> dict:
    return {
        "id": user.UserID,
        "name": user.Name,
        "email": user.Email,
        "role": user.Role,
    }


_SERIALIZERS = {
    EQUIPMENT: serialize_equipment,
    LOANS: serialize_loan,
    USERS: serialize_user,
}


def _model_for(collection: str):
    try:
        return _MODELS[collection]
    except KeyError as exc:
        raise RecordStoreError(f"Unknown collection: {collection}") from exc


def _wrap_errors(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            if not self._in_transaction:
                self.session.rollback()
            raise RecordStoreError(f"Record store database error: {exc}") from exc

    return wrapper


class SqlRecordStore:
    """Record store backed by a SQLAlchemy session.

    Offers what the HTTP store cannot: read-your-writes, real transactions
    and conditional updates executed as a single statement.
    """

    read_retries = 0

    def __init__(self, session: Session):
        self.session = session
        self._in_transaction = False

    def _commit(self) -> None:
        if self._in_transaction:
            self.session.flush()
        else:
            self.session.commit()

    @contextmanager
    def transaction(self) -> Iterator[SqlRecordStore]:
        if self._in_transaction:
            yield self
            return
        self._in_transaction = True
        try:
            yield self
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._in_transaction = False

    @_wrap_errors
    def ping(self) -> bool:
        self.session.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.session.close()

    @_wrap_errors
    def get_all(self, collection: str) -> list[dict[str, Any]]:
        model, _ = _model_for(collection)
        rows = self.session.execute(select(model)).scalars().all()
        return [_SERIALIZERS[collection](row) for row in rows]

    @_wrap_errors
    def get_by_id(self, collection: str, record_id: str, retries: int = 0) -> dict[str, Any] | None:
        model, _ = _model_for(collection)
        row = self.session.get(model, str(record_id), populate_existing=True)
        return _SERIALIZERS[collection](row) if row else None

    @_wrap_errors
    def create(self, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        model, fields = _model_for(collection)
        row = model()
        for key, value in data.items():
            if key in fields and key != "id":
                setattr(row, fields[key], value)
        setattr(row, fields["id"], str(uuid.uuid4()))
        if hasattr(row, "Version"):
            row.Version = 1
        if collection in TIMESTAMPED_COLLECTIONS:
            now = utc_now()
            row.CreatedAt = now
            row.UpdatedAt = now
        self.session.add(row)
        self._commit()
        LOGGER.debug("Created record collection=%s id=%s", collection, getattr(row, fields["id"]))
        return _SERIALIZERS[collection](row)

    @_wrap_errors
    def update(
        self,
        collection: str,
        record_id: str,
        changes: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        model, fields = _model_for(collection)
        primary_key = getattr(model, fields["id"])
        values = {
            fields[key]: value
            for key, value in changes.items()
            if key in fields and key != "id" and value is not None
        }
        if "version" in fields:
            values["Version"] = model.Version + 1
        if collection in TIMESTAMPED_COLLECTIONS:
            values["UpdatedAt"] = utc_now()

        stmt = update(model).where(primary_key == str(record_id))
        for key, value in (expected or {}).items():
            stmt = stmt.where(getattr(model, fields[key]) == value)
        result = self.session.execute(stmt.values(values).execution_options(synchronize_session=False))
        self._commit()

        if result.rowcount == 0:
            if self.session.get(model, str(record_id)) is None:
                return None
            raise StaleRecordError(collection, str(record_id), expected or {})
        return self.get_by_id(collection, record_id)

    @_wrap_errors
    def delete(self, collection: str, record_id: str) -> bool:
        model, _ = _model_for(collection)
        row = self.session.get(model, str(record_id))
        if row is None:
            return False
        self.session.delete(row)
        self._commit()
        return True

    @_wrap_errors
    def adjust_available_quantity(self, equipment_id: str, delta: int) -> dict[str, Any] | None:
        target = Equipment.AvailableQuantity + delta
        stmt = (
            update(Equipment)
            .where(Equipment.EquipmentID == str(equipment_id))
            .where(target >= 0)
            .values(
                AvailableQuantity=case((target > Equipment.TotalQuantity, Equipment.TotalQuantity), else_=target),
                Version=Equipment.Version + 1,
                UpdatedAt=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self._commit()

        equipment = self.session.get(Equipment, str(equipment_id), populate_existing=True)
        if equipment is None:
            return None
        if result.rowcount == 0:
            raise StockLevelError(str(equipment_id), equipment.AvailableQuantity)
        return serialize_equipment(equipment)

    @_wrap_errors
    def get_equipment_by_category(self, category: str) -> list[dict[str, Any]]:
        rows = self.session.execute(select(Equipment).where(Equipment.Category == category)).scalars().all()
        return [serialize_equipment(row) for row in rows]

    @_wrap_errors
    def search_equipment_by_name(self, keyword: str) -> list[dict[str, Any]]:
        rows = self.session.execute(
            select(Equipment).where(Equipment.Name.contains(keyword, autoescape=True))
        ).scalars().all()
        # LIKE is case-insensitive on some backends; keep "contains" exact.
        return [serialize_equipment(row) for row in rows if keyword in (row.Name or "")]

    @_wrap_errors
    def get_all_categories(self) -> list[str]:
        rows = self.session.execute(select(distinct(Equipment.Category))).scalars().all()
        return sorted(category for category in rows if category)

    def create_loan(self, equipment_id: str, user_id: str) -> dict[str, Any]:
        return self.create(
            LOANS,
            {
                "equipmentId": equipment_id,
                "userId": user_id,
                "borrowedAt": utc_now(),
                "returnedAt": None,
                "status": LOAN_ACTIVE,
            },
        )

    @_wrap_errors
    def _loans_where(self, *conditions) -> list[dict[str, Any]]:
        rows = self.session.execute(select(Loan).where(*conditions)).scalars().all()
        return [serialize_loan(row) for row in rows]

    def get_loans_by_equipment_id(self, equipment_id: str) -> list[dict[str, Any]]:
        return sort_by_borrowed_at(self._loans_where(Loan.EquipmentID == equipment_id))

    def get_loans_by_user_id(self, user_id: str) -> list[dict[str, Any]]:
        return sort_by_borrowed_at(self._loans_where(Loan.UserID == user_id))

    def get_active_loans_for_equipment(self, equipment_id: str) -> list[dict[str, Any]]:
        return self._loans_where(Loan.EquipmentID == equipment_id, Loan.Status == LOAN_ACTIVE)

    def get_active_loans_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return self._loans_where(Loan.UserID == user_id, Loan.Status == LOAN_ACTIVE)

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        return self.get_by_id(USERS, user_id)

    @_wrap_errors
    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        row = self.session.execute(select(User).where(User.Email == email)).scalars().first()
        return serialize_user(row) if row else None
