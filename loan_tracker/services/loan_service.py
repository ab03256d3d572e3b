from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from loan_tracker.db.record_store import (
    EQUIPMENT,
    LOAN_ACTIVE,
    LOAN_RETURNED,
    LOANS,
    USERS,
    RecordStoreError,
    StaleRecordError,
    StockLevelError,
    sort_by_borrowed_at,
    utc_now,
)
from loan_tracker.schemas.loans import BorrowRequest
from loan_tracker.services.results import (
    BUSINESS_RULE_VIOLATION,
    NOT_FOUND,
    OUT_OF_STOCK,
    UNAUTHORIZED,
    VALIDATION_ERROR,
    OperationAborted,
    ServiceError,
    ServiceResult,
    internal_failure,
    validation_failure,
)


LOGGER = logging.getLogger("loan_tracker.loans")

UNKNOWN_LABEL = "Unknown"


def can_borrow(equipment: dict) -> bool:
    return int(equipment.get("availableQuantity") or 0) > 0


def _equipment_missing(equipment_id: str) -> ServiceError:
    return ServiceError(NOT_FOUND, "Equipment not found.", {"equipmentId": equipment_id})


def _loan_missing(loan_id: str) -> ServiceError:
    return ServiceError(NOT_FOUND, "Loan not found.", {"loanId": loan_id})


def _out_of_stock(available_quantity: int) -> ServiceResult:
    return ServiceResult.fail(OUT_OF_STOCK, "Equipment is out of stock.", {"availableQuantity": available_quantity})


def _stock_contention(equipment_id: str) -> ServiceResult:
    return ServiceResult.fail(
        BUSINESS_RULE_VIOLATION,
        "Equipment stock is changing too quickly. Try again.",
        {"equipmentId": equipment_id},
    )


def _missing_user() -> ServiceResult:
    return ServiceResult.fail(VALIDATION_ERROR, "userId is required.", [{"field": "userId", "message": "required", "type": "missing"}])


def borrow_equipment(store, payload: Any) -> ServiceResult:
    try:
        request = BorrowRequest.model_validate(payload)
    except ValidationError as exc:
        return validation_failure(exc)

    equipment_id = request.equipmentId
    try:
        equipment = store.get_by_id(EQUIPMENT, equipment_id)
        if not equipment:
            return ServiceResult(success=False, error=_equipment_missing(equipment_id))
        if not can_borrow(equipment):
            return _out_of_stock(int(equipment.get("availableQuantity") or 0))

        with store.transaction():
            loan = store.create_loan(equipment_id, request.userId)
            if store.adjust_available_quantity(equipment_id, -1) is None:
                raise OperationAborted(_equipment_missing(equipment_id))
    except OperationAborted as exc:
        return ServiceResult(success=False, error=exc.error)
    except StockLevelError as exc:
        LOGGER.warning("Borrow lost stock race equipment_id=%s user_id=%s", equipment_id, request.userId)
        return _out_of_stock(exc.available_quantity)
    except StaleRecordError:
        return _stock_contention(equipment_id)
    except RecordStoreError as exc:
        LOGGER.error("Borrow failed equipment_id=%s user_id=%s error=%s", equipment_id, request.userId, exc)
        return internal_failure("Could not process the loan.", exc)

    LOGGER.info("Loan created id=%s equipment_id=%s user_id=%s", loan.get("id"), equipment_id, request.userId)
    return ServiceResult.ok(loan)


def return_equipment(store, loan_id: str, user_id: str) -> ServiceResult:
    if not user_id or not str(user_id).strip():
        return _missing_user()
    user_id = str(user_id).strip()

    try:
        loan = store.get_by_id(LOANS, loan_id, retries=store.read_retries)
        if not loan:
            return ServiceResult(success=False, error=_loan_missing(loan_id))

        # Authorization always compares the stored owner, never a derived check.
        if loan.get("userId") != user_id:
            LOGGER.warning("Return refused loan_id=%s owner=%s caller=%s", loan_id, loan.get("userId"), user_id)
            return ServiceResult.fail(
                UNAUTHORIZED,
                "This loan belongs to another user.",
                {"loanUserId": loan.get("userId"), "requestUserId": user_id},
            )
        if loan.get("status") == LOAN_RETURNED:
            return ServiceResult.fail(BUSINESS_RULE_VIOLATION, "Loan has already been returned.", {"loanId": loan_id})

        equipment_id = loan.get("equipmentId")
        equipment = store.get_by_id(EQUIPMENT, equipment_id)
        if not equipment:
            return ServiceResult(success=False, error=_equipment_missing(equipment_id))

        with store.transaction():
            updated = store.update(
                LOANS,
                loan_id,
                {"returnedAt": utc_now(), "status": LOAN_RETURNED},
                expected={"status": LOAN_ACTIVE},
            )
            if updated is None:
                raise OperationAborted(_loan_missing(loan_id))
            if store.adjust_available_quantity(equipment_id, 1) is None:
                raise OperationAborted(_equipment_missing(equipment_id))
    except OperationAborted as exc:
        return ServiceResult(success=False, error=exc.error)
    except StaleRecordError as exc:
        if exc.collection == LOANS:
            return ServiceResult.fail(BUSINESS_RULE_VIOLATION, "Loan has already been returned.", {"loanId": loan_id})
        return _stock_contention(exc.record_id)
    except RecordStoreError as exc:
        LOGGER.error("Return failed loan_id=%s user_id=%s error=%s", loan_id, user_id, exc)
        return internal_failure("Could not process the return.", exc)

    LOGGER.info("Loan returned id=%s equipment_id=%s user_id=%s", loan_id, equipment_id, user_id)
    return ServiceResult.ok(updated)


def has_active_loan(store, user_id: str, equipment_id: str) -> bool:
    return any(loan.get("equipmentId") == equipment_id for loan in store.get_active_loans_for_user(user_id))


def list_loan_history(store, equipment_id: str | None = None, user_id: str | None = None) -> ServiceResult:
    try:
        if equipment_id:
            loans = store.get_loans_by_equipment_id(equipment_id)
        elif user_id:
            loans = store.get_loans_by_user_id(user_id)
        else:
            loans = sort_by_borrowed_at(store.get_all(LOANS))

        equipment_names = {item["id"]: item.get("name") for item in store.get_all(EQUIPMENT)}
        user_names = {user["id"]: user.get("name") for user in store.get_all(USERS)}
    except RecordStoreError as exc:
        LOGGER.error("Loan history failed equipment_id=%s user_id=%s error=%s", equipment_id, user_id, exc)
        return internal_failure("Could not load loan history.", exc)

    return ServiceResult.ok(
        [
            {
                **loan,
                "equipmentName": equipment_names.get(loan.get("equipmentId")) or UNKNOWN_LABEL,
                "userName": user_names.get(loan.get("userId")) or UNKNOWN_LABEL,
            }
            for loan in loans
        ]
    )


def list_active_loans_for_user(store, user_id: str) -> ServiceResult:
    if not user_id or not str(user_id).strip():
        return _missing_user()
    user_id = str(user_id).strip()

    try:
        loans = sort_by_borrowed_at(store.get_active_loans_for_user(user_id))
        equipment_by_id = {item["id"]: item for item in store.get_all(EQUIPMENT)}
    except RecordStoreError as exc:
        LOGGER.error("Active loans failed user_id=%s error=%s", user_id, exc)
        return internal_failure("Could not load active loans.", exc)

    rows = []
    for loan in loans:
        equipment = equipment_by_id.get(loan.get("equipmentId")) or {}
        rows.append(
            {
                **loan,
                "equipmentName": equipment.get("name") or UNKNOWN_LABEL,
                "equipmentCategory": equipment.get("category") or UNKNOWN_LABEL,
            }
        )
    return ServiceResult.ok(rows)
