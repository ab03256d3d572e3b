from __future__ import annotations

import logging
import math
from typing import Any

from pydantic import ValidationError

from loan_tracker.db.record_store import EQUIPMENT, RecordStoreError, StaleRecordError
from loan_tracker.schemas.equipment import EquipmentCreate, EquipmentPatch
from loan_tracker.services.results import (
    BUSINESS_RULE_VIOLATION,
    NOT_FOUND,
    ServiceResult,
    internal_failure,
    validation_failure,
)


LOGGER = logging.getLogger("loan_tracker.equipment")

DEFAULT_PAGE_SIZE = 20


def calculate_available_quantity(equipment: dict) -> int:
    return int(equipment.get("availableQuantity") or 0)


def _not_found(equipment_id: str) -> ServiceResult:
    return ServiceResult.fail(NOT_FOUND, "Equipment not found.", {"equipmentId": equipment_id})


def create_equipment(store, payload: Any) -> ServiceResult:
    try:
        validated = EquipmentCreate.model_validate(payload)
    except ValidationError as exc:
        return validation_failure(exc)

    record = validated.model_dump(exclude_none=True)
    record["availableQuantity"] = validated.totalQuantity
    try:
        equipment = store.create(EQUIPMENT, record)
    except RecordStoreError as exc:
        LOGGER.error("Equipment create failed name=%s error=%s", validated.name, exc)
        return internal_failure("Could not create equipment.", exc)

    LOGGER.info(
        "Equipment created id=%s name=%s quantity=%s",
        equipment.get("id"),
        equipment.get("name"),
        equipment.get("totalQuantity"),
    )
    return ServiceResult.ok(equipment)


def get_equipment(store, equipment_id: str) -> ServiceResult:
    try:
        equipment = store.get_by_id(EQUIPMENT, equipment_id, retries=store.read_retries)
    except RecordStoreError as exc:
        LOGGER.error("Equipment lookup failed id=%s error=%s", equipment_id, exc)
        return internal_failure("Could not load equipment.", exc)
    if not equipment:
        return _not_found(equipment_id)
    return ServiceResult.ok(equipment)


def update_equipment(store, equipment_id: str, payload: Any) -> ServiceResult:
    try:
        existing = store.get_by_id(EQUIPMENT, equipment_id, retries=store.read_retries)
    except RecordStoreError as exc:
        LOGGER.error("Equipment lookup failed id=%s error=%s", equipment_id, exc)
        return internal_failure("Could not update equipment.", exc)
    if not existing:
        return _not_found(equipment_id)

    try:
        patch = EquipmentPatch.model_validate(payload)
    except ValidationError as exc:
        return validation_failure(exc)

    changes = patch.model_dump(exclude_unset=True)
    expected = None
    if "totalQuantity" in changes:
        total = int(existing.get("totalQuantity") or 0)
        available = calculate_available_quantity(existing)
        on_loan = max(total - available, 0)
        if changes["totalQuantity"] < on_loan:
            return ServiceResult.fail(
                BUSINESS_RULE_VIOLATION,
                "totalQuantity cannot be lower than the number of units on loan.",
                {"onLoan": on_loan, "totalQuantity": changes["totalQuantity"]},
            )
        changes["availableQuantity"] = changes["totalQuantity"] - on_loan
        expected = {"availableQuantity": available}

    try:
        updated = store.update(EQUIPMENT, equipment_id, changes, expected=expected)
    except StaleRecordError:
        return ServiceResult.fail(
            BUSINESS_RULE_VIOLATION,
            "Equipment stock changed while updating. Reload and try again.",
            {"equipmentId": equipment_id},
        )
    except RecordStoreError as exc:
        LOGGER.error("Equipment update failed id=%s error=%s", equipment_id, exc)
        return internal_failure("Could not update equipment.", exc)
    if not updated:
        return _not_found(equipment_id)

    LOGGER.info("Equipment updated id=%s fields=%s", equipment_id, ",".join(sorted(changes)))
    return ServiceResult.ok(updated)


def delete_equipment(store, equipment_id: str) -> ServiceResult:
    try:
        existing = store.get_by_id(EQUIPMENT, equipment_id, retries=store.read_retries)
        if not existing:
            return _not_found(equipment_id)

        active_loans = store.get_active_loans_for_equipment(equipment_id)
        if active_loans:
            return ServiceResult.fail(
                BUSINESS_RULE_VIOLATION,
                "Equipment that is on loan cannot be deleted.",
                {"activeLoansCount": len(active_loans)},
            )

        if not store.delete(EQUIPMENT, equipment_id):
            return _not_found(equipment_id)
    except RecordStoreError as exc:
        LOGGER.error("Equipment delete failed id=%s error=%s", equipment_id, exc)
        return internal_failure("Could not delete equipment.", exc)

    LOGGER.info("Equipment deleted id=%s", equipment_id)
    return ServiceResult.ok(None)


def list_equipment(
    store,
    category: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> ServiceResult:
    page = max(int(page), 1)
    limit = max(int(limit), 1)
    try:
        if category:
            items = store.get_equipment_by_category(category)
        elif search:
            items = store.search_equipment_by_name(search)
        else:
            items = store.get_all(EQUIPMENT)
    except RecordStoreError as exc:
        LOGGER.error("Equipment listing failed category=%s search=%s error=%s", category, search, exc)
        return internal_failure("Could not load equipment.", exc)

    total = len(items)
    start = (page - 1) * limit
    return ServiceResult.ok(
        {
            "data": items[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit),
            },
        }
    )


def list_categories(store) -> ServiceResult:
    try:
        return ServiceResult.ok(store.get_all_categories())
    except RecordStoreError as exc:
        LOGGER.error("Category listing failed error=%s", exc)
        return internal_failure("Could not load categories.", exc)
