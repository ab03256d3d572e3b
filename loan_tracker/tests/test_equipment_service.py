import unittest
from datetime import date, timedelta

from loan_tracker.services.equipment_service import (
    create_equipment,
    delete_equipment,
    get_equipment,
    list_categories,
    list_equipment,
    update_equipment,
)
from loan_tracker.services.loan_service import borrow_equipment
from loan_tracker.services.results import BUSINESS_RULE_VIOLATION, NOT_FOUND, VALIDATION_ERROR
from loan_tracker.db.record_store import utc_now
from loan_tracker.tests.fakes import make_http_store, make_sql_store


def _payload(**overrides):
    payload = {
        "name": "Laptop",
        "category": "Computers",
        "description": "14 inch",
        "totalQuantity": 3,
        "purchaseDate": "2024-01-15",
    }
    payload.update(overrides)
    return payload


class EquipmentServiceCases:
    """Equipment flows shared by every record store backend."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()
        self.addCleanup(self.store.close)

    def _create(self, **overrides):
        result = create_equipment(self.store, _payload(**overrides))
        self.assertTrue(result.success, result.error)
        return result.data

    def test_create_starts_with_full_stock(self):
        equipment = self._create(name="  Laptop  ", usefulLife=4)

        self.assertEqual(equipment["name"], "Laptop")
        self.assertEqual(equipment["availableQuantity"], 3)
        self.assertEqual(equipment["purchaseDate"], date(2024, 1, 15))
        self.assertEqual(equipment["usefulLife"], 4)
        self.assertEqual(equipment["version"], 1)
        self.assertEqual(equipment["createdAt"], equipment["updatedAt"])

    def test_create_ignores_client_supplied_stock(self):
        equipment = self._create(availableQuantity=99)
        self.assertEqual(equipment["availableQuantity"], 3)

    def test_create_rejects_invalid_payloads(self):
        cases = [
            _payload(name=""),
            _payload(category="x" * 51),
            _payload(totalQuantity=-1),
            _payload(totalQuantity=10001),
            _payload(totalQuantity=True),
            _payload(totalQuantity="5"),
            _payload(totalQuantity=5.0),
            _payload(purchaseDate=(utc_now().date() + timedelta(days=1)).isoformat()),
            _payload(purchaseDate=(utc_now() + timedelta(minutes=5)).isoformat()),
            _payload(usefulLife=0),
            _payload(usefulLife=True),
            {"name": "Laptop"},
        ]
        for payload in cases:
            with self.subTest(payload=payload):
                result = create_equipment(self.store, payload)
                self.assertFalse(result.success)
                self.assertEqual(result.error.code, VALIDATION_ERROR)
                self.assertTrue(result.error.details)
        self.assertEqual(self.store.get_all("equipment"), [])

    def test_get_missing_equipment_is_not_found(self):
        result = get_equipment(self.store, "00000000-0000-0000-0000-000000000000")
        self.assertEqual(result.error.code, NOT_FOUND)

    def test_update_changes_only_supplied_fields(self):
        equipment = self._create()

        result = update_equipment(self.store, equipment["id"], {"description": "refurbished"})

        self.assertTrue(result.success)
        self.assertEqual(result.data["description"], "refurbished")
        self.assertEqual(result.data["name"], "Laptop")
        self.assertEqual(result.data["version"], 2)
        self.assertGreaterEqual(result.data["updatedAt"], equipment["updatedAt"])

    def test_update_total_quantity_shifts_available_stock(self):
        equipment = self._create()
        borrow_equipment(self.store, {"equipmentId": equipment["id"], "userId": "user-1"})

        grown = update_equipment(self.store, equipment["id"], {"totalQuantity": 5})
        self.assertEqual((grown.data["totalQuantity"], grown.data["availableQuantity"]), (5, 4))

        shrunk = update_equipment(self.store, equipment["id"], {"totalQuantity": 1})
        self.assertEqual((shrunk.data["totalQuantity"], shrunk.data["availableQuantity"]), (1, 0))

        too_small = update_equipment(self.store, equipment["id"], {"totalQuantity": 0})
        self.assertEqual(too_small.error.code, BUSINESS_RULE_VIOLATION)
        self.assertEqual(too_small.error.details["onLoan"], 1)

    def test_update_rejects_direct_stock_edits_and_nulls(self):
        equipment = self._create()

        for payload in ({"availableQuantity": 1}, {"name": None}, {"totalQuantity": -5}, {"totalQuantity": "4"}, {"usefulLife": False}):
            with self.subTest(payload=payload):
                result = update_equipment(self.store, equipment["id"], payload)
                self.assertEqual(result.error.code, VALIDATION_ERROR)
        self.assertEqual(get_equipment(self.store, equipment["id"]).data["availableQuantity"], 3)

    def test_update_missing_equipment_is_not_found_before_validation(self):
        result = update_equipment(self.store, "00000000-0000-0000-0000-000000000000", {"totalQuantity": -1})
        self.assertEqual(result.error.code, NOT_FOUND)

    def test_delete_refuses_equipment_on_loan(self):
        equipment = self._create()
        borrow_equipment(self.store, {"equipmentId": equipment["id"], "userId": "user-1"})

        result = delete_equipment(self.store, equipment["id"])

        self.assertEqual(result.error.code, BUSINESS_RULE_VIOLATION)
        self.assertEqual(result.error.details, {"activeLoansCount": 1})
        self.assertTrue(get_equipment(self.store, equipment["id"]).success)

    def test_delete_missing_equipment_is_not_found(self):
        result = delete_equipment(self.store, "00000000-0000-0000-0000-000000000000")
        self.assertEqual(result.error.code, NOT_FOUND)

    def test_list_filters_and_paginates(self):
        self._create(name="Laptop A")
        self._create(name="Laptop B")
        self._create(name="Camera", category="AV")

        page_two = list_equipment(self.store, page=2, limit=2).data
        self.assertEqual(len(page_two["data"]), 1)
        self.assertEqual(page_two["pagination"], {"page": 2, "limit": 2, "total": 3, "totalPages": 2})

        by_category = list_equipment(self.store, category="AV").data
        self.assertEqual([item["name"] for item in by_category["data"]], ["Camera"])

        by_name = list_equipment(self.store, search="Laptop").data
        self.assertEqual(sorted(item["name"] for item in by_name["data"]), ["Laptop A", "Laptop B"])

        empty = list_equipment(self.store, category="Furniture").data
        self.assertEqual(empty["pagination"], {"page": 1, "limit": 20, "total": 0, "totalPages": 0})

    def test_categories_are_distinct_and_sorted(self):
        self._create(category="Computers")
        self._create(category="AV")
        self._create(category="Computers")

        self.assertEqual(list_categories(self.store).data, ["AV", "Computers"])


class SqlEquipmentServiceTests(EquipmentServiceCases, unittest.TestCase):
    def make_store(self):
        return make_sql_store()

    def test_name_search_is_case_sensitive(self):
        self._create(name="Laptop A")

        self.assertEqual(list_equipment(self.store, search="Laptop").data["pagination"]["total"], 1)
        self.assertEqual(list_equipment(self.store, search="laptop").data["pagination"]["total"], 0)


class HttpEquipmentServiceTests(EquipmentServiceCases, unittest.TestCase):
    def make_store(self):
        store, self.server = make_http_store(self)
        return store

    def test_name_search_is_delegated_to_the_store(self):
        self._create(name="Laptop A")

        list_equipment(self.store, search="Laptop")

        self.assertEqual(self.server.requests[-1]["query"], {"name_like": "Laptop"})

    def test_stock_shift_conflict_is_reported(self):
        equipment = self._create()

        def concurrent_borrow(record):
            record["availableQuantity"] = 2
            record["version"] = int(record["version"]) + 1

        self.server.before_put = concurrent_borrow
        result = update_equipment(self.store, equipment["id"], {"totalQuantity": 5})

        self.assertEqual(result.error.code, BUSINESS_RULE_VIOLATION)
        self.assertEqual(self.server.collections["equipment"][0]["totalQuantity"], 3)


if __name__ == "__main__":
    unittest.main()
