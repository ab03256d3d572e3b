import os
import unittest

from fastapi.testclient import TestClient


os.environ.setdefault("RECORD_STORE_BACKEND", "sql")
os.environ.setdefault("RECORD_STORE_DB_URL", "sqlite+pysqlite:///:memory:")

from loan_tracker import LoanTracker as app_module
from loan_tracker.db.record_store import RecordStoreError
from loan_tracker.tests.fakes import make_sql_store


class UnavailableStore:
    read_retries = 0

    def ping(self):
        raise RecordStoreError("connection refused")

    def get_all_categories(self):
        raise RecordStoreError("connection refused")

    def close(self):
        return None


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.store = make_sql_store()
        app_module.app.dependency_overrides[app_module.get_record_store] = lambda: self.store
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.store.close()

    def _create_equipment(self, **overrides):
        payload = {"name": "Laptop", "category": "Computers", "totalQuantity": 2, "purchaseDate": "2024-01-15"}
        payload.update(overrides)
        response = self.client.post("/api/equipment", json=payload)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_healthchecks(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

        app_module.app.dependency_overrides[app_module.get_record_store] = UnavailableStore
        response = self.client.get("/api/healthz")
        self.assertEqual(response.status_code, 503)
        self.assertIn("store_unavailable", response.json()["detail"])

    def test_create_and_fetch_equipment(self):
        created = self._create_equipment(description="Spare units")

        self.assertEqual(created["availableQuantity"], 2)
        self.assertEqual(created["purchaseDate"], "2024-01-15")

        fetched = self.client.get(f"/api/equipment/{created['id']}")
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json()["description"], "Spare units")

    def test_validation_errors_use_error_envelope(self):
        response = self.client.post("/api/equipment", json={"name": "", "category": "Computers", "totalQuantity": 2})

        self.assertEqual(response.status_code, 400)
        error = response.json()["error"]
        self.assertEqual(error["code"], "VALIDATION_ERROR")
        self.assertEqual(error["message"], "Validation failed")
        fields = {issue["field"] for issue in error["details"]}
        self.assertIn("name", fields)
        self.assertIn("purchaseDate", fields)

    def test_bad_query_parameters_are_validation_errors(self):
        for query in ("page=0", "limit=101", "page=abc"):
            with self.subTest(query=query):
                response = self.client.get(f"/api/equipment?{query}")
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_missing_equipment_is_404(self):
        response = self.client.get("/api/equipment/00000000-0000-0000-0000-000000000000")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "NOT_FOUND")

    def test_list_and_categories(self):
        self._create_equipment()
        self._create_equipment(name="Camera", category="AV")

        listing = self.client.get("/api/equipment", params={"category": "AV"}).json()
        self.assertEqual([item["name"] for item in listing["data"]], ["Camera"])
        self.assertEqual(listing["pagination"]["total"], 1)

        categories = self.client.get("/api/equipment/categories")
        self.assertEqual(categories.status_code, 200)
        self.assertEqual(categories.json(), ["AV", "Computers"])
        self.assertEqual(categories.headers["cache-control"], app_module.CATEGORY_CACHE_CONTROL)

    def test_category_store_failure_is_500(self):
        app_module.app.dependency_overrides[app_module.get_record_store] = UnavailableStore

        response = self.client.get("/api/equipment/categories")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"]["code"], "INTERNAL_ERROR")
        self.assertNotIn("cache-control", response.headers)

    def test_update_rejects_available_quantity(self):
        created = self._create_equipment()

        rejected = self.client.put(f"/api/equipment/{created['id']}", json={"availableQuantity": 0})
        self.assertEqual(rejected.status_code, 400)

        updated = self.client.put(f"/api/equipment/{created['id']}", json={"totalQuantity": 4})
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["availableQuantity"], 4)

    def test_borrow_return_and_delete_flow(self):
        created = self._create_equipment(totalQuantity=1)

        borrowed = self.client.post("/api/loans", json={"equipmentId": created["id"], "userId": "user-1"})
        self.assertEqual(borrowed.status_code, 201)
        loan = borrowed.json()
        self.assertEqual(loan["status"], "active")

        sold_out = self.client.post("/api/loans", json={"equipmentId": created["id"], "userId": "user-2"})
        self.assertEqual(sold_out.status_code, 409)
        self.assertEqual(sold_out.json()["error"]["code"], "OUT_OF_STOCK")

        on_loan = self.client.delete(f"/api/equipment/{created['id']}")
        self.assertEqual(on_loan.status_code, 422)
        self.assertEqual(on_loan.json()["error"]["details"], {"activeLoansCount": 1})

        my_loans = self.client.get("/api/loans/my-loans", params={"userId": "user-1"})
        self.assertEqual(my_loans.status_code, 200)
        self.assertEqual(my_loans.json()[0]["equipmentName"], "Laptop")

        no_user = self.client.put(f"/api/loans/{loan['id']}/return")
        self.assertEqual(no_user.status_code, 400)
        self.assertEqual(no_user.json()["error"]["code"], "VALIDATION_ERROR")

        wrong_user = self.client.put(f"/api/loans/{loan['id']}/return", json={"userId": "user-2"})
        self.assertEqual(wrong_user.status_code, 422)
        self.assertEqual(wrong_user.json()["error"]["code"], "UNAUTHORIZED")

        returned = self.client.put(f"/api/loans/{loan['id']}/return", json={"userId": "user-1"})
        self.assertEqual(returned.status_code, 200)
        self.assertEqual(returned.json()["status"], "returned")
        self.assertIsNotNone(returned.json()["returnedAt"])

        twice = self.client.put(f"/api/loans/{loan['id']}/return", json={"userId": "user-1"})
        self.assertEqual(twice.status_code, 422)
        self.assertEqual(twice.json()["error"]["code"], "BUSINESS_RULE_VIOLATION")

        history = self.client.get("/api/loans", params={"equipmentId": created["id"]})
        self.assertEqual(history.status_code, 200)
        self.assertEqual([row["userName"] for row in history.json()], ["Unknown"])

        deleted = self.client.delete(f"/api/equipment/{created['id']}")
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.json(), {"message": "Equipment deleted."})

    def test_my_loans_requires_user(self):
        response = self.client.get("/api/loans/my-loans")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_return_unknown_loan_is_404(self):
        response = self.client.put(
            "/api/loans/00000000-0000-0000-0000-000000000000/return",
            json={"userId": "user-1"},
        )
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
