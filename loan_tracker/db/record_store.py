from __future__ import annotations

import json
import logging
import re
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Iterator


EQUIPMENT = "equipment"
LOANS = "loans"
USERS = "users"
COLLECTIONS = (EQUIPMENT, LOANS, USERS)
TIMESTAMPED_COLLECTIONS = {EQUIPMENT}
DATE_FIELDS = {"purchaseDate"}

LOAN_ACTIVE = "active"
LOAN_RETURNED = "returned"

LOGGER = logging.getLogger("loan_tracker.store")

_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,6})\d*)?(Z|[+-]\d{2}:\d{2})?$"
)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class RecordStoreError(RuntimeError):
    pass


class StaleRecordError(RuntimeError):
    def __init__(self, collection: str, record_id: str, expected: dict[str, Any]):
        super().__init__(f"{collection}/{record_id} no longer matches {expected}")
        self.collection = collection
        self.record_id = record_id
        self.expected = expected


class StockLevelError(RuntimeError):
    def __init__(self, equipment_id: str, available_quantity: int):
        super().__init__(f"Equipment {equipment_id} has {available_quantity} units available")
        self.equipment_id = equipment_id
        self.available_quantity = available_quantity


class _NotFound(Exception):
    pass


class _PreconditionFailed(Exception):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    match = _TIMESTAMP_RE.match(value)
    if not match:
        return None
    base, fraction, offset = match.groups()
    text = base
    if fraction:
        text += "." + fraction.ljust(6, "0")
    if offset and offset != "Z":
        text += offset
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return as_utc(parsed)


def _coerce_record(raw: dict[str, Any]) -> dict[str, Any]:
    record = {}
    for key, value in raw.items():
        if isinstance(value, str):
            parsed = parse_timestamp(value)
            if parsed is not None:
                value = parsed
            elif key in DATE_FIELDS and _DATE_RE.match(value):
                try:
                    value = date.fromisoformat(value)
                except ValueError:
                    pass
        record[key] = value
    return record


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def merge_changes(current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    merged = dict(current)
    for key, value in changes.items():
        if key == "id" or value is None:
            continue
        merged[key] = value
    return merged


def sort_by_borrowed_at(loans: list[dict[str, Any]]) -> list[dict[str, Any]]:
    def _key(loan: dict[str, Any]) -> datetime:
        value = loan.get("borrowedAt")
        return as_utc(value) if isinstance(value, datetime) else _OLDEST

    return sorted(loans, key=_key, reverse=True)


def _record_path(collection: str, record_id: str) -> str:
    return f"/{collection}/{urllib.parse.quote(str(record_id), safe='')}"


def _query_path(collection: str, **params: str) -> str:
    return f"/{collection}?{urllib.parse.urlencode(params)}"


class HttpRecordStore:
    """Record store client for a json-server style collection API.

    Every call is an independent round trip. Writes made inside
    ``transaction()`` are logged and undone in reverse order if the block
    raises, since the remote API has no transactions of its own.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        read_retries: int = 0,
        retry_delay: float = 0.05,
        conflict_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.read_retries = read_retries
        self.retry_delay = retry_delay
        self.conflict_retries = conflict_retries
        self._undo_log: list[tuple] | None = None

    def _request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        request_headers.update(headers or {})
        data = None
        if payload is not None:
            data = json.dumps(payload, default=_json_default).encode("utf-8")
        request = urllib.request.Request(
            url=f"{self.base_url}{path}",
            data=data,
            headers=request_headers,
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise RecordStoreError(f"Record store returned status {response.status} for {method} {path}")
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise _NotFound(path) from exc
            if exc.code == 412:
                raise _PreconditionFailed(path) from exc
            raise RecordStoreError(f"Record store HTTP error: {exc.code} for {method} {path}") from exc
        except (urllib.error.URLError, TimeoutError) as exc:
            raise RecordStoreError(f"Record store connection error: {exc}") from exc

        if not raw.strip():
            return None
        try:
            return json.loads(raw, object_hook=_coerce_record)
        except json.JSONDecodeError as exc:
            raise RecordStoreError(f"Record store returned invalid JSON for {method} {path}") from exc

    def _get_list(self, path: str) -> list[dict[str, Any]]:
        try:
            payload = self._request("GET", path)
        except _NotFound:
            return []
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise RecordStoreError(f"Record store payload for {path} is not a list")
        return payload

    def _remember(self, action: tuple) -> None:
        if self._undo_log is not None:
            self._undo_log.append(action)

    @contextmanager
    def transaction(self) -> Iterator[HttpRecordStore]:
        if self._undo_log is not None:
            yield self
            return
        self._undo_log = []
        try:
            yield self
        except Exception:
            undo_log, self._undo_log = self._undo_log, None
            self._compensate(undo_log)
            raise
        finally:
            self._undo_log = None

    def _compensate(self, undo_log: list[tuple]) -> None:
        for action in reversed(undo_log):
            kind, collection, target = action
            try:
                if kind == "delete":
                    self._request("DELETE", _record_path(collection, target))
                elif kind == "restore":
                    self._request("PUT", _record_path(collection, target["id"]), target)
                elif kind == "create":
                    self._request("POST", f"/{collection}", target)
            except (RecordStoreError, _NotFound, _PreconditionFailed) as exc:
                LOGGER.error("Compensation failed action=%s collection=%s error=%s", kind, collection, exc)
                continue
            LOGGER.warning("Compensated action=%s collection=%s", kind, collection)

    def ping(self) -> bool:
        try:
            self._request("GET", _query_path(USERS, _limit="1"))
        except _NotFound as exc:
            raise RecordStoreError("Record store has no users collection") from exc
        return True

    def close(self) -> None:
        return None

    def get_all(self, collection: str) -> list[dict[str, Any]]:
        return self._get_list(f"/{collection}")

    def get_by_id(self, collection: str, record_id: str, retries: int = 0) -> dict[str, Any] | None:
        path = _record_path(collection, record_id)
        attempts_left = max(int(retries), 0)
        while True:
            try:
                payload = self._request("GET", path)
            except _NotFound:
                if attempts_left <= 0:
                    return None
                attempts_left -= 1
                # Just-written records may not be visible yet.
                time.sleep(self.retry_delay)
                continue
            return payload if isinstance(payload, dict) else None

    def create(self, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        record = dict(data)
        record["id"] = str(uuid.uuid4())
        record["version"] = 1
        if collection in TIMESTAMPED_COLLECTIONS:
            now = utc_now()
            record["createdAt"] = now
            record["updatedAt"] = now

        payload = self._request("POST", f"/{collection}", record)
        self._remember(("delete", collection, record["id"]))
        LOGGER.debug("Created record collection=%s id=%s", collection, record["id"])
        return payload if isinstance(payload, dict) else record

    def update(
        self,
        collection: str,
        record_id: str,
        changes: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        path = _record_path(collection, record_id)
        for _ in range(self.conflict_retries + 1):
            current = self.get_by_id(collection, record_id)
            if current is None:
                return None
            if expected and any(current.get(key) != value for key, value in expected.items()):
                raise StaleRecordError(collection, record_id, expected)

            updated = merge_changes(current, changes)
            updated["version"] = int(current.get("version") or 0) + 1
            if collection in TIMESTAMPED_COLLECTIONS:
                updated["updatedAt"] = utc_now()

            headers = {}
            if current.get("version") is not None:
                headers["If-Match"] = str(current["version"])
            try:
                payload = self._request("PUT", path, updated, headers=headers)
            except _NotFound:
                return None
            except _PreconditionFailed:
                LOGGER.info("Write conflict, re-reading collection=%s id=%s", collection, record_id)
                continue

            self._remember(("restore", collection, current))
            return payload if isinstance(payload, dict) else updated

        raise StaleRecordError(collection, record_id, expected or {})

    def delete(self, collection: str, record_id: str) -> bool:
        current = None
        if self._undo_log is not None:
            current = self.get_by_id(collection, record_id)
        try:
            self._request("DELETE", _record_path(collection, record_id))
        except _NotFound:
            return False
        if current is not None:
            self._remember(("create", collection, current))
        return True

    def adjust_available_quantity(self, equipment_id: str, delta: int) -> dict[str, Any] | None:
        for _ in range(self.conflict_retries + 1):
            current = self.get_by_id(EQUIPMENT, equipment_id)
            if current is None:
                return None
            available = int(current.get("availableQuantity") or 0)
            total = int(current.get("totalQuantity") or 0)
            target = available + delta
            if target < 0:
                raise StockLevelError(equipment_id, available)
            if target > total:
                LOGGER.warning(
                    "Stock capped at total equipment_id=%s available=%s delta=%s total=%s",
                    equipment_id,
                    available,
                    delta,
                    total,
                )
                target = total
            try:
                return self.update(
                    EQUIPMENT,
                    equipment_id,
                    {"availableQuantity": target},
                    expected={"availableQuantity": available},
                )
            except StaleRecordError:
                LOGGER.info("Stock changed concurrently, re-reading equipment_id=%s", equipment_id)
        raise StaleRecordError(EQUIPMENT, equipment_id, {"availableQuantity": "unchanged"})

    def get_equipment_by_category(self, category: str) -> list[dict[str, Any]]:
        return self._get_list(_query_path(EQUIPMENT, category=category))

    def search_equipment_by_name(self, keyword: str) -> list[dict[str, Any]]:
        return self._get_list(_query_path(EQUIPMENT, name_like=keyword))

    def get_all_categories(self) -> list[str]:
        return sorted({item["category"] for item in self.get_all(EQUIPMENT) if item.get("category")})

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

    def get_loans_by_equipment_id(self, equipment_id: str) -> list[dict[str, Any]]:
        # The upstream sort is not reliable for near-identical timestamps.
        loans = self._get_list(_query_path(LOANS, equipmentId=equipment_id, _sort="borrowedAt", _order="desc"))
        return sort_by_borrowed_at(loans)

    def get_loans_by_user_id(self, user_id: str) -> list[dict[str, Any]]:
        loans = self._get_list(_query_path(LOANS, userId=user_id, _sort="borrowedAt", _order="desc"))
        return sort_by_borrowed_at(loans)

    def get_active_loans_for_equipment(self, equipment_id: str) -> list[dict[str, Any]]:
        return self._get_list(_query_path(LOANS, equipmentId=equipment_id, status=LOAN_ACTIVE))

    def get_active_loans_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return self._get_list(_query_path(LOANS, userId=user_id, status=LOAN_ACTIVE))

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        return self.get_by_id(USERS, user_id)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        users = self._get_list(_query_path(USERS, email=email))
        return users[0] if users else None
