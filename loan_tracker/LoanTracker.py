import logging
import os

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from loan_tracker.db.deps import get_record_store
from loan_tracker.db.record_store import RecordStoreError
from loan_tracker.schemas.loans import ReturnRequest
from loan_tracker.services.equipment_service import (
    DEFAULT_PAGE_SIZE,
    create_equipment,
    delete_equipment,
    get_equipment,
    list_categories,
    list_equipment,
    update_equipment,
)
from loan_tracker.services.loan_service import (
    borrow_equipment,
    list_active_loans_for_user,
    list_loan_history,
    return_equipment,
)
from loan_tracker.services.results import (
    INTERNAL_ERROR,
    VALIDATION_ERROR,
    ServiceError,
    ServiceResult,
    format_issues,
    status_for,
)


logging.basicConfig(
    level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
API_LOGGER = logging.getLogger("loan_tracker.api")

CATEGORY_CACHE_CONTROL = "public, s-maxage=300, stale-while-revalidate=600"

app = FastAPI(title="Equipment Loan Tracker")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(error: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(error.code),
        content=jsonable_encoder({"error": error.to_dict()}),
    )


def _respond(result: ServiceResult, status_code: int = 200, headers: dict | None = None) -> JSONResponse:
    if not result.success:
        return _error_response(result.error)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.data), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error_response(ServiceError(VALIDATION_ERROR, "Invalid request.", format_issues(exc.errors())))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    API_LOGGER.error("Unhandled error method=%s path=%s", request.method, request.url.path, exc_info=exc)
    return _error_response(ServiceError(INTERNAL_ERROR, "Internal server error.", str(exc)))


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(store=Depends(get_record_store)):
    try:
        store.ping()
        return {"status": "ok"}
    except RecordStoreError as exc:
        raise HTTPException(status_code=503, detail=f"store_unavailable: {exc}") from exc


@app.get("/api/equipment")
def get_equipment_list(
    category: str | None = Query(None),
    search: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
    store=Depends(get_record_store),
):
    return _respond(list_equipment(store, category=category, search=search, page=page, limit=limit))


@app.post("/api/equipment")
def create_equipment_item(payload: dict, store=Depends(get_record_store)):
    return _respond(create_equipment(store, payload), status_code=201)


@app.get("/api/equipment/categories")
def get_categories(store=Depends(get_record_store)):
    return _respond(list_categories(store), headers={"Cache-Control": CATEGORY_CACHE_CONTROL})


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: str, store=Depends(get_record_store)):
    return _respond(get_equipment(store, equipment_id))


@app.put("/api/equipment/{equipment_id}")
def update_equipment_item(equipment_id: str, payload: dict, store=Depends(get_record_store)):
    return _respond(update_equipment(store, equipment_id, payload))


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment_item(equipment_id: str, store=Depends(get_record_store)):
    result = delete_equipment(store, equipment_id)
    if not result.success:
        return _error_response(result.error)
    return {"message": "Equipment deleted."}


@app.get("/api/loans")
def get_loans(
    equipment_id: str | None = Query(None, alias="equipmentId"),
    user_id: str | None = Query(None, alias="userId"),
    store=Depends(get_record_store),
):
    return _respond(list_loan_history(store, equipment_id=equipment_id, user_id=user_id))


@app.post("/api/loans")
def borrow(payload: dict, store=Depends(get_record_store)):
    return _respond(borrow_equipment(store, payload), status_code=201)


@app.get("/api/loans/my-loans")
def get_my_loans(user_id: str | None = Query(None, alias="userId"), store=Depends(get_record_store)):
    return _respond(list_active_loans_for_user(store, user_id))


@app.put("/api/loans/{loan_id}/return")
def return_loan(loan_id: str, payload: dict | None = Body(None), store=Depends(get_record_store)):
    try:
        request = ReturnRequest.model_validate(payload or {})
    except ValidationError as exc:
        return _error_response(ServiceError(VALIDATION_ERROR, "userId is required.", format_issues(exc.errors())))

    return _respond(return_equipment(store, loan_id, request.userId))
