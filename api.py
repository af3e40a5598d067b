import hashlib
import hmac
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Security
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from config import FeatureFlags, settings
from database import read_connection
from errors import LendingError
from library import Library
from models import UserRole, UserStatus

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

library = Library()

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the admin API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_flags() -> FeatureFlags:
    """Feature flags, resolved once per request."""
    return FeatureFlags.from_env()


# --- Models ---
class BookCreateModel(BaseModel):
    title: str
    author: str
    total_copies: int = Field(1, ge=0)
    isbn: str | None = None
    price: str | None = None
    reserve_on_request: bool = False


class BookModel(BaseModel):
    id: str
    title: str
    author: str
    total_copies: int
    available_copies: int
    isbn: str | None = None
    price: str | None = None
    reserve_on_request: bool = False
    created_at: str | None = None


class UserCreateModel(BaseModel):
    full_name: str
    email: str
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.APPROVED


class UserModel(BaseModel):
    id: str
    full_name: str
    email: str
    status: str
    role: str
    total_fines_owed: str
    is_restricted: bool
    restriction_reason: str | None = None


class BorrowRequestCreateModel(BaseModel):
    user_id: str
    book_id: str


class BorrowRequestModel(BaseModel):
    id: str
    user_id: str
    book_id: str
    status: str
    requested_at: str
    approved_at: str | None = None
    rejected_at: str | None = None
    due_date: str | None = None
    borrow_record_id: str | None = None
    copy_reserved: bool = False
    admin_notes: str | None = None


class DecisionModel(BaseModel):
    admin_id: str | None = None
    notes: str | None = None


class ReturnRequestCreateModel(BaseModel):
    user_id: str
    borrow_record_id: str
    confirmation_text: str


class ReturnRequestModel(BaseModel):
    id: str
    user_id: str
    book_id: str
    borrow_record_id: str
    status: str
    requested_at: str
    approved_at: str | None = None
    rejected_at: str | None = None
    admin_notes: str | None = None
    is_resubmission: bool = False


class SubscribeModel(BaseModel):
    user_id: str


class SweepRequestModel(BaseModel):
    run_date: date | None = None


class PaymentCreateModel(BaseModel):
    user_id: str
    fine_ids: List[str]
    amount: str | None = None


class WaiveModel(BaseModel):
    admin_id: str
    reason: str


# --- Health ---
@app.get("/health")
def health():
    db_ok = True
    try:
        with read_connection(library.db_file) as conn:
            conn.execute("SELECT 1")
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/metrics")
def prometheus_metrics():
    if not settings.prometheus_enabled:
        raise HTTPException(status_code=404, detail="metrics disabled")
    return PlainTextResponse(library.metrics_exposition().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@app.get("/admin/metrics", dependencies=[Depends(get_api_key)])
def metrics_snapshot():
    return library.get_metrics().to_dict()


# --- Books & users ---
@app.get("/books", response_model=List[BookModel])
def list_books():
    return [book.to_dict() for book in library.list_books()]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    return library.get_book(book_id).to_dict()


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    book = library.add_book(
        payload.title,
        payload.author,
        total_copies=payload.total_copies,
        isbn=payload.isbn,
        price=payload.price,
        reserve_on_request=payload.reserve_on_request,
    )
    return book.to_dict()


@app.post("/books/{book_id}/subscribe")
def subscribe(book_id: str, payload: SubscribeModel, flags: FeatureFlags = Depends(get_flags)):
    created = library.subscribe_availability(payload.user_id, book_id, flags)
    return {"book_id": book_id, "user_id": payload.user_id, "subscribed": True, "created": created}


@app.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_user(payload: UserCreateModel):
    return library.add_user(payload.full_name, payload.email, role=payload.role, status=payload.status).to_dict()


@app.get("/users/{user_id}/status")
def user_status(user_id: str):
    return library.get_user_status(user_id).to_dict()


@app.get("/users/{user_id}/fines")
def user_fines(user_id: str):
    return [fine.to_dict() for fine in library.list_fines(user_id)]


# --- Borrow requests ---
@app.post("/borrow-requests", response_model=BorrowRequestModel, status_code=201)
def create_borrow_request(
    payload: BorrowRequestCreateModel,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    flags: FeatureFlags = Depends(get_flags),
):
    request = library.create_borrow_request(payload.user_id, payload.book_id, idempotency_key, flags)
    return request.to_dict()


@app.get("/borrow-requests/pending", response_model=List[BorrowRequestModel], dependencies=[Depends(get_api_key)])
def pending_borrow_requests():
    return [request.to_dict() for request in library.list_pending_borrow_requests()]


@app.get("/borrow-requests/{request_id}", response_model=BorrowRequestModel)
def get_borrow_request(request_id: str):
    return library.get_borrow_request(request_id).to_dict()


@app.post("/borrow-requests/{request_id}/approve", response_model=BorrowRequestModel,
          dependencies=[Depends(get_api_key)])
def approve_borrow_request(request_id: str, decision: DecisionModel, flags: FeatureFlags = Depends(get_flags)):
    return library.approve_borrow_request(request_id, decision.admin_id, decision.notes, flags).to_dict()


@app.post("/borrow-requests/{request_id}/reject", response_model=BorrowRequestModel,
          dependencies=[Depends(get_api_key)])
def reject_borrow_request(request_id: str, decision: DecisionModel, flags: FeatureFlags = Depends(get_flags)):
    return library.reject_borrow_request(request_id, decision.admin_id, decision.notes, flags).to_dict()


# --- Return requests ---
@app.post("/return-requests", response_model=ReturnRequestModel, status_code=201)
def create_return_request(payload: ReturnRequestCreateModel, flags: FeatureFlags = Depends(get_flags)):
    request = library.create_return_request(
        payload.user_id, payload.borrow_record_id, payload.confirmation_text, flags
    )
    return request.to_dict()


@app.get("/return-requests/pending", response_model=List[ReturnRequestModel], dependencies=[Depends(get_api_key)])
def pending_return_requests():
    return [request.to_dict() for request in library.list_pending_return_requests()]


@app.post("/return-requests/{request_id}/approve", response_model=ReturnRequestModel,
          dependencies=[Depends(get_api_key)])
def approve_return_request(request_id: str, decision: DecisionModel, flags: FeatureFlags = Depends(get_flags)):
    return library.approve_return_request(request_id, decision.admin_id, decision.notes, flags).to_dict()


@app.post("/return-requests/{request_id}/reject", response_model=ReturnRequestModel,
          dependencies=[Depends(get_api_key)])
def reject_return_request(request_id: str, decision: DecisionModel, flags: FeatureFlags = Depends(get_flags)):
    return library.reject_return_request(request_id, decision.admin_id, decision.notes, flags).to_dict()


# --- Jobs ---
@app.post("/jobs/penalty-sweep", dependencies=[Depends(get_api_key)])
def penalty_sweep(payload: SweepRequestModel | None = None,
                  flags: FeatureFlags = Depends(get_flags)):
    return library.run_penalty_sweep(payload.run_date if payload else None, flags).to_dict()


@app.post("/jobs/nightly", dependencies=[Depends(get_api_key)])
def nightly(payload: SweepRequestModel | None = None,
            flags: FeatureFlags = Depends(get_flags)):
    return library.run_nightly_jobs(payload.run_date if payload else None, flags)


# --- Payments ---
@app.post("/payments", status_code=201)
def create_payment(payload: PaymentCreateModel, flags: FeatureFlags = Depends(get_flags)):
    return library.create_payment(payload.user_id, payload.fine_ids, payload.amount, flags).to_dict()


@app.get("/payments/{transaction_id}")
def get_payment(transaction_id: str):
    return library.get_transaction(transaction_id).to_dict()


@app.post("/fines/{fine_id}/waive", dependencies=[Depends(get_api_key)])
def waive_fine(fine_id: str, payload: WaiveModel, flags: FeatureFlags = Depends(get_flags)):
    return library.waive_fine(fine_id, payload.admin_id, payload.reason, flags).to_dict()


def _verify_signature(body: bytes, signature: str | None) -> None:
    secret = settings.payment_webhook_secret
    if not secret:
        return
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature):
        logger.warning("Rejected payment webhook with a bad signature")
        raise HTTPException(status_code=400, detail="Invalid signature")


@app.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    x_signature: str | None = Header(default=None, alias="X-Signature"),
):
    body = await request.body()
    _verify_signature(body, x_signature)
    try:
        event: Dict[str, Any] = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    flags = FeatureFlags.from_env()
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    transaction_id = metadata.get("transaction_id")
    logger.info(f"Payment webhook received: {event_type}")

    if event_type == "checkout.session.completed":
        result = library.handle_checkout_session_completed(
            obj.get("id"), obj.get("payment_intent"), transaction_id, obj.get("payment_status", "paid"), flags
        )
    elif event_type == "payment_intent.succeeded":
        result = library.complete_payment(obj.get("id"), transaction_id, flags)
    elif event_type == "payment_intent.payment_failed":
        reason = (obj.get("last_payment_error") or {}).get("message", "Payment failed")
        result = library.handle_failed_payment(obj.get("id"), reason, False, transaction_id, flags)
    elif event_type == "payment_intent.canceled":
        result = library.handle_failed_payment(
            obj.get("id"), obj.get("cancellation_reason") or "Payment cancelled", True, transaction_id, flags
        )
    else:
        return {"received": True, "handled": False}
    return {"received": True, "handled": True, **result.to_dict()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host=settings.api_host, port=settings.api_port)
