import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from auth import current_user_id
from budget import summarize_category
from config import get_settings
from database import get_db
from errors import NotFoundError, PreconditionFailed
from scheduler import TotalsAuditScheduler
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    EventIn,
    EventOut,
    EventUpdate,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    MarkPaidIn,
    PaymentIn,
    PaymentOut,
    PaymentScheduleIn,
    PaymentUpdate,
    RecalculateIn,
    RecalculationOut,
    UpcomingPaymentOut,
    WorkspaceIn,
    WorkspaceOut,
    WorkspaceUpdate,
)
from services import (
    CategoryService,
    EventService,
    ExpenseService,
    PaymentService,
    WorkspaceService,
    recalculate_all_events,
    recalculate_event_totals,
)
from storage import LocalObjectStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Event Budget")

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
MAX_PHOTO_BYTES = 5 * 1024 * 1024
PHOTO_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}


def get_store() -> LocalObjectStore:
    return LocalObjectStore()


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PreconditionFailed):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _discard_attachments(store: LocalObjectStore, urls: list[str]) -> None:
    for url in urls:
        try:
            store.delete(url)
        except ValueError:
            logger.warning(f"attachment_not_managed: url={url}")


scheduler_manager = TotalsAuditScheduler()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/health")
def health():
    return {"status": "ok"}


# -- workspace -------------------------------------------------------------


@app.get("/api/workspace", response_model=WorkspaceOut)
def get_workspace(
    user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        return WorkspaceService(db, user_id).get()
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/workspace", response_model=WorkspaceOut, status_code=201)
def setup_workspace(
    data: WorkspaceIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return WorkspaceService(db, user_id).setup(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/workspace", response_model=WorkspaceOut)
def update_workspace(
    data: WorkspaceUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return WorkspaceService(db, user_id).update(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/workspace", status_code=204)
def delete_workspace(
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    store: LocalObjectStore = Depends(get_store),
):
    try:
        files = WorkspaceService(db, user_id).delete()
    except ValueError as exc:
        raise _http_error(exc) from exc
    _discard_attachments(store, files)
    return Response(status_code=204)


@app.get("/api/workspace/export")
def export_workspace(
    fmt: str = Query("json", alias="format"),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        exported = WorkspaceService(db, user_id).export(fmt)
    except ValueError as exc:
        raise _http_error(exc) from exc
    if fmt == "json":
        return exported
    filename = f"event_budget_{date.today().isoformat()}.csv"
    return StreamingResponse(
        iter([exported]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/workspace/photo", response_model=WorkspaceOut, status_code=201)
async def upload_photo(
    file: UploadFile = File(...),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    store: LocalObjectStore = Depends(get_store),
):
    service = WorkspaceService(db, user_id)
    try:
        service.get()
    except ValueError as exc:
        raise _http_error(exc) from exc
    if file.content_type not in PHOTO_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Please upload a JPEG, PNG, or WebP image")
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Photo is empty")
    if len(content) > MAX_PHOTO_BYTES:
        raise HTTPException(status_code=400, detail="Image must be smaller than 5MB")
    url = store.upload(file.filename or "profile", content, prefix=f"users/{user_id}")
    try:
        workspace, previous = service.replace_photo(url)
    except ValueError as exc:
        store.delete(url)
        raise _http_error(exc) from exc
    if previous:
        _discard_attachments(store, [previous])
    return workspace


@app.delete("/api/workspace/photo", response_model=WorkspaceOut)
def delete_photo(
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    store: LocalObjectStore = Depends(get_store),
):
    try:
        workspace, previous = WorkspaceService(db, user_id).replace_photo(None)
    except ValueError as exc:
        raise _http_error(exc) from exc
    if previous:
        _discard_attachments(store, [previous])
    return workspace


# -- events ----------------------------------------------------------------


@app.get("/api/events", response_model=list[EventOut])
def list_events(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    return EventService(db, user_id).list_all()


@app.post("/api/events", response_model=EventOut, status_code=201)
def create_event(
    data: EventIn, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        return EventService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/events/{event_id}", response_model=EventOut)
def get_event(
    event_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        return EventService(db, user_id).get(event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/events/{event_id}", response_model=EventOut)
def update_event(
    event_id: str,
    data: EventUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return EventService(db, user_id).update(event_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/events/{event_id}", status_code=204)
def delete_event(
    event_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    store: LocalObjectStore = Depends(get_store),
):
    try:
        attachments = EventService(db, user_id).delete(event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    _discard_attachments(store, attachments)
    return Response(status_code=204)


@app.get("/api/events/{event_id}/summary")
def event_summary(
    event_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        event = EventService(db, user_id).get(event_id)
        categories = CategoryService(db, user_id).list_for_event(event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "event": EventOut.model_validate(event).model_dump(mode="json"),
        "remaining_cents": event.total_budgeted_cents - event.total_spent_cents,
        "categories": [
            {
                "category_id": summary.category_id,
                "name": summary.name,
                "budgeted_cents": summary.budgeted,
                "scheduled_cents": summary.scheduled,
                "spent_cents": summary.spent,
                "remaining_cents": summary.remaining,
                "unscheduled_cents": summary.unscheduled,
                "percentage": summary.percentage,
                "status": summary.status.value,
                "is_over_budget": summary.is_over_budget,
            }
            for summary in map(summarize_category, categories)
        ],
    }


@app.post("/api/events/{event_id}/recalculate", response_model=RecalculationOut)
def recalculate_event(
    event_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        result = recalculate_event_totals(db, user_id, event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return RecalculationOut.model_validate(result)


@app.post("/api/events/recalculate")
def recalculate_events(
    user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    outcome = recalculate_all_events(db, user_id)
    return {
        "events_processed": outcome.events_processed,
        "results": [
            RecalculationOut.model_validate(result).model_dump(mode="json")
            for result in outcome.results
        ],
        "errors": outcome.errors,
    }


# -- categories ------------------------------------------------------------


@app.get("/api/events/{event_id}/categories", response_model=list[CategoryOut])
def list_categories(
    event_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        return CategoryService(db, user_id).list_for_event(event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/events/{event_id}/categories", response_model=CategoryOut, status_code=201)
def create_category(
    event_id: str,
    data: CategoryIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).create(event_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/events/{event_id}/categories/{category_id}", response_model=CategoryOut)
def update_category(
    event_id: str,
    category_id: str,
    data: CategoryUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).update(event_id, category_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/events/{event_id}/categories/{category_id}/deletion-check")
def category_deletion_check(
    event_id: str,
    category_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        check = CategoryService(db, user_id).deletion_check(event_id, category_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "can_delete": check.can_delete,
        "message": check.message,
        "expense_count": check.expense_count,
        "suggested_actions": list(check.suggested_actions),
    }


@app.delete("/api/events/{event_id}/categories/{category_id}", status_code=204)
def delete_category(
    event_id: str,
    category_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user_id).delete(event_id, category_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# -- expenses --------------------------------------------------------------


@app.get("/api/events/{event_id}/expenses", response_model=list[ExpenseOut])
def list_expenses(
    event_id: str,
    category_id: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = ExpenseService(db, user_id)
    try:
        if category_id:
            expenses = service.list_for_category(event_id, category_id)
        else:
            expenses = service.list_for_event(event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [ExpenseOut.from_model(expense) for expense in expenses]


@app.post("/api/events/{event_id}/expenses", response_model=ExpenseOut, status_code=201)
def create_expense(
    event_id: str,
    data: ExpenseIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db, user_id).create(event_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.get("/api/events/{event_id}/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    event_id: str,
    expense_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db, user_id).get(event_id, expense_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.patch("/api/events/{event_id}/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    event_id: str,
    expense_id: str,
    data: ExpenseUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db, user_id).update(event_id, expense_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.delete("/api/events/{event_id}/expenses/{expense_id}", status_code=204)
def delete_expense(
    event_id: str,
    expense_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    store: LocalObjectStore = Depends(get_store),
):
    try:
        attachments = ExpenseService(db, user_id).delete(event_id, expense_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    _discard_attachments(store, attachments)
    return Response(status_code=204)


@app.post(
    "/api/events/{event_id}/expenses/{expense_id}/attachments",
    response_model=ExpenseOut,
    status_code=201,
)
async def upload_attachment(
    event_id: str,
    expense_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    store: LocalObjectStore = Depends(get_store),
):
    service = ExpenseService(db, user_id)
    try:
        service.get(event_id, expense_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Attachment is empty")
    if len(content) > MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=400, detail="Attachment is too large")
    url = store.upload(file.filename or "attachment", content, prefix=f"{user_id}/{event_id}")
    try:
        expense = service.add_attachment(event_id, expense_id, url)
    except ValueError as exc:
        store.delete(url)
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.delete(
    "/api/events/{event_id}/expenses/{expense_id}/attachments",
    response_model=ExpenseOut,
)
def delete_attachment(
    event_id: str,
    expense_id: str,
    url: str = Query(...),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    store: LocalObjectStore = Depends(get_store),
):
    try:
        expense = ExpenseService(db, user_id).remove_attachment(event_id, expense_id, url)
    except ValueError as exc:
        raise _http_error(exc) from exc
    _discard_attachments(store, [url])
    return ExpenseOut.from_model(expense)


# -- payments --------------------------------------------------------------


@app.get("/api/events/{event_id}/payments", response_model=list[PaymentOut])
def list_payments(
    event_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        return PaymentService(db, user_id).list_for_event(event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/payments/upcoming", response_model=list[UpcomingPaymentOut])
def upcoming_payments(
    days: int = Query(default=30, ge=0, le=366),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    payments = PaymentService(db, user_id).upcoming(within_days=days)
    return [UpcomingPaymentOut.from_model(payment) for payment in payments]


@app.put(
    "/api/events/{event_id}/expenses/{expense_id}/payments/schedule",
    response_model=ExpenseOut,
)
def create_payment_schedule(
    event_id: str,
    expense_id: str,
    data: PaymentScheduleIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = PaymentService(db, user_id).create_schedule(event_id, expense_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.put(
    "/api/events/{event_id}/expenses/{expense_id}/payments/single",
    response_model=ExpenseOut,
)
def create_single_payment(
    event_id: str,
    expense_id: str,
    data: PaymentIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = PaymentService(db, user_id).create_single(event_id, expense_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.post(
    "/api/events/{event_id}/expenses/{expense_id}/payments",
    response_model=ExpenseOut,
    status_code=201,
)
def add_payment(
    event_id: str,
    expense_id: str,
    data: PaymentIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = PaymentService(db, user_id).add_payment(event_id, expense_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.patch(
    "/api/events/{event_id}/expenses/{expense_id}/payments/{payment_id}",
    response_model=PaymentOut,
)
def update_payment(
    event_id: str,
    expense_id: str,
    payment_id: str,
    data: PaymentUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return PaymentService(db, user_id).update_payment(
            event_id, expense_id, payment_id, data
        )
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/events/{event_id}/expenses/{expense_id}/payments/{payment_id}/paid",
    response_model=PaymentOut,
)
def mark_payment_paid(
    event_id: str,
    expense_id: str,
    payment_id: str,
    data: MarkPaidIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return PaymentService(db, user_id).mark_paid(event_id, expense_id, payment_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/events/{event_id}/expenses/{expense_id}/payments/{payment_id}",
    response_model=ExpenseOut,
)
def delete_payment(
    event_id: str,
    expense_id: str,
    payment_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = PaymentService(db, user_id).delete_payment(event_id, expense_id, payment_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


@app.delete(
    "/api/events/{event_id}/expenses/{expense_id}/payments",
    response_model=ExpenseOut,
)
def clear_payments(
    event_id: str,
    expense_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = PaymentService(db, user_id).clear_all(event_id, expense_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return ExpenseOut.from_model(expense)


# -- maintenance -----------------------------------------------------------


@app.post("/api/debug/recalculate", response_model=RecalculationOut)
def debug_recalculate(
    data: RecalculateIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    if not get_settings().debug_endpoints:
        raise HTTPException(status_code=404, detail="Not found")
    if data.user_id != user_id:
        raise HTTPException(status_code=403, detail="Cannot recalculate another user's event")
    try:
        result = recalculate_event_totals(db, data.user_id, data.event_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return RecalculationOut.model_validate(result)
