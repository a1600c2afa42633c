import logging
from typing import Iterable, Optional

from fastapi import Depends, FastAPI, File, Header, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import LedgerError, ValidationFailure
from gemini import ReceiptScanner
from identity import RequestContext, resolve_context
from models import TransactionType
from ratelimit import TokenBucketLimiter
from scheduler import SchedulerManager
from schemas import (
    AccountAuditOut,
    AccountIn,
    AccountOut,
    BudgetIn,
    BudgetOut,
    BudgetStatusOut,
    BulkDeleteIn,
    ReceiptDraft,
    TransactionIn,
    TransactionOut,
)
from services import (
    AccountService,
    BudgetService,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

MAX_RECEIPT_BYTES = 5 * 1024 * 1024

app = FastAPI(title="Ledger")

_settings = get_settings()
rate_limiter = TokenBucketLimiter(
    capacity=_settings.rate_limit_capacity,
    refill_per_hour=_settings.rate_limit_refill_per_hour,
    blocked=_settings.blocked_clients,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_context(
    request: Request,
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None),
) -> RequestContext:
    client_key = request.client.host if request.client else "anonymous"
    return resolve_context(db, authorization, client_key)


def get_receipt_scanner() -> ReceiptScanner:
    return ReceiptScanner()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LedgerError)
def ledger_error_handler(_request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def mark_changed(response: Response, views: Iterable[str]) -> None:
    response.headers["HX-Trigger"] = "transactions-changed"
    response.headers["X-Invalidate-Paths"] = ",".join(sorted(views))


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(
    ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)
):
    return AccountService(db, ctx.require_user()).list_all()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    data: AccountIn,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    account = AccountService(db, ctx.require_user()).create(data)
    mark_changed(response, ["/dashboard"])
    return account


@app.post("/api/accounts/{account_id}/default", response_model=AccountOut)
def set_default_account(
    account_id: int,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    account = AccountService(db, ctx.require_user()).set_default(account_id)
    mark_changed(response, ["/dashboard"])
    return account


@app.get("/api/accounts/{account_id}/audit", response_model=AccountAuditOut)
def audit_account(
    account_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    accounts = AccountService(db, ctx.require_user())
    account = accounts.get(account_id)
    computed = accounts.computed_balance(account_id)
    if computed != account.balance:
        logger.warning(
            f"balance_drift: account={account_id} cached={account.balance} "
            f"computed={computed}"
        )
    return AccountAuditOut(
        account_id=account_id,
        balance=account.balance,
        computed_balance=computed,
        in_sync=computed == account.balance,
    )


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    is_recurring: Optional[bool] = None,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        account_id=account_id, type=type, category=category, is_recurring=is_recurring
    )
    return TransactionService(db, ctx.require_user()).list(filters)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    user_id = ctx.require_user()
    rate_limiter.decide(ctx, cost=1).raise_for_denial()
    service = TransactionService(db, user_id)
    txn = service.create(data)
    mark_changed(response, service.invalidated)
    return txn


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    return TransactionService(db, ctx.require_user()).get(transaction_id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, ctx.require_user())
    txn = service.update(transaction_id, data)
    mark_changed(response, service.invalidated)
    return txn


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, ctx.require_user())
    service.delete(transaction_id)
    response = Response(status_code=204)
    mark_changed(response, service.invalidated)
    return response


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    data: BulkDeleteIn,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, ctx.require_user())
    deleted = service.bulk_delete(data.ids)
    mark_changed(response, service.invalidated)
    return {"deleted": deleted}


@app.post("/api/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(
    transaction_id: int,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, ctx.require_user())
    txn = service.restore(transaction_id)
    mark_changed(response, service.invalidated)
    return txn


@app.post("/api/receipts/scan", response_model=ReceiptDraft)
async def scan_receipt(
    file: UploadFile = File(...),
    ctx: RequestContext = Depends(get_context),
    scanner: ReceiptScanner = Depends(get_receipt_scanner),
):
    ctx.require_user()
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise ValidationFailure("Please upload an image file")
    image = await file.read()
    if not image:
        raise ValidationFailure("Empty file")
    if len(image) > MAX_RECEIPT_BYTES:
        raise ValidationFailure("File size should be less than 5MB")
    return scanner.scan(image, content_type)


@app.get("/api/budget", response_model=BudgetStatusOut)
def get_budget(
    ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)
):
    user_id = ctx.require_user()
    budgets = BudgetService(db, user_id)
    account = AccountService(db, user_id).default_account()
    expenses = budgets.current_month_expenses(account.id) if account else 0
    return BudgetStatusOut(
        budget=budgets.get(),
        current_expenses=expenses,
        account_id=account.id if account else None,
    )


@app.put("/api/budget", response_model=BudgetOut)
def update_budget(
    data: BudgetIn,
    response: Response,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, ctx.require_user()).upsert(data.amount)
    mark_changed(response, ["/dashboard"])
    return budget


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
