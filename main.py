import json
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import (
    Body,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SnapshotIntegrityError
from dedup import classify, existing_signatures, select_for_import
from encryption import DecryptionError
from models import UNCATEGORIZED_LABEL, Account, Category, SavingsGoal, Transaction, TransactionType
from periods import Period
from persistence import PasswordRequiredError, PersistenceGateway, SnapshotStorage
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    ChatIn,
    FiscalConfig,
    IngestBatchIn,
    PasswordIn,
    QueryIn,
    SavingsGoalIn,
    TransactionIn,
    TransferIn,
    fiscal_config_adapter,
)
from services import (
    FISCAL_CONFIG_KEY,
    AccountService,
    CSVService,
    CategoryService,
    ConstraintError,
    IngestError,
    IngestService,
    IngestValidationError,
    InsightsService,
    MetricsService,
    NotFoundError,
    QueryError,
    QueryService,
    SavingsGoalService,
    SettingsService,
    TransactionFilters,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


@app.on_event("startup")
def startup_event():
    if getattr(app.state, "gateway", None) is not None:
        return
    gateway = PersistenceGateway(
        SnapshotStorage(settings.data_dir),
        key=settings.snapshot_key,
        password=settings.password,
    )
    app.state.gateway = gateway
    try:
        gateway.open()
    except PasswordRequiredError:
        logger.warning(f"startup_locked: key={settings.snapshot_key}")
    except DecryptionError:
        logger.warning(f"startup_locked: key={settings.snapshot_key} reason=bad_password")


@app.on_event("shutdown")
def shutdown_event():
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None and gateway.is_open:
        gateway.flush_quietly()
        gateway.close()


def get_gateway(request: Request) -> PersistenceGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None or not gateway.is_open:
        raise HTTPException(status_code=423, detail="Ledger is locked")
    return gateway


def writer_gateway(gateway: PersistenceGateway = Depends(get_gateway)):
    # One request touches the store at a time.
    with gateway.exclusive():
        yield gateway


def get_db(gateway: PersistenceGateway = Depends(writer_gateway)):
    with gateway.session() as db:
        yield db


def ingest_error_detail(exc: IngestError):
    if isinstance(exc, IngestValidationError):
        return {
            "message": "Batch failed validation",
            "errors": [
                {"index": e.index, "id": e.transaction_id, "message": e.message}
                for e in exc.errors
            ],
        }
    return str(exc)


def period_from_request(request: Request, db: Session) -> Period:
    try:
        return SettingsService(db).resolve_period(request.query_params.get("period"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _datetime_param(request: Request, name: str) -> Optional[datetime]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid type") from exc
    return TransactionFilters(
        query=request.query_params.get("q") or None,
        category_id=request.query_params.get("category_id") or None,
        account_id=request.query_params.get("account_id") or None,
        type=txn_type,
        start=_datetime_param(request, "start"),
        end=_datetime_param(request, "end"),
        min_amount_cents=_int_param(request, "min_amount_cents"),
        max_amount_cents=_int_param(request, "max_amount_cents"),
    )


def period_out(period: Period) -> dict:
    return {
        "slug": period.slug,
        "start": period.start.isoformat() if period.start else None,
        "end": period.end.isoformat(),
        "label": period.label,
    }


def account_out(account: Account, count: int = 0) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "is_savings": account.is_savings,
        "transaction_count": count,
    }


def category_out(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "group": category.group.value,
    }


def transaction_out(txn: Transaction, balance_after: Optional[int] = None) -> dict:
    return {
        "id": txn.id,
        "occurred_at": txn.occurred_at.isoformat(),
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "account_id": txn.account_id,
        "account": txn.account_name,
        "category_id": txn.category_id,
        "category": txn.category_name or UNCATEGORIZED_LABEL,
        "balance_after_cents": balance_after,
    }


def goal_out(goal: SavingsGoal, service: SavingsGoalService) -> dict:
    progress = service.progress(goal)
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount_cents": goal.target_amount_cents,
        "deadline": goal.deadline.isoformat() if goal.deadline else None,
        "target_account_ids": goal.target_account_ids,
        "progress": progress.__dict__,
    }


@app.get("/api/status")
def api_status(request: Request):
    gateway = getattr(request.app.state, "gateway", None)
    locked = gateway is None or not gateway.is_open
    has_data = False
    if not locked:
        with gateway.exclusive(), gateway.store.session_scope() as db:
            has_data = TransactionService(db).has_any()
    return {
        "locked": locked,
        "encrypted": bool(gateway and gateway.is_encrypted),
        "has_data": has_data,
    }


@app.post("/api/unlock")
def api_unlock(data: PasswordIn, request: Request):
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Ledger is not configured")
    try:
        with gateway.exclusive():
            gateway.unlock(data.password)
    except DecryptionError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except SnapshotIntegrityError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"locked": False}


@app.get("/api/accounts")
def api_accounts(db: Session = Depends(get_db)):
    service = AccountService(db)
    counts = service.transaction_counts()
    return [account_out(a, counts.get(a.id, 0)) for a in service.list_all()]


@app.post("/api/accounts", status_code=201)
def api_create_account(
    data: AccountIn,
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return account_out(account)


@app.patch("/api/accounts/{account_id}")
def api_update_account(
    account_id: str,
    data: AccountUpdate,
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db).update(account_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return account_out(account)


@app.delete("/api/accounts/{account_id}", status_code=204)
def api_delete_account(
    account_id: str,
    db: Session = Depends(get_db),
):
    try:
        AccountService(db).delete(account_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConstraintError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": str(exc), "referencing_count": exc.referencing_count},
        ) from exc
    return Response(status_code=204)


@app.get("/api/categories")
def api_categories(request: Request, db: Session = Depends(get_db)):
    type_param = request.query_params.get("type")
    try:
        txn_type = TransactionType(type_param) if type_param else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid type") from exc
    return [category_out(c) for c in CategoryService(db).list_all(txn_type)]


@app.post("/api/categories", status_code=201)
def api_create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category_out(category)


@app.put("/api/categories/{category_id}")
def api_update_category(
    category_id: str,
    data: CategoryIn,
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db).update(category_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category_out(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: str,
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db).delete(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConstraintError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": str(exc), "referencing_count": exc.referencing_count},
        ) from exc
    return Response(status_code=204)


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    filters = filters_from_request(request)
    page = max(_int_param(request, "page") or 1, 1)
    limit = min(max(_int_param(request, "limit") or 50, 1), 500)
    offset = (page - 1) * limit
    service = TransactionService(db)
    items = service.search(filters, period, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]
    balances = service.running_balances().by_transaction_id()
    return {
        "period": period_out(period),
        "items": [transaction_out(t, balances.get(t.id)) for t in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.get("/api/transactions/{transaction_id}")
def api_transaction(transaction_id: str, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return transaction_out(txn)


@app.post("/api/transactions", status_code=201)
def api_save_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
):
    try:
        IngestService(db).ingest([data])
    except IngestError as exc:
        raise HTTPException(status_code=400, detail=ingest_error_detail(exc)) from exc
    return transaction_out(TransactionService(db).get(data.id))


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
):
    try:
        removed = TransactionService(db).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": removed}


@app.post("/api/transfers", status_code=201)
def api_create_transfer(
    data: TransferIn,
    db: Session = Depends(get_db),
):
    try:
        link = IngestService(db).create_transfer(data)
    except IngestError as exc:
        raise HTTPException(status_code=400, detail=ingest_error_detail(exc)) from exc
    return {
        "id": link.id,
        "source_transaction_id": link.source_transaction_id,
        "destination_transaction_id": link.destination_transaction_id,
    }


def preview_out(preview) -> dict:
    return {
        "rows": [
            {**row.model_dump(mode="json"), "duplicate": preview.statuses[row.id].value}
            for row in preview.rows
        ],
        "new_accounts": preview.plan.new_accounts,
        "new_categories": [
            {"name": name, "type": txn_type.value}
            for name, txn_type in preview.plan.new_categories
        ],
        "errors": [
            {"index": e.index, "id": e.transaction_id, "message": e.message}
            for e in preview.errors
        ],
    }


@app.post("/api/ingest/preview")
def api_ingest_preview(data: IngestBatchIn, db: Session = Depends(get_db)):
    return preview_out(IngestService(db).preview(data.transactions))


@app.post("/api/ingest")
def api_ingest(
    data: IngestBatchIn,
    db: Session = Depends(get_db),
):
    service = IngestService(db)
    rows = data.transactions
    statuses = classify(rows, existing_signatures(db)) if data.skip_duplicates else {}
    rows = select_for_import(rows, statuses, data.overrides)
    try:
        result = service.ingest(rows)
    except IngestError as exc:
        raise HTTPException(status_code=400, detail=ingest_error_detail(exc)) from exc
    return {
        "inserted": result.inserted,
        "updated": result.updated,
        "skipped": len(data.transactions) - len(rows),
        "created_accounts": result.created_accounts,
        "created_categories": [name for name, _ in result.created_categories],
    }


@app.post("/api/import/csv/preview")
async def api_csv_preview(file: UploadFile = File(...), db: Session = Depends(get_db)):
    content = (await file.read()).decode("utf-8")
    preview, parse_errors = CSVService(db).preview(content)
    return {**preview_out(preview), "parse_errors": parse_errors}


@app.post("/api/import/csv")
async def api_csv_commit(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    content = (await file.read()).decode("utf-8")
    try:
        result = CSVService(db).commit(content)
    except IngestError as exc:
        raise HTTPException(status_code=400, detail=ingest_error_detail(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"inserted": result.inserted, "updated": result.updated}


@app.get("/api/export.csv")
def api_export_csv(db: Session = Depends(get_db)):
    csv_text = CSVService(db).export()
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"ledger_export_{timestamp}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/periods")
def api_periods(db: Session = Depends(get_db)):
    service = SettingsService(db)
    keys = ["all", *TransactionService(db).months()]
    return [period_out(service.resolve_period(key)) for key in keys]


@app.get("/api/periods/{period_key}")
def api_period(period_key: str, db: Session = Depends(get_db)):
    try:
        return period_out(SettingsService(db).resolve_period(period_key))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/settings/fiscal")
def api_fiscal_config(db: Session = Depends(get_db)):
    return SettingsService(db).fiscal_config().model_dump()


@app.put("/api/settings/fiscal")
def api_set_fiscal_config(
    data: FiscalConfig,
    db: Session = Depends(get_db),
):
    config = SettingsService(db).set_fiscal_config(data)
    return fiscal_config_adapter.dump_python(config)


@app.get("/api/settings/{key}")
def api_setting(key: str, db: Session = Depends(get_db)):
    raw = SettingsService(db).get_value(key)
    if raw is None:
        raise HTTPException(status_code=404, detail=f"Setting '{key}' not found")
    return {"key": key, "value": json.loads(raw)}


@app.put("/api/settings/{key}")
def api_set_setting(
    key: str,
    value: Any = Body(...),
    db: Session = Depends(get_db),
):
    # The fiscal policy only changes through its validated endpoint.
    if key == FISCAL_CONFIG_KEY:
        raise HTTPException(status_code=400, detail="Use /api/settings/fiscal")
    SettingsService(db).set_value(key, json.dumps(value))
    return {"key": key, "value": value}


@app.get("/api/summary")
def api_summary(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    summary = MetricsService(db).summary(period)
    return {"period": period_out(period), **summary.__dict__}


@app.get("/api/goals")
def api_goals(db: Session = Depends(get_db)):
    service = SavingsGoalService(db)
    return [goal_out(g, service) for g in service.list_all()]


@app.post("/api/goals", status_code=201)
def api_create_goal(
    data: SavingsGoalIn,
    db: Session = Depends(get_db),
):
    service = SavingsGoalService(db)
    try:
        goal = service.create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return goal_out(goal, service)


@app.put("/api/goals/{goal_id}")
def api_update_goal(
    goal_id: str,
    data: SavingsGoalIn,
    db: Session = Depends(get_db),
):
    service = SavingsGoalService(db)
    try:
        goal = service.update(goal_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return goal_out(goal, service)


@app.delete("/api/goals/{goal_id}", status_code=204)
def api_delete_goal(
    goal_id: str,
    db: Session = Depends(get_db),
):
    try:
        SavingsGoalService(db).delete(goal_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/query")
def api_query(data: QueryIn, gateway: PersistenceGateway = Depends(writer_gateway)):
    try:
        return QueryService(gateway.store).run(data.sql)
    except QueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/insights")
def api_insights(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    return InsightsService(db).insights(period)


@app.post("/api/insights/chat")
def api_insights_chat(data: ChatIn, db: Session = Depends(get_db)):
    return {"answer": InsightsService(db).answer(data.question)}


def _backup_response(filename: str, data: bytes) -> StreamingResponse:
    return StreamingResponse(
        iter([data]),
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/backup", response_class=StreamingResponse)
def api_backup(gateway: PersistenceGateway = Depends(writer_gateway)):
    filename, data = gateway.export_backup()
    return _backup_response(filename, data)


@app.post("/api/backup", response_class=StreamingResponse)
def api_encrypted_backup(
    data: PasswordIn, gateway: PersistenceGateway = Depends(writer_gateway)
):
    filename, blob = gateway.export_backup(password=data.password)
    return _backup_response(filename, blob)


@app.post("/api/restore")
async def api_restore(
    file: UploadFile = File(...),
    password: Optional[str] = Form(None),
    gateway: PersistenceGateway = Depends(writer_gateway),
):
    blob = await file.read()
    try:
        gateway.restore(blob, password)
    except PasswordRequiredError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except DecryptionError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except SnapshotIntegrityError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"restored": True}


@app.post("/api/reset")
def api_reset(gateway: PersistenceGateway = Depends(writer_gateway)):
    gateway.reset()
    return {"reset": True}


@app.post("/api/password")
def api_set_password(data: PasswordIn, gateway: PersistenceGateway = Depends(writer_gateway)):
    gateway.set_password(data.password)
    return {"encrypted": True}


@app.delete("/api/password")
def api_remove_password(gateway: PersistenceGateway = Depends(writer_gateway)):
    gateway.remove_password()
    return {"encrypted": False}
