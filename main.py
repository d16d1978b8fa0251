import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cache import TTLCache
from database import get_db
from errors import NotFoundError, StorageError
from queries import TransactionQueryEngine, parse_filters, to_record
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    GroupIn,
    GroupMemberIn,
    SplitIn,
    SubcategoryIn,
    TransactionIn,
)
from services import CategoryService, GroupService, TransactionService
from settlement import SettlementService
from visibility import parse_scope

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger API")

ledger_cache = TTLCache()
scheduler_manager = SchedulerManager(ledger_cache)


def get_cache() -> TTLCache:
    return ledger_cache


def get_viewer_id(x_viewer_id: Optional[str] = Header(default=None)) -> int:
    # set by the upstream auth layer after it has verified the session
    if not x_viewer_id:
        raise HTTPException(status_code=401, detail="unauthorized")
    try:
        return int(x_viewer_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="unauthorized") from exc


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(StorageError)
def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"storage_error: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=500, content={"records": [], "error": "internal error"}
    )


@app.get("/api/transactions")
def api_transactions(
    operation_type: Optional[str] = None,
    category_id: Optional[str] = None,
    subcategory_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    scope: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    try:
        filters = parse_filters(
            operation_type=operation_type,
            category_id=category_id,
            subcategory_id=subcategory_id,
            start=start,
            end=end,
            scope=scope,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    page = TransactionQueryEngine(db, cache).query(viewer_id, filters, cursor, limit)
    return page.model_dump(mode="json")


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    try:
        txn = TransactionService(db, viewer_id, cache).create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return to_record(txn).model_dump(mode="json")


@app.get("/api/transactions/deleted")
def deleted_transactions(
    limit: Optional[int] = None,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
):
    records, skipped = TransactionService(db, viewer_id).deleted(limit)
    return {
        "records": [r.model_dump(mode="json") for r in records],
        "count": len(records),
        "skipped_rows": skipped,
    }


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    try:
        TransactionService(db, viewer_id, cache).soft_delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted"}


@app.post("/api/transactions/{transaction_id}/restore")
def restore_transaction(
    transaction_id: int,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    try:
        TransactionService(db, viewer_id, cache).restore(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "restored"}


@app.post("/api/shared-expenses")
def create_shared_expense(
    data: SplitIn,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    try:
        result = SettlementService(db, cache).create_split(
            viewer_id,
            data.amount_cents,
            data.participants,
            category_id=data.category_id,
            timestamp=data.timestamp,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.model_dump()


@app.get("/api/debts")
def api_debts(
    viewer_id: int = Depends(get_viewer_id), db: Session = Depends(get_db)
):
    return SettlementService(db).list_debts(viewer_id).model_dump(mode="json")


@app.get("/api/balance")
def api_balance(
    scope: Optional[str] = None,
    period: Optional[str] = None,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    try:
        resolved_scope = parse_scope(scope)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    balance = SettlementService(db, cache).compute_balance(
        viewer_id, resolved_scope, period
    )
    return balance.model_dump()


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return [
        {
            "id": c.id,
            "name": c.name,
            "subcategories": [{"id": s.id, "name": s.name} for s in c.subcategories],
        }
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": category.id, "name": category.name}


@app.post("/api/subcategories", status_code=201)
def create_subcategory(data: SubcategoryIn, db: Session = Depends(get_db)):
    try:
        sub = CategoryService(db).create_subcategory(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": sub.id, "name": sub.name, "category_id": sub.category_id}


@app.get("/api/family/groups")
def family_groups(
    viewer_id: int = Depends(get_viewer_id), db: Session = Depends(get_db)
):
    groups = GroupService(db, viewer_id).list_for_user()
    return {"groups": [g.model_dump() for g in groups]}


@app.post("/api/family/groups", status_code=201)
def create_group(
    data: GroupIn,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
):
    try:
        group = GroupService(db, viewer_id).create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"id": group.id, "name": group.name, "kind": group.kind}


@app.post("/api/family/groups/{group_id}/members", status_code=201)
def add_group_member(
    group_id: int,
    data: GroupMemberIn,
    viewer_id: int = Depends(get_viewer_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    try:
        GroupService(db, viewer_id, cache).add_member(group_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "added"}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
