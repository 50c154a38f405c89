import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import InvalidReference, MalformedTimestamp, NotFound, StorageFailure
from models import IntervalUnit
from schemas import (
    CategoryAssignment,
    CategoryIn,
    CategoryOut,
    CategoryRuleIn,
    CategoryRuleOut,
    CategoryRuleUpdate,
    CategoryUpdate,
    IntervalOut,
    PaymentRequestIn,
    PaymentRequestOut,
    SavingGoalIn,
    SavingGoalOut,
    SessionOut,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from services import (
    CategoryRuleService,
    CategoryService,
    IntervalService,
    PaymentRequestService,
    SavingGoalService,
    TransactionService,
)
from sessions import InvalidSession, create_session, resolve_session

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Balance Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(
    x_session_id: Optional[str] = Header(default=None),
    session_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> int:
    return resolve_session(db, x_session_id or session_id or "")


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(InvalidSession)
async def invalid_session_handler(_request: Request, exc: InvalidSession):
    return _error(401, exc)


@app.exception_handler(NotFound)
async def not_found_handler(_request: Request, exc: NotFound):
    return _error(404, exc)


@app.exception_handler(InvalidReference)
async def invalid_reference_handler(_request: Request, exc: InvalidReference):
    return _error(404, exc)


@app.exception_handler(MalformedTimestamp)
async def malformed_timestamp_handler(_request: Request, exc: MalformedTimestamp):
    return _error(405, exc)


@app.exception_handler(StorageFailure)
async def storage_failure_handler(_request: Request, exc: StorageFailure):
    logger.error(f"storage_failure: path={_request.url.path} detail={exc}")
    return _error(500, exc)


@app.post("/api/v1/sessions", status_code=201, response_model=SessionOut)
def api_create_session(db: Session = Depends(get_db)):
    return SessionOut(id=create_session(db))


@app.get("/api/v1/transactions", response_model=list[TransactionOut])
def api_list_transactions(
    category: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).list_all(category, limit, offset)


@app.post("/api/v1/transactions", status_code=201, response_model=TransactionOut)
def api_create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).create(data)


@app.get("/api/v1/transactions/{transaction_id}", response_model=TransactionOut)
def api_get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).get(transaction_id)


@app.put("/api/v1/transactions/{transaction_id}", response_model=TransactionOut)
def api_update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).update(transaction_id, data)


@app.delete("/api/v1/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).delete(transaction_id)
    return Response(status_code=204)


@app.patch(
    "/api/v1/transactions/{transaction_id}/category", response_model=TransactionOut
)
def api_assign_category(
    transaction_id: int,
    data: CategoryAssignment,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).assign_category(
        transaction_id, data.category_id
    )


@app.get("/api/v1/categories", response_model=list[CategoryOut])
def api_list_categories(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).list_all(limit, offset)


@app.post("/api/v1/categories", status_code=201, response_model=CategoryOut)
def api_create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(data)


@app.get("/api/v1/categories/{category_id}", response_model=CategoryOut)
def api_get_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).get(category_id)


@app.put("/api/v1/categories/{category_id}", response_model=CategoryOut)
def api_update_category(
    category_id: int,
    data: CategoryUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).update(category_id, data)


@app.delete("/api/v1/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).delete(category_id)
    return Response(status_code=204)


@app.get("/api/v1/categoryRules", response_model=list[CategoryRuleOut])
def api_list_category_rules(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return CategoryRuleService(db, user_id).list_all()


@app.post("/api/v1/categoryRules", status_code=201, response_model=CategoryRuleOut)
def api_create_category_rule(
    data: CategoryRuleIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryRuleService(db, user_id).create(data)


@app.get("/api/v1/categoryRules/{rule_id}", response_model=CategoryRuleOut)
def api_get_category_rule(
    rule_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryRuleService(db, user_id).get(rule_id)


@app.put("/api/v1/categoryRules/{rule_id}", response_model=CategoryRuleOut)
def api_update_category_rule(
    rule_id: int,
    data: CategoryRuleUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryRuleService(db, user_id).update(rule_id, data)


@app.delete("/api/v1/categoryRules/{rule_id}", status_code=204)
def api_delete_category_rule(
    rule_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryRuleService(db, user_id).delete(rule_id)
    return Response(status_code=204)


@app.get("/api/v1/balance/history", response_model=list[IntervalOut])
def api_balance_history(
    interval: IntervalUnit = IntervalUnit.month,
    intervals: int = Query(default=24, ge=1, le=200),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return IntervalService(db, user_id).intervals(interval, intervals)


@app.get("/api/v1/savingGoals", response_model=list[SavingGoalOut])
def api_list_saving_goals(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return SavingGoalService(db, user_id).list_all()


@app.post("/api/v1/savingGoals", status_code=201, response_model=SavingGoalOut)
def api_create_saving_goal(
    data: SavingGoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return SavingGoalService(db, user_id).create(data)


@app.delete("/api/v1/savingGoals/{goal_id}", status_code=204)
def api_delete_saving_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    SavingGoalService(db, user_id).delete(goal_id)
    return Response(status_code=204)


@app.get("/api/v1/paymentRequests", response_model=list[PaymentRequestOut])
def api_list_payment_requests(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return PaymentRequestService(db, user_id).list_all()


@app.post("/api/v1/paymentRequests", status_code=201, response_model=PaymentRequestOut)
def api_create_payment_request(
    data: PaymentRequestIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return PaymentRequestService(db, user_id).create(data)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
